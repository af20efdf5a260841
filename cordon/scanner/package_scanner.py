"""
Cordon Package Scanner - static risk assessment of a package archive.

Pipeline:
1. Extraction      - unpack into a per-scan scratch directory
2. Detectors       - manifest, source patterns, binaries/size (pluggable)
3. Aggregation     - severity weights summed and clamped to 100
4. Cleanup         - scratch directory removed on every exit path

``scan`` never raises. Any failure, including a timeout, becomes a single
critical ``scan-error`` risk and a score of 100: a package that cannot be
scanned is treated as maximally suspicious.
"""

import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from cordon.config import QuarantineConfig
from cordon.errors import ScanTimeoutError
from cordon.models import (
    MAX_RISK_SCORE,
    SEVERITY_WEIGHTS,
    RiskSeverity,
    RiskType,
    ScanResults,
    SecurityRisk,
    utc_now,
)
from cordon.scanner.archive import extract_archive, scratch_name
from cordon.scanner.detectors import Detector, ScanContext, default_detectors

logger = logging.getLogger(__name__)


def calculate_risk_score(risks: Iterable[SecurityRisk]) -> int:
    """Sum severity weights and cap at MAX_RISK_SCORE."""
    score = sum(SEVERITY_WEIGHTS[risk.severity] for risk in risks)
    return min(score, MAX_RISK_SCORE)


def scan_error_risk(error: BaseException) -> SecurityRisk:
    """The single signal reported when a scan cannot complete."""
    return SecurityRisk(
        type=RiskType.SCAN_ERROR,
        severity=RiskSeverity.CRITICAL,
        description="Failed to complete security scan",
        details={"error": str(error), "error_type": type(error).__name__},
    )


class PackageScanner:
    """
    Runs extraction and detectors over one archive at a time.

    The pipeline runs in a worker thread so a hung extraction or file read
    can be abandoned after ``scan_timeout_seconds``. Every scan gets its own
    scratch directory, so concurrent scans of the same package never share
    files.
    """

    def __init__(
        self,
        config: Optional[QuarantineConfig] = None,
        detectors: Optional[List[Detector]] = None,
        scratch_root: Optional[Path] = None,
    ):
        self.config = config or QuarantineConfig()
        self.detectors = detectors if detectors is not None else default_detectors()
        self.scratch_root = Path(scratch_root or self.config.scratch_path)

    def scan(self, archive_path: Path, package_name: str) -> ScanResults:
        """
        Scan a package archive.

        Args:
            archive_path: Path to the package tarball
            package_name: Package identity the archive belongs to

        Returns:
            ScanResults; never raises
        """
        start_time = time.monotonic()
        results = ScanResults(package_name=package_name, scanned_at=utc_now())
        logger.info("Starting security scan: %s", package_name)

        scratch: Optional[Path] = None
        try:
            scratch = self._make_scratch(package_name)
            results.risks = self._run_with_timeout(Path(archive_path), scratch, package_name)
            results.risk_score = calculate_risk_score(results.risks)
            logger.info(
                "Scan completed: %s score=%d risks=%d",
                package_name, results.risk_score, len(results.risks),
            )
        except Exception as e:
            logger.error("Scan failed: %s: %s", package_name, e, exc_info=True)
            results.risks = [scan_error_risk(e)]
            results.risk_score = MAX_RISK_SCORE
        finally:
            if scratch is not None:
                self._cleanup(scratch)

        results.scan_duration_ms = int((time.monotonic() - start_time) * 1000)
        return results

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _run_with_timeout(
        self, archive_path: Path, scratch: Path, package_name: str
    ) -> List[SecurityRisk]:
        cancel = threading.Event()
        outcome: Dict[str, Any] = {}

        worker = threading.Thread(
            target=self._pipeline_worker,
            args=(archive_path, scratch, package_name, cancel, outcome),
            name=f"cordon-scan-{scratch.name}",
            daemon=True,
        )
        worker.start()
        worker.join(self.config.scan_timeout_seconds)

        if worker.is_alive():
            cancel.set()
            raise ScanTimeoutError(
                f"Scan exceeded {self.config.scan_timeout_seconds}s timeout"
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["risks"]

    def _pipeline_worker(
        self,
        archive_path: Path,
        scratch: Path,
        package_name: str,
        cancel: threading.Event,
        outcome: Dict[str, Any],
    ) -> None:
        try:
            outcome["risks"] = self._pipeline(archive_path, scratch, package_name, cancel)
        except Exception as e:
            outcome["error"] = e
        finally:
            # An abandoned worker may still have written files after cleanup
            if cancel.is_set():
                self._cleanup(scratch)

    def _pipeline(
        self,
        archive_path: Path,
        scratch: Path,
        package_name: str,
        cancel: threading.Event,
    ) -> List[SecurityRisk]:
        extract_archive(
            archive_path,
            scratch,
            max_members=self.config.max_archive_members,
            max_unpacked_bytes=self.config.max_unpacked_bytes,
            cancel=cancel,
        )

        context = ScanContext(
            root=scratch,
            package_name=package_name,
            max_depth=self.config.max_walk_depth,
            max_files=self.config.max_walk_files,
            large_file_bytes=self.config.max_file_size_bytes,
            cancel=cancel,
        )

        risks: List[SecurityRisk] = []
        for detector in self.detectors:
            found = detector.inspect(context)
            logger.debug("Detector %s: %d risk(s) in %s", detector.name, len(found), package_name)
            risks.extend(found)
        return risks

    # =========================================================================
    # Scratch directory lifecycle
    # =========================================================================

    def _make_scratch(self, package_name: str) -> Path:
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(
            prefix=f"{scratch_name(package_name)}-extract-",
            dir=str(self.scratch_root),
        ))

    def _cleanup(self, scratch: Path) -> None:
        shutil.rmtree(scratch, ignore_errors=True)
        if scratch.exists():
            logger.warning("Could not remove scratch directory %s", scratch)
