"""
Cordon Quarantine - administrative lifecycle manager.

Binds the approval store, blocked-attempt log, scanner and gate behind the
operations the administrative surface needs:

    request (gate, first fetch) → scan (manual or auto) → approve / reject

Scan results only update risk metadata. Whether a high score rejects a
package is a policy switch (``auto_reject_over_threshold``), off by default.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from cordon.blocked_log import BlockedAttemptLog
from cordon.config import QuarantineConfig, load_config
from cordon.gate import GatePolicy, QuarantineGate
from cordon.models import BlockedAttempt, PackageRecord, ScanResults
from cordon.scanner import PackageScanner
from cordon.store import ApprovalStore

logger = logging.getLogger(__name__)


class Quarantine:
    """
    Administrative facade over the quarantine directory.

    All state lives in the store and log documents; instances are cheap and
    safe to share between request threads.
    """

    def __init__(
        self,
        config: Optional[QuarantineConfig] = None,
        scanner: Optional[PackageScanner] = None,
    ):
        self.config = config or load_config()
        self.store = ApprovalStore(self.config.quarantine_path)
        self.blocked_log = BlockedAttemptLog(
            self.config.quarantine_path, limit=self.config.blocked_log_limit
        )
        self.scanner = scanner or PackageScanner(config=self.config)
        self.gate = QuarantineGate(
            self.store,
            self.blocked_log,
            policy=GatePolicy.from_config(self.config),
            enabled=self.config.enabled,
        )
        self._scan_threads: List[threading.Thread] = []
        self._scan_threads_lock = threading.Lock()

    def ensure_directories(self) -> None:
        """Create the quarantine directory if needed."""
        path = self.config.quarantine_path
        if path.exists():
            logger.info("Quarantine directory exists: %s", path)
            return
        path.mkdir(parents=True, exist_ok=True)
        logger.info("Quarantine directory initialised: %s", path)

    # =========================================================================
    # Requests and transitions
    # =========================================================================

    def list_requests(self) -> List[Dict[str, Any]]:
        """Every package record, flattened with its name under 'package'."""
        return [
            {"package": name, **record.to_dict()}
            for name, record in self.store.list_all()
        ]

    def approve(self, package: str) -> PackageRecord:
        return self.store.approve(package)

    def reject(self, package: str) -> PackageRecord:
        return self.store.reject(package)

    def get_assessment(self, package: str) -> Dict[str, Any]:
        return self.store.get_assessment(package)

    def list_blocked(self) -> List[BlockedAttempt]:
        return self.blocked_log.list()

    def exceeds_threshold(self, score: int) -> bool:
        return score >= self.config.risk_threshold

    # =========================================================================
    # Scanning
    # =========================================================================

    def scan_package(
        self,
        package: str,
        archive_path: Path,
        requested_by: Optional[str] = None,
    ) -> ScanResults:
        """
        Scan an archive and store the results on the package record.

        The package is registered as pending first if it has never been
        requested, so administrators can pre-scan packages.
        """
        self.store.register_request(package, requested_by=requested_by)
        results = self.scanner.scan(Path(archive_path), package)
        self.store.record_scan(package, results)

        if self.exceeds_threshold(results.risk_score):
            logger.warning(
                "Package %s scored %d (threshold %d)",
                package, results.risk_score, self.config.risk_threshold,
            )
            self._apply_threshold_policy(package)

        return results

    def _apply_threshold_policy(self, package: str) -> None:
        if not self.config.auto_reject_over_threshold:
            return
        if self.store.reject_if_pending(package):
            logger.warning("Package %s auto-rejected over risk threshold", package)

    def submit_scan(
        self,
        package: str,
        archive_path: Path,
        requested_by: Optional[str] = None,
    ) -> threading.Thread:
        """Run ``scan_package`` in a background thread and return the thread."""
        thread = threading.Thread(
            target=self._background_scan,
            args=(package, Path(archive_path), requested_by),
            name=f"cordon-bgscan-{package}",
            daemon=True,
        )
        with self._scan_threads_lock:
            self._scan_threads = [t for t in self._scan_threads if t.is_alive()]
            self._scan_threads.append(thread)
        thread.start()
        return thread

    def _background_scan(
        self, package: str, archive_path: Path, requested_by: Optional[str]
    ) -> None:
        try:
            self.scan_package(package, archive_path, requested_by=requested_by)
        except Exception as e:
            # Store write failures end up here; nothing upstream to report to
            logger.error("Background scan of %s failed: %s", package, e, exc_info=True)

    def on_archive_cached(
        self, package: str, archive_path: Path
    ) -> Optional[threading.Thread]:
        """
        Hook for the registry host once it has a package tarball on disk.

        Starts a background scan when autoscan is enabled.
        """
        if not (self.config.enabled and self.config.autoscan):
            return None
        return self.submit_scan(package, archive_path, requested_by="autoscan")

    def wait_for_scans(self, timeout: Optional[float] = None) -> None:
        """Block until background scans started by this instance finish."""
        with self._scan_threads_lock:
            threads = list(self._scan_threads)
        for thread in threads:
            thread.join(timeout)
