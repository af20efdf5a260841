"""
Cordon Approval Store

Durable mapping from package name to its approval record. This is the
single source of truth consulted by the gate.

Document layout (approvals.json):
{
    "packages": {
        "@scope/name": {
            "status": "pending",
            "requestedAt": "2026-02-01T15:30:00+00:00",
            "riskScore": 0,
            ...
        }
    },
    "version": 1
}

State machine:
    pending  --scan-->            pending   (risk metadata only)
    pending  --approve-->         approved
    pending  --reject-->          rejected
    approved/rejected --approve/reject--> approved/rejected

``blocked`` is never written by a transition. ``get_status`` returns it for
a package seen for the first time, as the deny-by-default label.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cordon.errors import (
    AssessmentUnavailableError,
    PackageNotFoundError,
    StoreIOError,
)
from cordon.models import (
    ApprovalStatus,
    PackageRecord,
    ScanResults,
    clamp_score,
    utc_now,
)
from cordon.storage import JsonDocument, Transaction

logger = logging.getLogger(__name__)

APPROVALS_FILENAME = "approvals.json"

# Returned by get_status for a package that had no record
UNSEEN_STATUS = ApprovalStatus.BLOCKED


class _StatusChanged(Exception):
    """A conditional transition found the record in a different state."""
    pass


class ApprovalStore:
    """
    Approval records persisted as one JSON document.

    There is no in-memory cache: every call reads (and where needed writes)
    the document inside a locked transaction.
    """

    SCHEMA_VERSION = 1

    def __init__(self, quarantine_path: Path):
        self.quarantine_path = Path(quarantine_path)
        self.db_path = self.quarantine_path / APPROVALS_FILENAME
        self._doc = JsonDocument(self.db_path, self._empty_db)

    @classmethod
    def _empty_db(cls) -> Dict[str, Any]:
        return {"packages": {}, "version": cls.SCHEMA_VERSION}

    def _packages(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate the schema version and return the packages mapping."""
        version = data.get("version", self.SCHEMA_VERSION)
        if not isinstance(version, int) or version > self.SCHEMA_VERSION:
            raise StoreIOError(
                f"Unsupported approvals schema version {version!r} in {self.db_path}"
            )
        packages = data.setdefault("packages", {})
        if not isinstance(packages, dict):
            raise StoreIOError(f"Corrupt approvals document {self.db_path}")
        data["version"] = self.SCHEMA_VERSION
        return packages

    def _record(self, packages: Dict[str, Any], name: str) -> Optional[PackageRecord]:
        raw = packages.get(name)
        if raw is None:
            return None
        try:
            return PackageRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreIOError(f"Corrupt record for {name}: {e}") from e

    def _create(
        self,
        txn: Transaction,
        packages: Dict[str, Any],
        name: str,
        requested_by: Optional[str],
    ) -> None:
        record = PackageRecord(
            status=ApprovalStatus.PENDING,
            requested_at=utc_now(),
            requested_by=requested_by,
            risk_score=0,
        )
        packages[name] = record.to_dict()
        txn.mark_dirty()
        logger.info("New package request recorded: %s", name)

    # =========================================================================
    # Gate path
    # =========================================================================

    def get_status(self, name: str) -> ApprovalStatus:
        """
        Return the stored status of a package.

        A package without a record is registered as pending in the same
        transaction and reported as ``blocked`` (not yet cleared).
        """
        with self._doc.transaction() as txn:
            packages = self._packages(txn.data)
            record = self._record(packages, name)
            if record is None:
                self._create(txn, packages, name, requested_by=None)
                return UNSEEN_STATUS
            return record.status

    # =========================================================================
    # Administrative transitions
    # =========================================================================

    def register_request(self, name: str, requested_by: Optional[str] = None) -> bool:
        """
        Create a pending record unless one already exists.

        Returns:
            True if a record was created, False if one already existed
        """
        with self._doc.transaction() as txn:
            packages = self._packages(txn.data)
            if name in packages:
                return False
            self._create(txn, packages, name, requested_by)
            return True

    def approve(self, name: str) -> PackageRecord:
        """Mark a package approved. Raises PackageNotFoundError if unknown."""
        return self._transition(name, ApprovalStatus.APPROVED)

    def reject(self, name: str) -> PackageRecord:
        """Mark a package rejected. Raises PackageNotFoundError if unknown."""
        return self._transition(name, ApprovalStatus.REJECTED)

    def reject_if_pending(self, name: str) -> bool:
        """
        Reject a package only if it is still pending, in one transaction.

        Returns:
            True if the package was rejected, False if it was already decided
        """
        try:
            self._transition(name, ApprovalStatus.REJECTED, only_from=ApprovalStatus.PENDING)
        except _StatusChanged:
            return False
        return True

    def _transition(
        self,
        name: str,
        status: ApprovalStatus,
        only_from: Optional[ApprovalStatus] = None,
    ) -> PackageRecord:
        with self._doc.transaction() as txn:
            packages = self._packages(txn.data)
            record = self._record(packages, name)
            if record is None:
                raise PackageNotFoundError(name)
            if only_from is not None and record.status != only_from:
                raise _StatusChanged(name)

            record.status = status
            if status == ApprovalStatus.APPROVED:
                record.approved_at = utc_now()
            else:
                record.rejected_at = utc_now()

            packages[name] = record.to_dict()
            txn.mark_dirty()

        logger.info("Package %s: %s", status.value, name)
        return record

    def record_scan(self, name: str, results: ScanResults) -> PackageRecord:
        """
        Store the latest scan output for a package.

        Status is left unchanged: scanning and approval are independent.
        Raises PackageNotFoundError if the package is unknown.
        """
        with self._doc.transaction() as txn:
            packages = self._packages(txn.data)
            record = self._record(packages, name)
            if record is None:
                raise PackageNotFoundError(name)

            record.scan_results = results
            record.risk_score = clamp_score(results.risk_score)
            record.scanned_at = results.scanned_at
            packages[name] = record.to_dict()
            txn.mark_dirty()

        return record

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, name: str) -> Optional[PackageRecord]:
        """Return the record for a package without registering it."""
        packages = self._packages(self._doc.load())
        return self._record(packages, name)

    def list_all(self) -> List[Tuple[str, PackageRecord]]:
        """Snapshot of every record."""
        packages = self._packages(self._doc.load())
        return [(name, self._record(packages, name)) for name in packages]

    def get_assessment(self, name: str) -> Dict[str, Any]:
        """
        Latest risk assessment for a package.

        Raises:
            AssessmentUnavailableError: unknown package or no completed scan
        """
        record = self.get(name)
        if record is None or record.scan_results is None:
            raise AssessmentUnavailableError(name)
        return {
            "package": name,
            "riskScore": record.risk_score,
            "scanResults": record.scan_results.to_dict(),
            "scannedAt": record.scanned_at,
        }
