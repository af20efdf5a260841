"""
Cordon Gate - allow/deny decision for each inbound package fetch.

The gate consults the approval store once per artifact fetch. A package
seen for the first time is registered as pending by the store lookup itself
and denied. Scanning never happens on this path.

Two safety postures are kept deliberately separate:
- default-deny: unseen, pending, and (by default) rejected packages are denied
- fail-open: if the status lookup itself fails the request is allowed, so a
  corrupted store does not take the whole registry down
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlsplit

from cordon.blocked_log import BlockedAttemptLog
from cordon.models import ApprovalStatus
from cordon.store import ApprovalStore

logger = logging.getLogger(__name__)

# Prefix of registry endpoints that are never package fetches
ADMIN_PATH_PREFIX = "/-/"


@dataclass
class GatePolicy:
    """Configurable decisions the gate makes beyond default-deny."""
    deny_rejected: bool = True
    log_pending_denials: bool = False
    fail_open_on_store_error: bool = True

    @classmethod
    def from_config(cls, config) -> "GatePolicy":
        return cls(
            deny_rejected=config.deny_rejected,
            log_pending_denials=config.log_pending_denials,
            fail_open_on_store_error=config.fail_open_on_store_error,
        )


@dataclass
class GateDecision:
    """Outcome of one gate check."""
    allowed: bool
    package: str
    status: Optional[ApprovalStatus] = None
    error: Optional[str] = None
    message: Optional[str] = None
    failed_open: bool = False

    def to_response(self) -> Dict[str, Any]:
        """Structured body returned to a denied client."""
        return {
            "error": self.error,
            "message": self.message,
            "package": self.package,
        }


def artifact_package(method: str, path: str) -> Optional[str]:
    """
    Package name targeted by a registry request, or None if the gate
    should not apply.

    Only GET requests are gated. Paths under ``/-/`` (administrative and
    search endpoints) bypass. Tarball paths (``/name/-/name-1.0.0.tgz``)
    and version paths resolve to their package. Percent-encoding is decoded
    so ``/@scope%2fname`` and ``/@scope/name`` are the same package.
    """
    if method.upper() != "GET":
        return None

    req_path = urlsplit(path).path
    if req_path.startswith(ADMIN_PATH_PREFIX):
        return None

    head = req_path.split(ADMIN_PATH_PREFIX, 1)[0]
    parts = [p for p in unquote(head).split("/") if p]
    if not parts:
        return None

    if parts[0].startswith("@"):
        if len(parts) < 2:
            return None
        return f"{parts[0]}/{parts[1]}"
    return parts[0]


class QuarantineGate:
    """Maps approval state to allow/deny and records denied fetches."""

    def __init__(
        self,
        store: ApprovalStore,
        blocked_log: BlockedAttemptLog,
        policy: Optional[GatePolicy] = None,
        enabled: bool = True,
    ):
        self.store = store
        self.blocked_log = blocked_log
        self.policy = policy or GatePolicy()
        self.enabled = enabled

    def intercept(
        self,
        method: str,
        path: str,
        ip: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> Optional[GateDecision]:
        """Check a raw registry request. Returns None when the gate does not apply."""
        package = artifact_package(method, path)
        if package is None:
            return None
        return self.check(package, ip=ip, user_agent=user_agent)

    def check(
        self,
        package: str,
        ip: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> GateDecision:
        """
        Decide whether a fetch of *package* may be served.

        Args:
            package: Decoded package name
            ip: Caller network address, for the audit log
            user_agent: Caller user agent, for the audit log

        Returns:
            GateDecision
        """
        if not self.enabled:
            return GateDecision(allowed=True, package=package)

        try:
            status = self.store.get_status(package)
        except Exception as e:
            return self._on_store_error(package, e)

        if status == ApprovalStatus.APPROVED:
            return GateDecision(allowed=True, package=package, status=status)

        if status == ApprovalStatus.PENDING:
            decision = GateDecision(
                allowed=False,
                package=package,
                status=status,
                error="Package under review",
                message=f"Package {package} is currently being reviewed for security.",
            )
            if self.policy.log_pending_denials:
                self._log_blocked(package, ip, user_agent)
            logger.info("Denied fetch of %s: under review", package)
            return decision

        if status == ApprovalStatus.REJECTED:
            if not self.policy.deny_rejected:
                return GateDecision(allowed=True, package=package, status=status)
            self._log_blocked(package, ip, user_agent)
            logger.info("Denied fetch of %s: rejected", package)
            return GateDecision(
                allowed=False,
                package=package,
                status=status,
                error="Package rejected",
                message=f"Package {package} was rejected by an administrator.",
            )

        # blocked: unseen or not yet cleared
        self._log_blocked(package, ip, user_agent)
        logger.info("Denied fetch of %s: not approved", package)
        return GateDecision(
            allowed=False,
            package=package,
            status=status,
            error="Package not approved",
            message=(
                f"Package {package} is pending approval. "
                f"Contact your administrator."
            ),
        )

    def _on_store_error(self, package: str, error: Exception) -> GateDecision:
        if self.policy.fail_open_on_store_error:
            logger.error(
                "Error checking approval status for %s, allowing: %s",
                package, error, exc_info=True,
            )
            return GateDecision(allowed=True, package=package, failed_open=True)

        logger.error(
            "Error checking approval status for %s, denying: %s",
            package, error, exc_info=True,
        )
        return GateDecision(
            allowed=False,
            package=package,
            error="Package status unavailable",
            message=f"Approval status for {package} could not be determined.",
        )

    def _log_blocked(self, package: str, ip: str, user_agent: Optional[str]) -> None:
        """Append to the blocked-attempt log. Failures never change the decision."""
        try:
            self.blocked_log.record(package, ip, user_agent)
        except Exception as e:
            logger.warning("Failed to log blocked attempt for %s: %s", package, e)
