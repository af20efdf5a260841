"""
Cordon data model.

Records persisted in the quarantine directory use camelCase keys so the
documents stay readable by registry tooling; the Python side is snake_case.
Conversion happens only in ``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


MAX_RISK_SCORE = 100


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def clamp_score(value: int) -> int:
    """Clamp a risk score into [0, MAX_RISK_SCORE]."""
    return max(0, min(int(value), MAX_RISK_SCORE))


class ApprovalStatus(str, Enum):
    """Approval state of a package."""
    PENDING = "pending"
    APPROVED = "approved"
    BLOCKED = "blocked"      # derived by the gate, never stored by a transition
    REJECTED = "rejected"


class RiskSeverity(str, Enum):
    """Severity of a single risk signal."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskType(str, Enum):
    """Closed set of risk signal types."""
    SUSPICIOUS_SCRIPT = "suspicious-script"
    NETWORK_ACCESS = "network-access"
    FILESYSTEM_ACCESS = "filesystem-access"
    PACKAGE_JSON_ERROR = "package-json-error"
    SCAN_ERROR = "scan-error"
    SUSPICIOUS_DEPENDENCY = "suspicious-dependency"
    BINARY_EXECUTABLE = "binary-executable"
    LARGE_FILES = "large-files"


# Weight contributed to the aggregate score by each severity
SEVERITY_WEIGHTS = {
    RiskSeverity.LOW: 10,
    RiskSeverity.MEDIUM: 30,
    RiskSeverity.HIGH: 60,
    RiskSeverity.CRITICAL: 100,
}


@dataclass
class SecurityRisk:
    """One typed, severity-tagged finding from a detector."""
    type: RiskType
    severity: RiskSeverity
    description: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
        }
        if self.details is not None:
            d["details"] = self.details
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityRisk":
        return cls(
            type=RiskType(data["type"]),
            severity=RiskSeverity(data["severity"]),
            description=data.get("description", ""),
            details=data.get("details"),
        )


@dataclass
class ScanResults:
    """Output of one scan of a package archive."""
    package_name: str
    scanned_at: str = ""
    risks: List[SecurityRisk] = field(default_factory=list)
    risk_score: int = 0
    scan_duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return {
            "packageName": self.package_name,
            "scannedAt": self.scanned_at,
            "risks": [r.to_dict() for r in self.risks],
            "riskScore": self.risk_score,
            "scanDurationMs": self.scan_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanResults":
        return cls(
            package_name=data.get("packageName", ""),
            scanned_at=data.get("scannedAt", ""),
            risks=[SecurityRisk.from_dict(r) for r in data.get("risks", [])],
            risk_score=clamp_score(data.get("riskScore", 0)),
            scan_duration_ms=int(data.get("scanDurationMs", 0)),
        )

    def count_by_severity(self) -> Dict[str, int]:
        """Number of risks per severity level."""
        counts = {s.value: 0 for s in RiskSeverity}
        for risk in self.risks:
            counts[risk.severity.value] += 1
        return counts


@dataclass
class PackageRecord:
    """Approval record for one package identity."""
    status: ApprovalStatus
    requested_at: str
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    risk_score: int = 0
    scan_results: Optional[ScanResults] = None
    scanned_at: Optional[str] = None
    requested_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted JSON shape, omitting unset optionals."""
        d: Dict[str, Any] = {
            "status": self.status.value,
            "requestedAt": self.requested_at,
            "riskScore": self.risk_score,
        }
        optional = {
            "approvedAt": self.approved_at,
            "rejectedAt": self.rejected_at,
            "scanResults": self.scan_results.to_dict() if self.scan_results else None,
            "scannedAt": self.scanned_at,
            "requestedBy": self.requested_by,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageRecord":
        scan = data.get("scanResults")
        return cls(
            status=ApprovalStatus(data["status"]),
            requested_at=data["requestedAt"],
            approved_at=data.get("approvedAt"),
            rejected_at=data.get("rejectedAt"),
            risk_score=clamp_score(data.get("riskScore") or 0),
            scan_results=ScanResults.from_dict(scan) if scan else None,
            scanned_at=data.get("scannedAt"),
            requested_by=data.get("requestedBy"),
        )


@dataclass
class BlockedAttempt:
    """A denied fetch, kept for audit."""
    package: str
    ip: str
    timestamp: str
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"package": self.package, "ip": self.ip, "timestamp": self.timestamp}
        if self.user_agent is not None:
            d["userAgent"] = self.user_agent
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockedAttempt":
        return cls(
            package=data.get("package", ""),
            ip=data.get("ip", "unknown"),
            timestamp=data.get("timestamp", ""),
            user_agent=data.get("userAgent"),
        )
