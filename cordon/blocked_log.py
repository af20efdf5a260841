"""
Cordon Blocked-Attempt Log

Bounded, append-only record of denied fetches (blocked-attempts.json).
Only the most recent entries are kept; the oldest are discarded on write.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from cordon.errors import StoreIOError
from cordon.models import BlockedAttempt, utc_now
from cordon.storage import JsonDocument

BLOCKED_LOG_FILENAME = "blocked-attempts.json"
DEFAULT_LOG_LIMIT = 1000


class BlockedAttemptLog:
    """Ring buffer of BlockedAttempt entries persisted as JSON."""

    def __init__(self, quarantine_path: Path, limit: int = DEFAULT_LOG_LIMIT):
        self.log_path = Path(quarantine_path) / BLOCKED_LOG_FILENAME
        self.limit = limit
        self._doc = JsonDocument(self.log_path, lambda: {"attempts": []})

    @staticmethod
    def _attempts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        attempts = data.setdefault("attempts", [])
        if not isinstance(attempts, list):
            raise StoreIOError("Corrupt blocked-attempts document")
        return attempts

    def append(self, entry: BlockedAttempt) -> None:
        """Append an entry and truncate to the most recent ``limit`` entries."""
        with self._doc.transaction() as txn:
            attempts = self._attempts(txn.data)
            attempts.append(entry.to_dict())
            if len(attempts) > self.limit:
                txn.data["attempts"] = attempts[-self.limit:]
            txn.mark_dirty()

    def record(
        self, package: str, ip: str, user_agent: Optional[str] = None
    ) -> BlockedAttempt:
        """Build a timestamped entry for a denied fetch and append it."""
        entry = BlockedAttempt(
            package=package,
            ip=ip or "unknown",
            timestamp=utc_now(),
            user_agent=user_agent,
        )
        self.append(entry)
        return entry

    def list(self) -> List[BlockedAttempt]:
        """All retained entries, oldest first."""
        return [
            BlockedAttempt.from_dict(a)
            for a in self._attempts(self._doc.load())
            if isinstance(a, dict)
        ]
