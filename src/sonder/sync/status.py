"""
SyncStatusObserver: read-only projection of sync state for the UI.

Counters are maintained incrementally from LocalStore status transitions,
so reads are O(1). After every reconciliation cycle they are re-based from
a single aggregate query to absorb any drift (e.g. bulk updates).
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sonder.models.kinds import EntityKind
from sonder.models.records import SyncStatus


@dataclass
class SyncStatusSnapshot:
    pending_count: int
    failed_count: int
    last_sync_at: Optional[datetime]
    is_online: bool
    is_syncing: bool
    state: str
    auth_required: bool
    fatal_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncStatusObserver:
    """Pending / failed counts, last successful sync and connectivity."""

    def __init__(self):
        self._counts = {SyncStatus.PENDING: 0, SyncStatus.FAILED: 0}
        self.last_sync_at: Optional[datetime] = None
        self.is_online = True
        self.is_syncing = False
        self.state = "idle"
        self.auth_required = False
        self.fatal_error: Optional[str] = None

    @property
    def pending_count(self) -> int:
        return self._counts[SyncStatus.PENDING]

    @property
    def failed_count(self) -> int:
        return self._counts[SyncStatus.FAILED]

    def on_status_change(
        self,
        kind: EntityKind,
        old: Optional[SyncStatus],
        new: Optional[SyncStatus],
    ) -> None:
        """LocalStore listener: adjust counters for one transition."""
        if old in self._counts:
            self._counts[old] = max(0, self._counts[old] - 1)
        if new in self._counts:
            self._counts[new] += 1

    def rebase(self, counts: Dict[str, int]) -> None:
        """Replace counters with authoritative totals from LocalStore.status_counts()."""
        self._counts[SyncStatus.PENDING] = counts.get(SyncStatus.PENDING.value, 0)
        self._counts[SyncStatus.FAILED] = counts.get(SyncStatus.FAILED.value, 0)

    def snapshot(self) -> SyncStatusSnapshot:
        return SyncStatusSnapshot(
            pending_count=self.pending_count,
            failed_count=self.failed_count,
            last_sync_at=self.last_sync_at,
            is_online=self.is_online,
            is_syncing=self.is_syncing,
            state=self.state,
            auth_required=self.auth_required,
            fatal_error=self.fatal_error,
        )
