"""Transaction state model for a single migration attempt."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TransactionState(str, Enum):
    """Lifecycle state of a migration transaction."""

    OPENED = "opened"
    BACKED_UP = "backed_up"
    EXECUTING = "executing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {TransactionState.COMMITTED, TransactionState.ROLLED_BACK, TransactionState.FAILED}
)


class Transaction(BaseModel):
    """Mutable state of one migration attempt, owned by the transaction manager."""

    id: str
    repo_path: str
    original_ref: str
    backup_ref: Optional[str] = None
    backup_head: Optional[str] = None  # Resolved id the backup ref was verified at
    state: TransactionState = TransactionState.OPENED
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Check if the transaction has not reached a terminal state."""
        return self.state not in TERMINAL_STATES

    @property
    def has_backup(self) -> bool:
        return self.backup_ref is not None and self.backup_head is not None

    @property
    def duration(self) -> Optional[float]:
        """Get transaction duration in seconds."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class BackupInfo(BaseModel):
    """A backup ref left behind by a migration."""

    name: str
    head: str
    created_at: Optional[datetime] = None  # Parsed from the transaction id
