"""Progress, terminal and operation summary models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from histofy.models.execution import ExecutionStrategy


class ProgressEvent(BaseModel):
    transaction_id: str
    message: str
    percent_complete: float
    timestamp: datetime


class Outcome(str, Enum):
    """Terminal outcome of a migration."""

    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TerminalEvent(BaseModel):
    transaction_id: str
    outcome: Outcome
    error: Optional[str] = None
    timestamp: datetime


class OperationStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationSummary(BaseModel):
    """Bookkeeping for one migration run by a service instance."""

    transaction_id: str
    status: OperationStatus = OperationStatus.RUNNING
    ref: Optional[str] = None  # Branch being migrated
    started_at: datetime
    ended_at: Optional[datetime] = None
    strategy: Optional[ExecutionStrategy] = None
    backup_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == OperationStatus.RUNNING

    @property
    def duration(self) -> Optional[float]:
        """Get operation duration in seconds."""
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
