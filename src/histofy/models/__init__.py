"""Data models for histofy."""

from .commit import CommitRecord
from .conflict import ConflictReport, MarkerCounts, ResolutionOutcome, ResolutionPolicy
from .events import (
    OperationStatus,
    OperationSummary,
    Outcome,
    ProgressEvent,
    TerminalEvent,
)
from .execution import (
    CommitOutcome,
    CommitStatus,
    ExecutionResult,
    ExecutionStrategy,
    MigrationOptions,
    MigrationResult,
    RollbackOptions,
    RollbackResult,
)
from .plan import MigrationPlan, PlanEntry
from .transaction import BackupInfo, Transaction, TransactionState

__all__ = [
    "BackupInfo",
    "CommitOutcome",
    "CommitRecord",
    "CommitStatus",
    "ConflictReport",
    "ExecutionResult",
    "ExecutionStrategy",
    "MarkerCounts",
    "MigrationOptions",
    "MigrationPlan",
    "MigrationResult",
    "OperationStatus",
    "OperationSummary",
    "Outcome",
    "PlanEntry",
    "ProgressEvent",
    "ResolutionOutcome",
    "ResolutionPolicy",
    "RollbackOptions",
    "RollbackResult",
    "TerminalEvent",
    "Transaction",
    "TransactionState",
]
