"""Execution strategy, options and result models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from histofy.models.conflict import ResolutionPolicy


class ExecutionStrategy(str, Enum):
    """Rewrite technique chosen once per transaction."""

    BULK_REWRITE = "bulk_rewrite"
    SEQUENTIAL_AMEND = "sequential_amend"
    GRAPH_RECONSTRUCTION = "graph_reconstruction"


class CommitStatus(str, Enum):
    MIGRATED = "migrated"
    FAILED = "failed"
    SKIPPED = "skipped"


class CommitOutcome(BaseModel):
    """Result of rewriting one planned commit."""

    original_hash: str
    new_hash: Optional[str] = None
    status: CommitStatus
    error: Optional[str] = None


class ExecutionResult(BaseModel):
    """What the execution engine did with a plan."""

    strategy: ExecutionStrategy  # Strategy that produced the final history
    requested_strategy: ExecutionStrategy
    migrated_count: int = 0
    total_count: int = 0
    outcomes: List[CommitOutcome] = []
    new_head: Optional[str] = None
    fallback_used: bool = False

    @property
    def complete(self) -> bool:
        return self.migrated_count == self.total_count


class MigrationOptions(BaseModel):
    """Caller options for executing a migration plan."""

    auto_resolve_strategy: Optional[ResolutionPolicy] = None
    create_backup: bool = True
    rollback_on_failure: bool = True
    continue_on_error: bool = False
    strategy: Optional[ExecutionStrategy] = None  # Force a strategy
    timeout: Optional[float] = None  # Wall-clock seconds for the whole migration


class MigrationResult(BaseModel):
    """Terminal result reported to callers of execute_migration."""

    success: bool
    migrated_count: int = 0
    total_count: int = 0
    strategy: Optional[ExecutionStrategy] = None
    backup_ref: Optional[str] = None
    transaction_id: str
    rolled_back: bool = False
    error: Optional[str] = None
    outcomes: List[CommitOutcome] = []
    new_head: Optional[str] = None


class RollbackOptions(BaseModel):
    delete_backup: bool = False
    force: bool = False  # Allow rolling back over a dirty working tree
    preserve_working_state: bool = False  # Stash local changes and re-apply them


class RollbackResult(BaseModel):
    """Result of restoring a branch from a backup ref."""

    success: bool
    backup_ref: str
    restored_ref: str
    head: str
    changed: bool  # False when the branch already matched the backup
    backup_deleted: bool = False
    stashed: bool = False
