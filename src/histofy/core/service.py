"""Caller-facing entry points for planning, executing and undoing migrations.

``MigrationService`` wires the planner, strategy selector, transaction
manager and execution engine together for one repository. Services share
the process-wide transaction registry unless given their own, so two
services on the same repository cannot run migrations at once.
"""

import logging
import threading
from datetime import date, datetime, time
from pathlib import Path
from typing import Dict, List, Optional, Union

from histofy.config import EngineConfig
from histofy.core.backend import GitBackend
from histofy.core.conflicts import ConflictResolver, ManualHandler
from histofy.core.engine import ExecutionEngine
from histofy.core.errors import (
    HistofyError,
    OperationCancelled,
    RollbackFailed,
    RollbackVerificationError,
    TransactionAlreadyActive,
    ValidationError,
)
from histofy.core.events import CancellationToken, EventListener, ProgressReporter
from histofy.core.planner import MigrationPlanner
from histofy.core.preview import DryRunReport, preview_plan
from histofy.core.strategy import strategy_for_plan
from histofy.core.transaction import TransactionManager, TransactionRegistry
from histofy.models.events import OperationStatus, OperationSummary, Outcome
from histofy.models.execution import (
    ExecutionResult,
    MigrationOptions,
    MigrationResult,
    RollbackOptions,
    RollbackResult,
)
from histofy.models.plan import MigrationPlan
from histofy.models.transaction import BackupInfo, Transaction, TransactionState

logger = logging.getLogger(__name__)


class MigrationService:
    """Plans and runs history migrations on one repository."""

    def __init__(
        self,
        repo_path: Union[str, Path],
        config: Optional[EngineConfig] = None,
        listeners: Optional[List[EventListener]] = None,
        manual_handler: Optional[ManualHandler] = None,
        registry: Optional[TransactionRegistry] = None,
    ):
        self.backend = GitBackend(Path(repo_path))
        self.config = config or EngineConfig.load(self.backend.repo_path)
        self.listeners = list(listeners or [])

        self.planner = MigrationPlanner(self.backend)
        self.resolver = ConflictResolver(self.backend, manual_handler)
        self.transactions = TransactionManager(self.backend, self.config, registry)
        self.engine = ExecutionEngine(self.backend, self.resolver, self.config)

        self._lock = threading.Lock()
        self._operations: Dict[str, OperationSummary] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    # Planning

    def plan_migration(
        self,
        range_spec: str,
        start_date: Union[str, date],
        spread_days: int = 1,
        start_time: Union[str, time] = "09:00",
        ref: Optional[str] = None,
    ) -> MigrationPlan:
        return self.planner.plan(range_spec, start_date, spread_days, start_time, ref)

    def preview_migration(
        self, plan: MigrationPlan, options: Optional[MigrationOptions] = None
    ) -> DryRunReport:
        """Describe what execute_migration would do, without changing anything."""
        options = options or MigrationOptions()
        strategy = strategy_for_plan(plan, self.config, options.strategy)
        return preview_plan(plan, strategy, create_backup=options.create_backup)

    # Execution

    def execute_migration(
        self, plan: MigrationPlan, options: Optional[MigrationOptions] = None
    ) -> MigrationResult:
        """Execute plan inside a transaction.

        Validation problems raise before any transaction opens. Failures while
        executing are rolled back and reported as ``success=False``. A failed
        rollback raises ``RollbackFailed``.
        """
        options = options or MigrationOptions()
        if not plan.entries:
            raise ValidationError("Migration plan has no commits", field="plan")

        strategy = strategy_for_plan(plan, self.config, options.strategy)
        policy = options.auto_resolve_strategy or self.config.default_resolution_policy
        timeout = options.timeout if options.timeout is not None else self.config.migration_timeout

        tx = self.transactions.open(ref=plan.ref, create_backup=options.create_backup)
        reporter = ProgressReporter(tx.id, self.listeners)
        token = CancellationToken(timeout)
        summary = OperationSummary(
            transaction_id=tx.id,
            ref=plan.ref,
            started_at=tx.started_at,
            strategy=strategy,
            backup_ref=tx.backup_ref,
        )
        with self._lock:
            self._operations[tx.id] = summary
            self._tokens[tx.id] = token

        reporter.progress(
            f"Planned {plan.commit_count} commit(s) with {strategy.value}", 10
        )
        if tx.has_backup:
            reporter.progress(f"Backup verified at {tx.backup_ref}", 20)

        def execute(tx: Transaction) -> ExecutionResult:
            return self.engine.execute(
                plan,
                strategy,
                tx,
                reporter=reporter,
                token=token,
                policy=policy,
                continue_on_error=options.continue_on_error,
            )

        try:
            execution = self.transactions.run(
                tx, execute, rollback_on_failure=options.rollback_on_failure
            )
        except RollbackFailed as e:
            self._finish(summary, OperationStatus.FAILED, e.message)
            reporter.finish(Outcome.FAILED, e.message)
            logger.critical(
                "Migration %s left the repository inconsistent: %s", tx.id, e.message
            )
            raise
        except HistofyError as e:
            return self._failed_result(plan, tx, summary, reporter, e)
        except BaseException as e:
            self._finish(summary, OperationStatus.FAILED, str(e))
            reporter.finish(
                Outcome.ROLLED_BACK
                if tx.state == TransactionState.ROLLED_BACK
                else Outcome.FAILED,
                str(e),
            )
            raise
        finally:
            with self._lock:
                self._tokens.pop(tx.id, None)

        summary.strategy = execution.strategy
        self._finish(summary, OperationStatus.COMPLETED)
        reporter.progress("Migration complete", 100)
        reporter.finish(Outcome.COMMITTED)

        if execution.fallback_used:
            logger.warning(
                "Migration %s completed with %s after %s failed",
                tx.id,
                execution.strategy.value,
                execution.requested_strategy.value,
            )
        return MigrationResult(
            success=True,
            migrated_count=execution.migrated_count,
            total_count=execution.total_count,
            strategy=execution.strategy,
            backup_ref=tx.backup_ref,
            transaction_id=tx.id,
            outcomes=execution.outcomes,
            new_head=execution.new_head,
        )

    def _failed_result(
        self,
        plan: MigrationPlan,
        tx: Transaction,
        summary: OperationSummary,
        reporter: ProgressReporter,
        error: HistofyError,
    ) -> MigrationResult:
        rolled_back = tx.state == TransactionState.ROLLED_BACK
        if isinstance(error, OperationCancelled):
            status, outcome = OperationStatus.CANCELLED, Outcome.CANCELLED
        else:
            status = OperationStatus.FAILED
            outcome = Outcome.ROLLED_BACK if rolled_back else Outcome.FAILED

        self._finish(summary, status, error.message)
        reporter.finish(outcome, error.message)
        logger.error(
            "Migration %s failed (%s): %s",
            tx.id,
            "rolled back" if rolled_back else "not rolled back",
            error.message,
        )

        partial = getattr(error, "partial_result", None)
        return MigrationResult(
            success=False,
            migrated_count=partial.migrated_count if partial else 0,
            total_count=partial.total_count if partial else plan.commit_count,
            strategy=summary.strategy,
            backup_ref=tx.backup_ref,
            transaction_id=tx.id,
            rolled_back=rolled_back,
            error=error.message,
            outcomes=partial.outcomes if partial else [],
        )

    def _finish(
        self, summary: OperationSummary, status: OperationStatus, error: Optional[str] = None
    ) -> None:
        with self._lock:
            summary.status = status
            summary.ended_at = datetime.now()
            summary.error = error

    def cancel_migration(self, transaction_id: str) -> bool:
        """Request cancellation; takes effect at the next step boundary."""
        with self._lock:
            token = self._tokens.get(transaction_id)
        if token is None:
            return False
        token.cancel(f"Migration {transaction_id} cancelled by caller")
        logger.info("Cancellation requested for %s", transaction_id)
        return True

    # Bookkeeping

    def operation_status(self, transaction_id: str) -> Optional[OperationSummary]:
        with self._lock:
            return self._operations.get(transaction_id)

    def active_operations(self) -> List[OperationSummary]:
        with self._lock:
            return [op for op in self._operations.values() if op.is_active]

    def list_backups(self) -> List[BackupInfo]:
        """List backup refs, newest first."""
        prefix = f"{self.config.backup_prefix}-"
        backups = [
            BackupInfo(
                name=name,
                head=self.backend.current_head(name),
                created_at=_backup_time(name[len(prefix):]),
            )
            for name in self.backend.list_refs(prefix)
        ]
        return sorted(backups, key=lambda b: b.created_at or datetime.min, reverse=True)

    # Recovery

    def rollback_to_backup(
        self, backup_ref: str, options: Optional[RollbackOptions] = None
    ) -> RollbackResult:
        """Restore a branch to a backup ref left by an earlier migration.

        The branch is the one the migration ran on when this service ran it,
        otherwise the checked-out branch. Rolling back to a backup the branch
        already matches is a no-op.
        """
        options = options or RollbackOptions()

        if not backup_ref.startswith(f"{self.config.backup_prefix}-"):
            raise ValidationError(
                f"Not a migration backup: {backup_ref}",
                field="backup_ref",
                suggestion="Run 'histofy backups' to list available backups",
            )
        if not self.backend.ref_exists(backup_ref):
            raise ValidationError(
                f"Backup not found: {backup_ref}",
                field="backup_ref",
                suggestion="Run 'histofy backups' to list available backups",
            )
        active = self.transactions.active_transaction()
        if active is not None:
            raise TransactionAlreadyActive(
                f"Transaction {active.id} is still running; cancel it first",
                {"active_transaction": active.id},
            )

        branch = self._branch_for_backup(backup_ref) or self.backend.current_branch()
        if branch is None:
            raise ValidationError(
                "HEAD is detached; cannot tell which branch to restore",
                field="ref",
                suggestion="Check out the branch the migration ran on",
            )

        backup_head = self.backend.current_head(backup_ref)
        changed = self.backend.current_head(branch) != backup_head
        stashed = False

        if changed:
            if not self.backend.is_clean():
                if options.preserve_working_state:
                    stashed = self.backend.stash(f"histofy: before rollback to {backup_ref}")
                elif not options.force:
                    raise ValidationError(
                        "Working tree has uncommitted changes",
                        field="working_tree",
                        suggestion="Commit or stash them, or pass force / preserve_working_state",
                    )

            self.backend.reset_hard(branch, backup_head)
            restored = self.backend.current_head(branch)
            if restored != backup_head:
                raise RollbackVerificationError(
                    "Rollback verification failed: repository state not properly restored",
                    {"backup_ref": backup_ref, "expected": backup_head, "actual": restored},
                )
            if stashed:
                self.backend.stash_pop()
            logger.info("Restored %s to %s (%s)", branch, backup_ref, backup_head[:8])
        else:
            logger.info("%s already matches %s; nothing to restore", branch, backup_ref)

        if options.delete_backup:
            self.backend.delete_ref(backup_ref)

        return RollbackResult(
            success=True,
            backup_ref=backup_ref,
            restored_ref=branch,
            head=backup_head,
            changed=changed,
            backup_deleted=options.delete_backup,
            stashed=stashed,
        )

    def _branch_for_backup(self, backup_ref: str) -> Optional[str]:
        with self._lock:
            for op in self._operations.values():
                if op.backup_ref == backup_ref:
                    return op.ref
        return None


def _backup_time(transaction_id: str) -> Optional[datetime]:
    millis, _, _ = transaction_id.partition("-")
    if not millis.isdigit():
        return None
    return datetime.fromtimestamp(int(millis) / 1000)
