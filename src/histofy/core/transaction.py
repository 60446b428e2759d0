"""Transactions around history migrations.

A transaction snapshots the branch being rewritten into a backup ref before
anything changes, and guarantees that a failed migration ends either with the
branch restored bit-for-bit to that backup or loudly marked as failed.

Lifecycle:
1. Open: verify the working tree, create ``migration-backup-<id>`` and check
   that it resolves to the same commit as the live branch.
2. Run: execute a callback with the transaction in ``executing`` state.
3. Commit: mark committed; the backup ref is kept for manual recovery.
4. Rollback: hard-reset the branch to the backup and verify the result.

Example:
    >>> manager = TransactionManager(GitBackend(path))
    >>> tx = manager.open()
    >>> manager.run(tx, lambda tx: engine.execute(plan, strategy, tx))
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional, TypeVar

from histofy.config import EngineConfig
from histofy.core.backend import GitBackend
from histofy.core.errors import (
    BackupIntegrityError,
    HistofyError,
    RollbackFailed,
    RollbackVerificationError,
    TransactionAlreadyActive,
    TransactionStateError,
    ValidationError,
    VCSError,
)
from histofy.models.transaction import Transaction, TransactionState

logger = logging.getLogger(__name__)

T = TypeVar("T")


def generate_transaction_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class TransactionRegistry:
    """Tracks the active transaction of each repository, keyed by its resolved path.

    Managers built without an explicit registry share ``default_registry``, so
    two managers on the same repository in one process exclude each other.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, Transaction] = {}

    def acquire(self, tx: Transaction) -> None:
        with self._lock:
            current = self._active.get(tx.repo_path)
            if current is not None and current.is_active:
                raise TransactionAlreadyActive(
                    f"Transaction {current.id} is already active on {tx.repo_path}",
                    {"active_transaction": current.id},
                )
            self._active[tx.repo_path] = tx

    def release(self, tx: Transaction) -> None:
        with self._lock:
            if self._active.get(tx.repo_path) is tx:
                del self._active[tx.repo_path]

    def active(self, repo_path: str) -> Optional[Transaction]:
        with self._lock:
            return self._active.get(repo_path)


default_registry = TransactionRegistry()


class TransactionManager:
    """Opens, commits and rolls back migration transactions on one repository."""

    def __init__(
        self,
        backend: GitBackend,
        config: Optional[EngineConfig] = None,
        registry: Optional[TransactionRegistry] = None,
    ):
        self.backend = backend
        self.config = config or EngineConfig()
        self.registry = registry if registry is not None else default_registry

    @property
    def repo_key(self) -> str:
        return str(self.backend.repo_path)

    def active_transaction(self) -> Optional[Transaction]:
        return self.registry.active(self.repo_key)

    def open(
        self,
        ref: Optional[str] = None,
        create_backup: bool = True,
        transaction_id: Optional[str] = None,
    ) -> Transaction:
        """Open a transaction on ref (default: the checked-out branch).

        Raises:
            TransactionAlreadyActive: Another transaction is open on this repository.
            ValidationError: HEAD is detached or the working tree is dirty.
            BackupIntegrityError: The backup ref could not be created or verified.
        """
        branch = ref or self.backend.current_branch()
        if branch is None:
            raise ValidationError(
                "HEAD is detached; cannot open a transaction",
                field="ref",
                suggestion="Check out the branch to migrate",
            )

        tx = Transaction(
            id=transaction_id or generate_transaction_id(),
            repo_path=self.repo_key,
            original_ref=branch,
            started_at=datetime.now(),
        )
        self.registry.acquire(tx)

        try:
            if self.config.require_clean_worktree and not self.backend.is_clean():
                raise ValidationError(
                    "Repository must be clean before a migration",
                    field="working_tree",
                    suggestion="Commit or stash your changes first",
                )
            if create_backup:
                self._create_backup(tx)
        except BaseException:
            self.registry.release(tx)
            raise

        logger.info(
            "Opened transaction %s on %s (backup: %s)",
            tx.id,
            branch,
            tx.backup_ref or "none",
        )
        return tx

    def _create_backup(self, tx: Transaction) -> None:
        backup_ref = f"{self.config.backup_prefix}-{tx.id}"

        try:
            head = self.backend.current_head(tx.original_ref)
            self.backend.create_ref(backup_ref, head)
        except VCSError as e:
            raise BackupIntegrityError(
                f"Failed to create backup {backup_ref}: {e}", {"backup_ref": backup_ref}
            ) from e

        try:
            backup_head = self.backend.current_head(backup_ref)
            live_head = self.backend.current_head(tx.original_ref)
        except VCSError as e:
            self._discard_backup(backup_ref)
            raise BackupIntegrityError(
                f"Backup integrity check failed: cannot resolve {backup_ref}",
                {"backup_ref": backup_ref},
            ) from e

        if backup_head != live_head:
            self._discard_backup(backup_ref)
            raise BackupIntegrityError(
                "Backup integrity check failed: HEAD commits do not match",
                {"backup_ref": backup_ref, "backup": backup_head, "live": live_head},
            )

        tx.backup_ref = backup_ref
        tx.backup_head = backup_head
        tx.state = TransactionState.BACKED_UP

    def _discard_backup(self, backup_ref: str) -> None:
        try:
            self.backend.delete_ref(backup_ref)
        except VCSError as e:
            logger.warning("Failed to clean up backup ref %s: %s", backup_ref, e)

    def begin(self, tx: Transaction) -> None:
        if tx.state not in (TransactionState.OPENED, TransactionState.BACKED_UP):
            raise TransactionStateError(
                f"Cannot execute transaction {tx.id} in state {tx.state.value}"
            )
        tx.state = TransactionState.EXECUTING

    def run(
        self,
        tx: Transaction,
        callback: Callable[[Transaction], T],
        rollback_on_failure: bool = True,
    ) -> T:
        """Run callback inside the transaction, committing or rolling back.

        Any error from the callback triggers exactly one rollback attempt and is
        then re-raised. If the rollback fails too, ``RollbackFailed`` carries
        both errors and the transaction is left ``failed``.
        """
        self.begin(tx)
        try:
            result = callback(tx)
        except BaseException as error:  # KeyboardInterrupt must roll back too
            tx.error = str(error) or type(error).__name__
            if not rollback_on_failure or not tx.has_backup:
                logger.error(
                    "Transaction %s failed without rollback: %s", tx.id, tx.error
                )
                self._fail(tx)
                raise

            logger.warning("Transaction %s failed, rolling back: %s", tx.id, tx.error)
            try:
                self.rollback(tx)
            except HistofyError as rollback_error:
                logger.critical(
                    "Rollback of transaction %s failed: %s. Inspect the repository "
                    "manually; the backup is at %s",
                    tx.id,
                    rollback_error,
                    tx.backup_ref,
                )
                self._fail(tx)
                raise RollbackFailed(error, rollback_error) from error
            raise

        self.commit(tx)
        return result

    def commit(self, tx: Transaction) -> None:
        """Mark an executing transaction committed. The backup ref is kept."""
        if tx.state != TransactionState.EXECUTING:
            raise TransactionStateError(
                f"Cannot commit transaction {tx.id} in state {tx.state.value}"
            )
        tx.state = TransactionState.COMMITTED
        tx.completed_at = datetime.now()
        self.registry.release(tx)
        logger.info(
            "Committed transaction %s; backup preserved at %s", tx.id, tx.backup_ref
        )

    def rollback(self, tx: Transaction) -> None:
        """Restore the original branch to the verified backup.

        Raises:
            TransactionStateError: No backup, or the transaction already ended.
            RollbackVerificationError: The branch could not be restored exactly.
        """
        if not tx.has_backup:
            raise TransactionStateError(f"Transaction {tx.id} has no backup to restore")
        if tx.state in (TransactionState.COMMITTED, TransactionState.ROLLED_BACK):
            raise TransactionStateError(
                f"Cannot roll back transaction {tx.id} in state {tx.state.value}"
            )

        try:
            if self.backend.current_branch() != tx.original_ref:
                self.backend.discard_changes()
                self.backend.checkout(tx.original_ref, force=True)
            self.backend.reset_hard(tx.original_ref, tx.backup_head)
            self.backend.clear_replay_state()
            restored = self.backend.current_head(tx.original_ref)
        except VCSError as e:
            tx.state = TransactionState.FAILED
            raise RollbackVerificationError(
                f"Rollback of {tx.original_ref} to {tx.backup_ref} failed: {e}",
                {"backup_ref": tx.backup_ref, "original_ref": tx.original_ref},
            ) from e

        if restored != tx.backup_head:
            tx.state = TransactionState.FAILED
            raise RollbackVerificationError(
                "Rollback verification failed: repository state not properly restored",
                {
                    "backup_ref": tx.backup_ref,
                    "expected": tx.backup_head,
                    "actual": restored,
                },
            )

        tx.state = TransactionState.ROLLED_BACK
        tx.completed_at = datetime.now()
        self.registry.release(tx)
        logger.info("Rolled back %s to %s", tx.original_ref, tx.backup_ref)

    def _fail(self, tx: Transaction) -> None:
        tx.state = TransactionState.FAILED
        tx.completed_at = datetime.now()
        self.registry.release(tx)
