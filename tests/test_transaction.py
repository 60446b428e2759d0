"""Tests for the transaction manager."""

from unittest.mock import patch

import pytest

from conftest import add_commits, commit_file
from histofy.config import EngineConfig
from histofy.core.backend import GitBackend
from histofy.core.errors import (
    BackupIntegrityError,
    ExecutionError,
    RollbackFailed,
    RollbackVerificationError,
    TransactionAlreadyActive,
    TransactionStateError,
    ValidationError,
)
from histofy.core.transaction import TransactionManager, TransactionRegistry
from histofy.models.transaction import TransactionState


@pytest.fixture
def backend(temp_git_project):
    add_commits(temp_git_project, 2)
    return GitBackend(temp_git_project)


@pytest.fixture
def manager(backend):
    return TransactionManager(backend)


def test_open_creates_verified_backup(manager, backend, branch):
    head = backend.current_head(branch)

    tx = manager.open()

    assert tx.state == TransactionState.BACKED_UP
    assert tx.original_ref == branch
    assert tx.backup_ref == f"migration-backup-{tx.id}"
    assert tx.backup_head == head
    assert backend.current_head(tx.backup_ref) == head
    assert manager.active_transaction() is tx


def test_second_open_is_refused(manager):
    manager.open()

    with pytest.raises(TransactionAlreadyActive):
        manager.open()


def test_default_registry_spans_managers(backend):
    TransactionManager(backend).open()

    with pytest.raises(TransactionAlreadyActive):
        TransactionManager(GitBackend(backend.repo_path)).open()


def test_registry_is_shared_between_managers(backend):
    registry = TransactionRegistry()
    first = TransactionManager(backend, registry=registry)
    second = TransactionManager(GitBackend(backend.repo_path), registry=registry)

    first.open()
    with pytest.raises(TransactionAlreadyActive):
        second.open()


def test_dirty_tree_is_refused_and_released(manager, temp_git_project):
    (temp_git_project / "README.md").write_text("dirty\n")

    with pytest.raises(ValidationError):
        manager.open()
    assert manager.active_transaction() is None
    assert manager.backend.list_refs("migration-backup-") == []

    (temp_git_project / "README.md").write_text("# Test Project\n")
    assert manager.open().state == TransactionState.BACKED_UP


def test_dirty_tree_allowed_by_config(backend, temp_git_project):
    (temp_git_project / "README.md").write_text("dirty\n")
    manager = TransactionManager(backend, EngineConfig(require_clean_worktree=False))

    assert manager.open().has_backup


def test_backup_mismatch_discards_backup(manager, backend, branch):
    head = backend.current_head(branch)

    with patch.object(
        backend, "current_head", side_effect=[head, head, "0" * 40]
    ):
        with pytest.raises(BackupIntegrityError):
            manager.open()

    assert backend.list_refs("migration-backup-") == []
    assert manager.active_transaction() is None


def test_run_commits_and_keeps_backup(manager, backend):
    tx = manager.open()

    result = manager.run(tx, lambda tx: "done")

    assert result == "done"
    assert tx.state == TransactionState.COMMITTED
    assert tx.completed_at is not None
    assert backend.ref_exists(tx.backup_ref)
    assert manager.active_transaction() is None


def test_run_rolls_back_bit_exact(manager, backend, temp_git_project, repo, branch):
    original = backend.current_head(branch)
    tx = manager.open()

    def break_history(tx):
        commit_file(temp_git_project, "extra.txt", "extra\n", "Half-done work")
        repo.git.checkout("--detach", "HEAD")
        (temp_git_project / "README.md").write_text("mid-flight\n")
        raise ExecutionError("step 2 failed")

    with pytest.raises(ExecutionError, match="step 2 failed"):
        manager.run(tx, break_history)

    assert tx.state == TransactionState.ROLLED_BACK
    assert tx.error == "step 2 failed"
    assert repo.active_branch.name == branch
    assert backend.current_head(branch) == original
    assert backend.is_clean()
    assert not (temp_git_project / "extra.txt").exists()
    assert manager.active_transaction() is None


def test_run_without_rollback_leaves_failure_in_place(manager, backend, temp_git_project, branch):
    tx = manager.open()

    def fail(tx):
        commit_file(temp_git_project, "extra.txt", "extra\n", "Half-done work")
        raise ExecutionError("boom")

    with pytest.raises(ExecutionError):
        manager.run(tx, fail, rollback_on_failure=False)

    assert tx.state == TransactionState.FAILED
    assert backend.current_head(branch) != tx.backup_head
    assert backend.ref_exists(tx.backup_ref)


def test_run_without_backup_fails(manager):
    tx = manager.open(create_backup=False)
    assert tx.state == TransactionState.OPENED
    assert not tx.has_backup

    def fail(tx):
        raise ExecutionError("boom")

    with pytest.raises(ExecutionError):
        manager.run(tx, fail)

    assert tx.state == TransactionState.FAILED


def test_rollback_verification_failure_is_fatal(manager, backend):
    tx = manager.open()

    def fail(tx):
        raise ExecutionError("boom")

    with patch.object(backend, "current_head", return_value="0" * 40):
        with pytest.raises(RollbackFailed) as exc_info:
            manager.run(tx, fail)

    assert isinstance(exc_info.value.original, ExecutionError)
    assert isinstance(exc_info.value.rollback_error, RollbackVerificationError)
    assert tx.state == TransactionState.FAILED
    assert manager.active_transaction() is None


def test_commit_requires_executing_state(manager):
    tx = manager.open()

    with pytest.raises(TransactionStateError):
        manager.commit(tx)


def test_rollback_after_commit_is_refused(manager):
    tx = manager.open()
    manager.run(tx, lambda tx: None)

    with pytest.raises(TransactionStateError):
        manager.rollback(tx)
