"""End-to-end tests for MigrationService."""

from datetime import datetime
from unittest.mock import patch

import pytest

from conftest import add_commits, commit_file
from histofy.config import EngineConfig
from histofy.core.errors import (
    ExecutionError,
    RollbackFailed,
    RollbackVerificationError,
    TransactionAlreadyActive,
    ValidationError,
    VCSError,
)
from histofy.core.service import MigrationService
from histofy.models.events import OperationStatus, Outcome, ProgressEvent, TerminalEvent
from histofy.models.execution import (
    ExecutionStrategy,
    MigrationOptions,
    RollbackOptions,
)


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(temp_git_project, events):
    return MigrationService(temp_git_project, listeners=[events.append])


def naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def fail_engine(service, message="step 2 failed"):
    return patch.object(service.engine, "execute", side_effect=ExecutionError(message))


def test_execute_migration_success(service, events, temp_git_project, repo, branch):
    add_commits(temp_git_project, 3)
    original_tip = repo.head.commit.hexsha
    plan = service.plan_migration("HEAD~2..HEAD", "2023-06-15")

    result = service.execute_migration(plan)

    assert result.success
    assert result.migrated_count == 3
    assert result.total_count == 3
    assert result.strategy == ExecutionStrategy.SEQUENTIAL_AMEND
    assert not result.rolled_back
    assert service.backend.current_head(result.backup_ref) == original_tip
    assert repo.head.commit.hexsha == result.new_head
    assert naive(repo.head.commit.authored_datetime) == datetime(2023, 6, 16, 1, 0)

    progress = [e for e in events if isinstance(e, ProgressEvent)]
    percents = [e.percent_complete for e in progress]
    assert percents == sorted(percents)
    assert percents[0] == 10
    assert percents[-1] == 100
    assert all(e.transaction_id == result.transaction_id for e in events)
    assert isinstance(events[-1], TerminalEvent)
    assert events[-1].outcome == Outcome.COMMITTED

    summary = service.operation_status(result.transaction_id)
    assert summary.status == OperationStatus.COMPLETED
    assert summary.ref == branch
    assert summary.duration is not None
    assert service.active_operations() == []


def test_large_linear_range_uses_bulk_rewrite(service, temp_git_project, repo):
    add_commits(temp_git_project, 22)
    plan = service.plan_migration("HEAD~21..HEAD", "2023-01-01", spread_days=30)

    result = service.execute_migration(plan)

    assert result.success
    assert result.strategy == ExecutionStrategy.BULK_REWRITE
    assert result.migrated_count == 22
    assert naive(repo.head.commit.authored_datetime) == plan.entries[-1].new_date


def test_failure_restores_branch_bit_exact(service, events, temp_git_project, repo, branch):
    add_commits(temp_git_project, 3)
    original_tip = repo.head.commit.hexsha
    original_tree = repo.head.commit.tree.hexsha
    plan = service.plan_migration("HEAD~2..HEAD", "2023-06-15")

    real = service.backend.commit_with_timestamp
    calls = {"count": 0}

    def flaky(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise VCSError("commit 2 failed")
        return real(*args, **kwargs)

    with patch.object(service.backend, "commit_with_timestamp", side_effect=flaky):
        result = service.execute_migration(plan)

    assert not result.success
    assert result.rolled_back
    assert result.migrated_count == 1
    assert result.total_count == 3
    assert "commit 2 failed" in result.error
    assert repo.active_branch.name == branch
    assert repo.head.commit.hexsha == original_tip
    assert repo.head.commit.hexsha == service.backend.current_head(result.backup_ref)
    assert repo.head.commit.tree.hexsha == original_tree
    assert service.backend.is_clean()
    assert events[-1].outcome == Outcome.ROLLED_BACK
    assert service.operation_status(result.transaction_id).status == OperationStatus.FAILED


def test_failure_without_rollback(service, events, temp_git_project):
    add_commits(temp_git_project, 2)
    plan = service.plan_migration("HEAD~1..HEAD", "2023-06-15")

    with fail_engine(service):
        result = service.execute_migration(plan, MigrationOptions(rollback_on_failure=False))

    assert not result.success
    assert not result.rolled_back
    assert events[-1].outcome == Outcome.FAILED


def test_rollback_failure_propagates(service, events, temp_git_project):
    add_commits(temp_git_project, 2)
    plan = service.plan_migration("HEAD~1..HEAD", "2023-06-15")

    with fail_engine(service), patch.object(
        service.transactions,
        "rollback",
        side_effect=RollbackVerificationError("branch did not match backup"),
    ):
        with pytest.raises(RollbackFailed):
            service.execute_migration(plan)

    assert events[-1].outcome == Outcome.FAILED
    assert service.active_operations() == []


def test_validation_errors_raise_before_transaction(service, temp_git_project, repo, branch):
    base = repo.head.commit.hexsha
    repo.git.checkout("-b", "feature")
    commit_file(temp_git_project, "feature.txt", "feature\n", "Feature work")
    repo.git.checkout(branch)
    commit_file(temp_git_project, "main.txt", "main\n", "Main work")
    repo.git.merge("feature", "--no-ff", "-m", "Merge feature")
    plan = service.plan_migration("HEAD~1..HEAD", "2023-06-15")
    assert base in plan.entries[0].parents

    with pytest.raises(ValidationError):
        service.execute_migration(
            plan, MigrationOptions(strategy=ExecutionStrategy.BULK_REWRITE)
        )

    assert service.list_backups() == []
    assert service.transactions.active_transaction() is None


def test_dirty_tree_is_rejected(service, temp_git_project):
    add_commits(temp_git_project, 1)
    plan = service.plan_migration("HEAD", "2023-06-15")
    (temp_git_project / "README.md").write_text("dirty\n")

    with pytest.raises(ValidationError):
        service.execute_migration(plan)

    assert service.list_backups() == []


def test_cancel_rolls_back(service, events, temp_git_project, repo):
    add_commits(temp_git_project, 3)
    original_tip = repo.head.commit.hexsha
    plan = service.plan_migration("HEAD~2..HEAD", "2023-06-15")
    cancelled = []

    def cancel_once_backed_up(event):
        if isinstance(event, ProgressEvent) and event.percent_complete >= 20 and not cancelled:
            cancelled.append(service.cancel_migration(event.transaction_id))

    service.listeners.append(cancel_once_backed_up)
    result = service.execute_migration(plan)

    assert cancelled == [True]
    assert not result.success
    assert result.rolled_back
    assert result.migrated_count == 0
    assert result.total_count == 3
    assert repo.head.commit.hexsha == original_tip
    assert events[-1].outcome == Outcome.CANCELLED
    summary = service.operation_status(result.transaction_id)
    assert summary.status == OperationStatus.CANCELLED
    assert not service.cancel_migration(result.transaction_id)


def test_cancel_unknown_transaction(service):
    assert service.cancel_migration("no-such-transaction") is False


def test_timeout_rolls_back(service, temp_git_project, repo):
    add_commits(temp_git_project, 2)
    original_tip = repo.head.commit.hexsha
    plan = service.plan_migration("HEAD~1..HEAD", "2023-06-15")

    result = service.execute_migration(plan, MigrationOptions(timeout=1e-9))

    assert not result.success
    assert result.rolled_back
    assert "timeout" in result.error
    assert result.total_count == 2
    assert repo.head.commit.hexsha == original_tip


def test_rollback_to_backup_is_idempotent(service, temp_git_project, repo):
    add_commits(temp_git_project, 2)
    original_tip = repo.head.commit.hexsha
    result = service.execute_migration(service.plan_migration("HEAD~1..HEAD", "2023-06-15"))
    assert repo.head.commit.hexsha != original_tip

    first = service.rollback_to_backup(result.backup_ref)
    second = service.rollback_to_backup(result.backup_ref)

    assert first.success and first.changed
    assert second.success and not second.changed
    assert first.head == second.head == original_tip
    assert repo.head.commit.hexsha == original_tip
    assert service.backend.ref_exists(result.backup_ref)


def test_rollback_to_backup_dirty_tree(service, temp_git_project, repo):
    add_commits(temp_git_project, 2)
    original_tip = repo.head.commit.hexsha
    result = service.execute_migration(service.plan_migration("HEAD~1..HEAD", "2023-06-15"))
    (temp_git_project / "README.md").write_text("local edit\n")

    with pytest.raises(ValidationError):
        service.rollback_to_backup(result.backup_ref)

    restored = service.rollback_to_backup(
        result.backup_ref, RollbackOptions(preserve_working_state=True)
    )

    assert restored.stashed
    assert repo.head.commit.hexsha == original_tip
    assert (temp_git_project / "README.md").read_text() == "local edit\n"


def test_rollback_to_backup_force_and_delete(service, temp_git_project, repo):
    add_commits(temp_git_project, 2)
    original_tip = repo.head.commit.hexsha
    result = service.execute_migration(service.plan_migration("HEAD~1..HEAD", "2023-06-15"))
    (temp_git_project / "README.md").write_text("local edit\n")

    restored = service.rollback_to_backup(
        result.backup_ref, RollbackOptions(force=True, delete_backup=True)
    )

    assert restored.backup_deleted
    assert not restored.stashed
    assert repo.head.commit.hexsha == original_tip
    assert (temp_git_project / "README.md").read_text() == "# Test Project\n"
    assert not service.backend.ref_exists(result.backup_ref)


def test_rollback_to_unknown_backup(service):
    with pytest.raises(ValidationError):
        service.rollback_to_backup("migration-backup-0-missing")
    with pytest.raises(ValidationError):
        service.rollback_to_backup("some-branch")


def test_rollback_refused_while_transaction_active(service, temp_git_project):
    add_commits(temp_git_project, 1)
    result = service.execute_migration(service.plan_migration("HEAD", "2023-06-15"))
    service.transactions.open()

    with pytest.raises(TransactionAlreadyActive):
        service.rollback_to_backup(result.backup_ref)


def test_list_backups(service, temp_git_project, repo):
    add_commits(temp_git_project, 1)
    original_tip = repo.head.commit.hexsha
    result = service.execute_migration(service.plan_migration("HEAD", "2023-06-15"))

    backups = service.list_backups()

    assert [b.name for b in backups] == [result.backup_ref]
    assert backups[0].head == original_tip
    assert backups[0].created_at is not None


def test_no_backup_option(service, temp_git_project):
    add_commits(temp_git_project, 1)
    plan = service.plan_migration("HEAD", "2023-06-15")

    result = service.execute_migration(plan, MigrationOptions(create_backup=False))

    assert result.success
    assert result.backup_ref is None
    assert service.list_backups() == []


def test_preview_migration(service, temp_git_project, repo):
    add_commits(temp_git_project, 3)
    original_tip = repo.head.commit.hexsha
    plan = service.plan_migration("HEAD~2..HEAD", "2023-06-15")

    report = service.preview_migration(plan)

    assert report.strategy == ExecutionStrategy.SEQUENTIAL_AMEND
    assert report.commit_count == 3
    assert [s.kind for s in report.steps] == ["backup"] + ["commit_migration"] * 3 + ["cleanup"]
    assert len(report.high_risk_steps) == 3
    assert any("rewrite" in w.message for w in report.warnings)
    assert repo.head.commit.hexsha == original_tip


def test_config_file_is_loaded(temp_git_project):
    EngineConfig(precision_threshold=1, backup_prefix="safety").save(temp_git_project)
    add_commits(temp_git_project, 2)

    service = MigrationService(temp_git_project)
    result = service.execute_migration(service.plan_migration("HEAD~1..HEAD", "2023-06-15"))

    assert result.strategy == ExecutionStrategy.GRAPH_RECONSTRUCTION
    assert result.backup_ref.startswith("safety-")
    assert service.transactions.active_transaction() is None


def test_services_on_one_repository_share_the_transaction_gate(service, temp_git_project):
    add_commits(temp_git_project, 1)
    other = MigrationService(temp_git_project)
    service.transactions.open()

    with pytest.raises(TransactionAlreadyActive):
        other.execute_migration(other.plan_migration("HEAD", "2023-06-15"))
