"""Dry-run preview of a migration plan.

Describes the steps a migration would take without touching the repository.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from histofy.models.execution import ExecutionStrategy
from histofy.models.plan import MigrationPlan

LARGE_MIGRATION_THRESHOLD = 10

_STRATEGY_COMMANDS = {
    ExecutionStrategy.BULK_REWRITE: "filter-branch --env-filter",
    ExecutionStrategy.SEQUENTIAL_AMEND: "commit-tree",
    ExecutionStrategy.GRAPH_RECONSTRUCTION: "cherry-pick --no-commit",
}


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WarningLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"


class PreviewStep(BaseModel):
    kind: str
    description: str
    risk: RiskLevel = RiskLevel.LOW
    reversible: bool = True
    git_command: Optional[str] = None
    original_hash: Optional[str] = None


class PreviewWarning(BaseModel):
    message: str
    level: WarningLevel = WarningLevel.WARNING


class DryRunReport(BaseModel):
    """Steps and warnings for a migration that has not been executed."""

    strategy: ExecutionStrategy
    commit_count: int
    steps: List[PreviewStep] = []
    warnings: List[PreviewWarning] = []

    @property
    def high_risk_steps(self) -> List[PreviewStep]:
        return [step for step in self.steps if step.risk == RiskLevel.HIGH]


def preview_plan(
    plan: MigrationPlan,
    strategy: ExecutionStrategy,
    create_backup: bool = True,
) -> DryRunReport:
    report = DryRunReport(strategy=strategy, commit_count=plan.commit_count)

    if create_backup:
        report.steps.append(
            PreviewStep(
                kind="backup",
                description=f"Create backup of {plan.ref}",
                git_command="branch",
            )
        )

    command = _STRATEGY_COMMANDS[strategy]
    for entry in plan.entries:
        report.steps.append(
            PreviewStep(
                kind="commit_migration",
                description=(
                    f"Migrate commit {entry.original_hash[:8]}: {entry.subject[:50]} "
                    f"({entry.original_date:%Y-%m-%d %H:%M} -> {entry.new_date:%Y-%m-%d %H:%M})"
                ),
                risk=RiskLevel.HIGH,
                git_command=command,
                original_hash=entry.original_hash,
            )
        )

    report.steps.append(
        PreviewStep(
            kind="cleanup",
            description="Swap the branch to the rewritten history and remove scratch refs",
            risk=RiskLevel.MEDIUM,
            git_command="update-ref",
        )
    )

    report.warnings.append(PreviewWarning(message="Migration will rewrite git history"))
    if create_backup:
        report.warnings.append(
            PreviewWarning(
                message="A backup ref is created automatically", level=WarningLevel.INFO
            )
        )
    else:
        report.warnings.append(
            PreviewWarning(message="No backup will be created; failures cannot be rolled back")
        )
    if plan.commit_count > LARGE_MIGRATION_THRESHOLD:
        report.warnings.append(
            PreviewWarning(message="Large migration may take significant time")
        )
    if plan.has_merges:
        report.warnings.append(
            PreviewWarning(
                message="Range contains merge commits; their topology is rebuilt",
                level=WarningLevel.INFO,
            )
        )

    return report
