"""Execution engine: applies a migration plan with one of three strategies.

Every strategy works on the *walk*: all commits reachable from the plan's
branch but not from the parents of the oldest planned commit, parents before
children. Planned commits get their new timestamp; commits after the range are
carried with their original dates so the branch keeps every descendant.

Sequential and graph runs build on a detached HEAD, so the branch only moves
once, at the end, with a compare-and-swap ``update-ref`` from the tip it had
when the run started. Bulk rewrite moves it inside filter-branch.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from histofy.config import EngineConfig
from histofy.core.backend import GitBackend
from histofy.core.conflicts import ConflictResolver
from histofy.core.errors import ConflictUnresolved, ExecutionError, VCSError
from histofy.core.events import CancellationToken, ProgressReporter
from histofy.models.commit import CommitRecord
from histofy.models.conflict import ConflictReport, ResolutionPolicy
from histofy.models.execution import (
    CommitOutcome,
    CommitStatus,
    ExecutionResult,
    ExecutionStrategy,
)
from histofy.models.plan import MigrationPlan, PlanEntry
from histofy.models.transaction import Transaction

logger = logging.getLogger(__name__)

STEP_LOW = 20.0
STEP_HIGH = 90.0


@dataclass
class ExecutionContext:
    """State of one engine run."""

    plan: MigrationPlan
    tx: Transaction
    reporter: ProgressReporter
    token: CancellationToken
    policy: ResolutionPolicy
    continue_on_error: bool = False
    original_tip: str = ""
    walk: List[CommitRecord] = field(default_factory=list)
    entries: Dict[str, PlanEntry] = field(default_factory=dict)
    mapping: Dict[str, str] = field(default_factory=dict)

    @property
    def branch(self) -> str:
        return self.plan.ref


class ExecutionEngine:
    """Runs a plan inside an open transaction."""

    def __init__(
        self,
        backend: GitBackend,
        resolver: Optional[ConflictResolver] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.backend = backend
        self.resolver = resolver or ConflictResolver(backend)
        self.config = config or EngineConfig()
        self._runners: Dict[ExecutionStrategy, Callable[[ExecutionContext], ExecutionResult]] = {
            ExecutionStrategy.BULK_REWRITE: self._run_bulk_rewrite,
            ExecutionStrategy.SEQUENTIAL_AMEND: self._run_sequential_amend,
            ExecutionStrategy.GRAPH_RECONSTRUCTION: self._run_graph_reconstruction,
        }
        missing = set(ExecutionStrategy) - set(self._runners)
        if missing:
            raise NotImplementedError(
                f"No runner for strategies: {', '.join(sorted(s.value for s in missing))}"
            )

    def execute(
        self,
        plan: MigrationPlan,
        strategy: ExecutionStrategy,
        tx: Transaction,
        reporter: Optional[ProgressReporter] = None,
        token: Optional[CancellationToken] = None,
        policy: Optional[ResolutionPolicy] = None,
        continue_on_error: bool = False,
    ) -> ExecutionResult:
        """Apply plan to its branch with strategy.

        Raises:
            ExecutionError: A step failed; ``partial_result`` says how far it got.
            ConflictUnresolved: A replay conflict survived the resolution policy.
            OperationCancelled: Cancellation was requested between steps.
        """
        ctx = ExecutionContext(
            plan=plan,
            tx=tx,
            reporter=reporter or ProgressReporter(tx.id),
            token=token or CancellationToken(),
            policy=policy or self.config.default_resolution_policy,
            continue_on_error=continue_on_error,
            entries={entry.original_hash: entry for entry in plan.entries},
        )
        if not plan.entries:
            raise ExecutionError("Migration plan is empty")
        if tx.original_ref != plan.ref:
            raise ExecutionError(
                f"Plan targets {plan.ref} but the transaction guards {tx.original_ref}"
            )
        ctx.original_tip = self.backend.current_head(plan.ref)
        ctx.walk = self._walk(ctx)

        logger.info(
            "Executing %d planned commit(s) (%d in walk) on %s with %s",
            plan.commit_count,
            len(ctx.walk),
            plan.ref,
            strategy.value,
        )
        return self._runners[strategy](ctx)

    def _walk(self, ctx: ExecutionContext) -> List[CommitRecord]:
        plan = ctx.plan
        walk = self.backend.walk(ctx.original_tip, exclude=plan.oldest.parents)
        missing = set(ctx.entries) - {commit.hexsha for commit in walk}
        if missing:
            raise ExecutionError(
                f"{len(missing)} planned commit(s) are no longer on {plan.ref}; "
                "regenerate the plan",
                {"missing": sorted(missing)},
            )
        return walk

    # Shared steps

    def _new_result(self, ctx: ExecutionContext, strategy: ExecutionStrategy) -> ExecutionResult:
        return ExecutionResult(
            strategy=strategy,
            requested_strategy=strategy,
            total_count=ctx.plan.commit_count,
        )

    def _record(self, result: ExecutionResult, outcome: CommitOutcome) -> None:
        result.outcomes.append(outcome)
        if outcome.status == CommitStatus.MIGRATED:
            result.migrated_count += 1

    def _recommit(self, ctx: ExecutionContext, commit: CommitRecord, keep_dates: bool = False) -> str:
        """Commit the index as a rewritten copy of commit, on its rewritten parents."""
        parents = [ctx.mapping.get(parent, parent) for parent in commit.parents]
        entry = None if keep_dates else ctx.entries.get(commit.hexsha)
        if entry is not None:
            timestamp, committer_date = entry.new_date, None
        else:
            timestamp, committer_date = commit.authored_date, commit.committed_date

        return self.backend.commit_with_timestamp(
            commit.message,
            commit.author_name,
            commit.author_email,
            timestamp,
            parents=parents,
            committer_date=committer_date,
        )

    def _move_to(self, sha: str) -> None:
        if self.backend.head_commit() != sha:
            self.backend.checkout(sha, detach=True)

    def _swap_branch(self, ctx: ExecutionContext, new_tip: str) -> None:
        ctx.reporter.progress(f"Updating {ctx.branch}", STEP_HIGH)
        self.backend.update_ref(ctx.branch, new_tip, ctx.original_tip)
        self.backend.checkout(ctx.branch)
        logger.info("Moved %s from %s to %s", ctx.branch, ctx.original_tip[:8], new_tip[:8])

    # Bulk rewrite

    def _run_bulk_rewrite(self, ctx: ExecutionContext) -> ExecutionResult:
        result = self._new_result(ctx, ExecutionStrategy.BULK_REWRITE)
        ctx.token.check()

        if self.backend.current_branch() != ctx.branch:
            self.backend.checkout(ctx.branch)

        ctx.reporter.progress(
            f"Rewriting {ctx.plan.commit_count} commit(s) in one pass", STEP_LOW
        )
        try:
            mapping = self.backend.bulk_rewrite(
                ctx.plan.new_dates(), ctx.branch, exclude=ctx.plan.oldest.parents
            )
        except VCSError as e:
            return self._fall_back_to_sequential(ctx, e)

        for entry in ctx.plan.entries:
            self._record(
                result,
                CommitOutcome(
                    original_hash=entry.original_hash,
                    new_hash=mapping.get(entry.original_hash),
                    status=CommitStatus.MIGRATED,
                ),
            )
        result.new_head = self.backend.current_head(ctx.branch)
        ctx.reporter.progress("Bulk rewrite complete", STEP_HIGH)
        return result

    def _fall_back_to_sequential(self, ctx: ExecutionContext, error: VCSError) -> ExecutionResult:
        logger.warning(
            "Bulk rewrite failed (%s); switching to %s",
            error,
            ExecutionStrategy.SEQUENTIAL_AMEND.value,
        )
        ctx.reporter.progress(
            f"Strategy switch: {ExecutionStrategy.BULK_REWRITE.value} -> "
            f"{ExecutionStrategy.SEQUENTIAL_AMEND.value}",
            STEP_LOW,
        )

        # filter-branch may have moved the branch before failing
        if self.backend.current_head(ctx.branch) != ctx.original_tip:
            self.backend.reset_hard(ctx.branch, ctx.original_tip)
        self.backend.discard_changes()

        result = self._run_sequential_amend(ctx)
        result.requested_strategy = ExecutionStrategy.BULK_REWRITE
        result.fallback_used = True
        return result

    # Sequential amend

    def _run_sequential_amend(self, ctx: ExecutionContext) -> ExecutionResult:
        result = self._new_result(ctx, ExecutionStrategy.SEQUENTIAL_AMEND)
        ctx.mapping = {}

        # Single commit already at HEAD: stay and amend in place
        if (
            len(ctx.walk) == 1
            and ctx.walk[0].hexsha == ctx.original_tip
            and self.backend.head_commit() == ctx.original_tip
        ):
            ctx.token.check()
            entry = ctx.entries[ctx.original_tip]
            self.backend.checkout(ctx.original_tip, detach=True)
            new_hash = self.backend.amend_with_timestamp(entry.new_date)
            self._record(
                result,
                CommitOutcome(
                    original_hash=entry.original_hash,
                    new_hash=new_hash,
                    status=CommitStatus.MIGRATED,
                ),
            )
            ctx.reporter.step(f"Amended {entry.original_hash[:8]}", 0, 1, STEP_LOW, STEP_HIGH)
            self._swap_branch(ctx, new_hash)
            result.new_head = new_hash
            return result

        total = len(ctx.walk)
        for index, commit in enumerate(ctx.walk):
            ctx.token.check()
            entry = ctx.entries.get(commit.hexsha)

            try:
                self.backend.checkout(commit.hexsha, detach=True)
                new_hash = self._recommit(ctx, commit)
            except VCSError as e:
                if entry is None:
                    raise ExecutionError(
                        f"Failed to carry descendant commit {commit.hexsha[:8]}: {e}",
                        partial_result=result,
                    ) from e

                logger.warning("Failed to migrate %s: %s", commit.hexsha[:8], e)
                self._record(
                    result,
                    CommitOutcome(
                        original_hash=commit.hexsha,
                        status=CommitStatus.FAILED,
                        error=str(e),
                    ),
                )
                if not ctx.continue_on_error:
                    raise ExecutionError(
                        f"Failed to migrate commit {commit.hexsha[:8]}: {e}",
                        {"migrated": result.migrated_count, "total": result.total_count},
                        partial_result=result,
                    ) from e

                # Keep the commit with its original dates so history stays complete
                new_hash = self._recommit(ctx, commit, keep_dates=True)
                result.outcomes[-1].new_hash = new_hash
            else:
                if entry is not None:
                    self._record(
                        result,
                        CommitOutcome(
                            original_hash=commit.hexsha,
                            new_hash=new_hash,
                            status=CommitStatus.MIGRATED,
                        ),
                    )

            ctx.mapping[commit.hexsha] = new_hash
            ctx.reporter.step(
                f"Recommitted {commit.hexsha[:8]} ({index + 1}/{total})",
                index,
                total,
                STEP_LOW,
                STEP_HIGH,
            )

        new_tip = ctx.mapping[ctx.walk[-1].hexsha]
        self._swap_branch(ctx, new_tip)
        result.new_head = new_tip
        return result

    # Graph reconstruction

    def _run_graph_reconstruction(self, ctx: ExecutionContext) -> ExecutionResult:
        result = self._new_result(ctx, ExecutionStrategy.GRAPH_RECONSTRUCTION)
        ctx.mapping = {}
        work_ref = f"{self.config.work_prefix}-{ctx.tx.id}"
        oldest = ctx.walk[0]

        self.backend.checkout(ctx.original_tip, detach=True)
        if oldest.parents:
            self._move_to(oldest.parents[0])

        total = len(ctx.walk)
        try:
            for index, commit in enumerate(ctx.walk):
                ctx.token.check()
                new_hash = self._replay(ctx, commit)
                ctx.mapping[commit.hexsha] = new_hash

                if self.backend.ref_exists(work_ref):
                    self.backend.update_ref(work_ref, new_hash)
                else:
                    self.backend.create_ref(work_ref, new_hash)

                if commit.hexsha in ctx.entries:
                    self._record(
                        result,
                        CommitOutcome(
                            original_hash=commit.hexsha,
                            new_hash=new_hash,
                            status=CommitStatus.MIGRATED,
                        ),
                    )
                ctx.reporter.step(
                    f"Replayed {commit.hexsha[:8]} ({index + 1}/{total})",
                    index,
                    total,
                    STEP_LOW,
                    STEP_HIGH,
                )

            new_tip = ctx.mapping[ctx.walk[-1].hexsha]
            self._swap_branch(ctx, new_tip)
        except BaseException:
            self._discard_line(ctx, work_ref)
            raise

        self.backend.delete_ref(work_ref)
        result.new_head = new_tip
        return result

    def _replay(self, ctx: ExecutionContext, commit: CommitRecord) -> str:
        """Rebuild one commit on the new line, resolving conflicts on the way."""
        if len(commit.parents) != 1:
            # Root and merge commits: take the original tree as-is
            self.backend.read_tree(commit.hexsha)
            return self._recommit(ctx, commit)

        self._move_to(ctx.mapping.get(commit.parents[0], commit.parents[0]))
        report = self.backend.cherry_pick(commit.hexsha)
        if report.has_conflicts:
            self._settle_conflicts(ctx, commit, report)

        new_hash = self._recommit(ctx, commit)
        self.backend.clear_replay_state()
        return new_hash

    def _settle_conflicts(
        self, ctx: ExecutionContext, commit: CommitRecord, report: ConflictReport
    ) -> None:
        ctx.reporter.progress(
            f"Conflicts replaying {commit.hexsha[:8]}: {', '.join(report.conflicted_paths)}",
            ctx.reporter.percent,
        )
        outcome = self.resolver.resolve(report, ctx.policy)

        if outcome.aborted:
            raise ConflictUnresolved(
                f"Replay of {commit.hexsha[:8]} aborted on conflicts in "
                f"{', '.join(report.conflicted_paths)}",
                report,
            )
        if not outcome.resolved:
            remaining = outcome.remaining or report
            raise ConflictUnresolved(
                f"Policy {ctx.policy.value} left conflicts in "
                f"{', '.join(remaining.conflicted_paths)} while replaying {commit.hexsha[:8]}",
                remaining,
            )

    def _discard_line(self, ctx: ExecutionContext, work_ref: str) -> None:
        """Drop the scratch line and put the original branch back in the working tree."""
        try:
            self.backend.discard_changes()
            self.backend.checkout(ctx.branch, force=True)
            if self.backend.ref_exists(work_ref):
                self.backend.delete_ref(work_ref)
        except VCSError as e:
            # The transaction rollback still restores the branch
            logger.error("Failed to discard scratch line %s: %s", work_ref, e)
