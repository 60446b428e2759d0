"""Strategy selection for a migration plan."""

import logging
from typing import Optional

from histofy.config import EngineConfig
from histofy.core.errors import ValidationError
from histofy.models.execution import ExecutionStrategy
from histofy.models.plan import MigrationPlan

logger = logging.getLogger(__name__)


def select_strategy(
    commit_count: int,
    has_merges: bool,
    bulk_threshold: int = 20,
    precision_threshold: int = 5,
) -> ExecutionStrategy:
    """Pick a rewrite technique from the size and shape of the commit set.

    First match wins:

    1. Any merge commit: graph reconstruction. Filter-based rewriting does not
       reliably keep merge topology.
    2. More than ``bulk_threshold`` commits: bulk rewrite.
    3. ``precision_threshold`` commits or fewer: sequential amend.
    4. Otherwise: graph reconstruction.
    """
    if has_merges:
        return ExecutionStrategy.GRAPH_RECONSTRUCTION
    if commit_count > bulk_threshold:
        return ExecutionStrategy.BULK_REWRITE
    if commit_count <= precision_threshold:
        return ExecutionStrategy.SEQUENTIAL_AMEND
    return ExecutionStrategy.GRAPH_RECONSTRUCTION


def strategy_for_plan(
    plan: MigrationPlan,
    config: Optional[EngineConfig] = None,
    forced: Optional[ExecutionStrategy] = None,
) -> ExecutionStrategy:
    """Select the strategy for a plan, honouring a caller-forced choice."""
    if forced is not None:
        if forced == ExecutionStrategy.BULK_REWRITE and plan.has_merges:
            raise ValidationError(
                "Bulk rewrite cannot be used on a range that contains merge commits",
                field="strategy",
                suggestion="Let histofy choose, or use graph_reconstruction",
            )
        logger.debug("Using caller-selected strategy %s", forced.value)
        return forced

    config = config or EngineConfig()
    strategy = select_strategy(
        plan.commit_count,
        plan.has_merges,
        bulk_threshold=config.bulk_threshold,
        precision_threshold=config.precision_threshold,
    )
    logger.debug(
        "Selected %s for %d commit(s) (merges: %s)",
        strategy.value,
        plan.commit_count,
        plan.has_merges,
    )
    return strategy
