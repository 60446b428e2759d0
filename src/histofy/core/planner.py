"""Migration planner: spread a commit range evenly over a date window."""

import logging
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple, Union

from histofy.core.backend import GitBackend
from histofy.core.errors import InvalidRange, NoCommitsFound, ValidationError
from histofy.models.commit import CommitRecord
from histofy.models.plan import MigrationPlan, PlanEntry

logger = logging.getLogger(__name__)

MIN_SPREAD_DAYS = 1
MAX_SPREAD_DAYS = 365

_TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def parse_date(value: Union[str, date]) -> date:
    """Parse a YYYY-MM-DD date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not value.strip():
        raise ValidationError(
            "Date cannot be empty",
            field="start_date",
            suggestion="Provide a date in YYYY-MM-DD format (e.g. 2023-06-15)",
        )
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError as e:
        raise ValidationError(
            f'Invalid date format: "{value}"',
            field="start_date",
            suggestion="Use YYYY-MM-DD format (e.g. 2023-06-15)",
        ) from e


def parse_time(value: Union[str, time]) -> time:
    """Parse an HH:MM time of day."""
    if isinstance(value, time):
        return value
    match = _TIME_PATTERN.match((value or "").strip())
    if not match:
        raise ValidationError(
            f'Invalid time format: "{value}"',
            field="start_time",
            suggestion="Use HH:MM format (e.g. 09:00, 14:30, 23:59)",
        )
    return time(int(match.group(1)), int(match.group(2)))


def validate_spread(spread_days: int) -> int:
    if isinstance(spread_days, bool) or not isinstance(spread_days, int):
        raise ValidationError(
            f"Spread days must be an integer, got {spread_days!r}",
            field="spread_days",
        )
    if not MIN_SPREAD_DAYS <= spread_days <= MAX_SPREAD_DAYS:
        raise ValidationError(
            f"Spread days must be between {MIN_SPREAD_DAYS} and {MAX_SPREAD_DAYS}",
            field="spread_days",
        )
    return spread_days


def parse_range(range_spec: str) -> Tuple[Optional[str], str]:
    """Split a range into (start, end); start is None for a single commit.

    Purely syntactic; nothing is resolved against the repository.
    """
    if not range_spec or not range_spec.strip():
        raise InvalidRange("Commit range cannot be empty")

    spec = range_spec.strip()
    if ".." not in spec:
        return None, spec

    if "..." in spec or spec.count("..") != 1:
        raise InvalidRange(
            f'Invalid range format: "{spec}"',
            suggestion='Use the format "start..end" (e.g. "HEAD~5..HEAD")',
        )
    start, end = (part.strip() for part in spec.split(".."))
    if not start or not end:
        raise InvalidRange(
            f'Both ends of the range are required: "{spec}"',
            suggestion='Use the format "start..end" (e.g. "HEAD~5..HEAD")',
        )
    return start, end


def distribute(
    count: int, start_date: date, start_time: time, spread_days: int
) -> List[datetime]:
    """Evenly spaced timestamps across spread_days, starting at start_date@start_time."""
    interval = timedelta(days=spread_days) / count
    current = datetime.combine(start_date, start_time)
    timestamps = []
    for _ in range(count):
        timestamps.append(current)
        current += interval
    return timestamps


class MigrationPlanner:
    """Computes one new timestamp per commit in a range."""

    def __init__(self, backend: GitBackend):
        self.backend = backend

    def plan(
        self,
        range_spec: str,
        start_date: Union[str, date],
        spread_days: int = 1,
        start_time: Union[str, time] = "09:00",
        ref: Optional[str] = None,
    ) -> MigrationPlan:
        """Build a migration plan for range_spec.

        Args:
            range_spec: A single commit, or an inclusive ``start..end`` pair.
            start_date: First day of the target window (YYYY-MM-DD).
            spread_days: Number of days to spread the commits over.
            start_time: Time of day for the first commit (HH:MM).
            ref: Branch the commits live on; defaults to the checked-out branch.

        Raises:
            ValidationError: Malformed input, raised before any git call.
            InvalidRange: An endpoint does not resolve or the pair is reversed.
            NoCommitsFound: The range is empty.
        """
        start, end = parse_range(range_spec)
        day = parse_date(start_date)
        clock = parse_time(start_time)
        spread = validate_spread(spread_days)

        # Resolve both endpoints before reading any history
        if start is not None:
            self.backend.resolve_commit(start)
        self.backend.resolve_commit(end)

        branch = ref or self.backend.current_branch()
        if branch is None:
            raise ValidationError(
                "HEAD is detached; cannot tell which branch to migrate",
                field="ref",
                suggestion="Check out the branch that holds the commits",
            )

        commits = self.backend.resolve_range(range_spec)
        if not commits:
            raise NoCommitsFound(range_spec)

        plan = self.build_plan(commits, day, clock, spread, branch, range_spec)
        logger.info(
            "Planned %d commit(s) on %s from %s over %d day(s)",
            plan.commit_count,
            branch,
            plan.entries[0].new_date.isoformat(),
            spread,
        )
        return plan

    @staticmethod
    def build_plan(
        commits: List[CommitRecord],
        start_date: date,
        start_time: time,
        spread_days: int,
        ref: str,
        range_spec: str,
    ) -> MigrationPlan:
        """Assign timestamps to commits already ordered oldest first."""
        if not commits:
            raise NoCommitsFound(range_spec)

        timestamps = distribute(len(commits), start_date, start_time, spread_days)
        entries = [
            PlanEntry(
                original_hash=commit.hexsha,
                original_date=commit.authored_date,
                new_date=new_date,
                message=commit.message,
                author_name=commit.author_name,
                author_email=commit.author_email,
                parents=list(commit.parents),
            )
            for commit, new_date in zip(commits, timestamps)
        ]
        return MigrationPlan(
            ref=ref,
            range_spec=range_spec,
            start_date=start_date,
            start_time=start_time,
            spread_days=spread_days,
            entries=entries,
        )
