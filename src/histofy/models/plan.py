"""Migration plan models."""

from datetime import date, datetime, time
from typing import List, Optional

from pydantic import BaseModel


class PlanEntry(BaseModel):
    """New timestamp assignment for a single original commit."""

    original_hash: str
    original_date: datetime
    new_date: datetime
    message: str  # Copied verbatim from the commit
    author_name: str
    author_email: str
    parents: List[str] = []

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]

    @property
    def author(self) -> str:
        return f"{self.author_name} <{self.author_email}>"


class MigrationPlan(BaseModel):
    """Ordered timestamp assignments for a commit range, oldest first."""

    ref: str
    range_spec: str
    start_date: date
    start_time: time
    spread_days: int
    entries: List[PlanEntry] = []

    @property
    def commit_count(self) -> int:
        return len(self.entries)

    @property
    def has_merges(self) -> bool:
        """Check if any planned commit is a merge commit."""
        return any(entry.is_merge for entry in self.entries)

    @property
    def oldest(self) -> Optional[PlanEntry]:
        return self.entries[0] if self.entries else None

    def new_dates(self) -> dict:
        """Map each original hash to its new timestamp."""
        return {entry.original_hash: entry.new_date for entry in self.entries}
