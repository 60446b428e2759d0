"""Conflict report and resolution models."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class MarkerCounts(BaseModel):
    """Number of conflict marker lines found in one file."""

    incoming: int = 0  # >>>>>>> lines
    separator: int = 0  # ======= lines
    current: int = 0  # <<<<<<< lines

    @property
    def total(self) -> int:
        return self.incoming + self.separator + self.current


class ConflictReport(BaseModel):
    """Conflicts left in the index and working tree after a replay step."""

    has_conflicts: bool = False
    conflicted_paths: List[str] = []
    per_file_marker_counts: Dict[str, MarkerCounts] = {}

    @classmethod
    def clean(cls) -> "ConflictReport":
        return cls()


class ResolutionPolicy(str, Enum):
    """How conflicts raised during a replay step are settled."""

    MANUAL = "manual"
    PREFER_INCOMING = "prefer_incoming"
    PREFER_CURRENT = "prefer_current"
    ABORT = "abort"


class ResolutionOutcome(BaseModel):
    """Go/no-go decision produced by the conflict resolver."""

    resolved: bool
    aborted: bool = False
    policy: ResolutionPolicy
    remaining: Optional[ConflictReport] = None
