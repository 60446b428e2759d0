"""Commit snapshot model read from the repository at plan time."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CommitRecord(BaseModel):
    """Immutable snapshot of one historical commit."""

    hexsha: str
    parents: List[str] = []
    author_name: str
    author_email: str
    authored_date: datetime
    committed_date: Optional[datetime] = None
    message: str

    model_config = {"frozen": True}

    @property
    def is_merge(self) -> bool:
        """Check if the commit has more than one parent."""
        return len(self.parents) > 1

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]

    @property
    def author(self) -> str:
        return f"{self.author_name} <{self.author_email}>"
