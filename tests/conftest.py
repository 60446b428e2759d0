"""Shared fixtures: real temporary git repositories."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import List

import pytest
from git import Repo

BASE_DATE = datetime(2020, 1, 1, 12, 0, 0)


def _commit(repo: Repo, message: str) -> str:
    # Distinct, increasing dates keep --date-order deterministic
    existing = len(list(repo.iter_commits())) if repo.head.is_valid() else 0
    when = (BASE_DATE + timedelta(hours=existing)).strftime("%Y-%m-%dT%H:%M:%S")
    return repo.index.commit(message, author_date=when, commit_date=when).hexsha


def add_commits(project_path: Path, count: int, prefix: str = "change") -> List[str]:
    """Add count commits, each touching its own file. Returns ids oldest first."""
    repo = Repo(project_path)
    shas = []
    for _ in range(count):
        index = len(list(repo.iter_commits()))
        name = f"{prefix}_{index}.txt"
        (project_path / name).write_text(f"{prefix} {index}\n")
        repo.index.add([name])
        shas.append(_commit(repo, f"Add {name}\n\nBody for {prefix} {index}.\n"))
    return shas


def commit_file(project_path: Path, name: str, content: str, message: str) -> str:
    repo = Repo(project_path)
    (project_path / name).write_text(content)
    repo.index.add([name])
    return _commit(repo, message)


@pytest.fixture
def temp_git_project():
    """Create a temporary git project with an initial commit."""
    with tempfile.TemporaryDirectory() as temp_dir:
        project_path = Path(temp_dir).resolve()

        repo = Repo.init(project_path)
        with repo.config_writer() as config:
            config.set_value("user", "name", "Test User")
            config.set_value("user", "email", "test@example.com")
            config.set_value("merge", "conflictstyle", "merge")

        (project_path / "README.md").write_text("# Test Project\n")
        repo.index.add(["README.md"])
        _commit(repo, "Initial commit")

        yield project_path


@pytest.fixture
def repo(temp_git_project):
    return Repo(temp_git_project)


@pytest.fixture
def branch(repo):
    return repo.active_branch.name
