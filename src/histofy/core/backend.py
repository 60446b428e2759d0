"""Git backend adapter for the migration engine.

Everything the engine needs from git goes through ``GitBackend``. Porcelain and
plumbing commands run through GitPython's ``repo.git`` wrapper; failures are
translated into ``VCSError`` so the transaction manager can roll back.
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import git
from git import Repo

from histofy.core.errors import InvalidRange, ValidationError, VCSError
from histofy.models.commit import CommitRecord
from histofy.models.conflict import ConflictReport, MarkerCounts

logger = logging.getLogger(__name__)

GIT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConflictSide(str, Enum):
    """Which version of a conflicted path to keep."""

    INCOMING = "incoming"  # The commit being replayed ("theirs")
    CURRENT = "current"  # The line being built ("ours")


def format_git_date(timestamp: datetime) -> str:
    """Format a datetime for GIT_AUTHOR_DATE / GIT_COMMITTER_DATE.

    Naive datetimes are wall-clock times in the local zone, as git reads them.
    """
    if timestamp.tzinfo is None:
        return timestamp.strftime(GIT_DATE_FORMAT)
    return timestamp.strftime(f"{GIT_DATE_FORMAT} %z")


def build_env_filter(dates: Dict[str, datetime]) -> str:
    """Build a filter-branch --env-filter script mapping commit ids to dates."""
    lines = ['case "$GIT_COMMIT" in']
    for sha, timestamp in dates.items():
        value = format_git_date(timestamp)
        lines.append(
            f"{sha}) export GIT_AUTHOR_DATE='{value}' GIT_COMMITTER_DATE='{value}' ;;"
        )
    lines.append("esac")
    return "\n".join(lines)


class GitBackend:
    """Narrow set of git operations over one repository."""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path).resolve()
        self._repo: Optional[Repo] = None

    @property
    def repo(self) -> Repo:
        """Get the git repository, opening it on first use."""
        if self._repo is None:
            try:
                self._repo = Repo(self.repo_path)
            except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
                raise ValidationError(
                    f"Not a git repository: {self.repo_path}",
                    field="repo_path",
                    suggestion="Run histofy inside a git working tree",
                ) from e
        return self._repo

    @property
    def working_dir(self) -> Path:
        return Path(self.repo.working_tree_dir)

    def run_git_command(
        self, command: str, *args: str, env: Optional[Dict[str, str]] = None
    ) -> str:
        """Run a git command on the repository and return its stdout."""
        git_method = getattr(self.repo.git, command)
        try:
            if env:
                with self.repo.git.custom_environment(**env):
                    return git_method(*args)
            return git_method(*args)
        except git.exc.GitCommandError as e:
            name = command.replace("_", "-")
            stderr = str(e.stderr or "").strip()
            raise VCSError(
                f"git {name} failed: {stderr or e}",
                {"command": name, "args": list(args), "status": e.status},
            ) from e

    # History reads

    def resolve_commit(self, rev: str) -> CommitRecord:
        """Resolve a revision to a commit, raising InvalidRange if it does not exist."""
        try:
            commit = self.repo.commit(rev)
        except (git.exc.BadName, git.exc.BadObject, ValueError) as e:
            raise InvalidRange(f"Cannot resolve commit: {rev}") from e
        return self._to_record(commit)

    def resolve_range(self, range_spec: str) -> List[CommitRecord]:
        """Resolve a single id or an inclusive ``start..end`` pair, oldest first."""
        if ".." not in range_spec:
            return [self.resolve_commit(range_spec.strip())]

        start_rev, end_rev = (part.strip() for part in range_spec.split("..", 1))
        start = self.resolve_commit(start_rev)
        end = self.resolve_commit(end_rev)

        if start.hexsha != end.hexsha and not self.is_ancestor(
            start.hexsha, end.hexsha
        ):
            raise InvalidRange(
                f"Range start {start_rev} is not an ancestor of {end_rev}",
                suggestion="Put the older commit first: <older>..<newer>",
            )

        return self.walk(end.hexsha, exclude=start.parents)

    def walk(self, tip: str, exclude: Iterable[str] = ()) -> List[CommitRecord]:
        """List commits reachable from tip but not from exclude, oldest first.

        Date order, constrained so that parents always come before children.
        """
        args = ["--date-order", "--reverse", tip]
        args.extend(f"^{sha}" for sha in exclude)
        output = self.run_git_command("rev_list", *args)
        return [
            self._to_record(self.repo.commit(sha))
            for sha in output.split("\n")
            if sha.strip()
        ]

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return self.repo.is_ancestor(ancestor, descendant)

    # Refs

    def current_head(self, ref: str = "HEAD") -> str:
        """Resolve a ref to the id of the commit it points at."""
        return self.run_git_command("rev_parse", "--verify", f"{ref}^{{commit}}").strip()

    def head_commit(self) -> Optional[str]:
        """Id of HEAD, or None for an unborn branch."""
        try:
            return self.repo.head.commit.hexsha
        except ValueError:
            return None

    def current_branch(self) -> Optional[str]:
        """Name of the checked-out branch, or None when HEAD is detached."""
        try:
            return self.repo.active_branch.name
        except TypeError:
            return None

    def ref_exists(self, name: str) -> bool:
        return name in [h.name for h in self.repo.heads]

    def list_refs(self, prefix: str = "") -> List[str]:
        return sorted(h.name for h in self.repo.heads if h.name.startswith(prefix))

    def create_ref(self, name: str, from_id: str) -> None:
        try:
            self.repo.create_head(name, from_id)
        except (git.exc.GitCommandError, OSError, ValueError) as e:
            raise VCSError(f"Cannot create ref {name} at {from_id}: {e}") from e
        logger.debug("Created ref %s at %s", name, from_id[:8])

    def delete_ref(self, name: str) -> None:
        self.run_git_command("branch", "-D", name)
        logger.debug("Deleted ref %s", name)

    def update_ref(self, name: str, new_id: str, old_id: Optional[str] = None) -> None:
        """Point a branch at new_id, atomically checking old_id when given."""
        args = [f"refs/heads/{name}", new_id]
        if old_id:
            args.append(old_id)
        self.run_git_command("update_ref", *args)

    def reset_hard(self, ref: str, to_id: str) -> None:
        """Move a branch to to_id, resetting index and working tree if checked out."""
        if self.current_branch() == ref:
            self.run_git_command("reset", "--hard", to_id)
        else:
            self.update_ref(ref, to_id)
        logger.debug("Reset %s to %s", ref, to_id[:8])

    # Working tree

    def is_clean(self) -> bool:
        return not self.repo.is_dirty(untracked_files=False)

    def checkout(self, rev: str, detach: bool = False, force: bool = False) -> None:
        args = []
        if force:
            args.append("--force")
        if detach:
            args.append("--detach")
        args.append(rev)
        self.run_git_command("checkout", *args)

    def read_tree(self, rev: str) -> None:
        """Load a commit's tree into the index and working tree without moving HEAD."""
        self.run_git_command("read_tree", "-u", "--reset", rev)

    def discard_changes(self) -> None:
        """Drop staged and unstaged changes, including an interrupted replay."""
        self.run_git_command("reset", "--hard")
        self.clear_replay_state()

    def clear_replay_state(self) -> None:
        git_dir = Path(self.repo.git_dir)
        pick_head = git_dir / "CHERRY_PICK_HEAD"
        if pick_head.exists():
            pick_head.unlink()
        sequencer = git_dir / "sequencer"
        if sequencer.exists():
            shutil.rmtree(sequencer)

    def stash(self, message: str) -> bool:
        """Stash local changes; returns False when there was nothing to stash."""
        if self.is_clean():
            return False
        self.run_git_command("stash", "push", "-m", message)
        return True

    def stash_pop(self) -> None:
        self.run_git_command("stash", "pop")

    # Commit creation

    def commit_with_timestamp(
        self,
        message: str,
        author_name: str,
        author_email: str,
        timestamp: datetime,
        parents: Optional[List[str]] = None,
        tree: Optional[str] = None,
        committer_date: Optional[datetime] = None,
    ) -> str:
        """Commit the index (or an explicit tree) with an explicit timestamp.

        The message is written byte-for-byte and HEAD is advanced to the new
        commit. Parents default to the current HEAD.
        """
        if tree is None:
            tree = self.run_git_command("write_tree").strip()
        if parents is None:
            head = self.head_commit()
            parents = [head] if head else []

        env = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_AUTHOR_DATE": format_git_date(timestamp),
            "GIT_COMMITTER_DATE": format_git_date(committer_date or timestamp),
        }
        args = [tree]
        for parent in parents:
            args.extend(["-p", parent])

        with tempfile.NamedTemporaryFile("wb", suffix=".msg", delete=False) as fh:
            fh.write(message.encode("utf-8"))
            message_path = fh.name
        try:
            sha = self.run_git_command(
                "commit_tree", *args, "-F", message_path, env=env
            ).strip()
        finally:
            os.unlink(message_path)

        self.run_git_command("update_ref", "HEAD", sha)
        return sha

    def amend_with_timestamp(self, timestamp: datetime) -> str:
        """Recreate HEAD with a new timestamp, keeping tree, parents, message and author."""
        head = self.repo.head.commit
        return self.commit_with_timestamp(
            head.message,
            head.author.name,
            head.author.email,
            timestamp,
            parents=[p.hexsha for p in head.parents],
            tree=head.tree.hexsha,
        )

    # Replay and conflicts

    def cherry_pick(self, commit_id: str) -> ConflictReport:
        """Apply a commit's changes onto HEAD without committing.

        Returns the conflict report; a failure that left no conflicts behind
        is re-raised.
        """
        try:
            self.run_git_command("cherry_pick", "--no-commit", commit_id)
        except VCSError:
            report = self.detect_conflicts()
            if report.has_conflicts:
                logger.info(
                    "Replaying %s left %d conflicted path(s)",
                    commit_id[:8],
                    len(report.conflicted_paths),
                )
                return report
            raise
        return ConflictReport.clean()

    def detect_conflicts(self) -> ConflictReport:
        unmerged = self.repo.index.unmerged_blobs()
        paths = sorted(str(path) for path in unmerged)
        return ConflictReport(
            has_conflicts=bool(paths),
            conflicted_paths=paths,
            per_file_marker_counts={path: self.marker_counts(path) for path in paths},
        )

    def marker_counts(self, path: str) -> MarkerCounts:
        """Count conflict marker lines in a working-tree file."""
        file_path = self.working_dir / path
        if not file_path.is_file():
            return MarkerCounts()

        counts = {"incoming": 0, "separator": 0, "current": 0}
        text = file_path.read_text(encoding="utf-8", errors="replace")
        for line in text.splitlines():
            if line.startswith("<<<<<<<"):
                counts["current"] += 1
            elif line.startswith(">>>>>>>"):
                counts["incoming"] += 1
            elif line.rstrip() == "=======":
                counts["separator"] += 1
        return MarkerCounts(**counts)

    def stage_resolution(self, path: str, side: ConflictSide) -> None:
        """Resolve a conflicted path by taking one side wholesale and staging it."""
        stage = 3 if side == ConflictSide.INCOMING else 2
        stages = self.repo.index.unmerged_blobs().get(path, [])

        if any(entry_stage == stage for entry_stage, _ in stages):
            flag = "--theirs" if side == ConflictSide.INCOMING else "--ours"
            self.run_git_command("checkout", flag, "--", path)
            self.run_git_command("add", "--", path)
        else:
            # The chosen side deleted the file
            self.run_git_command("rm", "--force", "--quiet", "--", path)

    def mark_resolved(self, path: str) -> None:
        """Stage a manually resolved path (including deletions)."""
        self.run_git_command("add", "-A", "--", path)

    # Bulk rewrite

    def bulk_rewrite(
        self, dates: Dict[str, datetime], ref: str, exclude: Iterable[str] = ()
    ) -> Dict[str, str]:
        """Rewrite author and committer dates of many commits in a single pass.

        Runs ``git filter-branch --env-filter`` over commits reachable from ref
        and not from exclude. Returns the old-to-new id mapping for every
        rewritten commit.
        """
        exclude = list(exclude)
        old_tip = self.current_head(ref)
        scope = [ref] + [f"^{sha}" for sha in exclude]

        self.run_git_command(
            "filter_branch",
            "-f",
            "--env-filter",
            build_env_filter(dates),
            "--",
            *scope,
            env={"FILTER_BRANCH_SQUELCH_WARNING": "1"},
        )

        original_ref = f"refs/original/refs/heads/{ref}"
        if self.run_git_command("for_each_ref", original_ref).strip():
            self.run_git_command("update_ref", "-d", original_ref)

        new_tip = self.current_head(ref)
        return self.pair_histories(old_tip, new_tip, stop=set(exclude))

    def pair_histories(self, old_tip: str, new_tip: str, stop: Set[str]) -> Dict[str, str]:
        """Match rewritten commits to their originals by walking both graphs in step."""
        mapping: Dict[str, str] = {}
        pending = [(self.repo.commit(old_tip), self.repo.commit(new_tip))]

        while pending:
            old, new = pending.pop()
            if old.hexsha in mapping or old.hexsha in stop:
                continue
            mapping[old.hexsha] = new.hexsha
            if old.hexsha == new.hexsha:
                # Untouched below this point
                continue
            pending.extend(zip(old.parents, new.parents))

        return mapping

    def _to_record(self, commit: git.Commit) -> CommitRecord:
        return CommitRecord(
            hexsha=commit.hexsha,
            parents=[parent.hexsha for parent in commit.parents],
            author_name=commit.author.name or "",
            author_email=commit.author.email or "",
            authored_date=commit.authored_datetime,
            committed_date=commit.committed_datetime,
            message=commit.message,
        )
