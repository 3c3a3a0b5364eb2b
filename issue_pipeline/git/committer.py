"""Version-control emission for resolved issues.

Exactly one commit is produced per resolved issue. It contains the files
changed during IMPLEMENT plus the rendered summary document, and its message
follows a fixed template::

    <type>: <short description>

    Issue: <issue id>

Commits are made with the ``git`` CLI through ``run_command``.
"""

import subprocess
from pathlib import Path

import structlog

from issue_pipeline.exceptions import GitOperationError
from issue_pipeline.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

SUBJECT_MAX_LENGTH = 72

_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("fix", ("fix", "bug", "crash", "error", "broken", "regression")),
    ("docs", ("doc", "readme", "typo")),
    ("test", ("test",)),
    ("refactor", ("refactor", "cleanup", "clean up")),
    ("perf", ("perf", "slow", "speed")),
    ("feat", ("add", "implement", "support", "create", "feature")),
)


def infer_commit_type(title: str, default: str = "fix") -> str:
    """Pick a conventional-commit type from keywords in the issue title."""
    lowered = title.lower()
    for commit_type, keywords in _TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return commit_type
    return default


def build_commit_message(commit_type: str, description: str, issue_id: str) -> str:
    """Build the deterministic commit message for a resolved issue.

    The subject is ``<type>: <short description>`` where the description is
    the first line of ``description``, stripped of a trailing period and cut
    to keep the subject within 72 characters.

    Example:
        >>> build_commit_message("fix", "Fix timeout bug.", "fix-timeout-bug")
        'fix: Fix timeout bug\\n\\nIssue: fix-timeout-bug\\n'
    """
    first_line = description.strip().splitlines()[0] if description.strip() else issue_id
    short = first_line.strip().rstrip(".")
    prefix = f"{commit_type}: "
    room = SUBJECT_MAX_LENGTH - len(prefix)
    if len(short) > room:
        short = short[: room - 3].rstrip() + "..."
    return f"{prefix}{short}\n\nIssue: {issue_id}\n"


class GitCommitter:
    """Create and roll back the resolution commit in a working tree.

    Attributes:
        repo_path: Absolute root of the git working tree.
    """

    def __init__(self, repo_path: str | Path) -> None:
        self.repo_path = Path(repo_path).resolve()

    async def _git(self, *args: str) -> str:
        try:
            stdout, _, _ = await run_command("git", *args, cwd=self.repo_path, check=True)
        except subprocess.CalledProcessError as e:
            raise GitOperationError(f"git {args[0]} failed", command=list(args), stderr=e.stderr) from e
        except FileNotFoundError as e:
            raise GitOperationError("git executable not found", command=list(args)) from e
        return stdout.strip()

    def _relative(self, path: str | Path) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.repo_path)
            except ValueError as e:
                raise GitOperationError(f"{path} is outside the repository {self.repo_path}") from e
        return candidate.as_posix()

    async def commit(self, paths: list[str | Path], message: str) -> str:
        """Stage ``paths`` and commit exactly those paths.

        Args:
            paths: Files to include, either absolute or relative to the
                repository root (never to the process working directory).
                Deleted files are staged as deletions.
            message: Full commit message.

        Returns:
            SHA of the new commit.

        Raises:
            GitOperationError: If staging or committing fails.
        """
        relative = sorted({self._relative(p) for p in paths})
        if not relative:
            raise GitOperationError("Nothing to commit")

        await self._git("add", "-A", "--", *relative)
        await self._git("commit", "-m", message, "--", *relative)
        sha = await self._git("rev-parse", "HEAD")

        log.info("resolution_committed", sha=sha, files=len(relative))
        return sha

    async def rollback(self, sha: str) -> None:
        """Undo a commit made by ``commit`` if it is still HEAD.

        The changes stay in the working tree and index; only the commit is
        removed. A root commit is undone by deleting the branch ref, which
        leaves the repository unborn again.

        Raises:
            GitOperationError: If HEAD moved or the reset fails.
        """
        head = await self._git("rev-parse", "HEAD")
        if head != sha:
            raise GitOperationError(f"Cannot roll back {sha}: HEAD is now {head}")
        parents = (await self._git("rev-list", "--parents", "-n", "1", sha)).split()[1:]
        if parents:
            await self._git("reset", "--soft", "HEAD~1")
        else:
            await self._git("update-ref", "-d", "HEAD")
        log.warning("resolution_commit_rolled_back", sha=sha)
