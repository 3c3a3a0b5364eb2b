"""
Archival and finalization of issues that reached FINALIZE.

Finalization is one transaction made of three steps:

1. Snapshot the full Workflow Context into the archive partition.
2. Write a summary artifact rendered from every Phase Record.
3. Set the terminal status and, when resolving, make one commit bundling
   the IMPLEMENT changes with the summary document.

The store stages steps 1-3 outside the active namespace and publishes them
with a rename (see ``IssueStore.archive``); the commit runs just before the
publish. If anything fails the staging copy is discarded, the commit is
rolled back, the summary file is restored, and the error is recorded on the
still-active issue so an operator can resume it.
"""

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from issue_pipeline.engine import transitions
from issue_pipeline.engine.issue_store import IssueStore
from issue_pipeline.enums import IssueStatus, Phase
from issue_pipeline.exceptions import (
    ConfigurationError,
    FinalizationError,
    IssueClosedError,
    StorageError,
)
from issue_pipeline.git.committer import GitCommitter, build_commit_message, infer_commit_type
from issue_pipeline.models.domain import Artifact, Issue, WorkflowContext
from issue_pipeline.rendering.engine import SecureTemplateEngine

log = structlog.get_logger(__name__)

SUMMARY_TEMPLATE = "summary.md.j2"
SOLUTION_FILENAME = "solution.md"


class Finalizer:
    """Run the finalization transaction for an issue.

    Attributes:
        store: Issue Store holding the issue.
        committer: Git committer, or None to skip commits.
        renderer: Template engine for the summary document.
        issues_dir: Directory in the repository that receives
            ``<issue_id>/solution.md``, or None to skip writing it.
        commit_type: Fallback commit type when the title gives no hint.
    """

    def __init__(
        self,
        store: IssueStore,
        *,
        committer: GitCommitter | None = None,
        renderer: SecureTemplateEngine | None = None,
        issues_dir: Path | None = None,
        commit_type: str = "fix",
    ) -> None:
        self.store = store
        self.committer = committer
        self.renderer = renderer or SecureTemplateEngine()
        self.issues_dir = issues_dir
        self.commit_type = commit_type

    def solution_path(self, issue_id: str) -> Path | None:
        if self.issues_dir is None:
            return None
        return self.issues_dir / issue_id / SOLUTION_FILENAME

    def render_summary(self, context: WorkflowContext, outcome: Phase) -> Artifact:
        """Compose the summary artifact from all Phase Records."""
        records: list[dict[str, Any]] = []
        for record in context.records:
            artifact = context.artifact_for(record)
            records.append(
                {
                    "sequence": record.sequence,
                    "phase": record.phase.value,
                    "attempt": record.attempt,
                    "verdict": record.verdict.value,
                    "reported_verdict": record.reported_verdict.value if record.reported_verdict else None,
                    "summary": artifact.summary,
                    "notes": record.notes,
                    "findings": list(context.findings_for(record)),
                }
            )

        changed_files = context.changed_files() if outcome == Phase.RESOLVED else []
        issue = context.issue
        content = self.renderer.render(
            SUMMARY_TEMPLATE,
            {
                "title": issue.display_title,
                "issue_id": issue.id,
                "outcome": outcome.value,
                "created_at": issue.created_at.isoformat(),
                "finalized_at": datetime.now(UTC).isoformat(),
                "description": issue.description,
                "records": records,
                "changed_files": changed_files,
            },
        )
        return Artifact(
            summary=f"{outcome.value}: {issue.display_title}",
            content=content,
            files=tuple(changed_files),
            data={"outcome": outcome.value, "record_count": len(records)},
        )

    async def finalize(self, issue_id: str) -> Issue:
        """Finalize an issue whose controller state is FINALIZE.

        Returns:
            The archived Issue with its terminal status.

        Raises:
            IssueClosedError: If the issue is already archived.
            FinalizationError: If any step failed. Nothing took visible
                effect and the error is recorded on the issue.
        """
        context = await self.store.read(issue_id)
        if context.issue.archived:
            raise IssueClosedError(issue_id, context.issue.status.value)

        outcome = transitions.finalize_outcome(context.records)
        status = IssueStatus.for_terminal_phase(outcome)
        solution_path = self.solution_path(issue_id)
        summary: Artifact | None = None

        undo = _SideEffects(self.committer)

        async def write_and_commit() -> None:
            if solution_path is not None and summary is not None:
                await undo.write_file(solution_path, summary.content)
            if outcome == Phase.RESOLVED and self.committer is not None:
                paths: list[str | Path] = list(context.changed_files())
                if solution_path is not None:
                    paths.append(solution_path)
                if not paths:
                    log.warning("nothing_to_commit", issue_id=issue_id)
                    return
                commit_type = infer_commit_type(context.issue.display_title, self.commit_type)
                message = build_commit_message(commit_type, context.issue.display_title, issue_id)
                await undo.commit(paths, message)

        log.info("finalization_started", issue_id=issue_id, outcome=outcome.value)
        try:
            summary = self.render_summary(context, outcome)
            issue = await self.store.archive(
                issue_id,
                status=status,
                summary=summary,
                finalize_verdict=transitions.FINALIZE_VERDICTS[outcome],
                before_publish=write_and_commit,
            )
        except asyncio.CancelledError:
            await undo.revert()
            raise
        except Exception as e:
            await undo.revert()
            await self._record_failure(issue_id, e)
            if summary is None:
                step = "render"
            elif undo.commit_attempted and undo.sha is None:
                step = "commit"
            else:
                step = "archive"
            raise FinalizationError(f"Finalization failed: {e}", issue_id=issue_id, step=step) from e

        log.info("finalization_completed", issue_id=issue_id, status=status.value, commit=undo.sha)
        return issue

    async def _record_failure(self, issue_id: str, error: Exception) -> None:
        try:
            await self.store.record_error(issue_id, error, step="finalize")
        except StorageError as e:
            log.error("finalization_error_not_recorded", issue_id=issue_id, error=str(e))


class _SideEffects:
    """Tracks finalization effects outside the store so they can be undone."""

    def __init__(self, committer: GitCommitter | None) -> None:
        self.committer = committer
        self.sha: str | None = None
        self.commit_attempted = False
        self._written: Path | None = None
        self._previous: str | None = None

    async def write_file(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            async with aiofiles.open(path) as f:
                self._previous = await f.read()
        self._written = path
        async with aiofiles.open(path, "w") as f:
            await f.write(content)

    async def commit(self, paths: list[str | Path], message: str) -> None:
        if self.committer is None:
            raise ConfigurationError("No git committer configured for this finalization")
        self.commit_attempted = True
        self.sha = await self.committer.commit(paths, message)

    async def revert(self) -> None:
        if self.sha is not None and self.committer is not None:
            try:
                await self.committer.rollback(self.sha)
            except Exception as e:
                log.error("commit_rollback_failed", sha=self.sha, error=str(e))
            self.sha = None
        if self._written is not None:
            if self._previous is None:
                self._written.unlink(missing_ok=True)
            else:
                async with aiofiles.open(self._written, "w") as f:
                    await f.write(self._previous)
            self._written = None
