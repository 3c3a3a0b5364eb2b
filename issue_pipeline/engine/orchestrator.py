"""
Pipeline orchestrator: the trigger surface over the phase controller.

The orchestrator owns the shared collaborators (store, workers, retry
manager, finalizer) and creates one PhaseController per issue. It is what
the CLI and the HTTP server talk to.

Concurrency Model:
    A single issue is always driven by one controller at a time: a second
    run of an issue that is already running raises IssueRunningError.
    Several issues run concurrently as asyncio tasks, bounded by
    ``workflow.max_concurrent_issues``.

Example:
    >>> orchestrator = PipelineOrchestrator.from_settings(settings)
    >>> issue = await orchestrator.start("fix-timeout-bug", title="Fix timeout bug")
    >>> await handle_trigger({"command": "resume", "issue_id": "fix-timeout-bug"}, orchestrator)
"""

import asyncio
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

from issue_pipeline.config.settings import PipelineSettings
from issue_pipeline.engine.controller import PhaseController
from issue_pipeline.engine.finalization import Finalizer
from issue_pipeline.engine.issue_store import IssueStore
from issue_pipeline.engine.retry_manager import RetryManager
from issue_pipeline.enums import WORKER_PHASES, IssueStatus, Phase
from issue_pipeline.exceptions import IssuePipelineError, IssueRunningError, WorkflowError
from issue_pipeline.git.committer import GitCommitter
from issue_pipeline.models.domain import Issue, WorkflowContext
from issue_pipeline.workers.base import PhaseWorker
from issue_pipeline.workers.external_agent import ExternalAgentWorker

log = structlog.get_logger(__name__)

PROBLEM_FILENAME = "problem.md"
SOLUTION_FILENAME = "solution.md"

TRIGGER_COMMANDS = ("start", "resume")


class PipelineOrchestrator:
    """Start, resume and report on issues.

    Attributes:
        settings: Pipeline configuration.
        store: Issue Store shared by every controller.
        workers: Worker for each worker phase.
        retry_manager: Shared Retry Counter owner.
        finalizer: Shared finalizer.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        store: IssueStore,
        workers: Mapping[Phase, PhaseWorker],
        *,
        finalizer: Finalizer | None = None,
    ) -> None:
        missing = [phase.value for phase in WORKER_PHASES if phase not in workers]
        if missing:
            raise ValueError(f"No worker for phase(s): {', '.join(missing)}")

        self.settings = settings
        self.store = store
        self.workers = dict(workers)
        self.retry_manager = RetryManager(store, settings.retry.max_implement_attempts)
        self.finalizer = finalizer or Finalizer(store, commit_type=settings.repository.commit_type)
        self._running: set[str] = set()

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "PipelineOrchestrator":
        """Wire the production collaborators from configuration.

        Every phase runs through the external agent CLI. Resolutions are
        committed to ``repository.path`` when ``commit_enabled`` is set.
        """
        store = IssueStore(settings.store_dir)
        working_dir = settings.worker.working_directory or settings.repository.path
        agent = ExternalAgentWorker(settings.worker.command, working_dir=working_dir)
        committer = GitCommitter(settings.repo_path) if settings.repository.commit_enabled else None
        finalizer = Finalizer(
            store,
            committer=committer,
            issues_dir=settings.issues_dir,
            commit_type=settings.repository.commit_type,
        )
        return cls(settings, store, dict.fromkeys(WORKER_PHASES, agent), finalizer=finalizer)

    def is_running(self, issue_id: str) -> bool:
        return issue_id in self._running

    @contextmanager
    def claim(self, issue_id: str) -> Iterator[None]:
        """Reserve an issue for a single controller run.

        Raises:
            IssueRunningError: If the issue is already claimed.
        """
        if issue_id in self._running:
            raise IssueRunningError(issue_id)
        self._running.add(issue_id)
        try:
            yield
        finally:
            self._running.discard(issue_id)

    def controller(self, issue_id: str) -> PhaseController:
        return PhaseController(
            issue_id,
            self.store,
            self.workers,
            retry_manager=self.retry_manager,
            finalizer=self.finalizer,
            retry=self.settings.retry,
            timeout=self.settings.worker.timeout,
            phase_options=self.settings.worker.phase_options,
        )

    async def start(self, issue_id: str, title: str = "", description: str = "") -> Issue:
        """Create an issue and run it to a terminal state.

        Raises:
            IssueExistsError: If the issue was already created.
        """
        with self.claim(issue_id):
            await self.store.create(issue_id, title=title, description=description)
            return await self.controller(issue_id).run()

    async def resume(self, issue_id: str) -> Issue:
        """Continue an issue from its last persisted record.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            IssueClosedError: If the issue is already terminal.
            IssueRunningError: If the issue is already running.
        """
        with self.claim(issue_id):
            log.info("issue_resumed", issue_id=issue_id)
            return await self.controller(issue_id).run()

    async def status(self, issue_id: str) -> WorkflowContext:
        return await self.store.read(issue_id)

    async def list_issues(self, statuses: Iterable[IssueStatus] = ()) -> list[Issue]:
        wanted = list(statuses)
        return await self.store.list(wanted or None)

    async def start_or_resume(self, issue_id: str, title: str = "", description: str = "") -> Issue:
        if await self.store.exists(issue_id):
            return await self.resume(issue_id)
        return await self.start(issue_id, title=title, description=description)

    async def run_many(self, requests: Iterable[tuple[str, str, str]]) -> dict[str, Issue | Exception]:
        """Run several issues concurrently.

        Args:
            requests: ``(issue_id, title, description)`` tuples. Existing
                issues are resumed, new ones started. Repeated ids run once,
                with the first request's title and description.

        Returns:
            Mapping of issue id to the final Issue, or to the pipeline error
            that stopped it. Other exceptions propagate.
        """
        semaphore = asyncio.Semaphore(self.settings.workflow.max_concurrent_issues)
        results: dict[str, Issue | Exception] = {}

        async def run_one(issue_id: str, title: str, description: str) -> None:
            async with semaphore:
                try:
                    results[issue_id] = await self.start_or_resume(issue_id, title, description)
                except IssuePipelineError as e:
                    log.error("issue_run_failed", issue_id=issue_id, error=str(e))
                    results[issue_id] = e

        unique: dict[str, tuple[str, str, str]] = {}
        for request in requests:
            if request[0] in unique:
                log.warning("duplicate_issue_request", issue_id=request[0])
                continue
            unique[request[0]] = request

        async with asyncio.TaskGroup() as group:
            for issue_id, title, description in unique.values():
                group.create_task(run_one(issue_id, title, description))

        return results

    def discover_unsolved(self) -> list[tuple[str, str, str]]:
        """Find issue directories with a problem statement and no solution.

        Returns:
            ``(issue_id, title, description)`` for each unsolved issue,
            sorted by id. The title is the first Markdown heading of
            ``problem.md`` when it has one.
        """
        issues_dir = self.settings.issues_dir
        if not issues_dir.is_dir():
            log.warning("issues_directory_missing", path=str(issues_dir))
            return []

        unsolved = []
        for directory in sorted(p for p in issues_dir.iterdir() if p.is_dir()):
            problem = directory / PROBLEM_FILENAME
            if not problem.is_file() or (directory / SOLUTION_FILENAME).exists():
                continue
            description = problem.read_text(encoding="utf-8")
            unsolved.append((directory.name, _heading(description), description))

        log.info("unsolved_issues_found", count=len(unsolved), path=str(issues_dir))
        return unsolved

    async def solve_unsolved(self) -> dict[str, Issue | Exception]:
        return await self.run_many(self.discover_unsolved())


def _heading(markdown: str) -> str:
    for line in markdown.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            return stripped.lstrip("#").strip()
    return ""


async def handle_trigger(command: Mapping[str, Any], orchestrator: PipelineOrchestrator) -> Issue:
    """Dispatch a ``{"command": "start"|"resume", "issue_id": ...}`` trigger.

    ``start`` also accepts ``title`` and ``description``.

    Raises:
        WorkflowError: If the command is malformed.
    """
    name = command.get("command")
    issue_id = command.get("issue_id")
    if name not in TRIGGER_COMMANDS:
        raise WorkflowError(f"Unknown command {name!r}; expected one of {', '.join(TRIGGER_COMMANDS)}")
    if not isinstance(issue_id, str) or not issue_id:
        raise WorkflowError("Trigger requires an issue_id")

    title = str(command.get("title") or "")
    description = str(command.get("description") or "")
    log.info("trigger_received", command=name, issue_id=issue_id)

    if name == "start":
        return await orchestrator.start(issue_id, title=title, description=description)
    return await orchestrator.resume(issue_id)


def load_problem(path: Path) -> tuple[str, str]:
    """Read a problem statement file, returning ``(title, description)``."""
    description = path.read_text(encoding="utf-8")
    return _heading(description), description


def describe_issue(context: WorkflowContext) -> dict[str, Any]:
    """JSON-serializable status report of an issue and its record chain."""
    issue = context.issue
    return {
        "issue_id": issue.id,
        "title": issue.display_title,
        "status": issue.status.value,
        "current_phase": issue.current_phase.value,
        "retry_count": issue.retry_count,
        "archived": issue.archived,
        "created_at": issue.created_at.isoformat(),
        "updated_at": issue.updated_at.isoformat(),
        "last_error": issue.last_error,
        "records": [
            {
                "sequence": record.sequence,
                "phase": record.phase.value,
                "attempt": record.attempt,
                "verdict": record.verdict.value,
                "reported_verdict": record.reported_verdict.value if record.reported_verdict else None,
                "timestamp": record.timestamp.isoformat(),
                "summary": context.artifact_for(record).summary,
                "notes": record.notes,
                "findings": list(context.findings_for(record)),
            }
            for record in context.records
        ],
    }
