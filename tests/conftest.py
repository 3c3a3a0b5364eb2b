"""Pytest configuration and shared fixtures."""

from collections.abc import Callable
from pathlib import Path

import pytest

from issue_pipeline.config.settings import PipelineSettings, RetryConfig
from issue_pipeline.engine.controller import PhaseController
from issue_pipeline.engine.finalization import Finalizer
from issue_pipeline.engine.issue_store import IssueStore
from issue_pipeline.engine.retry_manager import RetryManager
from issue_pipeline.enums import WORKER_PHASES, Phase, Verdict
from issue_pipeline.models.domain import Artifact, PhaseParameters, WorkerResult, WorkflowContext
from issue_pipeline.workers.base import PhaseWorker

ScriptStep = Verdict | WorkerResult | BaseException


class ScriptedWorker(PhaseWorker):
    """Worker that replays a per-phase script of verdicts, results or errors.

    Phases without a remaining script step return CONTINUE. IMPLEMENT
    artifacts list ``src/<issue_id>.py`` as the changed file.
    """

    name = "scripted"

    def __init__(self, script: dict[Phase, list[ScriptStep]] | None = None) -> None:
        self.script = {phase: list(steps) for phase, steps in (script or {}).items()}
        self.calls: list[PhaseParameters] = []
        self.contexts: list[WorkflowContext] = []

    async def invoke(self, context: WorkflowContext, params: PhaseParameters) -> WorkerResult:
        self.calls.append(params)
        self.contexts.append(context)
        steps = self.script.get(params.phase)
        step: ScriptStep = steps.pop(0) if steps else Verdict.CONTINUE

        if isinstance(step, BaseException):
            raise step
        if isinstance(step, WorkerResult):
            return step

        files = (f"src/{params.issue_id}.py",) if params.phase == Phase.IMPLEMENT else ()
        return WorkerResult(
            artifact=Artifact(summary=f"{params.phase.value} attempt {params.attempt}", files=files),
            verdict=step,
        )

    def invocations(self, phase: Phase) -> int:
        return sum(1 for params in self.calls if params.phase == phase)


@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    """Temporary Issue Store root."""
    return tmp_path / "store"


@pytest.fixture
def store(store_root: Path) -> IssueStore:
    """IssueStore instance with temp directory."""
    return IssueStore(store_root)


@pytest.fixture
def retry_config() -> RetryConfig:
    """Retry bounds with backoff disabled so tests never sleep."""
    return RetryConfig(
        max_implement_attempts=3,
        worker_max_attempts=3,
        backoff_factor=0.0,
        backoff_max=0.0,
        storage_stall_after=3,
    )


@pytest.fixture
def make_worker() -> Callable[..., ScriptedWorker]:
    """Factory for scripted workers."""

    def factory(script: dict[Phase, list[ScriptStep]] | None = None) -> ScriptedWorker:
        return ScriptedWorker(script)

    return factory


@pytest.fixture
def make_controller(store: IssueStore, retry_config: RetryConfig) -> Callable[..., PhaseController]:
    """Factory for controllers using one worker for every phase."""

    def factory(
        issue_id: str,
        worker: PhaseWorker,
        *,
        finalizer: Finalizer | None = None,
        timeout: float | None = None,
        retry: RetryConfig | None = None,
        retry_manager: RetryManager | None = None,
    ) -> PhaseController:
        return PhaseController(
            issue_id,
            store,
            dict.fromkeys(WORKER_PHASES, worker),
            finalizer=finalizer or Finalizer(store),
            retry=retry or retry_config,
            retry_manager=retry_manager,
            timeout=timeout,
        )

    return factory


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    """Repository working tree with an issues directory."""
    repo = tmp_path / "repo"
    (repo / "issues").mkdir(parents=True)
    return repo


@pytest.fixture
def settings(store_root: Path, repo_dir: Path) -> PipelineSettings:
    """Pipeline settings pointing at temp directories, commits disabled."""
    return PipelineSettings(
        store={"root": str(store_root)},
        retry={"backoff_factor": 0.0, "backoff_max": 0.0, "storage_stall_after": 3},
        worker={"command": ["fake-agent"], "timeout": None},
        repository={"path": str(repo_dir), "issues_directory": "issues", "commit_enabled": False},
        workflow={"max_concurrent_issues": 2},
    )
