"""Tests for the pipeline orchestrator and trigger handling."""

import asyncio

import pytest

from issue_pipeline.engine.orchestrator import (
    PipelineOrchestrator,
    describe_issue,
    handle_trigger,
    load_problem,
)
from issue_pipeline.enums import WORKER_PHASES, IssueStatus, Phase, Verdict
from issue_pipeline.exceptions import (
    IssueClosedError,
    IssueExistsError,
    IssueNotFoundError,
    IssueRunningError,
    WorkflowError,
)
from issue_pipeline.models.domain import Artifact, WorkerResult
from issue_pipeline.workers.base import PhaseWorker
from issue_pipeline.workers.external_agent import ExternalAgentWorker


class InFlightWorker(PhaseWorker):
    """Worker that tracks how many of its invocations overlap."""

    def __init__(self) -> None:
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, context, params):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return WorkerResult(artifact=Artifact(summary=params.phase.value), verdict=Verdict.CONTINUE)


@pytest.fixture
def orchestrator_factory(settings, store, make_worker):
    def factory(script=None):
        worker = make_worker(script)
        return PipelineOrchestrator(settings, store, dict.fromkeys(WORKER_PHASES, worker)), worker

    return factory


def test_every_worker_phase_needs_a_worker(settings, store, make_worker):
    with pytest.raises(ValueError, match="verify"):
        PipelineOrchestrator(settings, store, {phase: make_worker() for phase in WORKER_PHASES[:-1]})


def test_from_settings_wires_external_agent(settings):
    orchestrator = PipelineOrchestrator.from_settings(settings)

    agents = {id(worker) for worker in orchestrator.workers.values()}
    assert len(agents) == 1
    worker = orchestrator.workers[Phase.RESEARCH]
    assert isinstance(worker, ExternalAgentWorker)
    assert worker.command == ["fake-agent"]
    assert orchestrator.finalizer.committer is None
    assert orchestrator.finalizer.issues_dir == settings.issues_dir
    assert orchestrator.store.root == settings.store_dir


@pytest.mark.asyncio
async def test_start_runs_to_resolution(orchestrator_factory):
    orchestrator, worker = orchestrator_factory()

    issue = await orchestrator.start("fix-timeout-bug", title="Fix timeout bug")

    assert issue.status == IssueStatus.RESOLVED
    assert [call.phase for call in worker.calls] == list(WORKER_PHASES)


@pytest.mark.asyncio
async def test_start_existing_issue_raises(orchestrator_factory):
    orchestrator, _ = orchestrator_factory()
    await orchestrator.start("bug-1")

    with pytest.raises(IssueExistsError):
        await orchestrator.start("bug-1")


@pytest.mark.asyncio
async def test_resume_terminal_issue_raises(orchestrator_factory):
    orchestrator, _ = orchestrator_factory({Phase.RESEARCH: [Verdict.ESCALATE]})
    await orchestrator.start("bug-1")

    with pytest.raises(IssueClosedError):
        await orchestrator.resume("bug-1")


@pytest.mark.asyncio
async def test_start_or_resume_continues_existing_issue(orchestrator_factory, store):
    orchestrator, worker = orchestrator_factory()
    await store.create("bug-1", title="Bug one")

    issue = await orchestrator.start_or_resume("bug-1", title="ignored")

    assert issue.status == IssueStatus.RESOLVED
    assert issue.title == "Bug one"


@pytest.mark.asyncio
async def test_list_issues_by_status(orchestrator_factory, store):
    orchestrator, _ = orchestrator_factory({Phase.VALIDATE: [Verdict.REJECT]})
    await orchestrator.start("rejected-1")
    await store.create("open-1")

    assert [i.id for i in await orchestrator.list_issues()] == ["open-1", "rejected-1"]
    assert [i.id for i in await orchestrator.list_issues([IssueStatus.OPEN])] == ["open-1"]


@pytest.mark.asyncio
async def test_run_many_collects_results_and_errors(orchestrator_factory):
    orchestrator, _ = orchestrator_factory({Phase.RESEARCH: [Verdict.CONTINUE, Verdict.ESCALATE]})
    await orchestrator.start("done-1")

    results = await orchestrator.run_many(
        [("done-1", "", ""), ("bug-1", "Bug one", ""), ("bug-2", "Bug two", "")]
    )

    assert isinstance(results["done-1"], IssueClosedError)
    statuses = sorted(results[i].status.value for i in ("bug-1", "bug-2"))
    assert statuses == ["escalated", "resolved"]


@pytest.mark.asyncio
async def test_run_many_runs_repeated_ids_once(orchestrator_factory):
    orchestrator, worker = orchestrator_factory()

    results = await orchestrator.run_many([("bug-1", "Bug one", ""), ("bug-1", "Bug one again", "")])

    assert list(results) == ["bug-1"]
    assert results["bug-1"].title == "Bug one"
    assert worker.invocations(Phase.RESEARCH) == 1


@pytest.mark.asyncio
async def test_concurrent_resumes_of_one_issue(settings, store):
    worker = InFlightWorker()
    orchestrator = PipelineOrchestrator(settings, store, dict.fromkeys(WORKER_PHASES, worker))
    await store.create("bug-1")

    first, second = await asyncio.gather(
        orchestrator.resume("bug-1"), orchestrator.resume("bug-1"), return_exceptions=True
    )

    assert first.status == IssueStatus.RESOLVED
    assert isinstance(second, IssueRunningError)
    assert worker.max_in_flight == 1
    assert not orchestrator.is_running("bug-1")


@pytest.mark.asyncio
async def test_claim_is_released_after_failure(orchestrator_factory):
    orchestrator, _ = orchestrator_factory()

    with pytest.raises(IssueNotFoundError):
        await orchestrator.resume("bug-1")

    assert not orchestrator.is_running("bug-1")
    with orchestrator.claim("bug-1"):
        with pytest.raises(IssueRunningError):
            await orchestrator.start("bug-1")


def test_discover_unsolved(orchestrator_factory, repo_dir):
    orchestrator, _ = orchestrator_factory()
    issues = repo_dir / "issues"
    (issues / "crash-on-start").mkdir()
    (issues / "crash-on-start" / "problem.md").write_text("Intro line\n\n## Crash on start\n\nIt crashes.\n")
    (issues / "already-solved").mkdir()
    (issues / "already-solved" / "problem.md").write_text("# Solved\n")
    (issues / "already-solved" / "solution.md").write_text("done\n")
    (issues / "no-problem").mkdir()
    (issues / "README.md").write_text("not an issue directory\n")

    unsolved = orchestrator.discover_unsolved()

    assert unsolved == [("crash-on-start", "Crash on start", "Intro line\n\n## Crash on start\n\nIt crashes.\n")]


def test_discover_unsolved_without_issues_directory(orchestrator_factory, repo_dir):
    orchestrator, _ = orchestrator_factory()
    (repo_dir / "issues").rmdir()

    assert orchestrator.discover_unsolved() == []


@pytest.mark.asyncio
async def test_solve_unsolved(orchestrator_factory, repo_dir):
    orchestrator, _ = orchestrator_factory()
    (repo_dir / "issues" / "bug-1").mkdir()
    (repo_dir / "issues" / "bug-1" / "problem.md").write_text("# Bug one\n")

    results = await orchestrator.solve_unsolved()

    assert results["bug-1"].status == IssueStatus.RESOLVED
    assert results["bug-1"].title == "Bug one"


def test_load_problem(tmp_path):
    path = tmp_path / "problem.md"
    path.write_text("# Fix timeout bug\n\nDetails.\n")

    assert load_problem(path) == ("Fix timeout bug", "# Fix timeout bug\n\nDetails.\n")


class TestHandleTrigger:
    @pytest.mark.asyncio
    async def test_start_and_resume(self, orchestrator_factory):
        orchestrator, _ = orchestrator_factory({Phase.VERIFY: [ValueError("flaky")] * 3})

        issue = await handle_trigger({"command": "start", "issue_id": "bug-1", "title": "Bug one"}, orchestrator)
        assert issue.status == IssueStatus.ESCALATED
        assert issue.title == "Bug one"

        with pytest.raises(IssueClosedError):
            await handle_trigger({"command": "resume", "issue_id": "bug-1"}, orchestrator)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command",
        [
            {"command": "delete", "issue_id": "bug-1"},
            {"issue_id": "bug-1"},
            {"command": "start"},
            {"command": "start", "issue_id": ""},
        ],
    )
    async def test_malformed_commands(self, orchestrator_factory, command):
        orchestrator, worker = orchestrator_factory()

        with pytest.raises(WorkflowError):
            await handle_trigger(command, orchestrator)
        assert worker.calls == []


@pytest.mark.asyncio
async def test_describe_issue(orchestrator_factory):
    orchestrator, _ = orchestrator_factory(
        {Phase.VERIFY: [Verdict.RETRY, Verdict.TERMINAL_SUCCESS]},
    )
    await orchestrator.start("bug-1", title="Bug one")

    report = describe_issue(await orchestrator.status("bug-1"))

    assert report["issue_id"] == "bug-1"
    assert report["title"] == "Bug one"
    assert report["status"] == "resolved"
    assert report["archived"] is True
    assert report["retry_count"] == 2
    assert len(report["records"]) == 9
    assert report["records"][5]["phase"] == "verify"
    assert report["records"][5]["verdict"] == "retry"
    assert report["records"][5]["summary"] == "verify attempt 1"
    assert report["records"][-1]["phase"] == "finalize"
