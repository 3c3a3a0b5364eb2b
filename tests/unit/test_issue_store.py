"""Tests for the Issue Store."""

import asyncio
import dataclasses
import json

import pytest

from issue_pipeline.engine.issue_store import INDEX_FILE, STAGING_PREFIX, IssueStore
from issue_pipeline.enums import IssueStatus, Phase, Verdict
from issue_pipeline.exceptions import (
    IssueClosedError,
    IssueExistsError,
    IssueNotFoundError,
    StorageError,
)
from issue_pipeline.models.domain import Artifact


async def _finalizable(store: IssueStore, issue_id: str = "bug-1") -> None:
    await store.create(issue_id, title="Bug one")
    await store.append(issue_id, Phase.RESEARCH, 1, Artifact(summary="found"), Verdict.CONTINUE)
    await store.append(
        issue_id, Phase.VALIDATE, 1, Artifact(summary="not a bug"), Verdict.REJECT, next_phase=Phase.FINALIZE
    )


@pytest.mark.asyncio
async def test_store_initialization(store_root):
    """Both partitions are created."""
    store = IssueStore(store_root)
    assert store.active_dir.is_dir()
    assert store.archive_dir.is_dir()


@pytest.mark.asyncio
async def test_create_issue(store):
    issue = await store.create("fix-timeout-bug", title="Fix timeout bug", description="Requests hang")

    assert issue.status == IssueStatus.OPEN
    assert issue.current_phase == Phase.RESEARCH
    assert issue.retry_count == 0
    assert issue.records == ()
    assert await store.exists("fix-timeout-bug")


@pytest.mark.asyncio
async def test_create_duplicate_raises(store):
    await store.create("bug-1")
    with pytest.raises(IssueExistsError):
        await store.create("bug-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("issue_id", ["", "../escape", "a/b", ".hidden"])
async def test_create_rejects_invalid_ids(store, issue_id):
    with pytest.raises(StorageError):
        await store.create(issue_id)


@pytest.mark.asyncio
async def test_read_missing_issue(store):
    with pytest.raises(IssueNotFoundError):
        await store.read("nope")


@pytest.mark.asyncio
async def test_append_and_read(store):
    """Appended records come back in order with their artifacts."""
    await store.create("bug-1")
    first = await store.append(
        "bug-1", Phase.RESEARCH, 1, Artifact(summary="root cause", content="details"), Verdict.CONTINUE,
        next_phase=Phase.VALIDATE,
    )
    second = await store.append("bug-1", Phase.VALIDATE, 1, Artifact(summary="valid"), Verdict.CONTINUE)

    assert first.created and second.created
    assert first.record.artifact_ref == "01-research-1.json"
    assert second.record.sequence == 2

    context = await store.read("bug-1")
    assert [r.phase for r in context.records] == [Phase.RESEARCH, Phase.VALIDATE]
    assert context.artifact_for(context.records[0]).content == "details"
    assert context.issue.status == IssueStatus.IN_PROGRESS
    assert context.issue.current_phase == Phase.VALIDATE


@pytest.mark.asyncio
async def test_append_is_idempotent(store):
    """A second append with the same (phase, attempt) writes nothing."""
    await store.create("bug-1")
    first = await store.append("bug-1", Phase.RESEARCH, 1, Artifact(summary="first"), Verdict.CONTINUE)
    again = await store.append("bug-1", Phase.RESEARCH, 1, Artifact(summary="second"), Verdict.ESCALATE)

    assert again.created is False
    assert again.record == first.record

    context = await store.read("bug-1")
    assert len(context.records) == 1
    assert context.artifact_for(context.records[0]).summary == "first"
    assert context.records[0].verdict == Verdict.CONTINUE


@pytest.mark.asyncio
async def test_concurrent_appends_same_key(store):
    """Concurrent appends for one key persist exactly one record."""
    await store.create("bug-1")
    results = await asyncio.gather(
        *(
            store.append("bug-1", Phase.RESEARCH, 1, Artifact(summary=f"run {n}"), Verdict.CONTINUE)
            for n in range(5)
        )
    )

    assert sum(1 for r in results if r.created) == 1
    context = await store.read("bug-1")
    assert len(context.records) == 1


@pytest.mark.asyncio
async def test_findings_are_persisted_separately(store):
    await store.create("bug-1")
    result = await store.append(
        "bug-1", Phase.RESEARCH, 1, Artifact(summary="x"), Verdict.CONTINUE, findings=["unrelated flaky test"]
    )

    assert result.record.findings_ref == "01-research-1.findings.json"
    context = await store.read("bug-1")
    assert context.findings_for(context.records[0]) == ("unrelated flaky test",)


@pytest.mark.asyncio
async def test_context_snapshot_is_read_only(store):
    await store.create("bug-1")
    await store.append(
        "bug-1", Phase.RESEARCH, 1, Artifact(summary="x"), Verdict.CONTINUE, findings=["unrelated flaky test"]
    )
    context = await store.read("bug-1")

    with pytest.raises(dataclasses.FrozenInstanceError):
        context.issue.status = IssueStatus.RESOLVED
    with pytest.raises(TypeError):
        del context.artifacts[context.records[0].artifact_ref]
    with pytest.raises(TypeError):
        context.findings["01-research-1.findings.json"] = ()
    assert isinstance(context.issue.records, tuple)


@pytest.mark.asyncio
async def test_unreferenced_artifact_is_invisible(store):
    """An artifact written without its index update is not part of the issue."""
    await store.create("bug-1")
    directory = store.active_dir / "bug-1"
    (directory / "01-research-1.json").write_text(json.dumps({"summary": "orphan"}))

    context = await store.read("bug-1")
    assert context.records == ()

    result = await store.append("bug-1", Phase.RESEARCH, 1, Artifact(summary="real"), Verdict.CONTINUE)
    assert result.created
    context = await store.read("bug-1")
    assert context.artifact_for(context.records[0]).summary == "real"


@pytest.mark.asyncio
async def test_corrupt_index_raises_storage_error(store):
    await store.create("bug-1")
    (store.active_dir / "bug-1" / INDEX_FILE).write_text("{not json")

    with pytest.raises(StorageError):
        await store.read("bug-1")


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    await store.create("bug-1")

    with pytest.raises(RuntimeError):
        async with store.transaction("bug-1") as index:
            index["retry_count"] = 2
            raise RuntimeError("boom")

    context = await store.read("bug-1")
    assert context.issue.retry_count == 0


@pytest.mark.asyncio
async def test_set_status_and_record_error(store):
    await store.create("bug-1")
    await store.record_error("bug-1", StorageError("disk full"), step="append")
    await store.set_status("bug-1", IssueStatus.STALLED)

    context = await store.read("bug-1")
    assert context.issue.status == IssueStatus.STALLED
    assert context.issue.last_error["type"] == "StorageError"
    assert context.issue.last_error["message"] == "disk full"
    assert context.issue.last_error["step"] == "append"


@pytest.mark.asyncio
async def test_append_resumes_stalled_issue(store):
    await store.create("bug-1")
    await store.set_status("bug-1", IssueStatus.STALLED)
    await store.append("bug-1", Phase.RESEARCH, 1, Artifact(summary="x"), Verdict.CONTINUE)

    context = await store.read("bug-1")
    assert context.issue.status == IssueStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_archive_moves_issue(store):
    await _finalizable(store)

    issue = await store.archive(
        "bug-1",
        status=IssueStatus.REJECTED,
        summary=Artifact(summary="rejected: Bug one"),
        finalize_verdict=Verdict.REJECT,
    )

    assert issue.archived
    assert issue.status == IssueStatus.REJECTED
    assert issue.current_phase == Phase.REJECTED
    assert not (store.active_dir / "bug-1").exists()
    assert (store.archive_dir / "bug-1" / "summary.json").exists()

    context = await store.read("bug-1")
    assert context.issue.archived
    assert [r.phase for r in context.records] == [Phase.RESEARCH, Phase.VALIDATE, Phase.FINALIZE]
    assert context.summary.summary == "rejected: Bug one"


@pytest.mark.asyncio
async def test_archived_issue_is_read_only(store):
    await _finalizable(store)
    await store.archive(
        "bug-1", status=IssueStatus.REJECTED, summary=Artifact(summary="s"), finalize_verdict=Verdict.REJECT
    )

    with pytest.raises(IssueClosedError):
        await store.append("bug-1", Phase.PROPOSE, 1, Artifact(summary="late"), Verdict.CONTINUE)
    with pytest.raises(IssueClosedError):
        await store.set_status("bug-1", IssueStatus.OPEN)
    with pytest.raises(IssueExistsError):
        await store.create("bug-1")


@pytest.mark.asyncio
async def test_archive_crash_between_snapshot_and_status(store, monkeypatch):
    """A crash after the snapshot leaves the issue exactly as it was."""
    await _finalizable(store)
    before = (store.active_dir / "bug-1" / INDEX_FILE).read_text()

    async def crash(*args, **kwargs):
        raise StorageError("crash during status update")

    monkeypatch.setattr(store, "_mark_final", crash)

    with pytest.raises(StorageError):
        await store.archive(
            "bug-1", status=IssueStatus.REJECTED, summary=Artifact(summary="s"), finalize_verdict=Verdict.REJECT
        )

    assert (store.active_dir / "bug-1" / INDEX_FILE).read_text() == before
    assert not (store.archive_dir / "bug-1").exists()
    assert not (store.archive_dir / f"{STAGING_PREFIX}bug-1").exists()

    context = await store.read("bug-1")
    assert not context.issue.archived
    assert context.issue.current_phase == Phase.FINALIZE
    assert context.summary is None


@pytest.mark.asyncio
async def test_archive_failure_in_before_publish(store):
    await _finalizable(store)

    async def failing_commit():
        raise RuntimeError("commit failed")

    with pytest.raises(RuntimeError):
        await store.archive(
            "bug-1",
            status=IssueStatus.REJECTED,
            summary=Artifact(summary="s"),
            finalize_verdict=Verdict.REJECT,
            before_publish=failing_commit,
        )

    context = await store.read("bug-1")
    assert not context.issue.archived
    assert list(store.archive_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_stale_staging_directory_is_replaced(store):
    await _finalizable(store)
    stale = store.archive_dir / f"{STAGING_PREFIX}bug-1"
    stale.mkdir()
    (stale / "leftover.json").write_text("{}")

    await store.archive(
        "bug-1", status=IssueStatus.REJECTED, summary=Artifact(summary="s"), finalize_verdict=Verdict.REJECT
    )

    assert not stale.exists()
    assert not (store.archive_dir / "bug-1" / "leftover.json").exists()


@pytest.mark.asyncio
async def test_stale_active_copy_is_cleaned_up(store):
    """An active copy left behind by an interrupted publish is removed on access."""
    await _finalizable(store)
    await store.archive(
        "bug-1", status=IssueStatus.REJECTED, summary=Artifact(summary="s"), finalize_verdict=Verdict.REJECT
    )
    leftover = store.active_dir / "bug-1"
    leftover.mkdir()
    (leftover / INDEX_FILE).write_text("{}")

    context = await store.read("bug-1")

    assert context.issue.archived
    assert not leftover.exists()


@pytest.mark.asyncio
async def test_list_with_status_filter(store):
    await store.create("open-1")
    await _finalizable(store, "rejected-1")
    await store.archive(
        "rejected-1", status=IssueStatus.REJECTED, summary=Artifact(summary="s"), finalize_verdict=Verdict.REJECT
    )
    (store.archive_dir / f"{STAGING_PREFIX}ghost").mkdir()

    all_issues = await store.list()
    assert [i.id for i in all_issues] == ["open-1", "rejected-1"]

    rejected = await store.list(IssueStatus.REJECTED)
    assert [i.id for i in rejected] == ["rejected-1"]
    assert rejected[0].archived

    active = await store.list([IssueStatus.OPEN, IssueStatus.IN_PROGRESS])
    assert [i.id for i in active] == ["open-1"]
