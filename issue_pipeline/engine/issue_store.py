"""
Durable per-issue artifact storage with atomic appends.

This module provides the IssueStore class which persists every issue as its
own namespace (a directory) holding an index document plus one immutable
artifact document per Phase Record. The store ensures data integrity
through:

- Atomic file writes using temporary files and rename operations
- Per-issue locking so appends to one issue are serialized
- Idempotent appends keyed by (issue_id, phase, attempt)
- Staged archival that publishes the finalized issue with a single rename

Layout:
    Each issue namespace looks like this::

        <root>/active/fix-timeout-bug/
            issue.json                      index (status, records, ...)
            01-research-1.json              artifact of record 1
            02-validate-1.json
            02-validate-1.findings.json     informational findings
            ...
        <root>/archive/fix-timeout-bug/     same files + summary.json

    The index is written last. A document the index does not reference is
    invisible to readers, so a crash mid-append never exposes a partial
    record.

Concurrency Model:
    Each issue has its own asyncio lock. Different issues can be read and
    written concurrently; a single issue is accessed serially.

Example:
    >>> store = IssueStore(".pipeline/issues")
    >>> await store.create("fix-timeout-bug", title="Fix timeout bug")
    >>> result = await store.append(
    ...     "fix-timeout-bug", Phase.RESEARCH, 1,
    ...     Artifact(summary="Found it"), Verdict.CONTINUE,
    ... )
    >>> context = await store.read("fix-timeout-bug")
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

import aiofiles
import structlog

from issue_pipeline.engine.types import (
    ArtifactDocument,
    ErrorState,
    FindingsDocument,
    IssueIndex,
    PhaseRecordState,
)
from issue_pipeline.enums import IssueStatus, Phase, Verdict
from issue_pipeline.exceptions import (
    IssueClosedError,
    IssueExistsError,
    IssueNotFoundError,
    StorageError,
    describe_error,
)
from issue_pipeline.models.domain import AppendResult, Artifact, Issue, PhaseRecord, WorkflowContext

log = structlog.get_logger(__name__)

INDEX_FILE = "issue.json"
SUMMARY_FILE = "summary.json"
STAGING_PREFIX = ".staging-"

ISSUE_ID_REGEX = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"
_ISSUE_ID_PATTERN = re.compile(ISSUE_ID_REGEX)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class IssueStore:
    """Keyed, durable storage for issue records and artifacts.

    Attributes:
        root: Store root directory.
        active_dir: Partition holding issues that are still being worked.
        archive_dir: Partition holding finalized, read-only issues.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the store, creating both partitions if needed.

        Args:
            root: Store root directory. Created with parents if missing.
        """
        self.root = Path(root)
        self.active_dir = self.root / "active"
        self.archive_dir = self.root / "archive"
        self.active_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        # Per-issue locks to prevent concurrent modification of the same issue
        self._locks: dict[str, asyncio.Lock] = {}
        # Meta-lock for lock creation
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, issue_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if issue_id not in self._locks:
                self._locks[issue_id] = asyncio.Lock()
            return self._locks[issue_id]

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _active_path(self, issue_id: str) -> Path:
        return self.active_dir / issue_id

    def _archive_path(self, issue_id: str) -> Path:
        return self.archive_dir / issue_id

    def _staging_path(self, issue_id: str) -> Path:
        return self.archive_dir / f"{STAGING_PREFIX}{issue_id}"

    @staticmethod
    def _validate_issue_id(issue_id: str) -> None:
        if not _ISSUE_ID_PATTERN.match(issue_id):
            raise StorageError(f"Invalid issue id {issue_id!r}")

    async def _locate(self, issue_id: str) -> tuple[Path, bool]:
        """Find the namespace for an issue.

        Returns the directory and whether it is in the archive. If a
        previous archival published the issue but crashed before removing
        the active copy, the stale active copy is removed here.

        Caller must hold the issue lock.
        """
        self._validate_issue_id(issue_id)
        archived = self._archive_path(issue_id)
        active = self._active_path(issue_id)
        if (archived / INDEX_FILE).exists():
            if active.exists():
                await asyncio.to_thread(shutil.rmtree, active, True)
                log.warning("stale_active_copy_removed", issue_id=issue_id)
            return archived, True
        if (active / INDEX_FILE).exists():
            return active, False
        raise IssueNotFoundError("Issue not found", issue_id=issue_id)

    # ------------------------------------------------------------------
    # Low-level I/O
    # ------------------------------------------------------------------

    async def _read_json(self, path: Path) -> Any:
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            return json.loads(content)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path.name}: {e}") from e

    async def _write_json(self, path: Path, document: Any) -> None:
        """Write a document atomically via a temporary file and rename.

        The temporary file lives next to the target so the rename stays on
        one filesystem, where it is atomic on POSIX.
        """
        tmp_path = path.with_suffix(".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(document, indent=2))
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Cannot write {path.name}: {e}") from e

    async def _read_index(self, directory: Path) -> IssueIndex:
        return cast(IssueIndex, await self._read_json(directory / INDEX_FILE))

    async def _write_index(self, directory: Path, index: IssueIndex) -> None:
        index["updated_at"] = _now()
        await self._write_json(directory / INDEX_FILE, index)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def exists(self, issue_id: str) -> bool:
        """Check if an issue exists in either partition."""
        if not _ISSUE_ID_PATTERN.match(issue_id):
            return False
        return (self._active_path(issue_id) / INDEX_FILE).exists() or (
            self._archive_path(issue_id) / INDEX_FILE
        ).exists()

    async def create(self, issue_id: str, title: str = "", description: str = "") -> Issue:
        """Create a new issue namespace entering RESEARCH.

        Args:
            issue_id: Slug identifying the issue. Letters, digits, ``.``,
                ``_`` and ``-``.
            title: Short human-readable title.
            description: Problem statement handed to the workers.

        Returns:
            The new Issue with status OPEN.

        Raises:
            IssueExistsError: If the id is already active or archived.
            StorageError: If the id is invalid or the namespace cannot be written.
        """
        self._validate_issue_id(issue_id)
        lock = await self._get_lock(issue_id)
        async with lock:
            if await self.exists(issue_id):
                raise IssueExistsError("Issue already exists", issue_id=issue_id)

            now = _now()
            index: IssueIndex = {
                "issue_id": issue_id,
                "status": IssueStatus.OPEN.value,
                "title": title,
                "description": description,
                "created_at": now,
                "updated_at": now,
                "current_phase": Phase.RESEARCH.value,
                "retry_count": 0,
                "last_error": None,
                "records": [],
            }
            directory = self._active_path(issue_id)
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create namespace: {e}", issue_id=issue_id) from e
            await self._write_json(directory / INDEX_FILE, index)

        log.info("issue_created", issue_id=issue_id)
        return Issue.from_index(index)

    async def append(
        self,
        issue_id: str,
        phase: Phase,
        attempt: int,
        artifact: Artifact,
        verdict: Verdict,
        *,
        notes: str | None = None,
        findings: Iterable[str] = (),
        reported_verdict: Verdict | None = None,
        next_phase: Phase | None = None,
    ) -> AppendResult:
        """Persist one Phase Record and its artifact as a single unit.

        ``(issue_id, phase, attempt)`` is the idempotency key: if a record
        with that key already exists nothing is written and the existing
        record is returned with ``created=False``.

        The artifact (and findings document, if any) are written first; the
        index that references them is written last with an atomic rename.

        Args:
            issue_id: Issue to append to.
            phase: Phase the record belongs to.
            attempt: 1-based attempt number for the phase.
            artifact: Output of the phase.
            verdict: Verdict to persist (after any controller override).
            notes: Free-form notes (worker notes, escalation notice, error).
            findings: Non-blocking supplementary findings.
            reported_verdict: Original worker verdict when overridden.
            next_phase: Controller state after this record, stored as the
                issue's ``current_phase`` in the same write.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            IssueClosedError: If the issue is already archived.
            StorageError: If any document cannot be written.
        """
        lock = await self._get_lock(issue_id)
        async with lock:
            directory, archived = await self._locate(issue_id)
            index = await self._read_index(directory)
            if archived:
                raise IssueClosedError(issue_id, index["status"])

            for state in index["records"]:
                if state["phase"] == phase.value and state["attempt"] == attempt:
                    log.info(
                        "duplicate_append_ignored",
                        issue_id=issue_id,
                        phase=phase.value,
                        attempt=attempt,
                    )
                    return AppendResult(record=PhaseRecord.from_state(state), created=False)

            sequence = len(index["records"]) + 1
            stem = f"{sequence:02d}-{phase.value}-{attempt}"
            artifact_ref = f"{stem}.json"
            await self._write_json(directory / artifact_ref, artifact.to_document(issue_id, phase, attempt))

            findings_list = list(findings)
            findings_ref = None
            if findings_list:
                findings_ref = f"{stem}.findings.json"
                findings_doc: FindingsDocument = {
                    "issue_id": issue_id,
                    "phase": phase.value,
                    "attempt": attempt,
                    "findings": findings_list,
                }
                await self._write_json(directory / findings_ref, findings_doc)

            record = PhaseRecord(
                sequence=sequence,
                phase=phase,
                attempt=attempt,
                artifact_ref=artifact_ref,
                verdict=verdict,
                timestamp=datetime.now(UTC),
                notes=notes,
                findings_ref=findings_ref,
                reported_verdict=reported_verdict,
            )
            index["records"].append(record.to_state())
            if index["status"] in (IssueStatus.OPEN.value, IssueStatus.STALLED.value):
                index["status"] = IssueStatus.IN_PROGRESS.value
            if next_phase is not None:
                index["current_phase"] = next_phase.value
            await self._write_index(directory, index)

        log.info(
            "phase_record_appended",
            issue_id=issue_id,
            phase=phase.value,
            attempt=attempt,
            verdict=verdict.value,
            sequence=sequence,
        )
        return AppendResult(record=record, created=True)

    async def read(self, issue_id: str) -> WorkflowContext:
        """Read a consistent snapshot of an issue.

        Archived issues stay readable; the archive copy is returned for them.

        Raises:
            IssueNotFoundError: If the issue does not exist.
            StorageError: If a referenced document cannot be read.
        """
        lock = await self._get_lock(issue_id)
        async with lock:
            directory, archived = await self._locate(issue_id)
            index = await self._read_index(directory)
            issue = Issue.from_index(index, archived=archived)

            artifacts: dict[str, Artifact] = {}
            findings: dict[str, tuple[str, ...]] = {}
            for record in issue.records:
                doc = cast(ArtifactDocument, await self._read_json(directory / record.artifact_ref))
                artifacts[record.artifact_ref] = Artifact.from_document(doc)
                if record.findings_ref:
                    findings_doc = cast(FindingsDocument, await self._read_json(directory / record.findings_ref))
                    findings[record.findings_ref] = tuple(findings_doc.get("findings", []))

            summary = None
            summary_ref = index.get("summary_ref")
            if summary_ref:
                summary = Artifact.from_document(
                    cast(ArtifactDocument, await self._read_json(directory / summary_ref))
                )

        return WorkflowContext(
            issue=issue,
            records=issue.records,
            artifacts=artifacts,
            findings=findings,
            summary=summary,
        )

    async def list(self, status_filter: IssueStatus | Iterable[IssueStatus] | None = None) -> list[Issue]:
        """List issues from both partitions, optionally filtered by status.

        Args:
            status_filter: A status or collection of statuses to keep.
                None returns every issue.

        Returns:
            Issues ordered by creation time.
        """
        if isinstance(status_filter, IssueStatus):
            wanted: set[IssueStatus] | None = {status_filter}
        elif status_filter is None:
            wanted = None
        else:
            wanted = set(status_filter)

        seen: set[str] = set()
        issues: list[Issue] = []
        # Archive first so a half-cleaned active copy is shadowed
        for partition, archived in ((self.archive_dir, True), (self.active_dir, False)):
            for index_path in sorted(partition.glob(f"*/{INDEX_FILE}")):
                issue_id = index_path.parent.name
                if issue_id.startswith(STAGING_PREFIX) or issue_id in seen:
                    continue
                index = await self._read_index(index_path.parent)
                issue = Issue.from_index(index, archived=archived)
                seen.add(issue_id)
                if wanted is None or issue.status in wanted:
                    issues.append(issue)

        issues.sort(key=lambda issue: issue.created_at)
        return issues

    @asynccontextmanager
    async def transaction(self, issue_id: str) -> AsyncIterator[IssueIndex]:
        """Context manager for atomic updates of an active issue's index.

        The index is loaded on entry and saved on successful exit. If an
        exception occurs inside the context nothing is written.

        Raises:
            IssueClosedError: If the issue is archived.
        """
        lock = await self._get_lock(issue_id)
        async with lock:
            directory, archived = await self._locate(issue_id)
            index = await self._read_index(directory)
            if archived:
                raise IssueClosedError(issue_id, index["status"])
            try:
                yield index
                await self._write_index(directory, index)
            except Exception:
                log.error("issue_transaction_failed", issue_id=issue_id)
                raise

    async def set_status(
        self,
        issue_id: str,
        status: IssueStatus,
        *,
        current_phase: Phase | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Update an active issue's status (and optionally its error)."""
        async with self.transaction(issue_id) as index:
            index["status"] = status.value
            if current_phase is not None:
                index["current_phase"] = current_phase.value
            if error is not None:
                index["last_error"] = {**describe_error(error), "recorded_at": _now()}

        log.info("issue_status_updated", issue_id=issue_id, status=status.value)

    async def record_error(self, issue_id: str, error: BaseException, **context: str) -> None:
        """Record the last error on an active issue without changing its status."""
        error_state: dict[str, Any] = {**describe_error(error), **context, "recorded_at": _now()}
        async with self.transaction(issue_id) as index:
            index["last_error"] = cast(ErrorState, error_state)

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    async def archive(
        self,
        issue_id: str,
        *,
        status: IssueStatus,
        summary: Artifact,
        finalize_verdict: Verdict,
        before_publish: Callable[[], Awaitable[None]] | None = None,
    ) -> Issue:
        """Move an issue from the active to the archive partition.

        The move is staged so that it is all-or-nothing:

        1. Snapshot: the active namespace is copied to a staging directory.
        2. Summary: the summary artifact is written into the staging copy.
        3. Status: the FINALIZE record and terminal status are written into
           the staging index.
        4. ``before_publish`` runs (the finalizer commits here).
        5. Publish: the staging directory is renamed into place and the
           active copy is removed.

        Until step 5 the active copy is untouched. A failure in any step
        removes the staging directory and re-raises, leaving the issue
        exactly as it was. A stale staging directory from a crash is
        discarded at the start of the next attempt.

        Raises:
            IssueClosedError: If the issue is already archived.
            StorageError: If any filesystem step fails.
        """
        lock = await self._get_lock(issue_id)
        async with lock:
            directory, archived = await self._locate(issue_id)
            if archived:
                index = await self._read_index(directory)
                raise IssueClosedError(issue_id, index["status"])

            staging = self._staging_path(issue_id)
            try:
                await self._snapshot(directory, staging)
                summary_ref = await self._write_summary(staging, issue_id, summary)
                await self._mark_final(staging, status, finalize_verdict, summary_ref)
                if before_publish is not None:
                    await before_publish()
                await self._publish(issue_id, staging)
            except BaseException:
                await asyncio.to_thread(shutil.rmtree, staging, True)
                log.error("archive_aborted", issue_id=issue_id)
                raise

            index = await self._read_index(self._archive_path(issue_id))

        log.info("issue_archived", issue_id=issue_id, status=status.value)
        return Issue.from_index(index, archived=True)

    async def _snapshot(self, source: Path, staging: Path) -> None:
        try:
            if staging.exists():
                await asyncio.to_thread(shutil.rmtree, staging)
                log.warning("stale_staging_removed", staging=str(staging))
            await asyncio.to_thread(shutil.copytree, source, staging)
        except OSError as e:
            raise StorageError(f"Cannot snapshot issue: {e}", issue_id=source.name) from e

    async def _write_summary(self, staging: Path, issue_id: str, summary: Artifact) -> str:
        await self._write_json(staging / SUMMARY_FILE, summary.to_document(issue_id, Phase.FINALIZE, 1))
        return SUMMARY_FILE

    async def _mark_final(self, staging: Path, status: IssueStatus, verdict: Verdict, summary_ref: str) -> None:
        index = await self._read_index(staging)
        record = PhaseRecord(
            sequence=len(index["records"]) + 1,
            phase=Phase.FINALIZE,
            attempt=1,
            artifact_ref=summary_ref,
            verdict=verdict,
            timestamp=datetime.now(UTC),
        )
        records: list[PhaseRecordState] = index["records"]
        records.append(record.to_state())
        index["status"] = status.value
        index["current_phase"] = Phase.for_status(status).value
        index["summary_ref"] = summary_ref
        index["archived_at"] = _now()
        index["last_error"] = None
        await self._write_index(staging, index)

    async def _publish(self, issue_id: str, staging: Path) -> None:
        target = self._archive_path(issue_id)
        try:
            staging.rename(target)
        except OSError as e:
            raise StorageError(f"Cannot publish archive: {e}", issue_id=issue_id) from e
        # The archive copy is authoritative from here on; _locate cleans up
        # the active copy if this removal does not complete.
        await asyncio.to_thread(shutil.rmtree, self._active_path(issue_id), True)
