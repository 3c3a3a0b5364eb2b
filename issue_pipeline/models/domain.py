"""
Domain models for the issue pipeline.

This module contains the data classes representing the core entities of the
pipeline: issues, phase records, artifacts, the workflow context handed to
workers, and the worker's tagged result. These models are the in-memory
representation of the JSON documents described in
``issue_pipeline.engine.types``.

Example:
    Building a worker result::

        result = WorkerResult(
            artifact=Artifact(summary="Root cause: missing read timeout"),
            verdict=Verdict.CONTINUE,
        )
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from issue_pipeline.engine.types import (
    ArtifactDocument,
    ErrorState,
    IssueIndex,
    PhaseRecordState,
)
from issue_pipeline.enums import IssueStatus, Phase, Verdict


@dataclass(frozen=True)
class Artifact:
    """Immutable structured document produced by one Phase Record.

    Artifacts are never edited after they are persisted. A correction is a
    new attempt with its own artifact.
    """

    summary: str
    """One-paragraph outcome of the phase, used in summaries and notices."""

    content: str = ""
    """Full phase output (analysis, proposal text, test log, ...)."""

    files: tuple[str, ...] = ()
    """Repository paths changed by the phase. Only IMPLEMENT sets this."""

    data: dict[str, Any] = field(default_factory=dict)
    """Free-form structured output."""

    def to_document(self, issue_id: str, phase: Phase, attempt: int) -> ArtifactDocument:
        return {
            "issue_id": issue_id,
            "phase": phase.value,
            "attempt": attempt,
            "summary": self.summary,
            "content": self.content,
            "files": list(self.files),
            "data": dict(self.data),
        }

    @classmethod
    def from_document(cls, doc: ArtifactDocument) -> "Artifact":
        return cls(
            summary=doc.get("summary", ""),
            content=doc.get("content", ""),
            files=tuple(doc.get("files", [])),
            data=dict(doc.get("data", {})),
        )


@dataclass(frozen=True)
class PhaseRecord:
    """One persisted step of an issue's pipeline."""

    sequence: int
    phase: Phase
    attempt: int
    artifact_ref: str
    verdict: Verdict
    timestamp: datetime
    notes: str | None = None
    findings_ref: str | None = None
    reported_verdict: Verdict | None = None

    def to_state(self) -> PhaseRecordState:
        state: PhaseRecordState = {
            "sequence": self.sequence,
            "phase": self.phase.value,
            "attempt": self.attempt,
            "artifact_ref": self.artifact_ref,
            "verdict": self.verdict.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.notes is not None:
            state["notes"] = self.notes
        if self.findings_ref is not None:
            state["findings_ref"] = self.findings_ref
        if self.reported_verdict is not None:
            state["reported_verdict"] = self.reported_verdict.value
        return state

    @classmethod
    def from_state(cls, state: PhaseRecordState) -> "PhaseRecord":
        reported = state.get("reported_verdict")
        return cls(
            sequence=state["sequence"],
            phase=Phase(state["phase"]),
            attempt=state["attempt"],
            artifact_ref=state["artifact_ref"],
            verdict=Verdict(state["verdict"]),
            timestamp=datetime.fromisoformat(state["timestamp"]),
            notes=state.get("notes"),
            findings_ref=state.get("findings_ref"),
            reported_verdict=Verdict(reported) if reported else None,
        )


@dataclass(frozen=True)
class Issue:
    """A unit of work tracked end-to-end through the pipeline."""

    id: str
    status: IssueStatus
    created_at: datetime
    updated_at: datetime
    current_phase: Phase
    title: str = ""
    description: str = ""
    retry_count: int = 0
    last_error: ErrorState | None = None
    records: tuple[PhaseRecord, ...] = ()
    archived: bool = False

    @classmethod
    def from_index(cls, index: IssueIndex, archived: bool = False) -> "Issue":
        return cls(
            id=index["issue_id"],
            status=IssueStatus(index["status"]),
            created_at=datetime.fromisoformat(index["created_at"]),
            updated_at=datetime.fromisoformat(index["updated_at"]),
            current_phase=Phase(index["current_phase"]),
            title=index.get("title", ""),
            description=index.get("description", ""),
            retry_count=index.get("retry_count", 0),
            last_error=index.get("last_error"),
            records=tuple(PhaseRecord.from_state(r) for r in index.get("records", [])),
            archived=archived,
        )

    @property
    def display_title(self) -> str:
        """Title, falling back to a humanized slug."""
        return self.title or self.id.replace("-", " ").replace("_", " ")


@dataclass(frozen=True)
class WorkflowContext:
    """Read-only snapshot of one issue: its records and their artifacts.

    This is the only input a Phase Worker receives. It is built by
    ``IssueStore.read`` from a single consistent read of the issue
    namespace, so it never contains a partially written artifact.
    """

    issue: Issue
    records: tuple[PhaseRecord, ...]
    artifacts: Mapping[str, Artifact]
    findings: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    summary: Artifact | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records))
        object.__setattr__(self, "artifacts", MappingProxyType(dict(self.artifacts)))
        object.__setattr__(self, "findings", MappingProxyType(dict(self.findings)))

    @property
    def issue_id(self) -> str:
        return self.issue.id

    @property
    def last_record(self) -> PhaseRecord | None:
        return self.records[-1] if self.records else None

    def artifact_for(self, record: PhaseRecord) -> Artifact:
        return self.artifacts[record.artifact_ref]

    def findings_for(self, record: PhaseRecord) -> tuple[str, ...]:
        if record.findings_ref is None:
            return ()
        return self.findings.get(record.findings_ref, ())

    def records_for(self, phase: Phase) -> list[PhaseRecord]:
        return [r for r in self.records if r.phase == phase]

    def latest(self, phase: Phase) -> PhaseRecord | None:
        records = self.records_for(phase)
        return records[-1] if records else None

    def attempts(self, phase: Phase) -> int:
        """Number of persisted attempts for a phase."""
        return len(self.records_for(phase))

    def changed_files(self) -> list[str]:
        """Union of files changed by every IMPLEMENT attempt, in first-seen order."""
        seen: dict[str, None] = {}
        for record in self.records_for(Phase.IMPLEMENT):
            for path in self.artifact_for(record).files:
                seen.setdefault(path, None)
        return list(seen)


@dataclass(frozen=True)
class PhaseParameters:
    """Per-invocation parameters handed to a worker next to the context."""

    issue_id: str
    phase: Phase
    attempt: int
    retry_count: int = 0
    max_implement_attempts: int = 3
    timeout: float | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerResult:
    """Tagged result returned by every Phase Worker."""

    artifact: Artifact
    verdict: Verdict
    notes: str | None = None
    findings: tuple[str, ...] = ()
    """Non-blocking supplementary findings; recorded, never acted on."""


@dataclass(frozen=True)
class AppendResult:
    """Outcome of ``IssueStore.append``.

    ``created`` is False when a record with the same (phase, attempt) key
    already existed; ``record`` is then the previously persisted one.
    """

    record: PhaseRecord
    created: bool


@dataclass(frozen=True)
class StepOutcome:
    """Outcome of one controller step."""

    issue_id: str
    phase: Phase
    attempt: int
    verdict: Verdict
    next_phase: Phase
    created: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.next_phase.is_terminal
