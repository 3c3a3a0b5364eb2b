"""Type definitions for persisted issue documents.

This module provides TypedDict definitions for the JSON documents the Issue
Store writes, enabling static type checking for document access. Each issue
namespace holds one index document (``issue.json``) plus one artifact
document per Phase Record.

Example:
    An index for an issue that has finished RESEARCH::

        index: IssueIndex = {
            "issue_id": "fix-timeout-bug",
            "status": "in_progress",
            "title": "Fix timeout bug",
            "description": "Requests time out after 30s ...",
            "created_at": "2024-01-15T10:30:00+00:00",
            "updated_at": "2024-01-15T10:31:12+00:00",
            "current_phase": "validate",
            "retry_count": 0,
            "last_error": None,
            "records": [
                {
                    "sequence": 1,
                    "phase": "research",
                    "attempt": 1,
                    "artifact_ref": "01-research-1.json",
                    "verdict": "continue",
                    "timestamp": "2024-01-15T10:31:12+00:00",
                }
            ],
        }
"""

from typing import Any, NotRequired, TypedDict


class ErrorState(TypedDict):
    """Last error recorded on an issue."""

    type: str
    message: str
    phase: NotRequired[str]
    step: NotRequired[str]
    recorded_at: NotRequired[str]


class PhaseRecordState(TypedDict):
    """One persisted Phase Record.

    ``(phase, attempt)`` is unique within an issue and is the idempotency
    key for appends. ``sequence`` gives the total order.
    """

    sequence: int
    phase: str
    attempt: int
    artifact_ref: str
    verdict: str
    timestamp: str
    notes: NotRequired[str | None]
    findings_ref: NotRequired[str | None]
    reported_verdict: NotRequired[str | None]
    """Verdict the worker returned when the controller overrode it."""


class ArtifactDocument(TypedDict):
    """Immutable artifact written once per Phase Record."""

    issue_id: str
    phase: str
    attempt: int
    summary: str
    content: str
    files: list[str]
    data: dict[str, Any]


class FindingsDocument(TypedDict):
    """Informational findings attached to a non-blocking verdict."""

    issue_id: str
    phase: str
    attempt: int
    findings: list[str]


class IssueIndex(TypedDict):
    """Index document for one issue namespace."""

    issue_id: str
    status: str
    title: str
    description: str
    created_at: str
    updated_at: str
    current_phase: str
    retry_count: int
    last_error: ErrorState | None
    records: list[PhaseRecordState]
    summary_ref: NotRequired[str]
    archived_at: NotRequired[str]
