"""Custom exception hierarchy for the issue pipeline.

Exception Hierarchy:
    IssuePipelineError (base)
    ├── ConfigurationError
    ├── StorageError
    │   ├── IssueNotFoundError
    │   └── IssueExistsError
    ├── WorkerError
    │   ├── WorkerInvocationError
    │   │   └── WorkerTimeoutError
    │   └── WorkerFatalError
    ├── WorkflowError
    │   ├── InvalidTransitionError
    │   ├── RetryBudgetExhausted
    │   ├── FinalizationError
    │   ├── IssueStalledError
    │   ├── IssueRunningError
    │   └── IssueClosedError
    └── GitOperationError

A REJECT verdict from VALIDATE is not an error. It is an ordinary
transition and never raises.

Example Usage:
    >>> from issue_pipeline.exceptions import StorageError
    >>> try:
    ...     await store.append(issue_id, phase, attempt, artifact, verdict)
    ... except StorageError as e:
    ...     log.warning("append_failed", error=e.message)
"""

from typing import Any


class IssuePipelineError(Exception):
    """Base exception for all issue-pipeline errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(IssuePipelineError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.
    """

    pass


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(IssuePipelineError):
    """Issue Store read/append/archive failure.

    Storage failures are durability-critical: the controller retries them
    with backoff and never advances an issue past a failed persist.

    Attributes:
        issue_id: Issue whose namespace was being accessed
    """

    def __init__(self, message: str, issue_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            issue_id: Issue whose namespace was being accessed
        """
        self.issue_id = issue_id
        full_message = f"{message} (issue: {issue_id})" if issue_id else message
        super().__init__(full_message)
        self.message = message


class IssueNotFoundError(StorageError):
    """No active or archived issue exists with the given id."""

    pass


class IssueExistsError(StorageError):
    """An issue with the given id was already created."""

    pass


# =============================================================================
# Worker Errors
# =============================================================================


class WorkerError(IssuePipelineError):
    """Base exception for Phase Worker failures.

    Attributes:
        phase: Phase whose worker failed
        attempt: Attempt number of the failed invocation
    """

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        attempt: int | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            phase: Phase whose worker failed
            attempt: Attempt number of the failed invocation
        """
        self.phase = phase
        self.attempt = attempt

        parts = [message]
        if phase:
            parts.append(f"phase: {phase}")
        if attempt is not None:
            parts.append(f"attempt: {attempt}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class WorkerInvocationError(WorkerError):
    """Transient worker failure (unreachable, crashed, timed out).

    Retried with bounded exponential backoff; exhaustion escalates the issue.
    """

    pass


class WorkerTimeoutError(WorkerInvocationError):
    """Worker did not return within the invocation timeout.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        phase: str | None = None,
        attempt: int | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message, phase=phase, attempt=attempt)


class WorkerFatalError(WorkerError):
    """Worker reported an unrecoverable failure. Escalates without retry."""

    pass


# =============================================================================
# Workflow Errors
# =============================================================================


class WorkflowError(IssuePipelineError):
    """Workflow execution errors raised by the controller or finalizer."""

    pass


class InvalidTransitionError(WorkflowError):
    """A (phase, verdict) pair has no entry in the transition table.

    Attributes:
        phase: Phase the verdict was reported for
        verdict: The verdict that has no transition
    """

    def __init__(self, phase: str, verdict: str, issue_id: str | None = None) -> None:
        self.phase = phase
        self.verdict = verdict
        self.issue_id = issue_id
        issue_info = f" (issue: {issue_id})" if issue_id else ""
        super().__init__(f"No transition from '{phase}' on verdict '{verdict}'{issue_info}")


class RetryBudgetExhausted(WorkflowError):
    """The implement/verify loop reached its configured maximum.

    Attributes:
        issue_id: Issue that exhausted its budget
        max_attempts: The configured maximum
        notice: Aggregated summaries of the last VERIFY artifacts
    """

    def __init__(self, issue_id: str, max_attempts: int, notice: str) -> None:
        self.issue_id = issue_id
        self.max_attempts = max_attempts
        self.notice = notice
        super().__init__(f"Implement/verify loop exhausted after {max_attempts} attempts (issue: {issue_id})")


class FinalizationError(WorkflowError):
    """Finalization transaction failed; the issue stays in FINALIZE."""

    def __init__(self, message: str, issue_id: str | None = None, step: str | None = None) -> None:
        self.issue_id = issue_id
        self.step = step
        full_message = f"{message} (step: {step})" if step else message
        super().__init__(full_message)
        self.message = message


class IssueStalledError(WorkflowError):
    """Persistent storage failure; the issue was marked STALLED."""

    def __init__(self, issue_id: str, cause: Exception | None = None) -> None:
        self.issue_id = issue_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Issue {issue_id} stalled on storage failure{detail}")


class IssueRunningError(WorkflowError):
    """A controller is already driving the issue in this process."""

    def __init__(self, issue_id: str) -> None:
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} is already running")


class IssueClosedError(WorkflowError):
    """The issue has already reached a terminal status."""

    def __init__(self, issue_id: str, status: str) -> None:
        self.issue_id = issue_id
        self.status = status
        super().__init__(f"Issue {issue_id} is already {status}")


class GitOperationError(IssuePipelineError):
    """Git command failed while committing or rolling back.

    Attributes:
        command: The git arguments that failed
        stderr: Captured error output
    """

    def __init__(self, message: str, command: list[str] | None = None, stderr: str | None = None) -> None:
        self.command = command
        self.stderr = stderr
        full_message = f"{message}: {stderr.strip()}" if stderr and stderr.strip() else message
        super().__init__(full_message)
        self.message = message


def describe_error(error: BaseException) -> dict[str, Any]:
    """Build the JSON-serializable error record stored on an issue."""
    return {
        "type": type(error).__name__,
        "message": getattr(error, "message", None) or str(error),
    }
