"""
Phase controller driving one issue through the pipeline.

The PhaseController is the only component that mutates an issue. Each
``advance()`` is one step of the state machine:

1. Read the Workflow Context from the Issue Store.
2. Invoke the worker of the current phase with a timeout, retrying
   transient failures with bounded exponential backoff.
3. Apply the transition table (and the Retry Counter in the verify loop)
   to the returned verdict.
4. Persist the artifact, verdict and next state as one record, keyed by
   ``(issue_id, phase, attempt)``.

On FINALIZE the step hands the issue to the Finalizer instead of a worker.

Failure Handling:
    - WorkerFatalError, an invalid verdict or exhausted invocation retries
      escalate the issue with a record carrying the error.
    - StorageError on a read or persist is retried with backoff and never
      skipped. After ``storage_stall_after`` consecutive failures the issue
      is marked STALLED and IssueStalledError is raised.
    - Cancellation during an invocation persists nothing; the issue resumes
      from its last persisted record.

Example:
    >>> controller = PhaseController("fix-timeout-bug", store, workers)
    >>> issue = await controller.run()
    >>> issue.status
    <IssueStatus.RESOLVED: 'resolved'>
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import structlog

from issue_pipeline.config.settings import RetryConfig
from issue_pipeline.engine import transitions
from issue_pipeline.engine.finalization import Finalizer
from issue_pipeline.engine.issue_store import IssueStore
from issue_pipeline.engine.retry_manager import RetryManager
from issue_pipeline.enums import IssueStatus, Phase, Verdict
from issue_pipeline.exceptions import (
    ConfigurationError,
    IssueClosedError,
    IssueNotFoundError,
    IssueStalledError,
    RetryBudgetExhausted,
    StorageError,
    WorkerError,
    WorkerFatalError,
    WorkerInvocationError,
    WorkerTimeoutError,
    describe_error,
)
from issue_pipeline.models.domain import (
    Artifact,
    Issue,
    PhaseParameters,
    StepOutcome,
    WorkerResult,
    WorkflowContext,
)
from issue_pipeline.utils.retry import backoff_delay
from issue_pipeline.workers.base import PhaseWorker

log = structlog.get_logger(__name__)

T = TypeVar("T")


def _join_notes(*parts: str | None) -> str | None:
    notes = [part.strip() for part in parts if part and part.strip()]
    return "\n\n".join(notes) if notes else None


class PhaseController:
    """Sequence the phases of a single issue.

    Attributes:
        issue_id: Issue this controller owns.
        store: Issue Store holding the issue.
        workers: Worker for each worker phase.
        retry_manager: Owner of the Retry Counter.
        finalizer: Runs the FINALIZE transaction.
        retry: Retry and backoff bounds.
        timeout: Invocation timeout in seconds, or None for no timeout.
        phase_options: Extra options handed to each phase's worker.
    """

    def __init__(
        self,
        issue_id: str,
        store: IssueStore,
        workers: Mapping[Phase, PhaseWorker],
        *,
        retry_manager: RetryManager | None = None,
        finalizer: Finalizer | None = None,
        retry: RetryConfig | None = None,
        timeout: float | None = None,
        phase_options: Mapping[Phase, dict[str, Any]] | None = None,
    ) -> None:
        self.issue_id = issue_id
        self.store = store
        self.workers = dict(workers)
        self.retry = retry or RetryConfig()
        self.retry_manager = retry_manager or RetryManager(store, self.retry.max_implement_attempts)
        self.finalizer = finalizer or Finalizer(store)
        self.timeout = timeout
        self.phase_options = dict(phase_options or {})

    async def run(self) -> Issue:
        """Advance the issue until it reaches a terminal state.

        Returns:
            The issue in its terminal state.

        Raises:
            IssueClosedError: If the issue was already terminal.
            IssueStalledError: If storage kept failing.
            FinalizationError: If finalization failed; resume retries it.
        """
        with structlog.contextvars.bound_contextvars(issue_id=self.issue_id):
            log.info("issue_run_started")
            while True:
                outcome = await self.advance()
                if outcome.is_terminal:
                    break

            context = await self._read()
            log.info("issue_run_finished", status=context.issue.status.value, records=len(context.records))
            return context.issue

    async def advance(self) -> StepOutcome:
        """Perform exactly one step of the state machine.

        Raises:
            IssueClosedError: If the issue is already terminal.
        """
        context = await self._read()
        issue = context.issue
        if issue.archived or issue.status.is_terminal:
            raise IssueClosedError(self.issue_id, issue.status.value)

        phase = issue.current_phase
        if phase == Phase.FINALIZE:
            return await self._finalize()
        if phase.is_terminal:
            return await self._settle_terminal(context)

        worker = self.workers.get(phase)
        if worker is None:
            raise ConfigurationError(f"No worker registered for phase {phase.value}")

        attempt = context.attempts(phase) + 1
        with structlog.contextvars.bound_contextvars(phase=phase.value, attempt=attempt):
            return await self._step(context, phase, attempt, worker)

    async def _read(self) -> WorkflowContext:
        return await self._storage(lambda: self.store.read(self.issue_id), "read")

    async def _step(self, context: WorkflowContext, phase: Phase, attempt: int, worker: PhaseWorker) -> StepOutcome:
        retry_count = context.issue.retry_count
        if phase == Phase.IMPLEMENT and retry_count < attempt:
            try:
                retry_count = await self._storage(
                    lambda: self.retry_manager.record_attempt(self.issue_id), "record_attempt"
                )
            except RetryBudgetExhausted:
                error = self.retry_manager.exhausted(context)
                return await self._escalate(phase, attempt, error, notes=error.notice)

        params = PhaseParameters(
            issue_id=self.issue_id,
            phase=phase,
            attempt=attempt,
            retry_count=retry_count,
            max_implement_attempts=self.retry_manager.max_attempts,
            timeout=self.timeout,
            options=dict(self.phase_options.get(phase, {})),
        )

        log.info("phase_started", worker=worker.name)
        try:
            result = await self._invoke(worker, context, params)
        except WorkerError as e:
            return await self._escalate(phase, attempt, e)

        if not transitions.is_valid(phase, result.verdict):
            error = WorkerFatalError(
                f"Verdict {result.verdict.value} is not valid for phase {phase.value}",
                phase=phase.value,
                attempt=attempt,
            )
            return await self._escalate(phase, attempt, error, artifact=result.artifact, reported=result.verdict)

        return await self._apply(context, phase, attempt, result, retry_count)

    async def _apply(
        self,
        context: WorkflowContext,
        phase: Phase,
        attempt: int,
        result: WorkerResult,
        retry_count: int,
    ) -> StepOutcome:
        verdict = result.verdict
        notes = result.notes
        reported = None
        error: RetryBudgetExhausted | None = None

        retry_allowed = self.retry_manager.allows_retry(retry_count)
        if phase == Phase.VERIFY and verdict == Verdict.RETRY and not retry_allowed:
            error = self.retry_manager.exhausted(context, pending=result.artifact)
            log.warning("retry_budget_exhausted", max_attempts=self.retry_manager.max_attempts)
            verdict = Verdict.ESCALATE
            reported = Verdict.RETRY
            notes = _join_notes(result.notes, error.notice)

        next_phase = transitions.next_phase(phase, verdict, retry_allowed=retry_allowed)
        return await self._record(
            phase,
            attempt,
            result.artifact,
            verdict,
            next_phase,
            notes=notes,
            findings=result.findings,
            reported=reported,
            error=error,
        )

    async def _escalate(
        self,
        phase: Phase,
        attempt: int,
        error: Exception,
        *,
        artifact: Artifact | None = None,
        reported: Verdict | None = None,
        notes: str | None = None,
    ) -> StepOutcome:
        log.error("phase_failed", error=str(error), error_type=type(error).__name__)
        if artifact is None:
            artifact = Artifact(
                summary=f"{phase.value} attempt {attempt} failed: {getattr(error, 'message', str(error))}",
                data={"error": describe_error(error)},
            )
        return await self._record(
            phase,
            attempt,
            artifact,
            Verdict.ESCALATE,
            Phase.ESCALATED,
            notes=_join_notes(notes, str(error)),
            reported=reported,
            error=error,
        )

    async def _record(
        self,
        phase: Phase,
        attempt: int,
        artifact: Artifact,
        verdict: Verdict,
        next_phase: Phase,
        *,
        notes: str | None = None,
        findings: tuple[str, ...] = (),
        reported: Verdict | None = None,
        error: Exception | None = None,
    ) -> StepOutcome:
        """Persist a record and apply the resulting state."""
        appended = await self._storage(
            lambda: self.store.append(
                self.issue_id,
                phase,
                attempt,
                artifact,
                verdict,
                notes=notes,
                findings=findings,
                reported_verdict=reported,
                next_phase=next_phase,
            ),
            "append",
        )

        created = appended.created
        if not created:
            # Another invocation persisted this key first; its record wins.
            verdict = appended.record.verdict
            next_phase = transitions.next_phase(phase, verdict)
            error = None

        if next_phase == Phase.ESCALATED:
            await self._storage(
                lambda: self.store.set_status(
                    self.issue_id,
                    IssueStatus.ESCALATED,
                    current_phase=Phase.ESCALATED,
                    error=error,
                ),
                "set_status",
            )
            log.warning("issue_escalated", phase=phase.value, attempt=attempt)

        log.info("phase_completed", verdict=verdict.value, next_phase=next_phase.value, created=created)
        return StepOutcome(
            issue_id=self.issue_id,
            phase=phase,
            attempt=attempt,
            verdict=verdict,
            next_phase=next_phase,
            created=created,
        )

    async def _invoke(self, worker: PhaseWorker, context: WorkflowContext, params: PhaseParameters) -> WorkerResult:
        """Invoke a worker, retrying transient failures with backoff.

        Raises:
            WorkerFatalError: Propagated from the worker without retry.
            WorkerInvocationError: If every invocation attempt failed.
        """
        max_attempts = self.retry.worker_max_attempts
        for n in range(1, max_attempts + 1):
            try:
                if self.timeout is None:
                    return await worker.invoke(context, params)
                return await asyncio.wait_for(worker.invoke(context, params), timeout=self.timeout)
            except WorkerFatalError:
                raise
            except TimeoutError:
                error: WorkerInvocationError = WorkerTimeoutError(
                    "Worker timed out",
                    timeout_seconds=self.timeout,
                    phase=params.phase.value,
                    attempt=params.attempt,
                )
            except WorkerInvocationError as e:
                error = e
            except Exception as e:
                error = WorkerInvocationError(
                    f"Worker raised {type(e).__name__}: {e}",
                    phase=params.phase.value,
                    attempt=params.attempt,
                )

            if n == max_attempts:
                raise WorkerInvocationError(
                    f"Worker failed after {n} invocation(s): {error.message}",
                    phase=params.phase.value,
                    attempt=params.attempt,
                ) from error

            delay = backoff_delay(n, self.retry.backoff_factor, self.retry.backoff_max)
            log.warning("worker_invocation_failed", invocation=n, delay=delay, error=str(error))
            await asyncio.sleep(delay)

        raise RuntimeError("unreachable")

    async def _storage(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        """Run a store operation, retrying StorageError until the issue stalls."""
        failures = 0
        while True:
            try:
                return await operation()
            except IssueNotFoundError:
                raise
            except StorageError as e:
                failures += 1
                if failures >= self.retry.storage_stall_after:
                    await self._mark_stalled(e)
                    raise IssueStalledError(self.issue_id, e) from e
                delay = backoff_delay(failures, self.retry.backoff_factor, self.retry.backoff_max)
                log.warning("storage_operation_failed", operation=name, failures=failures, delay=delay, error=str(e))
                await asyncio.sleep(delay)

    async def _mark_stalled(self, error: StorageError) -> None:
        try:
            await self.store.set_status(self.issue_id, IssueStatus.STALLED, error=error)
        except StorageError as e:
            log.error("stall_not_recorded", error=str(e))
        log.error("issue_stalled", error=str(error))

    async def _finalize(self) -> StepOutcome:
        with structlog.contextvars.bound_contextvars(phase=Phase.FINALIZE.value):
            issue = await self.finalizer.finalize(self.issue_id)
        record = issue.records[-1]
        return StepOutcome(
            issue_id=self.issue_id,
            phase=Phase.FINALIZE,
            attempt=record.attempt,
            verdict=record.verdict,
            next_phase=issue.current_phase,
        )

    async def _settle_terminal(self, context: WorkflowContext) -> StepOutcome:
        """Finish an escalation whose status update did not land."""
        phase = context.issue.current_phase
        await self._storage(
            lambda: self.store.set_status(self.issue_id, IssueStatus.for_terminal_phase(phase)),
            "set_status",
        )
        last = context.last_record
        if last is None:
            raise StorageError("Terminal state without records", issue_id=self.issue_id)
        return StepOutcome(
            issue_id=self.issue_id,
            phase=last.phase,
            attempt=last.attempt,
            verdict=last.verdict,
            next_phase=phase,
            created=False,
        )
