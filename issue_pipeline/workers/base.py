"""
Base class for phase workers.

This module provides the PhaseWorker abstract base class that defines the
contract between the phase controller and the component doing a phase's
domain work (research, proposals, code changes, verification, ...).

Worker Contract:
    - ``invoke()`` receives the read-only WorkflowContext and the
      PhaseParameters for one attempt and returns a WorkerResult.
    - The verdict is returned as data on the result; the controller never
      parses artifact text to find it.
    - Transient failures raise WorkerInvocationError; the controller retries
      them with backoff. Unrecoverable failures raise WorkerFatalError; the
      issue is escalated without retry.
    - Workers need not be idempotent. The controller persists at most one
      artifact per (issue_id, phase, attempt).

Example:
    >>> class EchoWorker(PhaseWorker):
    ...     async def invoke(self, context, params):
    ...         return WorkerResult(
    ...             artifact=Artifact(summary=f"{params.phase} done"),
    ...             verdict=Verdict.CONTINUE,
    ...         )
"""

from abc import ABC, abstractmethod

from issue_pipeline.models.domain import PhaseParameters, WorkerResult, WorkflowContext


class PhaseWorker(ABC):
    """Abstract base class for all phase workers."""

    name: str = "worker"

    @abstractmethod
    async def invoke(self, context: WorkflowContext, params: PhaseParameters) -> WorkerResult:
        """Perform one attempt of a phase.

        Args:
            context: Snapshot of the issue's records and artifacts.
            params: Phase, attempt number, retry budget, timeout and
                per-phase options.

        Returns:
            The artifact, verdict, notes and supplementary findings.

        Raises:
            WorkerInvocationError: Transient failure, safe to retry.
            WorkerFatalError: Unrecoverable failure.
        """
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
