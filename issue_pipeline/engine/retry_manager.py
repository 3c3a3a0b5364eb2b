"""
Retry/escalation bookkeeping for the implement/verify loop.

The Retry Counter of an issue is the number of IMPLEMENT attempts started.
It is persisted in the issue index so a resumed controller sees the same
budget. Once it reaches ``max_attempts`` a RETRY from VERIFY is overridden
to ESCALATE and an escalation notice is attached for human review.
"""

import structlog

from issue_pipeline.engine.issue_store import IssueStore
from issue_pipeline.enums import Phase
from issue_pipeline.exceptions import RetryBudgetExhausted
from issue_pipeline.models.domain import Artifact, WorkflowContext

log = structlog.get_logger(__name__)


class RetryManager:
    """Own the per-issue Retry Counter.

    Attributes:
        store: Issue Store the counter is persisted in.
        max_attempts: Upper bound for the counter.
    """

    def __init__(self, store: IssueStore, max_attempts: int = 3) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts

    async def count(self, issue_id: str) -> int:
        context = await self.store.read(issue_id)
        return context.issue.retry_count

    def allows_retry(self, retry_count: int) -> bool:
        """Check if VERIFY may send an issue at ``retry_count`` back to IMPLEMENT."""
        return retry_count < self.max_attempts

    async def should_retry(self, issue_id: str) -> bool:
        return self.allows_retry(await self.count(issue_id))

    async def record_attempt(self, issue_id: str) -> int:
        """Count one more IMPLEMENT attempt and return the new value.

        Raises:
            RetryBudgetExhausted: If the counter is already at the maximum.
                The counter is never moved past it.
        """
        async with self.store.transaction(issue_id) as index:
            current = index.get("retry_count", 0)
            if current >= self.max_attempts:
                raise RetryBudgetExhausted(issue_id, self.max_attempts, "")
            index["retry_count"] = current + 1

        log.info("implement_attempt_recorded", issue_id=issue_id, count=current + 1, max=self.max_attempts)
        return current + 1

    def escalation_notice(self, context: WorkflowContext, pending: Artifact | None = None) -> str:
        """Concatenate the summaries of the last ``max_attempts`` VERIFY artifacts.

        Args:
            context: Persisted state of the issue.
            pending: Artifact of the VERIFY attempt being overridden, which
                is not persisted yet when the notice is built.
        """
        summaries = [(r.attempt, context.artifact_for(r).summary) for r in context.records_for(Phase.VERIFY)]
        if pending is not None:
            summaries.append((len(summaries) + 1, pending.summary))

        lines = [
            f"Issue {context.issue_id} escalated: verification still failing after "
            f"{self.max_attempts} implementation attempt(s).",
        ]
        for attempt, summary in summaries[-self.max_attempts :]:
            lines.append(f"- VERIFY attempt {attempt}: {summary.strip() or '(no summary)'}")
        return "\n".join(lines)

    def exhausted(self, context: WorkflowContext, pending: Artifact | None = None) -> RetryBudgetExhausted:
        """Build the error describing an exhausted budget for this context."""
        return RetryBudgetExhausted(context.issue_id, self.max_attempts, self.escalation_notice(context, pending))
