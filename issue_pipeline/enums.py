"""Enumerations for issue-pipeline phases, verdicts and statuses."""

from enum import Enum


class Phase(str, Enum):
    """Pipeline phases, in pipeline order.

    The three terminal members are states the controller can end in; they
    never have a worker and never appear on a Phase Record.
    """

    RESEARCH = "research"
    VALIDATE = "validate"
    PROPOSE = "propose"
    REVIEW = "review"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    FINALIZE = "finalize"

    # Terminal states
    REJECTED = "rejected"
    RESOLVED = "resolved"
    ESCALATED = "escalated"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if this is a state the pipeline cannot leave."""
        return self in (Phase.REJECTED, Phase.RESOLVED, Phase.ESCALATED)

    @classmethod
    def for_status(cls, status: "IssueStatus") -> "Phase":
        """Map a terminal issue status to the controller state it ends in."""
        mapping = {
            IssueStatus.RESOLVED: cls.RESOLVED,
            IssueStatus.REJECTED: cls.REJECTED,
            IssueStatus.ESCALATED: cls.ESCALATED,
        }
        if status not in mapping:
            raise ValueError(f"{status} is not a terminal status")
        return mapping[status]


WORKER_PHASES: tuple[Phase, ...] = (
    Phase.RESEARCH,
    Phase.VALIDATE,
    Phase.PROPOSE,
    Phase.REVIEW,
    Phase.IMPLEMENT,
    Phase.VERIFY,
)
"""Phases that are performed by a Phase Worker."""


class Verdict(str, Enum):
    """Outcome classification returned by a worker."""

    CONTINUE = "continue"
    REJECT = "reject"
    RETRY = "retry"
    ESCALATE = "escalate"
    TERMINAL_SUCCESS = "terminal_success"

    def __str__(self) -> str:
        return self.value


class IssueStatus(str, Enum):
    """Externally visible issue status.

    OPEN and IN_PROGRESS are active, STALLED is active but needs an
    operator, the remaining three are terminal.
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    STALLED = "stalled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if the issue can no longer change."""
        return self in (IssueStatus.RESOLVED, IssueStatus.REJECTED, IssueStatus.ESCALATED)

    @classmethod
    def for_terminal_phase(cls, phase: Phase) -> "IssueStatus":
        """Map a terminal controller state to the matching status."""
        mapping = {
            Phase.RESOLVED: cls.RESOLVED,
            Phase.REJECTED: cls.REJECTED,
            Phase.ESCALATED: cls.ESCALATED,
        }
        if phase not in mapping:
            raise ValueError(f"{phase} is not a terminal phase")
        return mapping[phase]
