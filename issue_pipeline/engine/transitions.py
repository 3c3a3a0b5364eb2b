"""
Phase transition table and replay validation.

State diagram::

    RESEARCH  --continue-->          VALIDATE
    VALIDATE  --reject-->            FINALIZE (-> REJECTED)
    VALIDATE  --continue-->          PROPOSE
    PROPOSE   --continue-->          REVIEW
    REVIEW    --continue-->          IMPLEMENT
    IMPLEMENT --continue-->          VERIFY
    VERIFY    --continue-->          FINALIZE (-> RESOLVED)
    VERIFY    --terminal_success-->  FINALIZE (-> RESOLVED)
    VERIFY    --retry-->             IMPLEMENT   (budget left)
    VERIFY    --retry-->             ESCALATED   (budget exhausted)
    any       --escalate-->          ESCALATED

The VERIFY/RETRY branch depends on the Retry Counter, so ``next_phase``
takes the budget decision as an argument rather than owning it.
"""

from collections.abc import Iterable

from issue_pipeline.enums import Phase, Verdict
from issue_pipeline.exceptions import InvalidTransitionError
from issue_pipeline.models.domain import PhaseRecord

TRANSITIONS: dict[tuple[Phase, Verdict], Phase] = {
    (Phase.RESEARCH, Verdict.CONTINUE): Phase.VALIDATE,
    (Phase.VALIDATE, Verdict.REJECT): Phase.FINALIZE,
    (Phase.VALIDATE, Verdict.CONTINUE): Phase.PROPOSE,
    (Phase.PROPOSE, Verdict.CONTINUE): Phase.REVIEW,
    (Phase.REVIEW, Verdict.CONTINUE): Phase.IMPLEMENT,
    (Phase.IMPLEMENT, Verdict.CONTINUE): Phase.VERIFY,
    (Phase.VERIFY, Verdict.CONTINUE): Phase.FINALIZE,
    (Phase.VERIFY, Verdict.TERMINAL_SUCCESS): Phase.FINALIZE,
    (Phase.VERIFY, Verdict.RETRY): Phase.IMPLEMENT,
}

# Verdicts that end a FINALIZE record, keyed by the terminal state reached.
FINALIZE_VERDICTS: dict[Phase, Verdict] = {
    Phase.RESOLVED: Verdict.TERMINAL_SUCCESS,
    Phase.REJECTED: Verdict.REJECT,
}


def is_valid(phase: Phase, verdict: Verdict) -> bool:
    """Check if a worker verdict is acceptable for the phase."""
    if phase.is_terminal or phase == Phase.FINALIZE:
        return False
    return verdict == Verdict.ESCALATE or (phase, verdict) in TRANSITIONS


def next_phase(phase: Phase, verdict: Verdict, *, retry_allowed: bool = True) -> Phase:
    """Compute the next controller state.

    Args:
        phase: Phase the verdict belongs to.
        verdict: Verdict that was persisted for the phase.
        retry_allowed: Whether the Retry Counter still allows another
            IMPLEMENT attempt. Only consulted for VERIFY/RETRY.

    Raises:
        InvalidTransitionError: If the pair has no table entry.
    """
    if not is_valid(phase, verdict):
        raise InvalidTransitionError(phase.value, verdict.value)
    if verdict == Verdict.ESCALATE:
        return Phase.ESCALATED
    if phase == Phase.VERIFY and verdict == Verdict.RETRY and not retry_allowed:
        return Phase.ESCALATED
    return TRANSITIONS[(phase, verdict)]


def finalize_outcome(records: Iterable[PhaseRecord]) -> Phase:
    """Terminal state FINALIZE resolves to, based on the record that led there."""
    last = None
    for record in records:
        if record.phase != Phase.FINALIZE:
            last = record
    if last is not None and last.phase == Phase.VALIDATE and last.verdict == Verdict.REJECT:
        return Phase.REJECTED
    return Phase.RESOLVED


def replay(records: Iterable[PhaseRecord]) -> Phase:
    """Replay a persisted log and return the state it leaves the issue in.

    The log is checked against the table as it is replayed: attempt numbers
    must count up by one per phase, each record must be the phase the
    previous record transitioned to, and nothing may follow a terminal
    state.

    Raises:
        InvalidTransitionError: On the first step not allowed by the table.
    """
    state = Phase.RESEARCH
    attempts: dict[Phase, int] = {}
    previous: PhaseRecord | None = None

    for record in records:
        if state.is_terminal:
            raise InvalidTransitionError(state.value, record.verdict.value)
        if record.phase != state:
            raise InvalidTransitionError(state.value, f"{record.phase.value}:{record.verdict.value}")

        expected_attempt = attempts.get(record.phase, 0) + 1
        if record.attempt != expected_attempt:
            raise InvalidTransitionError(record.phase.value, f"attempt {record.attempt}")
        attempts[record.phase] = record.attempt

        if record.phase == Phase.FINALIZE:
            outcome = finalize_outcome([previous] if previous else [])
            if FINALIZE_VERDICTS[outcome] != record.verdict:
                raise InvalidTransitionError(record.phase.value, record.verdict.value)
            state = outcome
        else:
            # A VERIFY/RETRY leading to escalation is persisted as ESCALATE, so
            # a persisted RETRY always means another IMPLEMENT attempt followed.
            state = next_phase(record.phase, record.verdict, retry_allowed=True)
        previous = record

    return state


def validate_history(records: Iterable[PhaseRecord]) -> bool:
    """Check if a persisted log only uses transitions from the table."""
    try:
        replay(records)
    except InvalidTransitionError:
        return False
    return True

