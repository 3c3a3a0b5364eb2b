"""Retry utilities for handling transient failures.

Provides the backoff calculation shared by the phase controller's worker
invocation and storage retry loops.

Backoff Formula:
    delay = min(backoff_factor ** attempt_number, max_delay)
    For backoff_factor=2.0: 2s, 4s, 8s, 16s, ...
"""


def backoff_delay(attempt: int, backoff_factor: float = 2.0, max_delay: float | None = None) -> float:
    """Delay before retrying after the given (1-based) failed attempt.

    Args:
        attempt: Number of the attempt that just failed.
        backoff_factor: Base of the exponential. A factor of 0 disables
            waiting entirely, which tests rely on.
        max_delay: Upper bound for the delay. None means unbounded.

    Returns:
        Seconds to sleep before the next attempt.
    """
    if backoff_factor <= 0:
        return 0.0
    delay = float(backoff_factor**attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay
