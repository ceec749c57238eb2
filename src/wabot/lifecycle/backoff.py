"""Linear capped backoff shared by connection and pairing retries."""


def delay(attempt: int, base: float, step: float, cap: float) -> float:
    """
    Compute the wait before the next retry.

    ``min(base + attempt * step, cap)``. Negative attempts count as zero, so
    the result is never below ``min(base, cap)`` and never above ``cap``.

    Args:
        attempt: Number of attempts already made
        base: Delay for the first retry (seconds)
        step: Added per previous attempt (seconds)
        cap: Upper bound (seconds)

    Returns:
        Delay in seconds
    """
    attempt = max(attempt, 0)
    return min(base + attempt * step, cap)
