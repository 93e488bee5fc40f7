import random


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Delay before the next attempt using capped exponential backoff.

    Args:
        attempt (int): Number of attempts already made (1 for the first failure)
        base_delay (float): Delay after the first failure in seconds
        max_delay (float): Maximum delay in seconds
        exponential_base (float): Base for exponential backoff calculation
        jitter (bool): Whether to add random jitter to delay

    Returns:
        float: Delay in seconds, within [0, max_delay]
    """
    attempt = max(1, attempt)
    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)

    # Add jitter if enabled (±25% of delay)
    if jitter:
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, min(delay, max_delay))
