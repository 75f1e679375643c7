import random
from datetime import datetime, timedelta, timezone
from typing import Optional

def calculate_backoff_seconds(
    attempts: int,
    base_delay_seconds: int = 10,
    max_delay_seconds: int = 3600,
    jitter: bool = True
) -> float:
    """
    Exponential backoff with optional jitter.

    Formula:
        delay = min(base * (2 ^ (attempts - 1)), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        attempts: Failed attempts so far, counting the one that just failed.
                  attempts=1 means "we failed once, when should we try again?"
                  and yields the base delay.
    """
    exponent = max(attempts - 1, 0)
    # 2^20 * base is far beyond any sane max_delay
    exponent = min(exponent, 20)

    delay = base_delay_seconds * (2 ** exponent)
    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% on top
        delay += random.uniform(0, delay * 0.1)

    return float(delay)

def calculate_next_run(
    attempts: int,
    base_delay_seconds: int = 10,
    max_delay_seconds: int = 3600,
    jitter: bool = True,
    now: Optional[datetime] = None,
) -> datetime:
    now = now or datetime.now(timezone.utc)
    delay = calculate_backoff_seconds(attempts, base_delay_seconds, max_delay_seconds, jitter)
    return now + timedelta(seconds=delay)
