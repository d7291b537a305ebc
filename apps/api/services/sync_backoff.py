"""
Retry backoff for sync intents.

    delay(attempts) = min(max, base * 2 ** min(8, max(0, attempts)))

With the defaults (base 60 s, max 6 h) a first failure waits 2m, then 4m,
8m ... and stops growing at 256 x base from the 8th attempt on. An intent
is terminal once its attempt counter reaches the ceiling.
"""
from datetime import datetime, timedelta
from typing import Optional

from core.config import settings

MAX_EXPONENT = 8


def compute_backoff_seconds(attempts: int, base_s: Optional[int] = None, max_s: Optional[int] = None) -> int:
    base_s = settings.STRAVA_SYNC_BACKOFF_BASE_S if base_s is None else base_s
    max_s = settings.STRAVA_SYNC_BACKOFF_MAX_S if max_s is None else max_s
    exponent = min(MAX_EXPONENT, max(0, int(attempts)))
    return min(max_s, base_s * 2 ** exponent)


def is_terminal(attempts: int, max_attempts: Optional[int] = None) -> bool:
    max_attempts = settings.STRAVA_SYNC_MAX_ATTEMPTS if max_attempts is None else max_attempts
    return attempts >= max_attempts


def next_attempt_at(now: datetime, attempts: int) -> datetime:
    return now + timedelta(seconds=compute_backoff_seconds(attempts))
