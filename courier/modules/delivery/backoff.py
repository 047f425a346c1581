from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

DEFAULT_BACKOFF_TABLE: tuple[float, ...] = (300, 900, 1800, 3600, 7200)  # 5, 15, 30, 60, 120 minutes
DEFAULT_MAX_ATTEMPTS = 5

@dataclass(frozen=True)
class RetryDecision:
    attempts: int
    terminal: bool
    delay: float
    scheduled_at: datetime

class BackoffPolicy:
    """Maps a delivery attempt number to a retry delay, in seconds."""

    def __init__(self, table: Sequence[float] = DEFAULT_BACKOFF_TABLE, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if not table:
            raise ValueError("backoff table must not be empty")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.table = tuple(float(d) for d in table)
        self.max_attempts = max_attempts

    def delay(self, attempt: int) -> float:
        # attempt is 1-based; anything past the table reuses its last entry
        idx = min(max(attempt, 1), len(self.table)) - 1
        return self.table[idx]

    def is_terminal(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def decide(self, attempts_so_far: int, now: datetime) -> RetryDecision:
        attempts = attempts_so_far + 1
        delay = self.delay(attempts)
        return RetryDecision(
            attempts=attempts,
            terminal=self.is_terminal(attempts),
            delay=delay,
            scheduled_at=now + timedelta(seconds=delay),
        )
