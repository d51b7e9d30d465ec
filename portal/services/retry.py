"""Bounded retry policies for Bot API back-off."""

from collections.abc import Callable
from dataclasses import dataclass, field


def constant_delay(seconds: float) -> Callable[[int], float]:
    """Same delay before every retry."""

    def delay(attempt: int) -> float:
        return seconds

    return delay


def exponential_delay(
    base_seconds: float,
    factor: float = 2.0,
    max_seconds: float = 30.0,
) -> Callable[[int], float]:
    """``base * factor**(attempt - 1)``, capped at ``max_seconds``."""

    def delay(attempt: int) -> float:
        return min(max_seconds, base_seconds * factor ** max(0, attempt - 1))

    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between tries.

    ``max_attempts=None`` means retry forever. Attempts are numbered
    from 1; ``delay(n)`` is the pause after the n-th failed attempt.
    """

    max_attempts: int | None = 5
    delay: Callable[[int], float] = field(default=constant_delay(1.0))

    def allows(self, attempt: int) -> bool:
        """Whether attempt number ``attempt`` may run."""
        return self.max_attempts is None or attempt <= self.max_attempts

    def exhausted(self, failures: int) -> bool:
        """Whether ``failures`` consecutive failures use up the budget."""
        return self.max_attempts is not None and failures >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.delay(attempt))


NO_DELAY = constant_delay(0.0)
