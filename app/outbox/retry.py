from __future__ import annotations

from dataclasses import dataclass

ATTEMPTING = "ATTEMPTING"
ABANDONED = "ABANDONED"
DONE = "DONE"


@dataclass(frozen=True)
class RetryDecision:
    state: str  # ATTEMPTING | ABANDONED
    attempt: int
    delay_seconds: float = 0.0

    @property
    def abandoned(self) -> bool:
        return self.state == ABANDONED


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    `attempt` counts failures so far (0 for the first retry). After
    `max_attempts` scheduled retries the subject is ABANDONED.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential_base: float = 2.0

    def delay(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (self.exponential_base ** max(0, attempt))
        return min(delay, self.max_delay_seconds)

    def decide(self, attempt: int) -> RetryDecision:
        if attempt >= self.max_attempts:
            return RetryDecision(state=ABANDONED, attempt=attempt)
        return RetryDecision(state=ATTEMPTING, attempt=attempt + 1, delay_seconds=self.delay(attempt))

    def schedule(self) -> list[float]:
        return [self.delay(i) for i in range(self.max_attempts)]


# Send transport errors (timeouts, 5xx, throttling).
TRANSPORT_RETRY = RetryPolicy(max_attempts=5, base_delay_seconds=30, max_delay_seconds=15 * 60)

# Resolving a contact's alternate identifier on the session channel: 1, 2, 4, 8, 16 minutes.
LID_LOOKUP_RETRY = RetryPolicy(max_attempts=5, base_delay_seconds=60, max_delay_seconds=32 * 60)
LID_RETRY_DISCONNECTED_DELAY = 5 * 60

# Session restart-required: reconnecting too often risks provider throttling, so the cap is low.
SESSION_RESTART_RETRY = RetryPolicy(max_attempts=3, base_delay_seconds=5, max_delay_seconds=30)
