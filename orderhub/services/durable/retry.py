"""
Step retry policies: bounded exponential backoff.
"""

from dataclasses import dataclass, asdict
from typing import Dict

from .. import config


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_interval: float = 5.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 30.0

    def delay_for(self, failed_attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = self.initial_interval * (self.backoff_coefficient ** (failed_attempt - 1))
        return min(delay, self.maximum_interval)

    def to_dict(self) -> Dict:
        return asdict(self)


STANDARD_RETRY_POLICY = RetryPolicy(
    max_attempts=config.STEP_RETRY_MAX_ATTEMPTS,
    initial_interval=config.STEP_RETRY_INITIAL_SECONDS,
    backoff_coefficient=config.STEP_RETRY_BACKOFF,
    maximum_interval=config.STEP_RETRY_MAX_SECONDS,
)

# Order submission gets a longer budget
SUBMISSION_RETRY_POLICY = RetryPolicy(
    max_attempts=config.SUBMIT_RETRY_MAX_ATTEMPTS,
    initial_interval=config.STEP_RETRY_INITIAL_SECONDS,
    backoff_coefficient=config.STEP_RETRY_BACKOFF,
    maximum_interval=config.SUBMIT_RETRY_MAX_SECONDS,
)

NO_RETRY = RetryPolicy(max_attempts=1, initial_interval=0.0)
