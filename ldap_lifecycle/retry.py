"""
Retry policy for the two calls that routinely fail for a moment and then
recover: the service-account bind and SMTP delivery.

The policy comes from the error_handling configuration section
(max_retries, retry_wait_seconds). Exceptions outside the retryable set
propagate on the first attempt.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when every attempt allowed by the policy has failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 5.0
    backoff: float = 1.0

    @classmethod
    def from_config(cls, error_config: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        error_config = error_config or {}
        return cls(
            max_attempts=max(1, int(error_config.get('max_retries', 3))),
            delay=float(error_config.get('retry_wait_seconds', 5)),
            backoff=float(error_config.get('retry_backoff', 1.0)),
        )

    def call(self, func: Callable, *args, retry_on: Tuple[Type[Exception], ...] = (Exception,),
             operation: str = "operation", **kwargs) -> Any:
        """
        Call ``func`` until it succeeds or the attempts run out.

        Raises:
            MaxRetriesExceeded: If every attempt raised one of ``retry_on``
        """
        wait = self.delay
        last_exception = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
            except retry_on as e:
                last_exception = e
                if attempt == self.max_attempts:
                    break
                logger.warning(f"{operation} failed on attempt {attempt}/{self.max_attempts}, "
                               f"retrying in {wait:.1f}s due to {type(e).__name__}: {e}")
                time.sleep(wait)
                wait *= self.backoff
                continue

            if attempt > 1:
                logger.info(f"{operation} succeeded on attempt {attempt}")
            return result

        raise MaxRetriesExceeded(self.max_attempts, last_exception)
