"""Retry handler with exponential backoff for issue tracker calls."""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import ExternalSyncFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryHandler:
    """
    Retries transient failures with exponential backoff.

    Logic:
    - Backoff: initial * multiplier^(attempt-1), capped at max_backoff seconds
    - After max_retries the last error is wrapped in ExternalSyncFailure
    - Errors outside ``retry_on`` propagate immediately
    """

    def __init__(
        self,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        multiplier: float = 2.0,
        max_retries: int = 3,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.max_retries = max_retries
        self.retry_on = retry_on
        self._sleep = sleep

    @classmethod
    def from_config(cls, sync_config, **kwargs) -> "RetryHandler":
        return cls(
            initial_backoff=sync_config.backoff_initial,
            max_backoff=sync_config.backoff_max,
            multiplier=sync_config.backoff_multiplier,
            max_retries=sync_config.max_retries,
            **kwargs,
        )

    def calculate_backoff(self, attempt: int) -> float:
        """
        Calculate backoff time before retry number ``attempt`` (1-based).

        Formula: initial * multiplier^(attempt-1), capped at max_backoff
        """
        backoff = self.initial_backoff * (self.multiplier ** (attempt - 1))
        return min(backoff, self.max_backoff)

    def call(self, fn: Callable[[], T], operation: str) -> T:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return fn()
            except self.retry_on as e:
                if not _is_retryable(e):
                    raise
                last_error = e
                if attempt < self.max_retries:
                    backoff = self.calculate_backoff(attempt)
                    logger.warning(
                        f"{operation} failed (attempt {attempt}/{self.max_retries}): {e}. "
                        f"Retrying in {backoff:.1f}s"
                    )
                    self._sleep(backoff)

        logger.error(f"{operation} failed after {self.max_retries} attempts: {last_error}")
        raise ExternalSyncFailure(operation, last_error)


def _is_retryable(error: BaseException) -> bool:
    # Coordination errors declare retryability; anything else (network, platform) is transient
    return getattr(error, "retryable", True)
