"""Retry policy for transient secret store failures."""
import logging
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import FetchError

T = TypeVar("T")


def is_retryable_fetch_error(error: BaseException) -> bool:
    """Only UNAVAILABLE fetch errors are transient."""
    return isinstance(error, FetchError) and error.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base_delay, 2*base_delay, ... capped at max_delay."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_fetch_error)

    def build(self, *, logger: logging.Logger) -> Retrying:
        """Return a configured tenacity Retrying instance."""
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay),
            retry=retry_if_exception(self.retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


def run_with_retry(policy: RetryPolicy, logger: logging.Logger, operation: Callable[[], T]) -> T:
    """Execute operation under policy, re-raising the last error when exhausted."""
    retrying = policy.build(logger=logger)
    for attempt in retrying:
        with attempt:
            return operation()
    raise RuntimeError("Retrying loop exited unexpectedly")
