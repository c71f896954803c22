"""Bounded exponential backoff for retryable provider calls."""

import logging
from dataclasses import dataclass

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransientProviderError
from .utils import logger


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 10.0

    def call(self, fn, *args, **kwargs):
        """Call fn, retrying on TransientProviderError.

        The last TransientProviderError is re-raised once attempts run out.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)
