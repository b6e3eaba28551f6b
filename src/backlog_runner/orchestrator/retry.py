"""Attempt loop with bounded retries for engine invocations."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from backlog_runner.orchestrator.errors import RetryableAttemptError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_MODES = ("fixed", "exponential")


class RetryPolicy:
    """Runs an operation up to ``max_retries`` times, spacing attempts by a delay.

    Only :class:`RetryableAttemptError` triggers another attempt. Any other
    exception propagates immediately, and exhausting the attempts re-raises
    the last retryable error so the caller can classify it.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        retry_delay_seconds: float = 5.0,
        backoff: str = "fixed",
        max_delay_seconds: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1.")
        if retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0.")
        if backoff not in BACKOFF_MODES:
            raise ValueError(f"Unsupported backoff mode: {backoff!r}. Use one of {BACKOFF_MODES}.")
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.backoff = backoff
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep
        self._random = random.Random()  # noqa: S311

    def run(
        self,
        operation: Callable[[int], T],
        *,
        on_retry: Callable[[int, RetryableAttemptError], None] | None = None,
    ) -> T:
        """Call ``operation(attempt)`` until it returns or attempts run out."""

        attempt = 1
        while True:
            try:
                return operation(attempt)
            except RetryableAttemptError as error:
                if attempt >= self.max_retries:
                    logger.warning(
                        "Giving up after %d attempt(s): %s",
                        attempt,
                        error,
                    )
                    raise
                delay = self.compute_delay(retry_number=attempt)
                logger.info(
                    "Attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    self.max_retries,
                    error,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
                attempt += 1
                if on_retry is not None:
                    on_retry(attempt, error)

    def compute_delay(self, *, retry_number: int) -> float:
        if self.backoff == "fixed":
            return self.retry_delay_seconds
        max_delay = min(
            self.max_delay_seconds,
            self.retry_delay_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)
