"""
Quota-aware retry policy for recognition submissions.

``RetryPolicy.decide`` is a pure classification of one attempt into
``Success``, ``Retryable`` or ``Terminal`` so the cap and back-off can be
tested without any network I/O.  ``RetryPolicy.retrying`` builds the
``tenacity.AsyncRetrying`` used by the dispatcher; both its retry test and
its wait ask ``decide``, so the attempt cap and back-off live in one place.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from tenacity import AsyncRetrying, RetryCallState, before_sleep_log

from .errors import QuotaExhaustedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    value: Any


@dataclass(frozen=True)
class Retryable:
    delay: float


@dataclass(frozen=True)
class Terminal:
    error: BaseException


Outcome = Union[Success, Retryable, Terminal]


@dataclass
class RetryPolicy:
    """Fixed back-off with jitter, applied only to quota exhaustion.

    Attributes:
        delay: Base wait in seconds before a retry.
        jitter: Upper bound of the random extra wait.
        max_retries: Retries after the first attempt.
    """

    delay: float = 60.0
    jitter: float = 5.0
    max_retries: int = 5
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self) -> float:
        return self.delay + self.rng.uniform(0, self.jitter)

    def decide(self, attempt: int, error: Optional[BaseException] = None, value: Any = None) -> Outcome:
        """Classify the result of attempt number ``attempt`` (1-based)."""
        if error is None:
            return Success(value)
        if isinstance(error, QuotaExhaustedError) and attempt < self.max_attempts:
            return Retryable(self.backoff())
        return Terminal(error)

    def _outcome(self, retry_state: RetryCallState) -> Outcome:
        result = retry_state.outcome
        if result.failed:
            return self.decide(retry_state.attempt_number, result.exception())
        return self.decide(retry_state.attempt_number, value=result.result())

    def _should_retry(self, retry_state: RetryCallState) -> bool:
        return isinstance(self._outcome(retry_state), Retryable)

    def _wait(self, retry_state: RetryCallState) -> float:
        outcome = self._outcome(retry_state)
        return outcome.delay if isinstance(outcome, Retryable) else 0.0

    def retrying(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> AsyncRetrying:
        """Retry loop driven by :meth:`decide`.

        A ``Terminal`` outcome re-raises the last error unchanged.
        """
        return AsyncRetrying(
            retry=self._should_retry,
            wait=self._wait,
            sleep=sleep,
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
