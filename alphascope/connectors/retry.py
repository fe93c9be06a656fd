"""Retry policy shared by every external call site.

One object decides how many attempts, how long to back off and which
errors are worth another try. Connectors receive it by injection and wrap
each request with ``await policy.run(fn, ..., label=...)``.

Backoff: ``base * 2**(attempt-1)`` capped at ``max_delay``, then scaled by
a uniform factor in ``[1 - jitter, 1 + jitter]``.
"""

from __future__ import annotations

import random
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from alphascope.config import RetryConfig
from alphascope.errors import TransientNetworkError
from alphascope.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientNetworkError)


class wait_jittered_exponential(wait_base):
    """Capped exponential backoff with multiplicative jitter."""

    def __init__(self, base: float, cap: float, jitter: float):
        self.base = base
        self.cap = cap
        self.jitter = jitter

    def __call__(self, retry_state: RetryCallState) -> float:
        n = max(retry_state.attempt_number, 1)
        delay = min(self.cap, self.base * (2 ** (n - 1)))
        factor = random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, delay * factor)


class RetryPolicy:
    """Max attempts, backoff schedule and retryable-error predicate."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 4.0,
        jitter: float = 0.2,
        retryable: Callable[[BaseException], bool] = is_transient,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable = retryable

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_secs,
            max_delay=config.max_delay_secs,
            jitter=config.jitter,
        )

    def backoff(self) -> wait_jittered_exponential:
        return wait_jittered_exponential(self.base_delay, self.max_delay, self.jitter)

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        label: str = "",
        **kwargs: Any,
    ) -> T:
        """Call ``fn`` until it succeeds, fails permanently or runs out of attempts.

        The last error is re-raised unchanged.
        """

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            log.warning(
                "retry.backoff",
                label=label,
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(exc),
            )

        result: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.backoff(),
            retry=retry_if_exception(self.retryable),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                result = await fn(*args, **kwargs)
        return result
