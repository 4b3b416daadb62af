from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from tierflow.core.runtime.errors import ErrorInfo, classify_error

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_backoff_seconds: float = 0.05
    jitter_seconds: float = 0.02
    max_backoff_seconds: float = 0.5


async def run_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    category: str,
    component: str,
    on_attempt: Callable[[int, str, ErrorInfo | None], None] | None = None,
) -> T:
    """Await ``fn`` until it succeeds, a non-retryable error occurs or attempts run out."""

    def _retryable(exc: BaseException) -> bool:
        return classify_error(exc, category=category, component=component).retryable

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_exponential(multiplier=policy.base_backoff_seconds, max=policy.max_backoff_seconds)
        + wait_random(0, policy.jitter_seconds),
        retry=retry_if_exception(_retryable),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                try:
                    value = await fn()
                except Exception as exc:
                    if on_attempt:
                        on_attempt(number, "error", classify_error(exc, category=category, component=component))
                    raise
                if on_attempt:
                    on_attempt(number, "ok", None)
    except Exception as exc:
        raise RuntimeError(f"retries_exhausted: {exc}") from exc
    return value
