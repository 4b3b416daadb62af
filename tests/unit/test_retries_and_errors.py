from __future__ import annotations

import asyncio

import pytest

from tierflow.core.runtime.errors import (
    DataStoreUnavailableError,
    UpgradeValidationError,
    classify_error,
    compact_error_summary,
)
from tierflow.core.runtime.retries import RetryPolicy, run_with_retry
from tierflow.core.runtime.timeouts import run_with_timeout

FAST = RetryPolicy(max_attempts=3, base_backoff_seconds=0.0, jitter_seconds=0.0)


@pytest.mark.asyncio
async def test_retry_bounded_attempts_for_transient_errors():
    attempts = {"n": 0}
    seen: list[tuple[int, str]] = []

    async def flaky():
        attempts["n"] += 1
        raise DataStoreUnavailableError("connection refused")

    with pytest.raises(RuntimeError, match="retries_exhausted") as info:
        await run_with_retry(
            flaky,
            policy=FAST,
            category="transform",
            component="update_quotas:*",
            on_attempt=lambda n, status, _info: seen.append((n, status)),
        )
    assert attempts["n"] == 3
    assert seen == [(1, "error"), (2, "error"), (3, "error")]
    assert isinstance(info.value.__cause__, DataStoreUnavailableError)


@pytest.mark.asyncio
async def test_retry_stops_on_non_retryable_error():
    attempts = {"n": 0}

    async def invalid():
        attempts["n"] += 1
        raise UpgradeValidationError("target tier equals current tier")

    with pytest.raises(RuntimeError, match="retries_exhausted"):
        await run_with_retry(invalid, policy=FAST, category="transform", component="x")
    assert attempts["n"] == 1


@pytest.mark.asyncio
async def test_retry_returns_value_after_recovery():
    attempts = {"n": 0}

    async def recovers():
        attempts["n"] += 1
        if attempts["n"] < 2:
            raise TimeoutError("temporary")
        return "ok"

    assert await run_with_retry(recovers, policy=FAST, category="transform", component="x") == "ok"
    assert attempts["n"] == 2


def test_classify_error_heuristics_and_overrides():
    assert classify_error(ValueError("unauthorized auth error"), category="billing", component="http").retryable is False
    assert classify_error(ConnectionError("connection reset"), category="billing", component="http").retryable is True
    assert classify_error(RuntimeError("http 404 not found"), category="billing", component="http").retryable is False
    # A Tierflow error's own flag wins over message heuristics.
    assert classify_error(UpgradeValidationError("connection timeout"), category="x", component="y").retryable is False
    assert classify_error(DataStoreUnavailableError("invalid"), category="x", component="y").retryable is True


def test_compact_error_summary_is_single_line():
    summary = compact_error_summary(ValueError("Bad\n\n   Things   happened"))
    assert summary == "ValueError: bad things happened"


@pytest.mark.asyncio
async def test_run_with_timeout_raises_builtin_timeout():
    with pytest.raises(TimeoutError, match="timed out"):
        await run_with_timeout(asyncio.sleep(1), 0.01)
    assert await run_with_timeout(asyncio.sleep(0, result=5), 1) == 5
