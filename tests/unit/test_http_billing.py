from __future__ import annotations

import json

import httpx
import pytest

from tierflow.core.billing.http_gateway import HttpBillingGateway
from tierflow.core.billing.sandbox import SandboxBillingGateway


def _gateway(handler, **kwargs) -> HttpBillingGateway:
    return HttpBillingGateway(
        base_url="https://billing.example.test",
        api_key_env="TEST_BILLING_KEY",
        refund_backoff_seconds=0.0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_charge_sends_idempotency_key_and_bearer_token(monkeypatch):
    monkeypatch.setenv("TEST_BILLING_KEY", "sk-test")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "ch_1", "status": "succeeded"})

    result = await _gateway(handler).charge("u1", "professional", "monthly", idempotency_key="sess-1")

    assert result.success is True
    assert result.charge_id == "ch_1"
    assert seen[0].url.path == "/charges"
    assert seen[0].headers["Idempotency-Key"] == "sess-1"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert json.loads(seen[0].content) == {"user_id": "u1", "tier": "professional", "interval": "monthly"}


@pytest.mark.asyncio
async def test_declined_charge_is_not_retried():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(402, json={"status": "declined", "reason": "card_declined"})

    result = await _gateway(handler).charge("u1", "professional", "monthly")
    assert result.success is False
    assert result.reason == "card_declined"
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_charge_transport_error_becomes_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _gateway(handler).charge("u1", "starter", "yearly")
    assert result.success is False
    assert "connecterror" in result.reason.lower()
    assert result.ambiguous is False


@pytest.mark.asyncio
async def test_refund_retries_transient_failures():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"status": "refunded"})

    assert await _gateway(handler, refund_attempts=3).refund("ch_1") is True
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_refund_gives_up_on_client_error():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(404, json={"error": "unknown charge"})

    assert await _gateway(handler).refund("ch_missing") is False
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_sandbox_charge_is_idempotent_per_key():
    billing = SandboxBillingGateway()
    first = await billing.charge("u1", "starter", "monthly", idempotency_key="sess-1")
    second = await billing.charge("u1", "starter", "monthly", idempotency_key="sess-1")
    assert first.charge_id == second.charge_id
    assert len(billing.charges) == 1
    assert await billing.refund(first.charge_id) is True
    assert await billing.refund("sbx_unknown") is False


@pytest.mark.asyncio
async def test_charge_with_unknown_outcome_is_flagged_ambiguous():
    def read_timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out waiting for response", request=request)

    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    def garbled(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>ok</html>")

    def pending(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "ch_9", "status": "pending"})

    for handler in (read_timeout, server_error, garbled, pending):
        result = await _gateway(handler).charge("u1", "professional", "monthly", idempotency_key="sess-1")
        assert result.success is False, handler.__name__
        assert result.ambiguous is True, handler.__name__


@pytest.mark.asyncio
async def test_charge_rejected_before_send_is_a_clean_decline():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    result = await _gateway(handler).charge("u1", "starter", "monthly")
    assert result.success is False
    assert result.ambiguous is False
