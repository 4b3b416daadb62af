from __future__ import annotations

import os

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from tierflow.core.billing.base import BillingGateway, ChargeResult
from tierflow.core.runtime.errors import compact_error_summary


# Raised before the request reaches the provider, so nothing was charged.
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.UnsupportedProtocol)
_DECLINED_STATUSES = {"declined", "failed", "canceled", "cancelled"}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


class HttpBillingGateway(BillingGateway):
    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key_env: str | None,
        timeout_seconds: int = 20,
        refund_attempts: int = 3,
        refund_backoff_seconds: float = 0.2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key_env = api_key_env
        self.timeout_seconds = timeout_seconds
        self.refund_attempts = max(1, refund_attempts)
        self.refund_backoff_seconds = refund_backoff_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        token = os.getenv(self.api_key_env or "", "")
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_seconds, transport=self._transport)

    async def charge(self, user_id: str, tier: str, interval: str, *, idempotency_key: str | None = None) -> ChargeResult:
        # Never retried here: a lost response must not turn into a second charge.
        headers = self._headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        payload = {"user_id": user_id, "tier": tier, "interval": interval}
        try:
            async with self._client() as client:
                resp = await client.post("/charges", json=payload, headers=headers)
        except _NOT_SENT as exc:
            return ChargeResult(success=False, reason=compact_error_summary(exc))
        except httpx.HTTPError as exc:
            return ChargeResult(success=False, reason=compact_error_summary(exc), ambiguous=True)

        if resp.status_code >= 500:
            return ChargeResult(success=False, reason=f"http {resp.status_code}", ambiguous=True)
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = None
        if not isinstance(body, dict):
            if resp.is_success:
                return ChargeResult(success=False, reason="unreadable charge response", ambiguous=True)
            return ChargeResult(success=False, reason=f"http {resp.status_code}")

        status = str(body.get("status", "succeeded" if resp.is_success else "declined"))
        if resp.is_success and status == "succeeded":
            return ChargeResult(success=True, charge_id=str(body.get("id", "")) or None)
        reason = str(body.get("reason") or body.get("error") or f"http {resp.status_code}")
        if resp.is_success and status not in _DECLINED_STATUSES:
            return ChargeResult(success=False, reason=f"charge status {status}", ambiguous=True)
        return ChargeResult(success=False, reason=reason)

    async def refund(self, charge_id: str) -> bool:
        async def _post() -> httpx.Response:
            async with self._client() as client:
                resp = await client.post(f"/charges/{charge_id}/refund", headers=self._headers())
                resp.raise_for_status()
                return resp

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.refund_attempts),
                wait=wait_fixed(self.refund_backoff_seconds),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    resp = await _post()
        except httpx.HTTPError:
            return False
        body = resp.json() if resp.content else {}
        return body.get("status", "refunded") == "refunded"
