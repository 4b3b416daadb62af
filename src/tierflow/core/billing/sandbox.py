from __future__ import annotations

import uuid

from tierflow.core.billing.base import BillingGateway, ChargeResult


class SandboxBillingGateway(BillingGateway):
    """Approves every charge locally; used for development and demos."""

    name = "sandbox"

    def __init__(self) -> None:
        self.charges: dict[str, tuple[str, str, str]] = {}
        self.refunded: set[str] = set()
        self._by_key: dict[str, str] = {}

    async def charge(self, user_id: str, tier: str, interval: str, *, idempotency_key: str | None = None) -> ChargeResult:
        if idempotency_key and idempotency_key in self._by_key:
            return ChargeResult(success=True, charge_id=self._by_key[idempotency_key])
        charge_id = f"sbx_{uuid.uuid4().hex[:16]}"
        self.charges[charge_id] = (user_id, tier, interval)
        if idempotency_key:
            self._by_key[idempotency_key] = charge_id
        return ChargeResult(success=True, charge_id=charge_id)

    async def refund(self, charge_id: str) -> bool:
        if charge_id not in self.charges:
            return False
        self.refunded.add(charge_id)
        return True
