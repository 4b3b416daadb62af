from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(slots=True)
class ChargeResult:
    success: bool
    charge_id: str | None = None
    reason: str = ""
    # The provider may or may not have taken the money.
    ambiguous: bool = False


class BillingGateway(ABC):
    name = "base"

    @abstractmethod
    async def charge(self, user_id: str, tier: str, interval: str, *, idempotency_key: str | None = None) -> ChargeResult:
        raise NotImplementedError

    @abstractmethod
    async def refund(self, charge_id: str) -> bool:
        raise NotImplementedError
