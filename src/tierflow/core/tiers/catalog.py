"""Static tier capability table.

The catalog is built once at process start from the defaults below, optionally
merged with per-tier overrides from configuration, and is read-only afterwards.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tierflow.core.runtime.errors import TierConfigurationError


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"
    ULTIMATE = "ultimate"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [Tier.FREE, Tier.STARTER, Tier.PROFESSIONAL, Tier.ENTERPRISE, Tier.ULTIMATE]


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


def parse_tier(value: str | Tier) -> Tier:
    try:
        return Tier(value)
    except ValueError as exc:
        raise TierConfigurationError(f"unknown tier: {value!r}") from exc


def compare_tiers(a: Tier, b: Tier) -> int:
    return a.rank - b.rank


class TierLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    # -1 means unlimited
    max_users: int
    max_projects: int
    max_workflows: int
    api_calls_per_month: int
    storage_gb: int


class TierQuotas(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_calls: int
    dashboard_widgets: int
    saved_reports: int
    data_retention_days: int


class TierConfiguration(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Tier
    name: str
    monthly_price: float = Field(ge=0)
    yearly_price: float = Field(ge=0)
    features: frozenset[str]
    limits: TierLimits
    quotas: TierQuotas

    def price(self, interval: BillingInterval) -> float:
        return self.monthly_price if interval == BillingInterval.MONTHLY else self.yearly_price


_STARTER_FEATURES = [
    "basic_dashboard",
    "advanced_dashboard",
    "clickup_integration",
    "ai_chatbot",
    "real_time_analytics",
    "content_calendar",
    "team_collaboration",
    "comment_system",
]

_PROFESSIONAL_FEATURES = [
    *_STARTER_FEATURES,
    "executive_dashboard",
    "blotato_integration",
    "n8n_workflows",
    "ai_content_generation",
    "historical_analytics",
    "ab_testing",
    "social_media_scheduling",
    "approval_workflows",
    "task_assignment",
    "budget_tracking",
    "roi_analytics",
    "data_export",
    "priority_support",
]

_ENTERPRISE_FEATURES = [
    *_PROFESSIONAL_FEATURES,
    "ai_optimization",
    "predictive_analytics",
    "custom_reports",
    "api_access",
    "webhook_support",
    "sso_integration",
    "audit_logging",
    "advanced_permissions",
]

_ULTIMATE_FEATURES = [
    *_ENTERPRISE_FEATURES,
    "dedicated_support",
    "white_labeling",
    "unlimited_users",
    "advanced_analytics",
]

DEFAULT_TIERS: dict[str, dict[str, Any]] = {
    "free": {
        "name": "Free",
        "monthly_price": 0,
        "yearly_price": 0,
        "features": ["basic_dashboard", "team_collaboration", "comment_system"],
        "limits": {"max_users": 2, "max_projects": 1, "max_workflows": 0, "api_calls_per_month": 0, "storage_gb": 1},
        "quotas": {"api_calls": 100, "dashboard_widgets": 5, "saved_reports": 3, "data_retention_days": 30},
    },
    "starter": {
        "name": "Starter",
        "monthly_price": 49,
        "yearly_price": 490,
        "features": _STARTER_FEATURES,
        "limits": {"max_users": 5, "max_projects": 3, "max_workflows": 10, "api_calls_per_month": 1000, "storage_gb": 10},
        "quotas": {"api_calls": 1000, "dashboard_widgets": 10, "saved_reports": 10, "data_retention_days": 90},
    },
    "professional": {
        "name": "Professional",
        "monthly_price": 149,
        "yearly_price": 1490,
        "features": _PROFESSIONAL_FEATURES,
        "limits": {
            "max_users": 25,
            "max_projects": 10,
            "max_workflows": 100,
            "api_calls_per_month": 10000,
            "storage_gb": 100,
        },
        "quotas": {"api_calls": 10000, "dashboard_widgets": 20, "saved_reports": 50, "data_retention_days": 365},
    },
    "enterprise": {
        "name": "Enterprise",
        "monthly_price": 449,
        "yearly_price": 4490,
        "features": _ENTERPRISE_FEATURES,
        "limits": {
            "max_users": 100,
            "max_projects": 50,
            "max_workflows": 500,
            "api_calls_per_month": 100000,
            "storage_gb": 1000,
        },
        "quotas": {"api_calls": 100000, "dashboard_widgets": 100, "saved_reports": 500, "data_retention_days": -1},
    },
    "ultimate": {
        "name": "Ultimate",
        "monthly_price": 999,
        "yearly_price": 9990,
        "features": _ULTIMATE_FEATURES,
        "limits": {"max_users": -1, "max_projects": -1, "max_workflows": -1, "api_calls_per_month": -1, "storage_gb": -1},
        "quotas": {"api_calls": -1, "dashboard_widgets": -1, "saved_reports": -1, "data_retention_days": -1},
    },
}


class TierCapabilitySet:
    def __init__(self, tiers: dict[Tier, TierConfiguration]) -> None:
        missing = [t.value for t in Tier if t not in tiers]
        if missing:
            raise TierConfigurationError(f"tier table is missing tiers: {missing}")
        self._tiers = dict(tiers)

    def get(self, tier: Tier | str) -> TierConfiguration:
        return self._tiers[parse_tier(tier)]

    def tiers(self) -> list[TierConfiguration]:
        return [self._tiers[t] for t in _TIER_ORDER]

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return {cfg.tier.value: cfg.model_dump(mode="json") for cfg in self.tiers()}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def build_catalog(overrides: dict[str, dict[str, Any]] | None = None) -> TierCapabilitySet:
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(DEFAULT_TIERS))
    if unknown:
        raise TierConfigurationError(f"unknown tiers in configuration: {unknown}")

    tiers: dict[Tier, TierConfiguration] = {}
    for key, base in DEFAULT_TIERS.items():
        raw = _merge(base, overrides.get(key, {}))
        try:
            tiers[Tier(key)] = TierConfiguration.model_validate({**raw, "tier": key})
        except ValidationError as exc:
            raise TierConfigurationError(f"invalid configuration for tier {key!r}: {exc}") from exc
    return TierCapabilitySet(tiers)
