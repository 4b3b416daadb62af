from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tierflow.core.tiers.catalog import Tier, TierCapabilitySet, parse_tier

if TYPE_CHECKING:
    from tierflow.core.snapshots.store import DataSnapshot

ENABLE_FEATURE = "enable_feature"
DISABLE_FEATURE = "disable_feature"
UPDATE_QUOTAS = "update_quotas"


@dataclass(frozen=True, slots=True)
class DataTransform:
    kind: str
    feature: str | None = None
    quotas: dict[str, int] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.feature or '*'}"


@dataclass(frozen=True, slots=True)
class TierDiff:
    current_tier: Tier
    target_tier: Tier
    added_features: tuple[str, ...]
    removed_features: tuple[str, ...]
    data_transforms: tuple[DataTransform, ...]
    limit_changes: dict[str, tuple[int, int]]
    is_downgrade: bool


class TierCapabilityResolver:
    """Pure lookups over the shared tier catalog."""

    def __init__(self, catalog: TierCapabilitySet) -> None:
        self.catalog = catalog

    def diff(self, current: Tier | str, target: Tier | str) -> TierDiff:
        current_tier = parse_tier(current)
        target_tier = parse_tier(target)
        cur = self.catalog.get(current_tier)
        tgt = self.catalog.get(target_tier)

        added = tuple(sorted(tgt.features - cur.features))
        removed = tuple(sorted(cur.features - tgt.features))

        # Removed features are archived before new ones are enabled so a
        # downgrade never leaves data visible under a feature the tier lacks.
        transforms: list[DataTransform] = [DataTransform(kind=DISABLE_FEATURE, feature=f) for f in removed]
        transforms.extend(DataTransform(kind=ENABLE_FEATURE, feature=f) for f in added)
        target_quotas = tgt.quotas.model_dump()
        if target_quotas != cur.quotas.model_dump():
            transforms.append(DataTransform(kind=UPDATE_QUOTAS, quotas=target_quotas))

        limit_changes: dict[str, tuple[int, int]] = {}
        cur_limits = cur.limits.model_dump()
        for key, value in tgt.limits.model_dump().items():
            if cur_limits[key] != value:
                limit_changes[key] = (cur_limits[key], value)

        return TierDiff(
            current_tier=current_tier,
            target_tier=target_tier,
            added_features=added,
            removed_features=removed,
            data_transforms=tuple(transforms),
            limit_changes=limit_changes,
            is_downgrade=target_tier.rank < current_tier.rank,
        )

    def check_compatibility(self, snapshot: DataSnapshot, target: Tier | str) -> list[str]:
        quotas = self.catalog.get(target).quotas
        counts = Counter(item.category for item in snapshot.items)
        issues: list[str] = []
        saved_reports = counts.get("saved_reports", 0)
        if quotas.saved_reports != -1 and saved_reports > quotas.saved_reports:
            issues.append(
                f"{saved_reports} saved reports exceed the {parse_tier(target).value} tier quota of {quotas.saved_reports}"
            )
        return issues
