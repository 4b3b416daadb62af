from __future__ import annotations

from typing import Any

from tierflow.core.datastore.base import UserDataStore
from tierflow.core.tiers.resolver import DISABLE_FEATURE, ENABLE_FEATURE, UPDATE_QUOTAS, DataTransform
from tierflow.core.upgrade.session import AppliedTransform


class TransformApplier:
    """Applies tier data transforms and reverts them from recorded undo state.

    Transforms only touch feature access, feature-scoped records and quotas.
    Preserved user data is never rewritten, which keeps snapshot hashes valid
    through a successful upgrade.
    """

    def __init__(self, data_store: UserDataStore) -> None:
        self.data_store = data_store

    async def undo_state(self, user_id: str, transform: DataTransform) -> dict[str, Any]:
        """Read what ``revert`` needs. Must be called before ``apply``."""
        if transform.kind in {ENABLE_FEATURE, DISABLE_FEATURE}:
            return {"was_enabled": transform.feature in await self.data_store.enabled_features(user_id)}
        if transform.kind == UPDATE_QUOTAS:
            return {"quotas": await self.data_store.get_quotas(user_id)}
        raise ValueError(f"unknown transform kind: {transform.kind}")

    async def apply(self, user_id: str, transform: DataTransform) -> None:
        if transform.kind == ENABLE_FEATURE:
            await self.data_store.set_feature_enabled(user_id, transform.feature, True)
            await self.data_store.unarchive_feature_data(user_id, transform.feature)
        elif transform.kind == DISABLE_FEATURE:
            await self.data_store.set_feature_enabled(user_id, transform.feature, False)
            await self.data_store.archive_feature_data(user_id, transform.feature)
        elif transform.kind == UPDATE_QUOTAS:
            await self.data_store.set_quotas(user_id, dict(transform.quotas))
        else:
            raise ValueError(f"unknown transform kind: {transform.kind}")

    async def revert(self, user_id: str, applied: AppliedTransform) -> None:
        transform = applied.transform
        undo = applied.undo
        was_enabled = bool(undo.get("was_enabled"))
        if transform.kind == ENABLE_FEATURE:
            await self.data_store.set_feature_enabled(user_id, transform.feature, was_enabled)
            if not was_enabled:
                await self.data_store.archive_feature_data(user_id, transform.feature)
        elif transform.kind == DISABLE_FEATURE:
            await self.data_store.set_feature_enabled(user_id, transform.feature, was_enabled)
            if was_enabled:
                await self.data_store.unarchive_feature_data(user_id, transform.feature)
        elif transform.kind == UPDATE_QUOTAS:
            await self.data_store.set_quotas(user_id, dict(undo.get("quotas") or {}))
        else:
            raise ValueError(f"unknown transform kind: {transform.kind}")
