from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from tierflow.core.billing.base import BillingGateway
from tierflow.core.billing.sandbox import SandboxBillingGateway
from tierflow.core.config.schema import UpgradeConfig
from tierflow.core.datastore.base import PreservationCategory
from tierflow.core.datastore.sql_store import SqlUserDataStore
from tierflow.core.runtime.errors import DataStoreUnavailableError
from tierflow.core.snapshots.store import SnapshotStore
from tierflow.core.tiers.catalog import build_catalog
from tierflow.core.tiers.resolver import TierCapabilityResolver
from tierflow.core.upgrade.executor import MigrationExecutor
from tierflow.db.session import Base, create_session_factory


class FaultyDataStore(SqlUserDataStore):
    """SQL store with switchable faults for failure-path tests."""

    def __init__(self, db_session_factory) -> None:
        super().__init__(db_session_factory)
        self.unavailable = False
        self.failing_quotas: dict[str, int] | None = None
        self.quota_failures = 0
        self.failing_writes: set[str] = set()

    async def list_items(self, user_id, category):
        if self.unavailable:
            raise DataStoreUnavailableError("connection refused")
        return await super().list_items(user_id, category)

    async def set_quotas(self, user_id, quotas):
        if self.failing_quotas is not None and dict(quotas) == self.failing_quotas:
            self.quota_failures += 1
            raise DataStoreUnavailableError("quota service temporarily unavailable")
        return await super().set_quotas(user_id, quotas)

    async def write_item(self, user_id, category, identifier, payload):
        if identifier in self.failing_writes:
            raise DataStoreUnavailableError(f"write rejected for {identifier}")
        return await super().write_item(user_id, category, identifier, payload)


@dataclass
class Stack:
    db_session_factory: Any
    data_store: FaultyDataStore
    billing: BillingGateway
    snapshot_store: SnapshotStore
    resolver: TierCapabilityResolver
    executor: MigrationExecutor

    async def seed_user(
        self,
        user_id: str,
        tier: str = "starter",
        per_category: int = 2,
        feature_records: dict[str, int] | None = None,
    ) -> int:
        await self.data_store.set_tier(user_id, tier)
        count = 0
        for category in PreservationCategory:
            for i in range(per_category):
                await self.data_store.write_item(
                    user_id,
                    category,
                    f"{category.value}-{i}",
                    {"n": i, "category": category.value, "title": f"{category.value} #{i}"},
                )
                count += 1
        for feature, n in (feature_records or {}).items():
            for i in range(n):
                self.data_store.add_feature_record(user_id, feature, f"{feature}-{i}", {"i": i})
        return count


@pytest.fixture
def stack_factory(tmp_path):
    built = {"n": 0}

    def _build(
        *,
        billing: BillingGateway | None = None,
        auto_rollback: bool = True,
        retention: str = "archive",
        max_transform_attempts: int = 3,
        retained_sessions: int = 500,
    ) -> Stack:
        built["n"] += 1
        idx = built["n"]
        session_factory, engine = create_session_factory(f"sqlite:///{tmp_path / f'tierflow_{idx}.db'}")
        import tierflow.db.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        data_store = FaultyDataStore(session_factory)
        snapshot_store = SnapshotStore(data_store, session_factory, retention=retention)
        resolver = TierCapabilityResolver(build_catalog())
        billing = billing or SandboxBillingGateway()
        executor = MigrationExecutor(
            data_store=data_store,
            billing=billing,
            snapshot_store=snapshot_store,
            resolver=resolver,
            config=UpgradeConfig(
                max_transform_attempts=max_transform_attempts,
                transform_backoff_seconds=0.0,
                auto_rollback=auto_rollback,
                retained_sessions=retained_sessions,
            ),
        )
        return Stack(
            db_session_factory=session_factory,
            data_store=data_store,
            billing=billing,
            snapshot_store=snapshot_store,
            resolver=resolver,
            executor=executor,
        )

    return _build
