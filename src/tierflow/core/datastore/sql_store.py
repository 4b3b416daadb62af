from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from tierflow.core.datastore.base import DataItem, PreservationCategory, UserDataStore
from tierflow.core.runtime.errors import DataStoreUnavailableError, compact_error_summary
from tierflow.db.models import Account, FeatureAccess, FeatureRecord, UserDataItem, UserQuota


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlUserDataStore(UserDataStore):
    def __init__(self, db_session_factory, *, default_tier: str = "free") -> None:
        self.db_session_factory = db_session_factory
        self.default_tier = default_tier

    @contextmanager
    def _db(self):
        try:
            with self.db_session_factory() as db:
                yield db
        except OperationalError as exc:
            raise DataStoreUnavailableError(compact_error_summary(exc)) from exc

    async def list_items(self, user_id: str, category: PreservationCategory) -> list[DataItem]:
        with self._db() as db:
            rows = (
                db.execute(
                    select(UserDataItem)
                    .where(UserDataItem.user_id == user_id)
                    .where(UserDataItem.category == PreservationCategory(category).value)
                    .order_by(UserDataItem.identifier.asc())
                )
                .scalars()
                .all()
            )
        return [DataItem(identifier=r.identifier, payload=json.loads(r.payload_json)) for r in rows]

    async def read_item(self, user_id: str, category: PreservationCategory, identifier: str) -> DataItem | None:
        with self._db() as db:
            row = db.execute(
                select(UserDataItem)
                .where(UserDataItem.user_id == user_id)
                .where(UserDataItem.category == PreservationCategory(category).value)
                .where(UserDataItem.identifier == identifier)
            ).scalar_one_or_none()
        if row is None:
            return None
        return DataItem(identifier=row.identifier, payload=json.loads(row.payload_json))

    async def write_item(self, user_id: str, category: PreservationCategory, identifier: str, payload: dict[str, Any]) -> None:
        category_value = PreservationCategory(category).value
        with self._db() as db:
            row = db.execute(
                select(UserDataItem)
                .where(UserDataItem.user_id == user_id)
                .where(UserDataItem.category == category_value)
                .where(UserDataItem.identifier == identifier)
            ).scalar_one_or_none()
            if row is None:
                row = UserDataItem(user_id=user_id, category=category_value, identifier=identifier)
                db.add(row)
            row.payload_json = json.dumps(payload, sort_keys=True)
            row.updated_at = _utcnow()
            db.commit()

    async def get_tier(self, user_id: str) -> str:
        with self._db() as db:
            row = db.get(Account, user_id)
        return row.tier if row is not None else self.default_tier

    async def set_tier(self, user_id: str, tier: str) -> None:
        with self._db() as db:
            row = db.get(Account, user_id)
            if row is None:
                row = Account(user_id=user_id)
                db.add(row)
            row.tier = tier
            row.updated_at = _utcnow()
            db.commit()

    async def enabled_features(self, user_id: str) -> set[str]:
        with self._db() as db:
            rows = db.execute(
                select(FeatureAccess.feature).where(FeatureAccess.user_id == user_id).where(FeatureAccess.enabled == 1)
            ).all()
        return {r[0] for r in rows}

    async def set_feature_enabled(self, user_id: str, feature: str, enabled: bool) -> None:
        with self._db() as db:
            row = db.execute(
                select(FeatureAccess).where(FeatureAccess.user_id == user_id).where(FeatureAccess.feature == feature)
            ).scalar_one_or_none()
            if row is None:
                row = FeatureAccess(user_id=user_id, feature=feature)
                db.add(row)
            row.enabled = 1 if enabled else 0
            row.updated_at = _utcnow()
            db.commit()

    def _set_archived(self, user_id: str, feature: str, archived: bool) -> int:
        with self._db() as db:
            result = db.execute(
                update(FeatureRecord)
                .where(FeatureRecord.user_id == user_id)
                .where(FeatureRecord.feature == feature)
                .where(FeatureRecord.archived == (0 if archived else 1))
                .values(archived=1 if archived else 0, updated_at=_utcnow())
            )
            db.commit()
            return int(result.rowcount or 0)

    async def archive_feature_data(self, user_id: str, feature: str) -> int:
        return self._set_archived(user_id, feature, True)

    async def unarchive_feature_data(self, user_id: str, feature: str) -> int:
        return self._set_archived(user_id, feature, False)

    async def get_quotas(self, user_id: str) -> dict[str, int]:
        with self._db() as db:
            rows = db.execute(select(UserQuota).where(UserQuota.user_id == user_id)).scalars().all()
        return {r.quota_type: r.quota_limit for r in rows}

    async def set_quotas(self, user_id: str, quotas: dict[str, int]) -> None:
        with self._db() as db:
            existing = {
                r.quota_type: r for r in db.execute(select(UserQuota).where(UserQuota.user_id == user_id)).scalars().all()
            }
            for quota_type, limit in quotas.items():
                row = existing.get(quota_type)
                if row is None:
                    row = UserQuota(user_id=user_id, quota_type=quota_type)
                    db.add(row)
                row.quota_limit = int(limit)
                row.updated_at = _utcnow()
            for quota_type, row in existing.items():
                if quota_type not in quotas:
                    db.delete(row)
            db.commit()

    def add_feature_record(self, user_id: str, feature: str, record_key: str, payload: dict[str, Any]) -> None:
        with self._db() as db:
            db.add(
                FeatureRecord(
                    user_id=user_id,
                    feature=feature,
                    record_key=record_key,
                    payload_json=json.dumps(payload, sort_keys=True),
                    archived=0,
                    updated_at=_utcnow(),
                )
            )
            db.commit()

    def feature_record_counts(self, user_id: str, feature: str) -> dict[str, int]:
        with self._db() as db:
            rows = (
                db.execute(select(FeatureRecord).where(FeatureRecord.user_id == user_id).where(FeatureRecord.feature == feature))
                .scalars()
                .all()
            )
        archived = sum(1 for r in rows if r.archived)
        return {"active": len(rows) - archived, "archived": archived}
