from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError

from tierflow.core.datastore.base import PreservationCategory, UserDataStore
from tierflow.core.runtime.errors import DataStoreUnavailableError, SnapshotCaptureError, compact_error_summary
from tierflow.core.telemetry.logging import get_logger
from tierflow.db.models import DataSnapshotRecord, SnapshotItemRecord

ACTIVE = "active"
ARCHIVED = "archived"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def payload_hash(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class SnapshotItem:
    category: str
    identifier: str
    payload_hash: str
    payload_ref: str

    @property
    def key(self) -> str:
        return f"{self.category}/{self.identifier}"


@dataclass(frozen=True, slots=True)
class DataSnapshot:
    snapshot_id: str
    session_id: str
    user_id: str
    captured_at: datetime
    items: tuple[SnapshotItem, ...]


@dataclass(slots=True)
class ItemRestoreResult:
    key: str
    status: str
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in {"restored", "verified"}


@dataclass(slots=True)
class RestoreReport:
    snapshot_id: str
    verify_only: bool
    results: list[ItemRestoreResult] = field(default_factory=list)

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed_keys(self) -> list[str]:
        return [r.key for r in self.results if not r.ok]

    @property
    def all_ok(self) -> bool:
        return not self.failed_keys


class SnapshotStore:
    """Persists immutable snapshots of a user's preservation data."""

    def __init__(
        self,
        data_store: UserDataStore,
        db_session_factory,
        *,
        retention: str = "archive",
        retention_days: int = 30,
    ) -> None:
        self.data_store = data_store
        self.db_session_factory = db_session_factory
        self.retention = retention
        self.retention_days = retention_days
        self.logger = get_logger("tierflow.snapshots")

    async def capture(self, user_id: str, session_id: str) -> DataSnapshot:
        snapshot_id = uuid.uuid4().hex
        rows: list[SnapshotItemRecord] = []
        try:
            for category in PreservationCategory:
                for data_item in await self.data_store.list_items(user_id, category):
                    position = len(rows)
                    rows.append(
                        SnapshotItemRecord(
                            snapshot_id=snapshot_id,
                            position=position,
                            category=category.value,
                            identifier=data_item.identifier,
                            payload_hash=payload_hash(data_item.payload),
                            payload_json=json.dumps(data_item.payload, sort_keys=True, default=str),
                        )
                    )
        except DataStoreUnavailableError as exc:
            raise SnapshotCaptureError(f"data store unreachable: {exc}") from exc

        captured_at = _utcnow()
        try:
            with self.db_session_factory() as db:
                db.add(
                    DataSnapshotRecord(
                        snapshot_id=snapshot_id,
                        session_id=session_id,
                        user_id=user_id,
                        status=ACTIVE,
                        item_count=len(rows),
                        captured_at=captured_at,
                    )
                )
                db.flush()
                db.add_all(rows)
                db.commit()
        except OperationalError as exc:
            raise SnapshotCaptureError(f"snapshot storage unreachable: {compact_error_summary(exc)}") from exc

        self.logger.info("snapshot_captured", snapshot_id=snapshot_id, session_id=session_id, item_count=len(rows))
        return DataSnapshot(
            snapshot_id=snapshot_id,
            session_id=session_id,
            user_id=user_id,
            captured_at=captured_at,
            items=tuple(self._to_item(r) for r in rows),
        )

    async def restore(self, snapshot: DataSnapshot, *, verify_only: bool = False) -> RestoreReport:
        """Write every snapshot payload back (or only compare, with ``verify_only``).

        Every item is attempted; failures are reported per item.
        """
        report = RestoreReport(snapshot_id=snapshot.snapshot_id, verify_only=verify_only)
        payloads = {} if verify_only else self._payloads(snapshot.snapshot_id)
        for item in snapshot.items:
            category = PreservationCategory(item.category)
            try:
                if not verify_only:
                    await self.data_store.write_item(snapshot.user_id, category, item.identifier, payloads[item.payload_ref])
                live = await self.data_store.read_item(snapshot.user_id, category, item.identifier)
            except Exception as exc:  # noqa: BLE001
                report.results.append(ItemRestoreResult(key=item.key, status="error", detail=compact_error_summary(exc)))
                continue
            if live is None:
                report.results.append(ItemRestoreResult(key=item.key, status="missing"))
            elif payload_hash(live.payload) != item.payload_hash:
                report.results.append(ItemRestoreResult(key=item.key, status="mismatch"))
            else:
                report.results.append(ItemRestoreResult(key=item.key, status="verified" if verify_only else "restored"))

        self.logger.info(
            "snapshot_restore",
            snapshot_id=snapshot.snapshot_id,
            verify_only=verify_only,
            ok=report.ok_count,
            failed=len(report.failed_keys),
        )
        return report

    def discard(self, snapshot_id: str) -> None:
        with self.db_session_factory() as db:
            row = db.get(DataSnapshotRecord, snapshot_id)
            if row is None or row.status != ACTIVE:
                return
            if self.retention == "archive":
                row.status = ARCHIVED
                row.archived_at = _utcnow()
            else:
                db.execute(delete(SnapshotItemRecord).where(SnapshotItemRecord.snapshot_id == snapshot_id))
                db.delete(row)
            db.commit()
        self.logger.info("snapshot_discarded", snapshot_id=snapshot_id, retention=self.retention)

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or _utcnow()) - timedelta(days=self.retention_days)
        with self.db_session_factory() as db:
            ids = list(
                db.execute(
                    select(DataSnapshotRecord.snapshot_id)
                    .where(DataSnapshotRecord.status == ARCHIVED)
                    .where(DataSnapshotRecord.archived_at < cutoff)
                ).scalars()
            )
            if ids:
                db.execute(delete(SnapshotItemRecord).where(SnapshotItemRecord.snapshot_id.in_(ids)))
                db.execute(delete(DataSnapshotRecord).where(DataSnapshotRecord.snapshot_id.in_(ids)))
                db.commit()
        return len(ids)

    def get(self, snapshot_id: str) -> DataSnapshot | None:
        with self.db_session_factory() as db:
            row = db.get(DataSnapshotRecord, snapshot_id)
            if row is None:
                return None
            return self._load(db, row)

    def status_of(self, snapshot_id: str) -> str | None:
        with self.db_session_factory() as db:
            row = db.get(DataSnapshotRecord, snapshot_id)
            return row.status if row is not None else None

    def active_for(self, user_id: str) -> DataSnapshot | None:
        return self._latest(user_id, statuses=(ACTIVE,))

    def reference_for(self, user_id: str) -> DataSnapshot | None:
        return self.active_for(user_id) or self._latest(user_id, statuses=(ARCHIVED,))

    def _latest(self, user_id: str, statuses: tuple[str, ...]) -> DataSnapshot | None:
        with self.db_session_factory() as db:
            row = (
                db.execute(
                    select(DataSnapshotRecord)
                    .where(DataSnapshotRecord.user_id == user_id)
                    .where(DataSnapshotRecord.status.in_(statuses))
                    .order_by(DataSnapshotRecord.captured_at.desc())
                    .limit(1)
                )
                .scalars()
                .first()
            )
            if row is None:
                return None
            return self._load(db, row)

    def _load(self, db, row: DataSnapshotRecord) -> DataSnapshot:
        items = (
            db.execute(
                select(SnapshotItemRecord)
                .where(SnapshotItemRecord.snapshot_id == row.snapshot_id)
                .order_by(SnapshotItemRecord.position.asc())
            )
            .scalars()
            .all()
        )
        return DataSnapshot(
            snapshot_id=row.snapshot_id,
            session_id=row.session_id,
            user_id=row.user_id,
            captured_at=row.captured_at,
            items=tuple(self._to_item(i) for i in items),
        )

    def _payloads(self, snapshot_id: str) -> dict[str, dict[str, Any]]:
        with self.db_session_factory() as db:
            rows = db.execute(select(SnapshotItemRecord).where(SnapshotItemRecord.snapshot_id == snapshot_id)).scalars().all()
        return {f"{r.snapshot_id}:{r.position}": json.loads(r.payload_json) for r in rows}

    @staticmethod
    def _to_item(row: SnapshotItemRecord) -> SnapshotItem:
        return SnapshotItem(
            category=row.category,
            identifier=row.identifier,
            payload_hash=row.payload_hash,
            payload_ref=f"{row.snapshot_id}:{row.position}",
        )
