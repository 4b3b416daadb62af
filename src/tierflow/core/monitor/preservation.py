from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from tierflow.core.datastore.base import PreservationCategory, UserDataStore
from tierflow.core.runtime.errors import DataStoreUnavailableError, compact_error_summary
from tierflow.core.snapshots.store import SnapshotStore, payload_hash
from tierflow.core.telemetry.logging import get_logger

DriftCallback = Callable[[str, "PreservationStatus"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PreservationStatus:
    total_items: int
    preserved_items: int
    data_integrity: int
    issues: list[str] = field(default_factory=list)
    last_check: datetime | None = None
    snapshot_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_items": self.total_items,
            "preserved_items": self.preserved_items,
            "data_integrity": self.data_integrity,
            "issues": list(self.issues),
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "snapshot_id": self.snapshot_id,
        }


def integrity_percent(preserved: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(round(preserved / total * 100))


class PreservationMonitor:
    """Periodically compares a user's live data with their reference snapshot.

    The reference is the active snapshot of an in-flight upgrade, or else the
    most recent archived one. The monitor only observes; drift is logged and
    handed to ``on_drift``.
    """

    def __init__(
        self,
        *,
        data_store: UserDataStore,
        snapshot_store: SnapshotStore,
        poll_interval_seconds: float = 2.0,
        on_drift: DriftCallback | None = None,
    ) -> None:
        self.data_store = data_store
        self.snapshot_store = snapshot_store
        self.poll_interval_seconds = poll_interval_seconds
        self.on_drift = on_drift
        self.user_id: str | None = None
        self._status: PreservationStatus | None = None
        self._task: asyncio.Task | None = None
        self.logger = get_logger("tierflow.monitor")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, user_id: str) -> None:
        if self.running:
            raise RuntimeError(f"monitor already running for {self.user_id}")
        self.user_id = user_id
        self._task = asyncio.create_task(self._poll(), name=f"preservation-{user_id}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def status(self) -> PreservationStatus:
        if self._status is None:
            return PreservationStatus(total_items=0, preserved_items=0, data_integrity=100, issues=["no check performed yet"])
        return self._status

    async def check(self, user_id: str | None = None) -> PreservationStatus:
        user_id = user_id or self.user_id
        if not user_id:
            raise ValueError("user_id is required")
        snapshot = self.snapshot_store.reference_for(user_id)
        if snapshot is None:
            status = PreservationStatus(
                total_items=0,
                preserved_items=0,
                data_integrity=100,
                issues=["no reference snapshot available"],
                last_check=_utcnow(),
            )
            self._status = status
            return status
        if not snapshot.items:
            status = PreservationStatus(
                total_items=0,
                preserved_items=0,
                data_integrity=100,
                issues=["reference snapshot is empty"],
                last_check=_utcnow(),
                snapshot_id=snapshot.snapshot_id,
            )
            self._status = status
            return status

        try:
            live: dict[str, str] = {}
            for category in PreservationCategory:
                for item in await self.data_store.list_items(user_id, category):
                    live[f"{category.value}/{item.identifier}"] = payload_hash(item.payload)
        except DataStoreUnavailableError as exc:
            previous = self.status()
            status = PreservationStatus(
                total_items=previous.total_items,
                preserved_items=previous.preserved_items,
                data_integrity=previous.data_integrity,
                issues=[f"live data unavailable: {compact_error_summary(exc)}"],
                last_check=_utcnow(),
                snapshot_id=snapshot.snapshot_id,
            )
            self._status = status
            return status

        issues: list[str] = []
        preserved = 0
        for item in snapshot.items:
            current = live.get(item.key)
            if current is None:
                issues.append(f"missing {item.key}")
            elif current != item.payload_hash:
                issues.append(f"modified {item.key}")
            else:
                preserved += 1

        total = len(snapshot.items)
        status = PreservationStatus(
            total_items=total,
            preserved_items=preserved,
            data_integrity=integrity_percent(preserved, total),
            issues=issues,
            last_check=_utcnow(),
            snapshot_id=snapshot.snapshot_id,
        )
        self._status = status
        if preserved < total:
            self._report_drift(user_id, status)
        return status

    def _report_drift(self, user_id: str, status: PreservationStatus) -> None:
        self.logger.warning(
            "preservation_drift",
            user_id=user_id,
            snapshot_id=status.snapshot_id,
            data_integrity=status.data_integrity,
            drifted=status.total_items - status.preserved_items,
        )
        if self.on_drift is None:
            return
        try:
            self.on_drift(user_id, status)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("drift_callback_failed", user_id=user_id, error=compact_error_summary(exc))

    async def _poll(self) -> None:
        while True:
            try:
                await self.check()
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("preservation_check_failed", user_id=self.user_id, error=compact_error_summary(exc))
            await asyncio.sleep(self.poll_interval_seconds)
