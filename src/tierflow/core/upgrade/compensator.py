from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from tierflow.core.billing.base import BillingGateway
from tierflow.core.datastore.base import UserDataStore
from tierflow.core.runtime.errors import DataStoreUnavailableError, RollbackNotAllowedError, compact_error_summary
from tierflow.core.snapshots.store import SnapshotStore
from tierflow.core.telemetry.logging import get_logger
from tierflow.core.upgrade.session import UpgradeSession, UpgradeState
from tierflow.core.upgrade.transforms import TransformApplier


@dataclass(slots=True)
class RollbackResult:
    success: bool
    restored_items: int = 0
    unrestored_items: list[str] = field(default_factory=list)
    refunded: bool = False
    issues: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "restored_items": self.restored_items,
            "unrestored_items": list(self.unrestored_items),
            "refunded": self.refunded,
            "issues": list(self.issues),
        }


class Compensator:
    """Undoes the completed steps of a failed upgrade session.

    Every compensation step is attempted even when an earlier one fails, so
    the result lists everything that could not be undone.
    """

    def __init__(
        self,
        *,
        data_store: UserDataStore,
        snapshot_store: SnapshotStore,
        billing: BillingGateway,
        transforms: TransformApplier,
    ) -> None:
        self.data_store = data_store
        self.snapshot_store = snapshot_store
        self.billing = billing
        self.transforms = transforms
        self.logger = get_logger("tierflow.compensator")

    async def rollback(self, session: UpgradeSession) -> RollbackResult:
        if session.state != UpgradeState.FAILED:
            raise RollbackNotAllowedError(f"session is {session.state.value}, rollback requires failed")
        if session.snapshot_id is None:
            raise RollbackNotAllowedError("session has no snapshot to roll back to")
        try:
            snapshot = self.snapshot_store.get(session.snapshot_id)
        except SQLAlchemyError as exc:
            raise DataStoreUnavailableError(f"snapshot lookup failed: {compact_error_summary(exc)}") from exc
        if snapshot is None:
            raise RollbackNotAllowedError(f"snapshot {session.snapshot_id} is no longer available")

        issues: list[str] = []

        try:
            await self.data_store.set_tier(session.user_id, session.current_tier.value)
        except Exception as exc:  # noqa: BLE001
            issues.append(f"tier revert failed: {compact_error_summary(exc)}")

        for applied in list(reversed(session.applied_transforms)):
            try:
                await self.transforms.revert(session.user_id, applied)
            except Exception as exc:  # noqa: BLE001
                issues.append(f"revert {applied.transform.key} failed: {compact_error_summary(exc)}")
                continue
            session.applied_transforms.remove(applied)

        restored = 0
        unrestored: list[str] = []
        if session.touched_data:
            try:
                report = await self.snapshot_store.restore(snapshot)
            except Exception as exc:  # noqa: BLE001
                issues.append(f"snapshot restore failed: {compact_error_summary(exc)}")
                unrestored = [item.key for item in snapshot.items]
            else:
                restored = report.ok_count
                unrestored = report.failed_keys

        if session.charge_id and not session.refunded:
            detail = ""
            try:
                session.refunded = await self.billing.refund(session.charge_id)
            except Exception as exc:  # noqa: BLE001
                detail = f": {compact_error_summary(exc)}"
            if not session.refunded:
                issues.append(f"refund failed for charge {session.charge_id}{detail}")

        result = RollbackResult(
            success=not issues and not unrestored,
            restored_items=restored,
            unrestored_items=unrestored,
            refunded=session.refunded,
            issues=issues,
        )
        log = self.logger.info if result.success else self.logger.warning
        log(
            "rollback_finished",
            session_id=session.session_id,
            success=result.success,
            restored_items=restored,
            unrestored_items=len(unrestored),
            refunded=result.refunded,
        )
        return result
