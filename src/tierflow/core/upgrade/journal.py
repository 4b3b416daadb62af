from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from tierflow.core.runtime.errors import compact_error_summary
from tierflow.core.telemetry.logging import get_logger
from tierflow.core.upgrade.session import UpgradeSession
from tierflow.db.models import UpgradeSessionRecord, UpgradeStateTransition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionJournal:
    """Durable audit trail of upgrade sessions and their state transitions.

    Writes are best effort: a journal outage is logged and never changes the
    outcome of an upgrade.
    """

    def __init__(self, db_session_factory) -> None:
        self.db_session_factory = db_session_factory
        self.logger = get_logger("tierflow.journal")

    def record_transition(self, session: UpgradeSession, message: str = "") -> None:
        try:
            with self.db_session_factory() as db:
                self._upsert(db, session)
                db.flush()
                db.add(
                    UpgradeStateTransition(
                        session_id=session.session_id,
                        state=session.state.value,
                        progress_percent=session.progress_percent,
                        message=message[:800],
                        created_at=_utcnow(),
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            self.logger.warning("journal_write_failed", session_id=session.session_id, error=compact_error_summary(exc))

    def sync(self, session: UpgradeSession) -> None:
        try:
            with self.db_session_factory() as db:
                self._upsert(db, session)
                db.commit()
        except SQLAlchemyError as exc:
            self.logger.warning("journal_write_failed", session_id=session.session_id, error=compact_error_summary(exc))

    def list_sessions(self, user_id: str | None = None, limit: int = 20) -> list[UpgradeSessionRecord]:
        with self.db_session_factory() as db:
            stmt = select(UpgradeSessionRecord).order_by(UpgradeSessionRecord.started_at.desc()).limit(limit)
            if user_id is not None:
                stmt = stmt.where(UpgradeSessionRecord.user_id == user_id)
            return list(db.execute(stmt).scalars().all())

    def get(self, session_id: str) -> UpgradeSessionRecord | None:
        with self.db_session_factory() as db:
            return db.get(UpgradeSessionRecord, session_id)

    def transitions(self, session_id: str) -> list[UpgradeStateTransition]:
        with self.db_session_factory() as db:
            return list(
                db.execute(
                    select(UpgradeStateTransition)
                    .where(UpgradeStateTransition.session_id == session_id)
                    .order_by(UpgradeStateTransition.id.asc())
                )
                .scalars()
                .all()
            )

    @staticmethod
    def _upsert(db, session: UpgradeSession) -> None:
        row = db.get(UpgradeSessionRecord, session.session_id)
        if row is None:
            row = UpgradeSessionRecord(
                session_id=session.session_id,
                user_id=session.user_id,
                current_tier=session.current_tier.value,
                target_tier=session.target_tier.value,
                billing_interval=session.billing_interval.value,
                retry_of=session.retry_of,
                started_at=session.started_at,
            )
            db.add(row)
        row.state = session.state.value
        row.progress_percent = session.progress_percent
        row.snapshot_id = session.snapshot_id
        row.charge_id = session.charge_id
        row.error_kind = session.error.kind.value if session.error else ""
        row.error_message = session.error.message[:2000] if session.error else ""
        row.needs_manual_review = 1 if session.error and session.error.needs_manual_review else 0
        row.completed_at = session.completed_at
