from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from tierflow.core.billing.base import BillingGateway
from tierflow.core.config.schema import UpgradeConfig
from tierflow.core.datastore.base import UserDataStore
from tierflow.core.runtime.errors import (
    CancellationRejectedError,
    ErrorInfo,
    FailureKind,
    RetryRejectedError,
    RollbackNotAllowedError,
    SnapshotCaptureError,
    UpgradeInProgressError,
    UpgradeValidationError,
    compact_error_summary,
)
from tierflow.core.runtime.retries import RetryPolicy, run_with_retry
from tierflow.core.runtime.timeouts import run_with_timeout
from tierflow.core.snapshots.store import DataSnapshot, SnapshotStore
from tierflow.core.telemetry.logging import get_logger
from tierflow.core.telemetry.tracing import TraceContext, trace_event
from tierflow.core.tiers.catalog import BillingInterval, parse_tier
from tierflow.core.tiers.resolver import DataTransform, TierCapabilityResolver
from tierflow.core.upgrade.compensator import Compensator, RollbackResult
from tierflow.core.upgrade.events import ProgressBroadcaster, ProgressCallback, ProgressEvent, estimate_seconds_remaining
from tierflow.core.upgrade.journal import SessionJournal
from tierflow.core.upgrade.registry import SessionRegistry
from tierflow.core.upgrade.session import (
    CANCELLABLE_STATES,
    STATE_MESSAGES,
    TERMINAL_STATES,
    AppliedTransform,
    UpgradeErrorInfo,
    UpgradeSession,
    UpgradeState,
)
from tierflow.core.upgrade.transforms import TransformApplier

SAFE_MESSAGE = "Your data is safe and unchanged."

_FAILURE_REASONS = {
    FailureKind.CAPTURE_FAILED: "We could not back up your data, so the upgrade was not started.",
    FailureKind.INCOMPATIBLE: "Your current data does not fit the selected tier.",
    FailureKind.BILLING_DECLINED: "Your payment could not be processed.",
    FailureKind.MIGRATION_FAILED: "We could not apply the new tier's settings.",
    FailureKind.VERIFICATION_FAILED: "We could not verify your data after the upgrade.",
    FailureKind.FINALIZE_FAILED: "We could not finalize the upgrade.",
    FailureKind.CANCELLED: "The upgrade was cancelled.",
    FailureKind.INTERNAL: "The upgrade stopped unexpectedly.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepFailure(Exception):
    def __init__(self, kind: FailureKind, message: str, *, needs_manual_review: bool = False) -> None:
        super().__init__(message)
        self.kind = kind
        self.needs_manual_review = needs_manual_review


def user_message_for(session: UpgradeSession) -> str:
    if session.state == UpgradeState.COMPLETED:
        return (
            f"Your account is now on the {session.target_tier.value.title()} tier. "
            "All of your data and settings were preserved."
        )
    if session.is_active:
        return "Your upgrade is still in progress."
    error = session.error
    if error is not None and error.needs_manual_review:
        return (
            "We could not confirm that everything was restored. "
            f"Please contact support and mention upgrade {session.session_id}."
        )
    kind = (error.cause or error.kind) if error is not None else FailureKind.INTERNAL
    reason = _FAILURE_REASONS.get(kind, "The upgrade did not complete.")
    if session.state == UpgradeState.ROLLED_BACK or session.snapshot_id is None:
        return f"{reason} {SAFE_MESSAGE}"
    return f"{reason} A rollback is pending; please contact support if this persists."


@dataclass(slots=True)
class UpgradeOutcome:
    session: UpgradeSession
    rollback: RollbackResult | None
    user_message: str

    @property
    def success(self) -> bool:
        return self.session.state == UpgradeState.COMPLETED

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "session": self.session.to_dict(),
            "rollback": self.rollback.as_dict() if self.rollback else None,
            "user_message": self.user_message,
        }


class MigrationExecutor:
    """Drives an upgrade session through its states and compensates on failure.

    ``begin`` validates and registers a session, then runs it as a background
    task. Every failure after a snapshot exists is rolled back automatically
    when ``auto_rollback`` is enabled.
    """

    def __init__(
        self,
        *,
        data_store: UserDataStore,
        billing: BillingGateway,
        snapshot_store: SnapshotStore,
        resolver: TierCapabilityResolver,
        registry: SessionRegistry | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        journal: SessionJournal | None = None,
        config: UpgradeConfig | None = None,
    ) -> None:
        self.data_store = data_store
        self.billing = billing
        self.snapshot_store = snapshot_store
        self.resolver = resolver
        self.registry = registry or SessionRegistry()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.journal = journal or SessionJournal(snapshot_store.db_session_factory)
        self.config = config or UpgradeConfig()
        self.transforms = TransformApplier(data_store)
        self.compensator = Compensator(
            data_store=data_store,
            snapshot_store=snapshot_store,
            billing=billing,
            transforms=self.transforms,
        )
        self._rollbacks: dict[str, RollbackResult] = {}
        self.logger = get_logger("tierflow.executor")

    async def begin(
        self,
        user_id: str,
        target_tier: str,
        billing_interval: str = "monthly",
        *,
        retry_of: str | None = None,
    ) -> UpgradeSession:
        if not user_id or not str(user_id).strip():
            raise UpgradeValidationError("user_id is required")
        target = parse_tier(target_tier)
        try:
            interval = BillingInterval(billing_interval)
        except ValueError as exc:
            raise UpgradeValidationError(f"unsupported billing interval: {billing_interval!r}") from exc
        if interval.value not in self.config.supported_intervals:
            raise UpgradeValidationError(f"billing interval {interval.value!r} is not offered")

        current = parse_tier(await self.data_store.get_tier(user_id))
        if current == target:
            raise UpgradeValidationError(f"user is already on the {target.value} tier")

        session = UpgradeSession(
            user_id=user_id,
            current_tier=current,
            target_tier=target,
            billing_interval=interval,
            retry_of=retry_of,
        )
        await self.registry.register(session)
        self._announce(session, STATE_MESSAGES[UpgradeState.STARTING])
        task = asyncio.create_task(self._run(session), name=f"upgrade-{session.session_id}")
        self.registry.attach_task(session.session_id, task)
        return session

    async def upgrade(self, user_id: str, target_tier: str, billing_interval: str = "monthly") -> UpgradeOutcome:
        session = await self.begin(user_id, target_tier, billing_interval)
        return await self.wait(session.session_id)

    async def wait(self, session_id: str) -> UpgradeOutcome:
        session = self.registry.get(session_id)
        task = self.registry.task_for(session_id)
        if task is not None:
            await asyncio.shield(task)
        return self._outcome_for(session)

    def outcome(self, session_id: str) -> UpgradeOutcome:
        return self._outcome_for(self.registry.get(session_id))

    def _outcome_for(self, session: UpgradeSession) -> UpgradeOutcome:
        session_id = session.session_id
        return UpgradeOutcome(
            session=session,
            rollback=self._rollbacks.get(session_id),
            user_message=user_message_for(session),
        )

    def get(self, session_id: str) -> UpgradeSession:
        return self.registry.get(session_id)

    def subscribe(self, session_id: str, callback: ProgressCallback, *, replay: bool = True) -> Callable[[], None]:
        self.registry.get(session_id)
        return self.broadcaster.subscribe(session_id, callback, replay=replay)

    def cancel(self, session_id: str) -> UpgradeSession:
        session = self.registry.get(session_id)
        if session.state not in CANCELLABLE_STATES:
            raise CancellationRejectedError(f"cannot cancel an upgrade in state {session.state.value}")
        session.cancel_requested = True
        self.logger.info("upgrade_cancel_requested", session_id=session_id, state=session.state.value)
        return session

    async def retry(self, session_id: str) -> UpgradeSession:
        prior = self.registry.get(session_id)
        busy = self.registry.busy_for(prior.user_id)
        if busy is not None:
            raise UpgradeInProgressError(prior.user_id, busy.session_id)
        if prior.error is not None and prior.error.needs_manual_review:
            raise RetryRejectedError(f"session {session_id} is awaiting manual review")
        nothing_to_undo = prior.snapshot_id is None and not prior.charge_attempted
        if not (prior.state == UpgradeState.ROLLED_BACK or (prior.state == UpgradeState.FAILED and nothing_to_undo)):
            raise RetryRejectedError(f"session {session_id} is {prior.state.value} and cannot be retried")
        return await self.begin(
            prior.user_id,
            prior.target_tier.value,
            prior.billing_interval.value,
            retry_of=prior.session_id,
        )

    async def rollback(self, session_id: str) -> RollbackResult:
        session = self.registry.get(session_id)
        if self.registry.is_running(session_id):
            raise RollbackNotAllowedError("upgrade or rollback still running for this session")
        if session.state != UpgradeState.FAILED:
            raise RollbackNotAllowedError(f"session is {session.state.value}, rollback requires failed")
        self.broadcaster.reopen(session_id)
        task = asyncio.create_task(self._compensate(session), name=f"rollback-{session_id}")
        self.registry.attach_task(session_id, task)
        try:
            return await task
        finally:
            self.broadcaster.close(session_id)
            self._prune()

    async def _run(self, session: UpgradeSession) -> None:
        try:
            self._checkpoint(session)
            snapshot = await self._backing_up(session)
            self._checkpoint(session)
            await self._upgrading(session)
            await self._migrating(session)
            await self._restoring(session, snapshot)
            await self._finalizing(session)
        except StepFailure as failure:
            await self._fail(session, failure.kind, str(failure), needs_manual_review=failure.needs_manual_review)
        except Exception as exc:  # noqa: BLE001
            await self._fail(session, FailureKind.INTERNAL, compact_error_summary(exc))
        finally:
            self.broadcaster.close(session.session_id)
            self._prune()

    def _checkpoint(self, session: UpgradeSession) -> None:
        if session.cancel_requested:
            raise StepFailure(FailureKind.CANCELLED, "cancelled by request")

    async def _backing_up(self, session: UpgradeSession) -> DataSnapshot:
        self._advance(session, UpgradeState.BACKING_UP)
        try:
            snapshot = await run_with_timeout(
                self.snapshot_store.capture(session.user_id, session.session_id),
                self.config.step_timeout_seconds,
            )
        except (SnapshotCaptureError, TimeoutError) as exc:
            raise StepFailure(FailureKind.CAPTURE_FAILED, f"snapshot capture failed: {exc}") from exc
        session.snapshot_id = snapshot.snapshot_id
        self.journal.sync(session)

        issues = self.resolver.check_compatibility(snapshot, session.target_tier)
        if issues:
            raise StepFailure(FailureKind.INCOMPATIBLE, "; ".join(issues))
        return snapshot

    async def _upgrading(self, session: UpgradeSession) -> None:
        self._advance(session, UpgradeState.UPGRADING)
        price = self.resolver.catalog.get(session.target_tier).price(session.billing_interval)
        if price <= 0:
            self.logger.info("charge_skipped", session_id=session.session_id, target_tier=session.target_tier.value)
            return
        if session.charge_attempted:
            raise StepFailure(FailureKind.INTERNAL, "charge already attempted for this session")
        session.charge_attempted = True
        try:
            result = await run_with_timeout(
                self.billing.charge(
                    session.user_id,
                    session.target_tier.value,
                    session.billing_interval.value,
                    idempotency_key=session.session_id,
                ),
                self.config.step_timeout_seconds,
            )
        except TimeoutError as exc:
            # The provider may still have charged; a person has to reconcile it.
            raise StepFailure(
                FailureKind.BILLING_DECLINED,
                "billing provider did not respond in time",
                needs_manual_review=True,
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise StepFailure(FailureKind.BILLING_DECLINED, f"billing error: {compact_error_summary(exc)}") from exc
        if not result.success and result.ambiguous:
            raise StepFailure(
                FailureKind.BILLING_DECLINED,
                f"charge outcome unknown: {result.reason or 'no reason given'}",
                needs_manual_review=True,
            )
        if not result.success:
            raise StepFailure(FailureKind.BILLING_DECLINED, f"charge declined: {result.reason or 'no reason given'}")
        session.charge_id = result.charge_id
        self.journal.sync(session)

    async def _migrating(self, session: UpgradeSession) -> None:
        self._advance(session, UpgradeState.MIGRATING)
        diff = self.resolver.diff(session.current_tier, session.target_tier)
        policy = RetryPolicy(
            max_attempts=self.config.max_transform_attempts,
            base_backoff_seconds=self.config.transform_backoff_seconds,
        )
        failures: list[str] = []
        for transform in diff.data_transforms:
            try:
                undo = await self.transforms.undo_state(session.user_id, transform)
            except Exception as exc:  # noqa: BLE001
                failures.append(f"{transform.key}: {compact_error_summary(exc)}")
                continue
            # Recorded before applying so a partially applied transform is still reverted.
            session.applied_transforms.append(AppliedTransform(transform, undo))
            try:
                await run_with_retry(
                    lambda t=transform: run_with_timeout(
                        self.transforms.apply(session.user_id, t),
                        self.config.step_timeout_seconds,
                    ),
                    policy=policy,
                    category="transform",
                    component=transform.key,
                    on_attempt=lambda n, status, info, t=transform: self._trace_attempt(session, t, n, status, info),
                )
            except RuntimeError as exc:
                failures.append(f"{transform.key}: {compact_error_summary(exc.__cause__ or exc)}")

        if failures:
            raise StepFailure(
                FailureKind.MIGRATION_FAILED,
                f"{len(failures)} of {len(diff.data_transforms)} data transforms failed: " + "; ".join(failures),
            )

    async def _restoring(self, session: UpgradeSession, snapshot: DataSnapshot) -> None:
        self._advance(session, UpgradeState.RESTORING)
        try:
            report = await run_with_timeout(
                self.snapshot_store.restore(snapshot, verify_only=True),
                self.config.step_timeout_seconds,
            )
        except TimeoutError as exc:
            raise StepFailure(FailureKind.VERIFICATION_FAILED, "verification timed out") from exc
        if not report.all_ok:
            failed = report.failed_keys
            raise StepFailure(
                FailureKind.VERIFICATION_FAILED,
                f"{len(failed)} of {len(report.results)} items failed verification: {', '.join(failed[:10])}",
            )

    async def _finalizing(self, session: UpgradeSession) -> None:
        self._advance(session, UpgradeState.FINALIZING)
        try:
            await run_with_timeout(
                self.data_store.set_tier(session.user_id, session.target_tier.value),
                self.config.step_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            raise StepFailure(FailureKind.FINALIZE_FAILED, compact_error_summary(exc)) from exc
        self._discard_snapshot(session)
        self._advance(session, UpgradeState.COMPLETED)

    async def _fail(
        self,
        session: UpgradeSession,
        kind: FailureKind,
        message: str,
        *,
        needs_manual_review: bool = False,
    ) -> None:
        session.error = UpgradeErrorInfo(
            kind=kind,
            message=message,
            step=session.state.value,
            needs_manual_review=needs_manual_review,
        )
        self._advance(session, UpgradeState.FAILED, f"Upgrade failed: {message}")
        if session.snapshot_id is None or not self.config.auto_rollback:
            return
        try:
            await self._compensate(session)
        except RollbackNotAllowedError as exc:
            self._flag_manual_review(session, str(exc))
        except Exception as exc:  # noqa: BLE001
            self._flag_manual_review(session, f"rollback crashed: {compact_error_summary(exc)}")

    async def _compensate(self, session: UpgradeSession) -> RollbackResult:
        result = await self.compensator.rollback(session)
        self._rollbacks[session.session_id] = result
        if not result.success:
            detail = list(result.issues)
            if result.unrestored_items:
                detail.append(f"{len(result.unrestored_items)} items not restored")
            self._flag_manual_review(session, "; ".join(detail))
            return result

        error = session.error
        if error is not None and error.kind == FailureKind.ROLLBACK_PARTIAL:
            session.error = UpgradeErrorInfo(
                kind=error.cause or FailureKind.INTERNAL,
                message=error.message,
                step=error.step,
            )
        self._discard_snapshot(session)
        self._advance(session, UpgradeState.ROLLED_BACK)
        return result

    def _flag_manual_review(self, session: UpgradeSession, detail: str) -> None:
        prior = session.error
        cause = None
        if prior is not None:
            cause = prior.cause if prior.kind == FailureKind.ROLLBACK_PARTIAL else prior.kind
        session.error = UpgradeErrorInfo(
            kind=FailureKind.ROLLBACK_PARTIAL,
            message=f"rollback incomplete: {detail}",
            step=prior.step if prior is not None else session.state.value,
            needs_manual_review=True,
            cause=cause,
        )
        self.journal.sync(session)
        trace_event(self.logger, self._ctx(session), "rollback_partial", "failed", {"detail": detail[:300]})
        self.broadcaster.publish(
            ProgressEvent(
                session_id=session.session_id,
                state=session.state.value,
                message="Rollback incomplete; support has been notified.",
                progress_percent=session.progress_percent,
            )
        )

    def _prune(self) -> None:
        # The journal keeps the durable record of evicted sessions.
        for session_id in self.registry.prune(self.config.retained_sessions):
            self.broadcaster.forget(session_id)
            self._rollbacks.pop(session_id, None)
            self.logger.debug("session_evicted", session_id=session_id)

    def _discard_snapshot(self, session: UpgradeSession) -> None:
        if session.snapshot_id is None:
            return
        try:
            self.snapshot_store.discard(session.snapshot_id)
        except SQLAlchemyError as exc:
            self.logger.warning(
                "snapshot_discard_failed",
                session_id=session.session_id,
                snapshot_id=session.snapshot_id,
                error=compact_error_summary(exc),
            )

    def _advance(self, session: UpgradeSession, state: UpgradeState, message: str | None = None) -> None:
        session.transition(state)
        self._announce(session, message or STATE_MESSAGES[state])

    def _announce(self, session: UpgradeSession, message: str) -> None:
        eta = None
        if session.state not in TERMINAL_STATES:
            elapsed = (_utcnow() - session.started_at).total_seconds()
            eta = estimate_seconds_remaining(elapsed, session.progress_percent)
        self.journal.record_transition(session, message)
        status = "failed" if session.state == UpgradeState.FAILED else "ok"
        trace_event(
            self.logger,
            self._ctx(session),
            "upgrade_state",
            status,
            {"progress_percent": session.progress_percent, "message": message[:300]},
        )
        self.broadcaster.publish(
            ProgressEvent(
                session_id=session.session_id,
                state=session.state.value,
                message=message,
                progress_percent=session.progress_percent,
                estimated_seconds_remaining=eta,
            )
        )

    def _trace_attempt(
        self,
        session: UpgradeSession,
        transform: DataTransform,
        attempt: int,
        status: str,
        info: ErrorInfo | None,
    ) -> None:
        extra: dict[str, Any] = {"transform": transform.key, "attempt": attempt}
        if info is not None:
            extra.update({"error_type": info.error_type, "retryable": info.retryable})
        trace_event(self.logger, self._ctx(session), "transform_attempt", "error" if status == "error" else "ok", extra)

    @staticmethod
    def _ctx(session: UpgradeSession) -> TraceContext:
        return TraceContext(
            request_id=session.session_id[:12],
            session_id=session.session_id,
            user_id=session.user_id,
            step=session.state.value,
        )
