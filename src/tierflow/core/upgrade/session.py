from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from tierflow.core.runtime.errors import FailureKind, TierflowError
from tierflow.core.tiers.catalog import BillingInterval, Tier
from tierflow.core.tiers.resolver import DataTransform


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UpgradeState(str, Enum):
    STARTING = "starting"
    BACKING_UP = "backing_up"
    UPGRADING = "upgrading"
    MIGRATING = "migrating"
    RESTORING = "restoring"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


STATE_ORDER = [
    UpgradeState.STARTING,
    UpgradeState.BACKING_UP,
    UpgradeState.UPGRADING,
    UpgradeState.MIGRATING,
    UpgradeState.RESTORING,
    UpgradeState.FINALIZING,
    UpgradeState.COMPLETED,
]
ACTIVE_STATES = frozenset(STATE_ORDER[:-1])
TERMINAL_STATES = frozenset({UpgradeState.COMPLETED, UpgradeState.FAILED, UpgradeState.ROLLED_BACK})
CANCELLABLE_STATES = frozenset({UpgradeState.STARTING, UpgradeState.BACKING_UP})
# Failing in one of these states means user data may have been transformed.
DATA_TOUCHING_STATES = frozenset({UpgradeState.MIGRATING, UpgradeState.RESTORING, UpgradeState.FINALIZING})

STATE_PROGRESS = {
    UpgradeState.STARTING: 0,
    UpgradeState.BACKING_UP: 15,
    UpgradeState.UPGRADING: 30,
    UpgradeState.MIGRATING: 50,
    UpgradeState.RESTORING: 80,
    UpgradeState.FINALIZING: 95,
    UpgradeState.COMPLETED: 100,
}

STATE_MESSAGES = {
    UpgradeState.STARTING: "Initializing upgrade process...",
    UpgradeState.BACKING_UP: "Creating data backup...",
    UpgradeState.UPGRADING: "Processing subscription upgrade...",
    UpgradeState.MIGRATING: "Migrating user data and settings...",
    UpgradeState.RESTORING: "Validating data integrity...",
    UpgradeState.FINALIZING: "Finalizing upgrade...",
    UpgradeState.COMPLETED: "Upgrade completed successfully!",
    UpgradeState.FAILED: "Upgrade failed.",
    UpgradeState.ROLLED_BACK: "Upgrade rolled back. Your data is safe and unchanged.",
}

_ALLOWED: dict[UpgradeState, frozenset[UpgradeState]] = {
    state: frozenset({STATE_ORDER[i + 1], UpgradeState.FAILED}) for i, state in enumerate(STATE_ORDER[:-1])
}
_ALLOWED[UpgradeState.COMPLETED] = frozenset()
_ALLOWED[UpgradeState.FAILED] = frozenset({UpgradeState.ROLLED_BACK})
_ALLOWED[UpgradeState.ROLLED_BACK] = frozenset()


class InvalidTransitionError(TierflowError):
    pass


@dataclass(slots=True)
class UpgradeErrorInfo:
    kind: FailureKind
    message: str
    step: str
    needs_manual_review: bool = False
    cause: FailureKind | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "step": self.step,
            "needs_manual_review": self.needs_manual_review,
            "cause": self.cause.value if self.cause else None,
        }


@dataclass(slots=True)
class AppliedTransform:
    transform: DataTransform
    undo: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UpgradeSession:
    user_id: str
    current_tier: Tier
    target_tier: Tier
    billing_interval: BillingInterval
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: UpgradeState = UpgradeState.STARTING
    progress_percent: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    error: UpgradeErrorInfo | None = None
    failed_at: UpgradeState | None = None
    snapshot_id: str | None = None
    charge_id: str | None = None
    charge_attempted: bool = False
    refunded: bool = False
    applied_transforms: list[AppliedTransform] = field(default_factory=list)
    state_history: list[UpgradeState] = field(default_factory=lambda: [UpgradeState.STARTING])
    cancel_requested: bool = False
    retry_of: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def touched_data(self) -> bool:
        return self.failed_at in DATA_TOUCHING_STATES

    @property
    def is_downgrade(self) -> bool:
        return self.target_tier.rank < self.current_tier.rank

    def transition(self, state: UpgradeState) -> None:
        if state not in _ALLOWED[self.state]:
            raise InvalidTransitionError(f"illegal transition {self.state.value} -> {state.value}")
        if state == UpgradeState.FAILED:
            self.failed_at = self.state
        self.state = state
        self.state_history.append(state)
        if state in STATE_PROGRESS:
            self.progress_percent = max(self.progress_percent, STATE_PROGRESS[state])
        if state in TERMINAL_STATES:
            self.completed_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "current_tier": self.current_tier.value,
            "target_tier": self.target_tier.value,
            "billing_interval": self.billing_interval.value,
            "state": self.state.value,
            "progress_percent": self.progress_percent,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error.as_dict() if self.error else None,
            "snapshot_id": self.snapshot_id,
            "charge_id": self.charge_id,
            "state_history": [s.value for s in self.state_history],
            "retry_of": self.retry_of,
        }
