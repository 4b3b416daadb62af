from __future__ import annotations

import asyncio

import pytest

from tierflow.core.runtime.errors import SessionNotFoundError, UpgradeInProgressError
from tierflow.core.runtime.locks import UserLockManager
from tierflow.core.tiers.catalog import BillingInterval, Tier
from tierflow.core.upgrade.registry import SessionRegistry
from tierflow.core.upgrade.session import UpgradeSession, UpgradeState


def _session(user_id: str = "u1") -> UpgradeSession:
    return UpgradeSession(
        user_id=user_id,
        current_tier=Tier.FREE,
        target_tier=Tier.STARTER,
        billing_interval=BillingInterval.MONTHLY,
    )


@pytest.mark.asyncio
async def test_lock_manager_returns_same_lock_per_user():
    locks = UserLockManager()
    a = await locks.get_lock("u1")
    b = await locks.get_lock("u1")
    c = await locks.get_lock("u2")
    assert a is b
    assert a is not c


@pytest.mark.asyncio
async def test_registry_rejects_second_active_session_for_user():
    registry = SessionRegistry()
    first = _session()
    await registry.register(first)
    await registry.register(_session("u2"))

    with pytest.raises(UpgradeInProgressError, match="upgrade already in progress") as info:
        await registry.register(_session())
    assert info.value.session_id == first.session_id

    first.transition(UpgradeState.FAILED)
    await registry.register(_session())
    assert len(registry.for_user("u1")) == 2


@pytest.mark.asyncio
async def test_running_task_keeps_user_busy_after_terminal_state():
    registry = SessionRegistry()
    session = _session()
    await registry.register(session)
    session.transition(UpgradeState.FAILED)

    gate = asyncio.Event()
    task = asyncio.create_task(gate.wait())
    registry.attach_task(session.session_id, task)
    assert registry.busy_for("u1") is session

    gate.set()
    await task
    assert registry.busy_for("u1") is None


def test_unknown_session_raises():
    with pytest.raises(SessionNotFoundError):
        SessionRegistry().get("missing")


@pytest.mark.asyncio
async def test_prune_evicts_oldest_settled_sessions_only():
    registry = SessionRegistry()
    finished = []
    for user_id in ["u1", "u2", "u3"]:
        session = _session(user_id)
        await registry.register(session)
        session.transition(UpgradeState.FAILED)
        finished.append(session)

    pending = _session("u4")
    await registry.register(pending)
    pending.snapshot_id = "snap-1"
    pending.transition(UpgradeState.FAILED)
    active = _session("u5")
    await registry.register(active)

    evicted = registry.prune(keep=1)

    assert evicted == [finished[0].session_id, finished[1].session_id]
    with pytest.raises(SessionNotFoundError):
        registry.get(finished[0].session_id)
    assert registry.get(finished[2].session_id) is finished[2]
    assert registry.get(pending.session_id) is pending
    assert registry.get(active.session_id) is active
    assert registry.prune(keep=1) == []
