from __future__ import annotations

import asyncio

import pytest

from tierflow.core.datastore.base import PreservationCategory
from tierflow.core.monitor.preservation import PreservationMonitor, integrity_percent


def _monitor(stack, **kwargs) -> PreservationMonitor:
    return PreservationMonitor(data_store=stack.data_store, snapshot_store=stack.snapshot_store, **kwargs)


def test_integrity_percent_edges():
    assert integrity_percent(0, 0) == 100
    assert integrity_percent(9, 10) == 90
    assert integrity_percent(1, 3) == 33
    assert integrity_percent(2, 3) == 67
    assert isinstance(integrity_percent(14, 15), int)


@pytest.mark.asyncio
async def test_check_without_snapshot_reports_full_integrity(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1")
    monitor = _monitor(stack)

    assert monitor.status().issues == ["no check performed yet"]
    status = await monitor.check("u1")
    assert status.data_integrity == 100
    assert status.total_items == 0
    assert status.issues == ["no reference snapshot available"]
    assert status.last_check is not None


@pytest.mark.asyncio
async def test_drift_is_detected_and_reported(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1", per_category=2)
    snapshot = await stack.snapshot_store.capture("u1", "sess-1")
    drift_calls: list[tuple[str, int]] = []
    monitor = _monitor(stack, on_drift=lambda user_id, st: drift_calls.append((user_id, st.data_integrity)))

    clean = await monitor.check("u1")
    assert clean.data_integrity == 100
    assert clean.preserved_items == 10
    assert drift_calls == []

    await stack.data_store.write_item("u1", PreservationCategory.DASHBOARD_LAYOUT, "dashboard_layout-1", {"widgets": []})
    drifted = await monitor.check("u1")

    assert drifted.snapshot_id == snapshot.snapshot_id
    assert drifted.preserved_items == 9
    assert drifted.data_integrity == 90
    assert drifted.issues == ["modified dashboard_layout/dashboard_layout-1"]
    assert drift_calls == [("u1", 90)]


@pytest.mark.asyncio
async def test_unreachable_store_keeps_previous_figures(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1")
    await stack.snapshot_store.capture("u1", "sess-1")
    monitor = _monitor(stack)
    await monitor.check("u1")

    stack.data_store.unavailable = True
    status = await monitor.check("u1")
    assert status.data_integrity == 100
    assert status.total_items == 10
    assert status.issues[0].startswith("live data unavailable")


@pytest.mark.asyncio
async def test_periodic_polling_can_be_stopped(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1")
    await stack.snapshot_store.capture("u1", "sess-1")
    monitor = _monitor(stack, poll_interval_seconds=0.01)

    monitor.start("u1")
    with pytest.raises(RuntimeError, match="already running"):
        monitor.start("u1")
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert monitor.running is False
    assert monitor.status().last_check is not None
    assert monitor.status().data_integrity == 100


@pytest.mark.asyncio
async def test_monitor_during_upgrade_never_drops(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1", per_category=3)
    readings: list[float] = []
    monitor = _monitor(stack)

    session = await stack.executor.begin("u1", "professional")

    def _on_event(event):
        readings.append(event.progress_percent)

    stack.executor.subscribe(session.session_id, _on_event)
    while stack.executor.registry.is_running(session.session_id):
        status = await monitor.check("u1")
        assert status.data_integrity == 100
        await asyncio.sleep(0)
    assert readings[-1] == 100


@pytest.mark.asyncio
async def test_integrity_is_rounded_to_whole_percent(stack_factory):
    stack = stack_factory()
    await stack.seed_user("u1", per_category=3)
    await stack.snapshot_store.capture("u1", "sess-1")
    await stack.data_store.write_item("u1", PreservationCategory.SAVED_REPORTS, "saved_reports-0", {"edited": True})

    status = await _monitor(stack).check("u1")

    assert (status.preserved_items, status.total_items) == (14, 15)
    assert status.data_integrity == 93
    assert status.as_dict()["data_integrity"] == 93
