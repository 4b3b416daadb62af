from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from tierflow.core.telemetry.logging import get_logger

ProgressCallback = Callable[["ProgressEvent"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_seconds_remaining(elapsed_seconds: float, progress_percent: int) -> float | None:
    if progress_percent <= 0 or progress_percent >= 100:
        return None
    return max(0.0, elapsed_seconds / progress_percent * 100 - elapsed_seconds)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    session_id: str
    state: str
    message: str
    progress_percent: int
    estimated_seconds_remaining: float | None = None
    at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "message": self.message,
            "progress_percent": self.progress_percent,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
            "at": self.at.isoformat(),
        }


class ProgressBroadcaster:
    """Fan-out of per-session progress events.

    Events are delivered in publish order. A subscriber that raises is logged
    and skipped; it never blocks the upgrade or other subscribers.
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, list[ProgressCallback]] = defaultdict(list)
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._history: dict[str, list[ProgressEvent]] = defaultdict(list)
        self._closed: set[str] = set()
        self.logger = get_logger("tierflow.progress")

    def subscribe(self, session_id: str, callback: ProgressCallback, *, replay: bool = True) -> Callable[[], None]:
        if replay:
            for event in list(self._history.get(session_id, [])):
                self._deliver(callback, event)
        self._callbacks[session_id].append(callback)

        def _unsubscribe() -> None:
            callbacks = self._callbacks.get(session_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    async def stream(self, session_id: str, *, replay: bool = True) -> AsyncIterator[ProgressEvent]:
        """Yield events until the session's run is closed."""
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self._history.get(session_id, []):
                queue.put_nowait(event)
        if session_id in self._closed:
            queue.put_nowait(None)
        else:
            self._queues[session_id].append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            queues = self._queues.get(session_id, [])
            if queue in queues:
                queues.remove(queue)

    def publish(self, event: ProgressEvent) -> None:
        self._history[event.session_id].append(event)
        for callback in list(self._callbacks.get(event.session_id, [])):
            self._deliver(callback, event)
        for queue in list(self._queues.get(event.session_id, [])):
            queue.put_nowait(event)

    def close(self, session_id: str) -> None:
        self._closed.add(session_id)
        for queue in self._queues.pop(session_id, []):
            queue.put_nowait(None)

    def reopen(self, session_id: str) -> None:
        self._closed.discard(session_id)

    def history(self, session_id: str) -> list[ProgressEvent]:
        return list(self._history.get(session_id, []))

    def forget(self, session_id: str) -> None:
        self.close(session_id)
        self._history.pop(session_id, None)
        self._callbacks.pop(session_id, None)
        self._closed.discard(session_id)

    def _deliver(self, callback: ProgressCallback, event: ProgressEvent) -> None:
        try:
            callback(event)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                "progress_subscriber_failed",
                session_id=event.session_id,
                state=event.state,
                error=f"{exc.__class__.__name__}: {exc}",
            )
