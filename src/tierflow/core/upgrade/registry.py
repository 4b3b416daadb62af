from __future__ import annotations

import asyncio

from tierflow.core.runtime.errors import SessionNotFoundError, UpgradeInProgressError
from tierflow.core.runtime.locks import UserLockManager
from tierflow.core.upgrade.session import UpgradeSession, UpgradeState


class SessionRegistry:
    """In-memory index of upgrade sessions, at most one busy session per user.

    A session is busy while it is in an active state or while its run task
    (including automatic rollback) has not finished.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, UpgradeSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._locks = UserLockManager()

    async def register(self, session: UpgradeSession) -> None:
        lock = await self._locks.get_lock(session.user_id)
        async with lock:
            busy = self.busy_for(session.user_id)
            if busy is not None:
                raise UpgradeInProgressError(session.user_id, busy.session_id)
            self._sessions[session.session_id] = session

    def attach_task(self, session_id: str, task: asyncio.Task) -> None:
        self._tasks[session_id] = task

    def task_for(self, session_id: str) -> asyncio.Task | None:
        return self._tasks.get(session_id)

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def get(self, session_id: str) -> UpgradeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"unknown upgrade session: {session_id}")
        return session

    def busy_for(self, user_id: str) -> UpgradeSession | None:
        for session in self._sessions.values():
            if session.user_id != user_id:
                continue
            if session.is_active or self.is_running(session.session_id):
                return session
        return None

    def for_user(self, user_id: str) -> list[UpgradeSession]:
        sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: s.started_at)

    def all(self) -> list[UpgradeSession]:
        return list(self._sessions.values())

    def is_settled(self, session: UpgradeSession) -> bool:
        """Finished with nothing left to do: not running and no rollback pending."""
        if session.is_active or self.is_running(session.session_id):
            return False
        return not (session.state == UpgradeState.FAILED and session.snapshot_id is not None)

    def evict(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._tasks.pop(session_id, None)

    def prune(self, keep: int) -> list[str]:
        """Evict the oldest settled sessions beyond ``keep``; returns evicted ids."""
        settled = [s for s in self._sessions.values() if self.is_settled(s)]
        if len(settled) <= keep:
            return []
        settled.sort(key=lambda s: s.completed_at or s.started_at)
        evicted = [s.session_id for s in settled[: len(settled) - keep]]
        for session_id in evicted:
            self.evict(session_id)
        return evicted
