"""Owned map of live sessions and the tasks running them."""

from __future__ import annotations

import asyncio

from llamaclick.core.session import Session, SessionResult
from llamaclick.utils.logging import get_logger

log = get_logger(__name__)


class SessionRegistry:
    """The one place sessions are looked up, started, cancelled and dropped.

    All methods run on the event loop that owns the sessions; nothing here is
    shared across threads.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._tasks: dict[str, asyncio.Task[SessionResult]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def register(self, session: Session) -> str:
        if session.id in self._sessions:
            raise ValueError(f"session {session.id} is already registered")
        self._sessions[session.id] = session
        return session.id

    def launch(self, session: Session) -> asyncio.Task[SessionResult]:
        """Register ``session`` if needed and start running it in its own task."""
        if session.id not in self._sessions:
            self.register(session)
        elif session.id in self._tasks:
            raise ValueError(f"session {session.id} has already been launched")
        task = asyncio.get_running_loop().create_task(session.run(), name=f"session-{session.id}")
        self._tasks[session.id] = task
        log.info("session_launched", session=session.id)
        return task

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def active(self) -> list[Session]:
        return [s for s in self._sessions.values() if not s.state.terminal]

    def cancel(self, session_id: str, reason: str = "cancelled") -> bool:
        """Ask a session to stop at its next checkpoint. Returns False if unknown or finished."""
        session = self._sessions.get(session_id)
        if session is None or session.state.terminal:
            return False
        session.cancel(reason)
        log.info("session_cancel_requested", session=session_id, reason=reason)
        return True

    def remove(self, session_id: str) -> Session | None:
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            raise ValueError(f"session {session_id} is still running")
        self._tasks.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    async def wait(self, session_id: str) -> SessionResult:
        task = self._tasks.get(session_id)
        if task is None:
            raise KeyError(session_id)
        return await task
