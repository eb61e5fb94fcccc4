from __future__ import annotations

import asyncio

from typing import Any

from threadrelay.api.services.stream_session import StreamSession
from threadrelay.utils.logger import logger


class StreamSessionRegistry:
    """Track live stream sessions and each user's current conversation.

    The user to conversation association lets a follow-up message omit the
    conversation id. It is cleared when a session on that conversation errors.
    """

    def __init__(self, max_sessions: int = 0) -> None:
        """Initialize the registry.

        Args:
            max_sessions: Maximum concurrent sessions (0 = unlimited)
        """
        self.sessions: dict[str, StreamSession] = {}
        self.max_sessions = max_sessions
        self._associations: dict[str, str] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._shutting_down = False
        self._completed = 0

    # =========================================================================
    # User to conversation association
    # =========================================================================

    def associate(self, user_id: str, conversation_id: str) -> None:
        self._associations[user_id] = conversation_id

    def dissociate(self, user_id: str, conversation_id: str | None = None) -> None:
        """Forget the user's conversation, optionally only if it is ``conversation_id``."""
        current = self._associations.get(user_id)
        if current is not None and (conversation_id is None or current == conversation_id):
            del self._associations[user_id]
            logger.debug(f"Cleared conversation association for user {user_id}")

    def conversation_for(self, user_id: str) -> str | None:
        return self._associations.get(user_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    def accepting(self) -> bool:
        if self._shutting_down:
            return False
        return not self.max_sessions or len(self.sessions) < self.max_sessions

    def launch(self, session: StreamSession) -> asyncio.Task[None]:
        """Start ``session`` in a background task and track it until it finishes.

        Raises:
            RuntimeError: If the registry is shutting down
        """
        if self._shutting_down:
            raise RuntimeError("Stream registry is shutting down")

        self.sessions[session.session_id] = session
        task = session.start()
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._forget(session, t))
        logger.debug(f"Stream session {session.session_id} launched (active: {self.session_count})")
        return task

    def _forget(self, session: StreamSession, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if self.sessions.pop(session.session_id, None) is not None:
            self._completed += 1

    async def graceful_shutdown(self, timeout: float = 10.0) -> None:
        """Disconnect every live session and wait for their final drains."""
        self._shutting_down = True
        live = list(self.sessions.values())
        logger.info(f"Initiating stream shutdown for {len(live)} sessions (timeout: {timeout}s)")

        for session in live:
            session.notify_disconnect()

        pending = list(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning(f"Timeout waiting for {len(still_running)} stream sessions to finish")
                for task in still_running:
                    task.cancel()

        logger.info(f"Stream shutdown complete (disconnected {len(live)} sessions)")

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    def get_stats(self) -> dict[str, Any]:
        states: dict[str, int] = {}
        for session in self.sessions.values():
            states[session.state.value] = states.get(session.state.value, 0) + 1
        return {
            "active_sessions": self.session_count,
            "sessions_by_state": states,
            "completed_sessions": self._completed,
            "associated_users": len(self._associations),
            "max_sessions": self.max_sessions,
            "shutting_down": self._shutting_down,
        }
