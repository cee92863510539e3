"""In-process registry of round sessions owned by the HTTP host."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor

from .errors import SessionConflictError
from .models import TaskDefinition
from .session import Clock, RoundSession, epoch_millis
from .signature import SignaturePad
from .ticker import TickerFactory, interval_ticker_factory

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates sessions and keeps at most one open session per task.

    A completed or cancelled session stays readable until the next create(),
    which drops every session that is no longer open.
    """

    def __init__(
        self,
        *,
        ticker_factory: TickerFactory | None = None,
        clock: Clock = epoch_millis,
        photo_executor: Executor | None = None,
        signature_size: tuple[int, int] = (600, 150),
        signature_line_width: int = 2,
    ) -> None:
        self._ticker_factory = ticker_factory or interval_ticker_factory(1.0)
        self._clock = clock
        self._photo_executor = photo_executor
        self._signature_size = signature_size
        self._signature_line_width = signature_line_width
        self._sessions: dict[str, RoundSession] = {}
        self._lock = threading.Lock()

    def create(self, task: TaskDefinition, actor_name: str = "") -> RoundSession:
        with self._lock:
            self._prune_closed()
            for existing in self._sessions.values():
                if existing.task.id == task.id and existing.is_open:
                    raise SessionConflictError(
                        f"task {task.id} already has an open session {existing.session_id}"
                    )
            width, height = self._signature_size
            session = RoundSession(
                task,
                actor_name,
                ticker_factory=self._ticker_factory,
                clock=self._clock,
                photo_executor=self._photo_executor,
                signature_pad=SignaturePad(width, height, self._signature_line_width),
            )
            self._sessions[session.session_id] = session
        logger.info(
            "session_registry event=created session_id=%s task_id=%s",
            session.session_id,
            task.id,
        )
        return session

    def get(self, session_id: str) -> RoundSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def open_sessions(self) -> list[RoundSession]:
        with self._lock:
            return [session for session in self._sessions.values() if session.is_open]

    def close_all(self) -> None:
        """Cancel every open session; used on application shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
        logger.info("session_registry event=closed_all count=%s", len(sessions))

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _prune_closed(self) -> None:
        # Finished rounds are read back from storage, not from here.
        closed = [sid for sid, session in self._sessions.items() if not session.is_open]
        for session_id in closed:
            del self._sessions[session_id]
        if closed:
            logger.info("session_registry event=pruned count=%s", len(closed))
