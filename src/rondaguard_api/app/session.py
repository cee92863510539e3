"""Round session state machine: NOT_STARTED -> RUNNING -> COMPLETED (or CANCELLED).

Beginner terms used in this file:
- Phase: the session's lifecycle state; it never moves backwards.
- Tick: one-second callback that advances the elapsed-time clock.
- Sink: the collaborator that durably stores the finished RoundLog.

The session is the only owner of its checklist, photos and signature pad.
Everything outside reads it through properties or ``view()`` and changes it
through the transition methods below.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Executor, Future
from typing import Protocol

from .errors import (
    InvalidPhaseError,
    RoundPersistenceError,
    RoundValidationError,
    SignatureConfirmationRequired,
)
from .models import ChecklistItemState, RoundLog, RoundPhase, RoundSessionView, TaskDefinition
from .records import RoundSnapshot, TokenRegistry, build_round_log
from .signature import Point, SignaturePad
from .ticker import Ticker, TickerFactory, interval_ticker_factory

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
PhotoLoader = Callable[[], str]


class RoundLogSink(Protocol):
    def save_round(self, log: RoundLog) -> None: ...


def epoch_millis() -> int:
    return time.time_ns() // 1_000_000


class RoundSession:
    """One timed execution of a task definition's checklist."""

    def __init__(
        self,
        task: TaskDefinition,
        actor_name: str = "",
        *,
        session_id: str | None = None,
        ticker_factory: TickerFactory | None = None,
        clock: Clock = epoch_millis,
        photo_executor: Executor | None = None,
        signature_pad: SignaturePad | None = None,
        token_registry: TokenRegistry | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self._task = task
        # Resolved once: actor display name first, task default second.
        self._responsible = (actor_name or "").strip() or task.responsible.strip()
        self._phase = RoundPhase.NOT_STARTED
        self._started_at: int | None = None
        self._elapsed_seconds = 0
        self._checklist = [
            ChecklistItemState(id=item.id, label=item.label, checked=False)
            for item in task.checklist
        ]
        self._observations = ""
        self._issues_flag = False
        self._photos: list[str] = []
        self._pending_photos: set[Future[str]] = set()
        self._signature = signature_pad or SignaturePad()
        self._round_log: RoundLog | None = None
        self._ticker_factory = ticker_factory or interval_ticker_factory(1.0)
        self._ticker: Ticker | None = None
        self._clock = clock
        self._photo_executor = photo_executor
        self._token_registry = token_registry
        self._lock = threading.RLock()

    def __enter__(self) -> RoundSession:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    # Read accessors -------------------------------------------------------

    @property
    def task(self) -> TaskDefinition:
        return self._task

    @property
    def phase(self) -> RoundPhase:
        return self._phase

    @property
    def responsible(self) -> str:
        return self._responsible

    @property
    def started_at(self) -> int | None:
        return self._started_at

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed_seconds

    @property
    def checklist(self) -> tuple[ChecklistItemState, ...]:
        with self._lock:
            return tuple(self._checklist)

    @property
    def observations(self) -> str:
        return self._observations

    @property
    def issues_flag(self) -> bool:
        return self._issues_flag

    @property
    def photos(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._photos)

    @property
    def signature(self) -> SignaturePad:
        return self._signature

    @property
    def round_log(self) -> RoundLog | None:
        return self._round_log

    @property
    def ticking(self) -> bool:
        return self._ticker is not None and self._ticker.running

    @property
    def is_open(self) -> bool:
        return self._phase in (RoundPhase.NOT_STARTED, RoundPhase.RUNNING)

    def view(self) -> RoundSessionView:
        with self._lock:
            return RoundSessionView(
                session_id=self.session_id,
                task_id=self._task.id,
                phase=self._phase,
                responsible=self._responsible,
                started_at=self._started_at,
                elapsed_seconds=self._elapsed_seconds,
                checklist=list(self._checklist),
                observations=self._observations,
                issues_flag=self._issues_flag,
                photo_count=len(self._photos),
                has_signature=self._signature.has_ink,
                round_id=self._round_log.id if self._round_log else None,
            )

    # Transitions ----------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            self._require_phase("start", RoundPhase.NOT_STARTED)
            if not self._responsible:
                raise RoundValidationError("responsible party unresolved")
            self._started_at = self._clock()
            self._phase = RoundPhase.RUNNING
            self._ticker = self._ticker_factory(self._on_tick)
            self._ticker.start()
        logger.info(
            "round_session event=start session_id=%s task_id=%s responsible=%s",
            self.session_id,
            self._task.id,
            self._responsible,
        )

    def toggle_item(self, item_id: str) -> None:
        with self._lock:
            self._require_phase("toggle_item", RoundPhase.RUNNING)
            for index, item in enumerate(self._checklist):
                if item.id == item_id:
                    self._checklist[index] = item.model_copy(update={"checked": not item.checked})
                    return

    def set_observations(self, text: str) -> None:
        with self._lock:
            self._require_phase("set_observations", RoundPhase.RUNNING)
            self._observations = text

    def set_issues_flag(self, flag: bool) -> None:
        with self._lock:
            self._require_phase("set_issues_flag", RoundPhase.RUNNING)
            self._issues_flag = bool(flag)

    def attach_photo(self, payload: str) -> None:
        with self._lock:
            self._require_phase("attach_photo", RoundPhase.RUNNING)
            self._photos.append(payload)

    def attach_photo_async(
        self, loader: PhotoLoader, executor: Executor | None = None
    ) -> Future[str]:
        """Read a photo off the control thread and append it once the read completes.

        Photos land in completion order. A read that finishes after the session
        left RUNNING is discarded.
        """
        pool = executor or self._photo_executor
        if pool is None:
            raise RuntimeError("attach_photo_async requires a photo executor")
        with self._lock:
            self._require_phase("attach_photo", RoundPhase.RUNNING)
            future = pool.submit(loader)
            self._pending_photos.add(future)
        future.add_done_callback(self._deliver_photo)
        return future

    def draw_signature(self, strokes: list[list[Point]]) -> None:
        with self._lock:
            self._require_phase("draw_signature", RoundPhase.RUNNING)
            self._signature.replay(strokes)

    def clear_signature(self) -> None:
        with self._lock:
            self._require_phase("clear_signature", RoundPhase.RUNNING)
            self._signature.clear()

    def request_completion(self, sink: RoundLogSink, *, confirm_unsigned: bool = False) -> RoundLog:
        """Build the RoundLog, persist it and only then move to COMPLETED.

        If the sink fails the session stays RUNNING with its state intact so
        the caller can retry.
        """
        with self._lock:
            self._require_phase("request_completion", RoundPhase.RUNNING)
            if not self._signature.has_ink and not confirm_unsigned:
                raise SignatureConfirmationRequired(
                    "round is not signed; confirm to complete it unsigned"
                )
            log = build_round_log(
                self._snapshot(),
                self._task,
                end_time=self._clock(),
                registry=self._token_registry,
            )
            try:
                sink.save_round(log)
            except Exception as exc:
                logger.warning(
                    "round_session event=persist_failed session_id=%s round_id=%s error=%s",
                    self.session_id,
                    log.id,
                    exc,
                )
                raise RoundPersistenceError(f"failed to persist round: {exc}") from exc
            self._round_log = log
            self._phase = RoundPhase.COMPLETED
            ticker = self._ticker
        self._stop_ticker(ticker)
        logger.info(
            "round_session event=completed session_id=%s round_id=%s duration_s=%s "
            "issues_detected=%s signed=%s",
            self.session_id,
            log.id,
            log.duration_seconds,
            log.issues_detected,
            log.signature is not None,
        )
        return log

    def cancel(self) -> None:
        """Discard the session without producing a RoundLog."""
        with self._lock:
            if self._phase is RoundPhase.CANCELLED:
                return
            if self._phase is RoundPhase.COMPLETED:
                raise InvalidPhaseError("cancel", self._phase.value)
            self._phase = RoundPhase.CANCELLED
            self._checklist = []
            self._photos = []
            self._observations = ""
            self._issues_flag = False
            pending = list(self._pending_photos)
            self._pending_photos.clear()
            ticker = self._ticker
        self._stop_ticker(ticker)
        for future in pending:
            future.cancel()
        self._signature.end_stroke()
        if self._signature.has_ink:
            self._signature.clear()
        logger.info(
            "round_session event=cancelled session_id=%s task_id=%s",
            self.session_id,
            self._task.id,
        )

    def close(self) -> None:
        """Teardown hook: cancel an open session and make sure the ticker is stopped."""
        if self.is_open:
            self.cancel()
        else:
            self._stop_ticker(self._ticker)

    # Internals ------------------------------------------------------------

    def _require_phase(self, operation: str, expected: RoundPhase) -> None:
        if self._phase is not expected:
            raise InvalidPhaseError(operation, self._phase.value)

    def _on_tick(self) -> None:
        with self._lock:
            if self._phase is RoundPhase.RUNNING:
                self._elapsed_seconds += 1

    def _deliver_photo(self, future: Future[str]) -> None:
        with self._lock:
            self._pending_photos.discard(future)
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                logger.warning(
                    "round_session event=photo_read_failed session_id=%s error=%s",
                    self.session_id,
                    error,
                )
                return
            if self._phase is not RoundPhase.RUNNING:
                logger.warning(
                    "round_session event=photo_discarded session_id=%s phase=%s",
                    self.session_id,
                    self._phase.value,
                )
                return
            self._photos.append(future.result())

    def _snapshot(self) -> RoundSnapshot:
        return RoundSnapshot(
            responsible=self._responsible,
            started_at=self._started_at or 0,
            elapsed_seconds=self._elapsed_seconds,
            checklist=tuple(self._checklist),
            observations=self._observations,
            issues_flag=self._issues_flag,
            photos=tuple(self._photos),
            signature=self._signature.export_raster() if self._signature.has_ink else None,
        )

    @staticmethod
    def _stop_ticker(ticker: Ticker | None) -> None:
        # Called outside the session lock: the ticker thread may be waiting on it.
        if ticker is not None:
            ticker.cancel()
