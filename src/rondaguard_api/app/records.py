"""Derive the immutable RoundLog from a session's final state.

The validation token is a weak, human-presentable cross-check between a
printed report and the system of record. It is not a signature or any other
security control: anybody who sees a token can copy it.
"""

from __future__ import annotations

import secrets
import string
import threading
import uuid
from dataclasses import dataclass

from .models import ChecklistItemState, RoundLog, TaskDefinition

TOKEN_PREFIX = "RND"
TOKEN_RANDOM_LENGTH = 5
TOKEN_TIME_DIGITS = 6
_BASE36 = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class RoundSnapshot:
    """Final session state handed to the builder at completion time."""

    responsible: str
    started_at: int
    elapsed_seconds: int
    checklist: tuple[ChecklistItemState, ...]
    observations: str
    issues_flag: bool
    photos: tuple[str, ...]
    signature: str | None

    @property
    def incomplete(self) -> bool:
        return any(not item.checked for item in self.checklist)

    @property
    def issues_detected(self) -> bool:
        # An unchecked item always flags the round, whatever the explicit flag says.
        return self.issues_flag or self.incomplete


class TokenRegistry:
    """Process-wide set of issued tokens; a collision re-draws the random part."""

    def __init__(self) -> None:
        self._issued: set[str] = set()
        self._lock = threading.Lock()

    def issue(self, end_time: int) -> str:
        time_part = str(end_time)[-TOKEN_TIME_DIGITS:].rjust(TOKEN_TIME_DIGITS, "0")
        with self._lock:
            while True:
                random_part = "".join(
                    secrets.choice(_BASE36) for _ in range(TOKEN_RANDOM_LENGTH)
                )
                token = f"{TOKEN_PREFIX}-{random_part}-{time_part}".upper()
                if token not in self._issued:
                    self._issued.add(token)
                    return token

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._issued


_default_registry = TokenRegistry()


def generate_validation_token(end_time: int, registry: TokenRegistry | None = None) -> str:
    return (registry or _default_registry).issue(end_time)


def generate_round_id() -> str:
    return str(uuid.uuid4())


def build_round_log(
    snapshot: RoundSnapshot,
    task: TaskDefinition,
    *,
    end_time: int,
    registry: TokenRegistry | None = None,
) -> RoundLog:
    return RoundLog(
        id=generate_round_id(),
        task_id=task.id,
        task_title=task.title,
        ticket_id=task.ticket_id,
        sector=task.sector,
        responsible=snapshot.responsible,
        start_time=snapshot.started_at,
        end_time=end_time,
        # Delivered ticks, not end_time - started_at.
        duration_seconds=snapshot.elapsed_seconds,
        checklist_state=tuple(item.model_copy(deep=True) for item in snapshot.checklist),
        observations=snapshot.observations,
        issues_detected=snapshot.issues_detected,
        photos=tuple(snapshot.photos),
        signature=snapshot.signature,
        validation_token=generate_validation_token(end_time, registry),
    )


def format_duration(total_seconds: int) -> str:
    """Render seconds as HH:MM:SS, the way the round timer displays it."""
    hours, remainder = divmod(max(total_seconds, 0), 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
