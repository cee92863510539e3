"""Pydantic models shared across API, session, record builder, storage and reports.

Beginner terms used in this file:
- Frozen model: instances reject attribute assignment after construction.
- Alias: the camelCase key used on the wire (for example, ``taskTitle``).
- Data URL: ``data:image/png;base64,...`` string carrying an image inline.
"""

from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for records exchanged over the camelCase REST API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenWireModel(WireModel):
    model_config = ConfigDict(frozen=True)


class RoundPhase(str, Enum):
    """Lifecycle of one round execution. Phases only move forward."""

    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ChecklistItemDefinition(FrozenWireModel):
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)


class TaskDefinition(FrozenWireModel):
    """Reusable checklist template a round is instantiated from."""

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    sector: str
    ticket_id: str | None = None
    description: str = ""
    # Default responsible party, used when the actor has no display name.
    responsible: str = ""
    checklist: tuple[ChecklistItemDefinition, ...] = ()
    created_at: int = 0


class ChecklistItemState(FrozenWireModel):
    id: str
    label: str
    checked: bool = False


class SignatureState(FrozenWireModel):
    has_ink: bool = False
    raster: str | None = None


class RoundLog(FrozenWireModel):
    """Immutable record produced once when a round completes."""

    id: str
    task_id: str
    task_title: str
    ticket_id: str | None = None
    sector: str
    responsible: str
    start_time: int
    end_time: int
    duration_seconds: int = Field(ge=0)
    checklist_state: tuple[ChecklistItemState, ...] = ()
    observations: str = ""
    issues_detected: bool
    photos: tuple[str, ...] = ()
    signature: str | None = None
    validation_token: str


class ReportConfig(WireModel):
    """Visual identity applied to generated PDF reports."""

    company_name: str = "RondaGuard Pro"
    logo: str | None = None
    header_color: str = Field(default="#3b82f6", pattern=r"^#[0-9a-fA-F]{6}$")


class SectorCount(WireModel):
    sector: str
    rounds: int


class RoundSummary(WireModel):
    """Aggregate figures over a set of round logs, as shown on the dashboard."""

    total_rounds: int = 0
    rounds_with_issues: int = 0
    average_duration_seconds: int = 0
    rounds_per_sector: list[SectorCount] = Field(default_factory=list)


class RoundSessionView(BaseModel):
    """Read-only snapshot of a session as returned by the HTTP surface."""

    session_id: str
    task_id: str
    phase: RoundPhase
    responsible: str
    started_at: int | None = None
    elapsed_seconds: int = 0
    checklist: list[ChecklistItemState] = Field(default_factory=list)
    observations: str = ""
    issues_flag: bool = False
    photo_count: int = 0
    has_signature: bool = False
    round_id: str | None = None


class SaveTaskRequest(WireModel):
    """Request body for POST /tasks; missing id and created_at are filled in."""

    id: str | None = None
    title: str = Field(min_length=1)
    sector: str = Field(min_length=1)
    ticket_id: str | None = None
    description: str = ""
    responsible: str = ""
    checklist: list[ChecklistItemDefinition] = Field(default_factory=list)
    created_at: int | None = None


class CreateSessionRequest(BaseModel):
    """Request body for POST /tasks/{task_id}/sessions."""

    # Display name of the authenticated actor; trusted as-is.
    actor_name: str = Field(
        default="", validation_alias=AliasChoices("actor_name", "actorName")
    )


class ObservationsRequest(BaseModel):
    text: str = ""


class IssuesFlagRequest(BaseModel):
    issues_detected: bool


class AttachPhotoRequest(BaseModel):
    # Opaque image payload, normally a data URL from a camera or file picker.
    image: str = Field(min_length=1)


class PointPayload(BaseModel):
    x: float
    y: float


class SignatureStrokesRequest(BaseModel):
    """Whole strokes captured client-side, in surface-local coordinates."""

    strokes: list[list[PointPayload]] = Field(default_factory=list)


class CompleteRoundRequest(BaseModel):
    # Explicit user confirmation required to finish a round without a signature.
    confirm_unsigned: bool = False
