"""FastAPI application wiring for the round service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /health).
- response_model: Pydantic model used to validate/shape API responses.
- app.state: a place to store shared runtime objects (storage, session registry).
- Lifespan: startup/shutdown hook; shutdown closes every open round session.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import UTC, tzinfo
from zoneinfo import ZoneInfo

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from .app.errors import (
    EmptySignatureError,
    InvalidPhaseError,
    RoundPersistenceError,
    RoundValidationError,
    SessionConflictError,
    SignatureConfirmationRequired,
)
from .app.history import filter_rounds, summarize_rounds
from .app.models import (
    AttachPhotoRequest,
    CompleteRoundRequest,
    CreateSessionRequest,
    IssuesFlagRequest,
    ObservationsRequest,
    ReportConfig,
    RoundLog,
    RoundSessionView,
    RoundSummary,
    SaveTaskRequest,
    SignatureStrokesRequest,
    TaskDefinition,
)
from .app.registry import SessionRegistry
from .app.report import render_round_report, report_filename
from .app.session import RoundSession, epoch_millis
from .app.settings import Settings, get_settings
from .app.signature import Point
from .app.storage import InMemoryRoundStorage, PostgresRoundStorage, RoundStorage
from .app.ticker import interval_ticker_factory

logger = logging.getLogger(__name__)


def _build_storage(settings: Settings) -> RoundStorage:
    if settings.storage_backend == "memory":
        return InMemoryRoundStorage()
    if not settings.database_url:
        raise RuntimeError(
            "RONDAGUARD_DATABASE_URL is required when RONDAGUARD_STORAGE_BACKEND=postgres."
        )
    return PostgresRoundStorage(database_url=settings.database_url)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: RoundStorage | None,
    registry_override: SessionRegistry | None,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or _build_storage(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "sessions"):
        if registry_override is not None:
            app.state.sessions = registry_override
        else:
            app.state.photo_executor = ThreadPoolExecutor(
                max_workers=settings.photo_read_workers,
                thread_name_prefix="photo-read",
            )
            app.state.sessions = SessionRegistry(
                ticker_factory=interval_ticker_factory(settings.tick_interval_s),
                clock=epoch_millis,
                photo_executor=app.state.photo_executor,
                signature_size=(settings.signature_width, settings.signature_height),
                signature_line_width=settings.signature_line_width,
            )

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def _shutdown_runtime_state(app: FastAPI) -> None:
    registry = getattr(app.state, "sessions", None)
    if registry is not None:
        registry.close_all()
    executor = getattr(app.state, "photo_executor", None)
    if executor is not None:
        executor.shutdown(wait=False, cancel_futures=True)


def create_app(
    *,
    storage: RoundStorage | None = None,
    settings_override: Settings | None = None,
    session_registry: SessionRegistry | None = None,
) -> FastAPI:
    """Application factory.

    Storage and the session registry are created lazily (first request or
    startup) unless overrides are passed, which keeps import-time cheap and
    lets tests inject in-memory collaborators.
    """
    settings = settings_override or get_settings()
    logging.getLogger("rondaguard_api").setLevel(settings.log_level.upper())
    report_tz = _resolve_timezone(settings.report_timezone)

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            registry_override=session_registry,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        try:
            yield
        finally:
            _shutdown_runtime_state(app)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure(app)

    def _storage(request: Request) -> RoundStorage:
        if not hasattr(request.app.state, "storage"):
            _ensure(request.app)
        return request.app.state.storage

    def _sessions(request: Request) -> SessionRegistry:
        if not hasattr(request.app.state, "sessions"):
            _ensure(request.app)
        return request.app.state.sessions

    def _session(request: Request, session_id: str) -> RoundSession:
        session = _sessions(request).get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    def _task(request: Request, task_id: str) -> TaskDefinition:
        task = _storage(request).get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    def _round(request: Request, round_id: str) -> RoundLog:
        log = _storage(request).get_round(round_id)
        if log is None:
            raise HTTPException(status_code=404, detail="Round not found")
        return log

    _register_error_handlers(app)

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # Task definitions ------------------------------------------------------

    @app.post("/tasks", response_model=TaskDefinition)
    def save_task(payload: SaveTaskRequest, request: Request) -> TaskDefinition:
        task = TaskDefinition(
            id=payload.id or str(uuid.uuid4()),
            title=payload.title,
            sector=payload.sector,
            ticket_id=payload.ticket_id or None,
            description=payload.description,
            responsible=payload.responsible,
            checklist=tuple(payload.checklist),
            created_at=payload.created_at if payload.created_at is not None else epoch_millis(),
        )
        return _storage(request).save_task(task)

    @app.get("/tasks", response_model=list[TaskDefinition])
    def list_tasks(request: Request) -> list[TaskDefinition]:
        return _storage(request).list_tasks()

    @app.get("/tasks/{task_id}", response_model=TaskDefinition)
    def get_task(task_id: str, request: Request) -> TaskDefinition:
        return _task(request, task_id)

    @app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_task(task_id: str, request: Request) -> Response:
        if not _storage(request).delete_task(task_id):
            raise HTTPException(status_code=404, detail="Task not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Round sessions --------------------------------------------------------

    @app.post("/tasks/{task_id}/sessions", response_model=RoundSessionView)
    def create_session(
        task_id: str, payload: CreateSessionRequest, request: Request
    ) -> RoundSessionView:
        task = _task(request, task_id)
        return _sessions(request).create(task, payload.actor_name).view()

    @app.get("/sessions/{session_id}", response_model=RoundSessionView)
    def get_session(session_id: str, request: Request) -> RoundSessionView:
        return _session(request, session_id).view()

    @app.post("/sessions/{session_id}/start", response_model=RoundSessionView)
    def start_session(session_id: str, request: Request) -> RoundSessionView:
        session = _session(request, session_id)
        session.start()
        return session.view()

    @app.post(
        "/sessions/{session_id}/checklist/{item_id}/toggle", response_model=RoundSessionView
    )
    def toggle_item(session_id: str, item_id: str, request: Request) -> RoundSessionView:
        session = _session(request, session_id)
        session.toggle_item(item_id)
        return session.view()

    @app.put("/sessions/{session_id}/observations", response_model=RoundSessionView)
    def set_observations(
        session_id: str, payload: ObservationsRequest, request: Request
    ) -> RoundSessionView:
        session = _session(request, session_id)
        session.set_observations(payload.text)
        return session.view()

    @app.put("/sessions/{session_id}/issues", response_model=RoundSessionView)
    def set_issues_flag(
        session_id: str, payload: IssuesFlagRequest, request: Request
    ) -> RoundSessionView:
        session = _session(request, session_id)
        session.set_issues_flag(payload.issues_detected)
        return session.view()

    @app.post(
        "/sessions/{session_id}/photos",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=RoundSessionView,
    )
    def attach_photo(
        session_id: str, payload: AttachPhotoRequest, request: Request
    ) -> RoundSessionView:
        session = _session(request, session_id)
        image = payload.image
        # Fire-and-forget: the photo appears once the read completes.
        session.attach_photo_async(lambda: image)
        return session.view()

    @app.post("/sessions/{session_id}/signature/strokes", response_model=RoundSessionView)
    def draw_signature(
        session_id: str, payload: SignatureStrokesRequest, request: Request
    ) -> RoundSessionView:
        session = _session(request, session_id)
        strokes = [[Point(x=point.x, y=point.y) for point in stroke] for stroke in payload.strokes]
        session.draw_signature(strokes)
        return session.view()

    @app.delete("/sessions/{session_id}/signature", response_model=RoundSessionView)
    def clear_signature(session_id: str, request: Request) -> RoundSessionView:
        session = _session(request, session_id)
        session.clear_signature()
        return session.view()

    @app.post("/sessions/{session_id}/complete", response_model=RoundLog)
    def complete_round(
        session_id: str, payload: CompleteRoundRequest, request: Request
    ) -> RoundLog:
        session = _session(request, session_id)
        return session.request_completion(
            _storage(request), confirm_unsigned=payload.confirm_unsigned
        )

    @app.delete("/sessions/{session_id}", response_model=RoundSessionView)
    def cancel_session(session_id: str, request: Request) -> RoundSessionView:
        session = _session(request, session_id)
        session.cancel()
        return session.view()

    # Round history and reports --------------------------------------------

    @app.get("/rounds", response_model=list[RoundLog])
    def list_rounds(request: Request, q: str = "") -> list[RoundLog]:
        return filter_rounds(_storage(request).list_rounds(), q, tz=report_tz)

    # Declared before /rounds/{round_id} so "summary" is not taken as an id.
    @app.get("/rounds/summary", response_model=RoundSummary)
    def round_summary(request: Request, q: str = "") -> RoundSummary:
        return summarize_rounds(filter_rounds(_storage(request).list_rounds(), q, tz=report_tz))

    @app.get("/rounds/{round_id}", response_model=RoundLog)
    def get_round(round_id: str, request: Request) -> RoundLog:
        return _round(request, round_id)

    @app.get("/rounds/{round_id}/report.pdf")
    def round_report(round_id: str, request: Request) -> Response:
        log = _round(request, round_id)
        config = _storage(request).get_settings()
        content = render_round_report(log, config, tz=report_tz)
        filename = report_filename(log, tz=report_tz)
        return Response(
            content=content,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # Report settings -------------------------------------------------------

    @app.get("/settings", response_model=ReportConfig)
    def get_report_settings(request: Request) -> ReportConfig:
        return _storage(request).get_settings()

    @app.put("/settings", response_model=ReportConfig)
    def save_report_settings(payload: ReportConfig, request: Request) -> ReportConfig:
        return _storage(request).save_settings(payload)

    return app


def _register_error_handlers(app: FastAPI) -> None:
    """Map round workflow errors to HTTP status codes."""

    def _handler(status_code: int):
        async def handle(_request: Request, exc: Exception) -> JSONResponse:
            logger.info(
                "round_api event=rejected status=%s error_type=%s detail=%s",
                status_code,
                type(exc).__name__,
                exc,
            )
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        return handle

    app.add_exception_handler(InvalidPhaseError, _handler(status.HTTP_409_CONFLICT))
    app.add_exception_handler(SessionConflictError, _handler(status.HTTP_409_CONFLICT))
    app.add_exception_handler(RoundValidationError, _handler(422))
    app.add_exception_handler(EmptySignatureError, _handler(422))
    app.add_exception_handler(
        SignatureConfirmationRequired, _handler(status.HTTP_428_PRECONDITION_REQUIRED)
    )
    app.add_exception_handler(
        RoundPersistenceError, _handler(status.HTTP_503_SERVICE_UNAVAILABLE)
    )


def _resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


# Module-level app for `uvicorn rondaguard_api.main:app`.
app = create_app()
