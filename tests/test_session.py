from __future__ import annotations

import pytest
from pydantic import ValidationError
from round_fakes import FakeClock, InlineExecutor, ManualTickerFactory, RecordingSink, sign

from rondaguard_api.app.errors import (
    InvalidPhaseError,
    RoundPersistenceError,
    RoundValidationError,
    SignatureConfirmationRequired,
)
from rondaguard_api.app.models import ChecklistItemDefinition, RoundPhase, TaskDefinition
from rondaguard_api.app.session import RoundSession


def test_responsible_prefers_actor_name_over_task_default(task_definition: TaskDefinition) -> None:
    session = RoundSession(task_definition, "  Ana Souza  ", ticker_factory=ManualTickerFactory())
    assert session.responsible == "Ana Souza"

    fallback = RoundSession(task_definition, "", ticker_factory=ManualTickerFactory())
    assert fallback.responsible == "Equipe Noturna"


def test_start_without_responsible_is_rejected(task_definition: TaskDefinition) -> None:
    task = task_definition.model_copy(update={"responsible": ""})
    session = RoundSession(task, "   ", ticker_factory=ManualTickerFactory())

    with pytest.raises(RoundValidationError, match="responsible party unresolved"):
        session.start()

    assert session.phase is RoundPhase.NOT_STARTED
    assert session.started_at is None


def test_start_records_time_and_second_start_is_rejected(
    session: RoundSession, clock: FakeClock, tickers: ManualTickerFactory
) -> None:
    session.start()
    started_at = session.started_at
    assert started_at == clock.now
    assert session.phase is RoundPhase.RUNNING
    assert tickers.last.running

    clock.advance(5_000)
    with pytest.raises(InvalidPhaseError):
        session.start()

    assert session.started_at == started_at
    assert len(tickers.tickers) == 1


def test_checklist_starts_unchecked_in_task_order(session: RoundSession) -> None:
    assert [item.id for item in session.checklist] == ["i1", "i2", "i3"]
    assert not any(item.checked for item in session.checklist)


def test_running_only_operations_are_rejected_before_start(session: RoundSession) -> None:
    with pytest.raises(InvalidPhaseError):
        session.toggle_item("i1")
    with pytest.raises(InvalidPhaseError):
        session.set_observations("text")
    with pytest.raises(InvalidPhaseError):
        session.set_issues_flag(True)
    with pytest.raises(InvalidPhaseError):
        session.attach_photo("data:image/png;base64,AAAA")
    with pytest.raises(InvalidPhaseError):
        session.request_completion(RecordingSink(), confirm_unsigned=True)

    assert session.observations == ""
    assert session.photos == ()


def test_toggle_flips_item_and_ignores_unknown_id(session: RoundSession) -> None:
    session.start()
    session.toggle_item("i2")
    session.toggle_item("missing")
    assert [item.checked for item in session.checklist] == [False, True, False]

    session.toggle_item("i2")
    assert [item.checked for item in session.checklist] == [False, False, False]


def test_photos_append_without_dedup(session: RoundSession) -> None:
    session.start()
    session.attach_photo("data:image/png;base64,AAAA")
    session.attach_photo("data:image/png;base64,AAAA")
    assert session.photos == ("data:image/png;base64,AAAA", "data:image/png;base64,AAAA")


def test_elapsed_seconds_counts_delivered_ticks_only(
    session: RoundSession, tickers: ManualTickerFactory, clock: FakeClock
) -> None:
    session.start()
    tickers.last.tick(3)
    # Wall clock jumps (suspended tab, sleeping laptop) do not add seconds.
    clock.advance(3_600_000)
    tickers.last.tick(2)

    log = session.request_completion(RecordingSink(), confirm_unsigned=True)

    assert log.duration_seconds == 5
    assert log.end_time - log.start_time == 3_600_000


def test_ticks_after_completion_are_ignored(
    session: RoundSession, tickers: ManualTickerFactory
) -> None:
    session.start()
    tickers.last.tick(4)
    ticker = tickers.last
    session.request_completion(RecordingSink(), confirm_unsigned=True)

    assert ticker.cancelled
    assert ticker.tick(10) == 0
    assert session.elapsed_seconds == 4


@pytest.mark.parametrize(
    ("checked_ids", "issues_flag", "expected"),
    [
        (["i1", "i2", "i3"], False, False),
        (["i1", "i2", "i3"], True, True),
        (["i1", "i2"], False, True),
        ([], False, True),
        (["i3"], True, True),
    ],
)
def test_unchecked_item_always_flags_issues(
    session: RoundSession, checked_ids: list[str], issues_flag: bool, expected: bool
) -> None:
    session.start()
    for item_id in checked_ids:
        session.toggle_item(item_id)
    session.set_issues_flag(issues_flag)

    log = session.request_completion(RecordingSink(), confirm_unsigned=True)

    assert log.issues_detected is expected


def test_empty_checklist_without_flag_has_no_issues() -> None:
    task = TaskDefinition(id="t-empty", title="Sem itens", sector="Geral", checklist=())
    session = RoundSession(task, "Ana", ticker_factory=ManualTickerFactory())
    session.start()

    log = session.request_completion(RecordingSink(), confirm_unsigned=True)

    assert log.issues_detected is False
    assert log.checklist_state == ()


def test_unsigned_completion_requires_confirmation(session: RoundSession) -> None:
    sink = RecordingSink()
    session.start()

    with pytest.raises(SignatureConfirmationRequired):
        session.request_completion(sink)

    assert session.phase is RoundPhase.RUNNING
    assert sink.calls == 0

    log = session.request_completion(sink, confirm_unsigned=True)
    assert log.signature is None
    assert session.phase is RoundPhase.COMPLETED


def test_end_to_end_round_with_three_items(
    session: RoundSession, tickers: ManualTickerFactory, task_definition: TaskDefinition
) -> None:
    sink = RecordingSink()
    session.start()
    session.toggle_item("i1")
    session.toggle_item("i2")
    session.set_issues_flag(False)
    session.set_observations("Portão lateral com ferrugem.")
    sign(session)
    tickers.last.tick(42)

    log = session.request_completion(sink)

    assert sink.saved == [log]
    assert log.duration_seconds == 42
    assert log.issues_detected is True
    assert log.signature is not None
    assert log.signature.startswith("data:image/png;base64,")
    assert len(log.checklist_state) == 3
    assert log.checklist_state[2].checked is False
    assert [item.checked for item in log.checklist_state[:2]] == [True, True]
    assert log.task_id == task_definition.id
    assert log.task_title == task_definition.title
    assert log.sector == task_definition.sector
    assert log.ticket_id == "CH-2041"
    assert log.responsible == "Ana Souza"
    assert log.observations == "Portão lateral com ferrugem."
    assert session.round_log == log
    assert not session.ticking


def test_completed_session_rejects_further_transitions(session: RoundSession) -> None:
    session.start()
    session.request_completion(RecordingSink(), confirm_unsigned=True)

    with pytest.raises(InvalidPhaseError):
        session.toggle_item("i1")
    with pytest.raises(InvalidPhaseError):
        session.start()
    with pytest.raises(InvalidPhaseError):
        session.cancel()
    with pytest.raises(InvalidPhaseError):
        session.request_completion(RecordingSink(), confirm_unsigned=True)
    assert session.phase is RoundPhase.COMPLETED


def test_cancel_produces_no_log_and_no_sink_call(
    session: RoundSession, tickers: ManualTickerFactory
) -> None:
    sink = RecordingSink()
    session.start()
    session.toggle_item("i1")
    session.set_issues_flag(True)
    session.set_observations("Janela quebrada")
    session.attach_photo("data:image/png;base64,AAAA")
    sign(session)
    tickers.last.tick(7)

    session.cancel()

    assert session.phase is RoundPhase.CANCELLED
    assert session.round_log is None
    assert sink.calls == 0
    assert tickers.last.cancelled
    assert session.signature.has_ink is False
    assert session.issues_flag is False
    view = session.view()
    assert view.has_signature is False
    assert view.issues_flag is False
    assert view.photo_count == 0
    assert view.observations == ""
    assert view.checklist == []
    with pytest.raises(InvalidPhaseError):
        session.request_completion(sink, confirm_unsigned=True)
    # Cancelling twice is harmless.
    session.cancel()


def test_cancel_before_start_is_allowed(session: RoundSession) -> None:
    session.cancel()
    assert session.phase is RoundPhase.CANCELLED
    with pytest.raises(InvalidPhaseError):
        session.start()


def test_cancel_mid_stroke_closes_the_stroke(session: RoundSession) -> None:
    from rondaguard_api.app.signature import Point

    session.start()
    session.signature.begin_stroke(Point(1, 1))
    session.signature.extend_stroke(Point(5, 5))

    session.cancel()

    assert not session.signature.drawing


def test_sink_failure_keeps_session_running_for_retry(
    session: RoundSession, tickers: ManualTickerFactory
) -> None:
    sink = RecordingSink(failures=1)
    session.start()
    session.toggle_item("i1")
    session.set_observations("Tudo certo")
    sign(session)
    tickers.last.tick(10)

    with pytest.raises(RoundPersistenceError):
        session.request_completion(sink)

    assert session.phase is RoundPhase.RUNNING
    assert session.round_log is None
    assert tickers.last.running
    assert session.observations == "Tudo certo"
    assert session.checklist[0].checked is True
    assert session.signature.has_ink

    tickers.last.tick(2)
    log = session.request_completion(sink)

    assert sink.calls == 2
    assert sink.saved == [log]
    assert log.duration_seconds == 12
    assert log.observations == "Tudo certo"
    assert session.phase is RoundPhase.COMPLETED


def test_round_log_is_a_snapshot(session: RoundSession) -> None:
    session.start()
    session.toggle_item("i1")
    log = session.request_completion(RecordingSink(), confirm_unsigned=True)

    # Reach into the session as only a test would, to prove the log is detached.
    session._checklist[0] = session._checklist[0].model_copy(update={"checked": False})
    session._photos.append("data:image/png;base64,BBBB")

    assert log.checklist_state[0].checked is True
    assert log.photos == ()
    with pytest.raises(ValidationError):
        log.checklist_state[0].checked = False  # type: ignore[misc]


def test_two_sessions_never_share_id_or_token(
    task_definition: TaskDefinition, clock: FakeClock
) -> None:
    logs = []
    for _ in range(50):
        session = RoundSession(
            task_definition, "Ana", ticker_factory=ManualTickerFactory(), clock=clock
        )
        session.start()
        logs.append(session.request_completion(RecordingSink(), confirm_unsigned=True))

    assert len({log.id for log in logs}) == 50
    assert len({log.validation_token for log in logs}) == 50
    assert len({log.end_time for log in logs}) == 1


@pytest.mark.parametrize("exit_path", ["cancel", "complete", "close", "context_exit"])
def test_ticker_is_stopped_on_every_exit_path(
    task_definition: TaskDefinition, exit_path: str
) -> None:
    tickers = ManualTickerFactory()
    session = RoundSession(
        task_definition, "Ana", ticker_factory=tickers, photo_executor=InlineExecutor()
    )
    if exit_path == "context_exit":
        with pytest.raises(RuntimeError):
            with session:
                session.start()
                raise RuntimeError("host crashed")
        assert session.phase is RoundPhase.CANCELLED
    else:
        session.start()
        if exit_path == "cancel":
            session.cancel()
        elif exit_path == "complete":
            session.request_completion(RecordingSink(), confirm_unsigned=True)
        else:
            session.close()

    assert tickers.last.cancelled
    assert not session.ticking


def test_view_reflects_session_state(session: RoundSession, tickers: ManualTickerFactory) -> None:
    session.start()
    session.toggle_item("i3")
    session.attach_photo("data:image/jpeg;base64,AAAA")
    tickers.last.tick(3)

    view = session.view()

    assert view.phase is RoundPhase.RUNNING
    assert view.elapsed_seconds == 3
    assert view.photo_count == 1
    assert view.has_signature is False
    assert [item.checked for item in view.checklist] == [False, False, True]
    assert view.round_id is None


def test_checklist_labels_are_copied_at_round_start() -> None:
    task = TaskDefinition(
        id="t-labels",
        title="Ronda",
        sector="Geral",
        checklist=(ChecklistItemDefinition(id="a", label="Primeiro"),),
    )
    session = RoundSession(task, "Ana", ticker_factory=ManualTickerFactory())

    assert session.checklist[0].label == "Primeiro"
    assert session.checklist[0].checked is False
