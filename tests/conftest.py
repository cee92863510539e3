from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from round_fakes import FakeClock, InlineExecutor, ManualTickerFactory

from rondaguard_api.app.models import ChecklistItemDefinition, TaskDefinition
from rondaguard_api.app.registry import SessionRegistry
from rondaguard_api.app.session import RoundSession
from rondaguard_api.app.settings import Settings
from rondaguard_api.app.storage import InMemoryRoundStorage


@pytest.fixture
def task_definition() -> TaskDefinition:
    return TaskDefinition(
        id="task-1",
        title="Ronda Noturna Bloco A",
        sector="Segurança",
        ticket_id="CH-2041",
        responsible="Equipe Noturna",
        checklist=(
            ChecklistItemDefinition(id="i1", label="Portões trancados"),
            ChecklistItemDefinition(id="i2", label="Extintores no lugar"),
            ChecklistItemDefinition(id="i3", label="Iluminação externa ligada"),
        ),
        created_at=1_699_999_000_000,
    )


@pytest.fixture
def tickers() -> ManualTickerFactory:
    return ManualTickerFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session(
    task_definition: TaskDefinition, tickers: ManualTickerFactory, clock: FakeClock
) -> Iterator[RoundSession]:
    with RoundSession(
        task_definition,
        "Ana Souza",
        ticker_factory=tickers,
        clock=clock,
        photo_executor=InlineExecutor(),
    ) as round_session:
        yield round_session


@pytest.fixture
def storage() -> InMemoryRoundStorage:
    return InMemoryRoundStorage()


@pytest.fixture
def registry(tickers: ManualTickerFactory, clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(ticker_factory=tickers, clock=clock, photo_executor=InlineExecutor())


@pytest.fixture
def make_client(
    registry: SessionRegistry,
) -> Iterator[Callable[[InMemoryRoundStorage], TestClient]]:
    from rondaguard_api.main import create_app

    clients: list[TestClient] = []

    def _make(round_storage: InMemoryRoundStorage) -> TestClient:
        app = create_app(
            storage=round_storage,
            settings_override=Settings(storage_backend="memory"),
            session_registry=registry,
        )
        test_client = TestClient(app)
        clients.append(test_client)
        return test_client

    yield _make
    for test_client in clients:
        test_client.close()
    registry.close_all()


@pytest.fixture
def client(
    make_client: Callable[[InMemoryRoundStorage], TestClient], storage: InMemoryRoundStorage
) -> TestClient:
    return make_client(storage)
