from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tasktracker import models
from tasktracker.config import settings
from tasktracker.events import EventBus
from tasktracker.main import create_app
from tasktracker.state import RuntimeState
from tasktracker.storage import SqlBlobStore

from fakes import EventRecorder, FakeClock


@pytest.fixture()
def engine(tmp_path: Path):
    path = tmp_path / "tracker.db"
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False}, future=True)
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine) -> SqlBlobStore:
    return SqlBlobStore(sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture()
def state(store, clock, bus) -> Generator[RuntimeState, None, None]:
    runtime = RuntimeState(settings, store=store, clock=clock, bus=bus)
    runtime.start(auto_save=False, auto_cleanup=False)
    yield runtime
    runtime.shutdown()


@pytest.fixture()
def data(state):
    return state.data


@pytest.fixture()
def tasks(state):
    return state.tasks


@pytest.fixture()
def timer(state):
    return state.timer


@pytest.fixture()
def reports(state):
    return state.reports


@pytest.fixture()
def runtime(store, clock, bus) -> RuntimeState:
    return RuntimeState(settings, store=store, clock=clock, bus=bus)


@pytest.fixture()
def client(runtime: RuntimeState) -> Generator[TestClient, None, None]:
    with TestClient(create_app(runtime)) as c:
        yield c
