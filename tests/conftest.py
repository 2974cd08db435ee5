"""Shared fixtures: fixed clock, in-memory store and an HTTP client over SQLite."""
import os

# Must be set before examhub is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["EXAM_STORE_BACKEND"] = "sql"

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from examhub.core.clock import FixedClock
from examhub.dependencies.database import get_sessionmanager
from examhub.dependencies.lifecycle import get_clock
from examhub.main import app
from examhub.models import ExamStatus
from examhub.schemas.exam import ExamRecord, Operator
from examhub.services.actions import ActionSurface
from examhub.services.exam_store import InMemoryExamRecordStore, SqlExamRecordStore
from examhub.services.transitions import TransitionAuthority

NOW = datetime(2026, 3, 2, 8, 0, 0)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def store() -> InMemoryExamRecordStore:
    return InMemoryExamRecordStore()


@pytest.fixture
def authority(store: InMemoryExamRecordStore, clock: FixedClock) -> TransitionAuthority:
    return TransitionAuthority(store, clock, schedule_conflict_check=True)


@pytest.fixture
def surface(authority: TransitionAuthority, store: InMemoryExamRecordStore, clock: FixedClock) -> ActionSurface:
    return ActionSurface(authority, store, clock)


@pytest.fixture
def author() -> Operator:
    return Operator(user_id="teacher-1", school_id=1)


@pytest.fixture
def admin() -> Operator:
    return Operator(user_id="admin-1", school_id=1)


@pytest.fixture
def make_exam(store: InMemoryExamRecordStore) -> Callable[..., ExamRecord]:
    """Insert an exam snapshot directly; defaults to a draft running tomorrow 09:00-11:00."""
    counter = {"next": 1}

    def _make(**overrides) -> ExamRecord:
        fields = {
            "id": counter["next"],
            "school_id": 1,
            "class_id": 10,
            "title": f"Exam {counter['next']}",
            "status": ExamStatus.DRAFT,
            "start_time": NOW + timedelta(days=1, hours=1),
            "end_time": NOW + timedelta(days=1, hours=3),
        }
        fields.update(overrides)
        counter["next"] = max(counter["next"], fields["id"]) + 1
        return store.put(ExamRecord(**fields))

    return _make


@pytest_asyncio.fixture
async def sql_store() -> AsyncIterator[SqlExamRecordStore]:
    manager = get_sessionmanager()
    await manager.configure()
    await manager.create_all()
    async with manager.session() as session:
        yield SqlExamRecordStore(session)
    await manager.drop_all()
    await manager.close()


@pytest_asyncio.fixture
async def client(clock: FixedClock) -> AsyncIterator[AsyncClient]:
    """HTTP client against the app with a fresh SQLite database and a fixed clock."""
    manager = get_sessionmanager()
    await manager.configure()
    await manager.create_all()
    app.dependency_overrides[get_clock] = lambda: clock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await manager.drop_all()
    await manager.close()


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return {"X-Operator-Id": "admin-1", "X-School-Id": "1"}
