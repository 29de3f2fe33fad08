# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# The job store runs on in-memory SQLite (StaticPool, one connection shared
# by every session). Celery is replaced by a recording dispatcher and time
# by a manually advanced clock, so no broker, Redis or network is needed.
# =============================================================================

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from app.db.engine import build_engine, init_db, make_session_scope
from app.services.queue import JobQueue


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingDispatcher:
    """Stands in for Celery: remembers every (job_id, countdown) wake-up."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, float]] = []

    def __call__(self, job_id: str, countdown: float) -> None:
        self.calls.append((job_id, countdown))

    def for_job(self, job_id: str) -> list[float]:
        return [countdown for jid, countdown in self.calls if jid == job_id]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_scope(engine):
    return make_session_scope(sessionmaker(bind=engine, expire_on_commit=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def queue(session_scope, dispatcher, clock) -> JobQueue:
    return JobQueue(
        session_scope,
        dispatcher=dispatcher,
        clock=clock,
        lock_duration_s=30,
        max_stalled_count=1,
    )
