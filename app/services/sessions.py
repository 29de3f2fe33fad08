# =============================================================================
# Conversation Sessions — Store Interface + Expiry Sweeper
# =============================================================================
#
# A session is the append-only turn log of one conversation, keyed by
# session id. The gateway reads it to fill in history when a caller sends a
# sessionId without conversationHistory, and appends the user/assistant
# pair once a job's result has been observed.
#
#   SessionStore (Protocol)
#   ├── InMemorySessionStore  — dict + injected clock (single process, tests)
#   └── RedisSessionStore     — redis-py; JSON turn list + last-active time
#
#   SessionSweeper            — asyncio background task, purges sessions idle
#                               longer than `session_timeout_s`
#
# IDEMPOTENCE: record_exchange() is keyed by job id. Polling the same
# completed job twice appends its exchange once.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from app.config import settings
from app.models.jobs import ConversationTurn

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionStore(Protocol):
    def get_history(self, session_id: str) -> list[ConversationTurn]:
        ...

    def record_exchange(
        self,
        session_id: str,
        job_id: str,
        user_message: str,
        assistant_message: str,
    ) -> bool:
        ...

    def purge_expired(self, now: datetime | None = None) -> int:
        ...

    def delete(self, session_id: str) -> bool:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


@dataclass
class _Session:
    turns: list[ConversationTurn] = field(default_factory=list)
    job_ids: set[str] = field(default_factory=set)
    last_active: datetime = field(default_factory=_utcnow)


class InMemorySessionStore:
    """Process-local sessions. Thread-safe: the gateway calls in from threads."""

    def __init__(
        self,
        timeout_s: float | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._timeout = timedelta(seconds=timeout_s or settings.session_timeout_s)
        self._clock = clock
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    def get_history(self, session_id: str) -> list[ConversationTurn]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            session.last_active = self._clock()
            return list(session.turns)

    def record_exchange(
        self,
        session_id: str,
        job_id: str,
        user_message: str,
        assistant_message: str,
    ) -> bool:
        now = self._clock()
        with self._lock:
            session = self._sessions.setdefault(session_id, _Session(last_active=now))
            if job_id in session.job_ids:
                return False
            session.job_ids.add(job_id)
            session.turns.append(ConversationTurn(role="user", content=user_message, timestamp=now))
            session.turns.append(
                ConversationTurn(role="assistant", content=assistant_message, timestamp=now)
            )
            session.last_active = now
            return True

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or self._clock()) - self._timeout
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.last_active < cutoff]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------


class RedisSessionStore:
    """
    Sessions in Redis.

    Keys per session:
        session:<id>:turns   list of JSON-encoded turns
        session:<id>:jobs    set of job ids already recorded
    plus the sorted set `sessions:active` (member=id, score=last active
    epoch seconds) that purge_expired() scans.
    """

    ACTIVE_KEY = "sessions:active"

    def __init__(
        self,
        client=None,
        timeout_s: float | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        if client is None:
            import redis

            client = redis.Redis.from_url(settings.session_redis_url, decode_responses=True)
        self._redis = client
        self._timeout_s = timeout_s or settings.session_timeout_s
        self._clock = clock

    @staticmethod
    def _turns_key(session_id: str) -> str:
        return f"session:{session_id}:turns"

    @staticmethod
    def _jobs_key(session_id: str) -> str:
        return f"session:{session_id}:jobs"

    def get_history(self, session_id: str) -> list[ConversationTurn]:
        raw = self._redis.lrange(self._turns_key(session_id), 0, -1)
        if raw:
            self._redis.zadd(self.ACTIVE_KEY, {session_id: self._clock().timestamp()})
        return [ConversationTurn.model_validate(json.loads(item)) for item in raw]

    def record_exchange(
        self,
        session_id: str,
        job_id: str,
        user_message: str,
        assistant_message: str,
    ) -> bool:
        if not self._redis.sadd(self._jobs_key(session_id), job_id):
            return False

        now = self._clock()
        turns = [
            ConversationTurn(role="user", content=user_message, timestamp=now),
            ConversationTurn(role="assistant", content=assistant_message, timestamp=now),
        ]
        pipe = self._redis.pipeline()
        pipe.rpush(
            self._turns_key(session_id),
            *[t.model_dump_json(by_alias=True) for t in turns],
        )
        pipe.zadd(self.ACTIVE_KEY, {session_id: now.timestamp()})
        pipe.execute()
        return True

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or self._clock()).timestamp() - self._timeout_s
        expired = self._redis.zrangebyscore(self.ACTIVE_KEY, "-inf", cutoff)
        for session_id in expired:
            self.delete(session_id)
        return len(expired)

    def delete(self, session_id: str) -> bool:
        pipe = self._redis.pipeline()
        pipe.delete(self._turns_key(session_id), self._jobs_key(session_id))
        pipe.zrem(self.ACTIVE_KEY, session_id)
        removed, _ = pipe.execute()
        return bool(removed)


# ---------------------------------------------------------------------------
# Expiry Sweeper
# ---------------------------------------------------------------------------


class SessionSweeper:
    """
    Periodically purges idle sessions.

    Runs as an asyncio task started and stopped by the FastAPI lifespan.
    `sweep_once()` is the unit the tests drive directly.
    """

    def __init__(
        self,
        store: SessionStore,
        interval_s: float | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._interval = interval_s or settings.session_sweep_interval_s
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> int:
        removed = await asyncio.to_thread(self._store.purge_expired, self._clock())
        if removed:
            logger.info("Purged %d expired sessions", removed)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.exception("Session sweep failed: %s", exc)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    """Lazy singleton for the configured `session_backend`."""
    global _store
    if _store is None:
        if settings.session_backend == "redis":
            _store = RedisSessionStore()
        else:
            _store = InMemorySessionStore()
    return _store
