# =============================================================================
# Unit Tests — Conversation Sessions
# =============================================================================

import asyncio
from unittest.mock import MagicMock

import pytest

from app.services.sessions import InMemorySessionStore, RedisSessionStore, SessionSweeper


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@pytest.fixture
def store(clock):
    return InMemorySessionStore(timeout_s=60, clock=clock)


# ---------------------------------------------------------------------------
# Test: In-Memory Store
# ---------------------------------------------------------------------------


class TestInMemorySessionStore:

    def test_unknown_session_has_no_history(self, store):
        assert store.get_history("nope") == []

    def test_exchange_appends_user_then_assistant(self, store):
        store.record_exchange("s1", "job-1", "Who is Lori?", "A shark.")
        store.record_exchange("s1", "job-2", "What did she fund?", "Scrub Daddy.")

        history = store.get_history("s1")
        assert [(t.role, t.content) for t in history] == [
            ("user", "Who is Lori?"),
            ("assistant", "A shark."),
            ("user", "What did she fund?"),
            ("assistant", "Scrub Daddy."),
        ]

    def test_same_job_recorded_once(self, store):
        assert store.record_exchange("s1", "job-1", "q", "a") is True
        assert store.record_exchange("s1", "job-1", "q", "a") is False
        assert len(store.get_history("s1")) == 2

    def test_idle_sessions_expire(self, store, clock):
        store.record_exchange("s1", "job-1", "q", "a")
        clock.advance(61)

        assert store.purge_expired() == 1
        assert len(store) == 0
        assert store.get_history("s1") == []

    def test_reading_history_keeps_session_alive(self, store, clock):
        store.record_exchange("s1", "job-1", "q", "a")
        clock.advance(50)
        store.get_history("s1")
        clock.advance(50)

        assert store.purge_expired() == 0

    def test_delete(self, store):
        store.record_exchange("s1", "job-1", "q", "a")
        assert store.delete("s1") is True
        assert store.delete("s1") is False


# ---------------------------------------------------------------------------
# Test: Redis Store
# ---------------------------------------------------------------------------


class TestRedisSessionStore:

    def test_duplicate_job_skips_write(self, clock):
        client = MagicMock()
        client.sadd.return_value = 0
        store = RedisSessionStore(client=client, timeout_s=60, clock=clock)

        assert store.record_exchange("s1", "job-1", "q", "a") is False
        client.sadd.assert_called_once_with("session:s1:jobs", "job-1")
        client.pipeline.assert_not_called()

    def test_exchange_is_pushed_as_json(self, clock):
        client = MagicMock()
        client.sadd.return_value = 1
        pipe = client.pipeline.return_value
        store = RedisSessionStore(client=client, timeout_s=60, clock=clock)

        assert store.record_exchange("s1", "job-1", "q", "a") is True

        key, *items = pipe.rpush.call_args.args
        assert key == "session:s1:turns"
        assert '"role":"user"' in items[0]
        assert '"role":"assistant"' in items[1]
        pipe.zadd.assert_called_once_with(
            RedisSessionStore.ACTIVE_KEY, {"s1": clock.now.timestamp()},
        )

    def test_purge_deletes_expired_ids(self, clock):
        client = MagicMock()
        client.zrangebyscore.return_value = ["old-1", "old-2"]
        client.pipeline.return_value.execute.return_value = [2, 1]
        store = RedisSessionStore(client=client, timeout_s=60, clock=clock)

        assert store.purge_expired() == 2
        client.zrangebyscore.assert_called_once_with(
            RedisSessionStore.ACTIVE_KEY, "-inf", clock.now.timestamp() - 60,
        )


# ---------------------------------------------------------------------------
# Test: Sweeper
# ---------------------------------------------------------------------------


class TestSessionSweeper:

    def test_sweep_once(self, store, clock):
        store.record_exchange("old", "job-1", "q", "a")
        clock.advance(61)
        store.record_exchange("fresh", "job-2", "q", "a")

        removed = _run(SessionSweeper(store, interval_s=1, clock=clock).sweep_once())

        assert removed == 1
        assert store.get_history("fresh") != []

    def test_background_loop_start_stop(self, store, clock):
        store.record_exchange("old", "job-1", "q", "a")
        clock.advance(61)

        async def scenario():
            sweeper = SessionSweeper(store, interval_s=0.01, clock=clock)
            sweeper.start()
            for _ in range(100):
                if len(store) == 0:
                    break
                await asyncio.sleep(0.01)
            await sweeper.stop()

        _run(scenario())
        assert len(store) == 0
