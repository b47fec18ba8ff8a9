"""Session registry: cap, LRU eviction, touch and termination."""

import asyncio
from datetime import timedelta

import pytest

from rbacauth.service.errors import CurrentSessionNotFoundError, NotFoundError
from rbacauth.service.geo import UNKNOWN_LOCATION, GeoEnricher
from rbacauth.service.sessions import SessionRegistry
from rbacauth.storage.memory import MemoryStore
from rbacauth.storage.models import utcnow

CHROME_ON_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


@pytest.fixture
def store(tmp_path):
    store = MemoryStore(str(tmp_path / "sessions"))
    store.create_user("alice@example.com")
    return store


@pytest.fixture
def user_id(store):
    return store.get_user_by_email("alice@example.com").id


@pytest.fixture
def registry(store):
    return SessionRegistry(store, geo=GeoEnricher(enabled=False), cap=3)


async def _open_aged(registry, store, user_id, token, minutes_ago):
    sess = await registry.open_session(user_id, token)
    store.update_session(sess.id, last_active=utcnow() - timedelta(minutes=minutes_ago))
    return sess


class TestOpenSession:
    async def test_snapshot_fields(self, registry, user_id):
        sess = await registry.open_session(
            user_id, "tok-1", ip="127.0.0.1", user_agent=CHROME_ON_WINDOWS
        )
        assert sess.platform == "Windows"
        assert sess.browser == "Google Chrome"
        assert sess.device == "Desktop"
        assert sess.location["city"] == "Localhost"
        assert sess.location["ip_address"] == "127.0.0.1"
        assert sess.is_active

    async def test_remember_me_extends_expiry(self, registry, user_id):
        short = await registry.open_session(user_id, "tok-short")
        long = await registry.open_session(user_id, "tok-long", remember_me=True)
        assert short.expires_at - utcnow() <= timedelta(days=7)
        assert long.expires_at - utcnow() > timedelta(days=29)

    async def test_cap_evicts_least_recently_active(self, registry, store, user_id):
        await _open_aged(registry, store, user_id, "tok-a", 30)
        oldest = await _open_aged(registry, store, user_id, "tok-b", 90)
        await _open_aged(registry, store, user_id, "tok-c", 10)

        await registry.open_session(user_id, "tok-d")

        assert registry.count_active(user_id) == 3
        assert store.get_session(oldest.id).is_active is False
        live_tokens = {s.token for s in store.list_active_sessions(user_id)}
        assert live_tokens == {"tok-a", "tok-c", "tok-d"}

    async def test_cap_repairs_overflow(self, store, user_id):
        loose = SessionRegistry(store, cap=10)
        for i in range(5):
            await _open_aged(loose, store, user_id, f"tok-{i}", 100 - i)
        strict = SessionRegistry(store, cap=2)
        await strict.open_session(user_id, "tok-new")
        assert strict.count_active(user_id) == 2
        assert {s.token for s in store.list_active_sessions(user_id)} == {"tok-4", "tok-new"}


class TestTouch:
    async def test_refreshes_existing_row(self, registry, store, user_id):
        sess = await _open_aged(registry, store, user_id, "tok-1", 60)
        touched = await registry.touch("tok-1", user_id, user_agent=CHROME_ON_WINDOWS)
        assert touched.id == sess.id
        assert utcnow() - touched.last_active < timedelta(minutes=1)
        assert touched.browser == "Google Chrome"

    async def test_creates_missing_row(self, registry, store, user_id):
        created = await registry.touch("tok-new", user_id)
        assert created is not None
        assert store.get_session_by_token("tok-new").user_id == user_id

    async def test_terminated_row_not_revived(self, registry, store, user_id):
        sess = await registry.open_session(user_id, "tok-1")
        registry.terminate(sess.id, user_id)
        assert await registry.touch("tok-1", user_id) is None
        assert registry.is_revoked("tok-1")

    async def test_foreign_token_ignored(self, registry, store, user_id):
        await registry.open_session(user_id, "tok-1")
        assert await registry.touch("tok-1", "someone-else") is None


class SlowGeo:
    """Geo stand-in that yields to the loop before answering."""

    async def locate(self, ip):
        await asyncio.sleep(0.01)
        return UNKNOWN_LOCATION


class TestConcurrentOpen:
    async def test_parallel_logins_respect_cap(self, store, user_id):
        registry = SessionRegistry(store, geo=SlowGeo(), cap=3)
        for i in range(3):
            await registry.open_session(user_id, f"seed-{i}")
        await asyncio.gather(
            *(registry.open_session(user_id, f"burst-{i}") for i in range(5))
        )
        assert registry.count_active(user_id) == 3

    async def test_parallel_touches_respect_cap(self, store, user_id):
        registry = SessionRegistry(store, geo=SlowGeo(), cap=2)
        await asyncio.gather(*(registry.touch(f"tok-{i}", user_id) for i in range(4)))
        assert registry.count_active(user_id) == 2

    async def test_touch_skips_row_terminated_during_lookup(self, store, user_id):
        registry = SessionRegistry(store, geo=SlowGeo(), cap=3)
        sess = await registry.open_session(user_id, "tok-1")

        async def _terminate_soon():
            await asyncio.sleep(0)
            registry.terminate(sess.id, user_id)

        touched, _ = await asyncio.gather(registry.touch("tok-1", user_id), _terminate_soon())
        assert touched is None
        assert registry.is_revoked("tok-1")


class TestTerminate:
    async def test_terminate_unknown_session(self, registry, user_id):
        with pytest.raises(NotFoundError):
            registry.terminate("missing", user_id)

    async def test_terminate_requires_owner(self, registry, user_id):
        sess = await registry.open_session(user_id, "tok-1")
        with pytest.raises(NotFoundError):
            registry.terminate(sess.id, "someone-else")

    async def test_terminate_all_except_current(self, registry, user_id):
        await registry.open_session(user_id, "tok-1")
        await registry.open_session(user_id, "tok-2")
        await registry.open_session(user_id, "tok-3")
        assert registry.terminate_all_except_current(user_id, "tok-2") == 2
        listed = registry.list_active(user_id, current_token="tok-2")
        assert len(listed) == 1
        assert listed[0]["is_current"] is True
        assert "token" not in listed[0]

    async def test_terminate_others_needs_live_current(self, registry, user_id):
        await registry.open_session(user_id, "tok-1")
        with pytest.raises(CurrentSessionNotFoundError):
            registry.terminate_all_except_current(user_id, "tok-unknown")


class TestPurge:
    async def test_removes_expired_and_stale(self, registry, store, user_id):
        fresh = await registry.open_session(user_id, "tok-fresh")
        expired = await registry.open_session(user_id, "tok-expired")
        stale = await registry.open_session(user_id, "tok-stale")
        store.update_session(expired.id, expires_at=utcnow() - timedelta(minutes=1))
        store.update_session(stale.id, last_active=utcnow() - timedelta(days=31))
        assert registry.purge() == 2
        assert set(store.sessions) == {fresh.id}
