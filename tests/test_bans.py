"""IP ban gate: bans, expiry, whitelist and the bot screen."""

from datetime import timedelta

import pytest

from rbacauth.service.bans import IPBanGate
from rbacauth.service.errors import BotDetectedError, IPBannedError
from rbacauth.storage.memory import MemoryStore
from rbacauth.storage.models import BanReason, utcnow
from tests.helpers import human_trace, scripted_trace


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "bans"))


@pytest.fixture
def gate(store):
    return IPBanGate(store)


class TestBanLifecycle:
    def test_ban_and_unban(self, gate):
        gate.ban_ip("203.0.113.9", BanReason.MANUAL_BAN, duration_hours=2)
        assert gate.is_banned("203.0.113.9")
        assert gate.unban_ip("203.0.113.9") == 1
        assert not gate.is_banned("203.0.113.9")
        assert gate.unban_ip("203.0.113.9") == 0

    def test_reban_updates_existing_row(self, gate, store):
        first = gate.ban_ip("203.0.113.9", "failed_login", duration_hours=0.5)
        second = gate.ban_ip(
            "203.0.113.9", "bot_detection", evidence={"score": 95}, duration_hours=24
        )
        assert len(store.bans) == 1
        assert second.attempts == 2
        assert second.reason == "bot_detection"
        assert second.evidence == {"score": 95}
        assert second.expires_at > first.banned_at + timedelta(hours=23)

    def test_expired_ban_is_inactive_and_swept(self, gate, store):
        gate.ban_ip("203.0.113.9", "failed_login")
        store.bans["203.0.113.9"].expires_at = utcnow() - timedelta(seconds=1)
        assert not gate.is_banned("203.0.113.9")
        assert gate.list_banned() == []
        assert gate.unban_expired() == 1
        assert store.bans == {}

    def test_list_banned_only_active(self, gate):
        gate.ban_ip("198.51.100.1", "manual_ban")
        gate.ban_ip("198.51.100.2", "manual_ban", duration_hours=-1)
        assert [b.ip for b in gate.list_banned()] == ["198.51.100.1"]


class TestScreen:
    def test_banned_ip_rejected(self, gate):
        gate.ban_ip("203.0.113.9", "manual_ban")
        with pytest.raises(IPBannedError) as exc_info:
            gate.screen("203.0.113.9", None, "curl/8.0")
        assert exc_info.value.status_code == 403

    def test_scripted_client_is_banned_for_a_day(self, gate, store):
        with pytest.raises(BotDetectedError) as exc_info:
            gate.screen("203.0.113.50", scripted_trace(), "HeadlessChrome")
        assert exc_info.value.detail == {}
        ban = store.get_ban("203.0.113.50")
        assert ban.reason == BanReason.BOT_DETECTION.value
        assert ban.evidence["user_agent"] == "HeadlessChrome"
        assert ban.evidence["movement_count"] == 32
        assert ban.evidence["analysis"]["score"] == 95
        remaining = ban.expires_at - utcnow()
        assert timedelta(hours=23) < remaining <= timedelta(hours=24)

    def test_reasons_exposed_when_enabled(self, store):
        gate = IPBanGate(store, expose_bot_reasons=True)
        with pytest.raises(BotDetectedError) as exc_info:
            gate.screen("203.0.113.51", scripted_trace(), None)
        assert "Movement timing too regular" in exc_info.value.detail["reasons"]

    def test_human_and_missing_telemetry_pass(self, gate, store):
        gate.screen("203.0.113.52", human_trace(), "Mozilla/5.0")
        gate.screen("203.0.113.52", None, "Mozilla/5.0")
        gate.screen("203.0.113.52", {"movements": []}, "Mozilla/5.0")
        assert store.bans == {}

    @pytest.mark.parametrize("ip", ["127.0.0.1", "::1", "::ffff:127.0.0.1", "localhost", "", None, "unknown"])
    def test_whitelisted_addresses_skip_everything(self, gate, store, ip):
        if ip:
            gate.ban_ip(ip, "manual_ban")
        gate.screen(ip, scripted_trace(), None)
        assert all(b.reason == "manual_ban" for b in store.bans.values())
