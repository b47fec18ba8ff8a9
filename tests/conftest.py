import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("GEO_LOOKUP_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rbacauth.service.permissions import SUPER_ADMIN_ROLE  # noqa: E402
from rbacauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tests.helpers import STRONG_PASSWORD  # noqa: E402


class RecordingEmail:
    """Email sender double that keeps every message and can be told to fail."""

    def __init__(self):
        self.otps = []
        self.resets = []
        self.fail = False

    def send_otp(self, to_email, code, name="User", temporary_password=None, user_id=None):
        if self.fail:
            raise RuntimeError("smtp relay unavailable")
        self.otps.append(
            {"to": to_email, "code": code, "name": name, "temporary_password": temporary_password}
        )

    def send_password_reset(self, to_email, reset_url, name="User"):
        if self.fail:
            raise RuntimeError("smtp relay unavailable")
        self.resets.append({"to": to_email, "url": reset_url, "name": name})

    def last_otp(self, to_email):
        return next(m["code"] for m in reversed(self.otps) if m["to"] == to_email)

    def last_reset_token(self, to_email):
        url = next(m["url"] for m in reversed(self.resets) if m["to"] == to_email)
        return url.split("token=", 1)[1]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    runtime = reset_runtime_for_tests()
    yield runtime


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def email(runtime):
    """Swap the SMTP sender for a recorder across every service that mails."""
    recorder = RecordingEmail()
    runtime.email = recorder
    runtime.auth.email = recorder
    runtime.users.email = recorder
    return recorder


@pytest.fixture
def make_user(runtime):
    """Create a verified, active user with a password directly in the store."""

    def _make(email, role_name="user", password=STRONG_PASSWORD, **fields):
        role = runtime.store.get_role_by_name(role_name)
        user = runtime.store.create_user(
            email,
            role_id=role.id,
            role_name=role.name,
            is_email_verified=fields.pop("is_email_verified", True),
            **fields,
        )
        if password is not None:
            runtime.auth.save_password(user.id, password)
        return runtime.store.get_user(user.id, populate_role=True)

    return _make


@pytest.fixture
def super_admin(make_user):
    return make_user("owner@example.com", SUPER_ADMIN_ROLE)


@pytest.fixture
def admin(make_user):
    return make_user("ops@example.com", "admin")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
