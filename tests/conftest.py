import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="dormauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Guard state stays process-local so every test starts from a clean slate
os.environ["REDIS_URL"] = ""
for _smtp_var in ("SMTP_HOST", "SMTP_USER", "EMAIL_FROM_ADDRESS"):
    os.environ.pop(_smtp_var, None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from dormauth.config import Settings  # noqa: E402
from dormauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402

STRONG_PASSWORD = "Correct123!Horse"
OTHER_STRONG_PASSWORD = "Battery456$Staple"


class FakeClock:
    """Manually advanced UTC clock shared by every component of a runtime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Stands in for EmailService and remembers what would have been sent."""

    is_configured = True

    def __init__(self, *, deliver: bool = True) -> None:
        self.deliver = deliver
        self.sent: list[tuple[str, str, tuple]] = []

    def _record(self, kind: str, to_email: str, *args) -> bool:
        self.sent.append((kind, to_email, args))
        return self.deliver

    def send_reset_code(self, to_email, name, code, *, ttl_minutes=15):
        return self._record("reset_code", to_email, code)

    def send_password_changed(self, to_email, name):
        return self._record("password_changed", to_email)

    def send_mfa_enabled(self, to_email, name):
        return self._record("mfa_enabled", to_email)

    def send_mfa_disabled(self, to_email, name):
        return self._record("mfa_disabled", to_email)

    def of_kind(self, kind: str) -> list:
        return [entry for entry in self.sent if entry[0] == kind]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-test-secret-key-with-enough-entropy-0123456789",
        redis_url="",
        test_mode=True,
        shared_fs_root=str(tmp_path / "unit"),
    )


@pytest.fixture
def runtime(settings, clock):
    """Fully wired services on a fake clock, independent of the app singleton."""
    return Runtime(settings, clock=clock)


@pytest.fixture
def outbox(runtime):
    email = RecordingEmail()
    runtime.auth.email = email
    return email


@pytest.fixture
def make_user(runtime):
    def _make(
        email: str = "asha@example.com",
        *,
        name: str = "Asha Rai",
        password: str = STRONG_PASSWORD,
        role: str = "student",
    ):
        return runtime.credentials.register(email=email, name=name, password=password, role=role)

    return _make


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
