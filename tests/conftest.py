import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="officegate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-material-for-automation-only")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from officegate.config import Settings  # noqa: E402
from officegate.service.runtime import reset_runtime_for_tests  # noqa: E402
from officegate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Mutable clock for lockout and token expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _wipe_shared_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _wipe_shared_state()
    reset_runtime_for_tests()
    yield
    _wipe_shared_state()
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        jwt_secret="unit-access-secret-0123456789-abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789-qrstuvwxyz",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


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
