import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="trustgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
# Lockout tracking falls back to the in-memory tracker without Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trustgate.config import Settings  # noqa: E402
from trustgate.service.auth import AuthOrchestrator  # noqa: E402
from trustgate.service.clients import ClientApprovalGate  # noqa: E402
from trustgate.service.mfa import MfaAttemptTracker, MfaService, generate_totp  # noqa: E402
from trustgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from trustgate.service.sessions import SessionRegistry  # noqa: E402
from trustgate.service.tokens import TokenService  # noqa: E402
from trustgate.storage.memory import MemoryStore  # noqa: E402

# Cheap argon2 parameters keep the suite fast; production uses library defaults.
FAST_HASHER = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


def current_totp(secret: str, offset_steps: int = 0) -> str:
    """Code an authenticator app would show right now."""
    return generate_totp(secret, time.time() + offset_steps * 30)


@pytest.fixture
def totp_now():
    return current_totp


@pytest.fixture
def password_hasher():
    return FAST_HASHER


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests(password_hasher=FAST_HASHER)
    yield
    reset_runtime_for_tests(password_hasher=FAST_HASHER)


@pytest.fixture
def settings():
    """Explicit settings independent of the process environment."""
    return Settings(
        jwt_secret="Test-Access-Secret_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
        mfa_encryption_key="Test-MFA-Key_for-Automation-Only",
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
    )


@pytest.fixture
def store(settings):
    return MemoryStore(mfa_encryption_key=settings.mfa_key_material)


@pytest.fixture
def token_service(store, settings):
    return TokenService(store, settings)


@pytest.fixture
def mfa_service(store, settings):
    return MfaService(store, settings)


@pytest.fixture
def gate(store, settings):
    return ClientApprovalGate(store, settings)


@pytest.fixture
def sessions(settings):
    return SessionRegistry(
        idle_minutes=settings.session_idle_minutes,
        max_entries=settings.session_max_entries,
    )


@pytest.fixture
def attempts(settings):
    return MfaAttemptTracker(
        None,
        max_attempts=settings.mfa_max_attempts,
        lockout_seconds=settings.mfa_lockout_seconds,
    )


@pytest.fixture
def orchestrator(store, settings, token_service, mfa_service, gate, sessions, attempts):
    return AuthOrchestrator(
        store,
        settings,
        tokens=token_service,
        mfa=mfa_service,
        gate=gate,
        sessions=sessions,
        attempts=attempts,
        password_hasher=FAST_HASHER,
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
