import pytest

from trustgate.config import Settings
from trustgate.service import runtime as runtime_module
from trustgate.service.runtime import Runtime, _mask_url_password, get_runtime
from trustgate.storage.memory import MemoryStore


def test_get_runtime_returns_singleton():
    first = get_runtime()

    assert get_runtime() is first
    assert isinstance(first.store, MemoryStore)
    assert first.cache is None


def test_reset_replaces_runtime(password_hasher):
    before = get_runtime()

    after = runtime_module.reset_runtime_for_tests(password_hasher=password_hasher)

    assert after is not before
    assert get_runtime() is after


def test_redis_required_outside_test_mode():
    settings = Settings(
        jwt_secret="Runtime-Test-Access-Secret-0123456789abcdef",
        jwt_refresh_secret="Runtime-Test-Refresh-Secret-0123456789abcdef",
        use_memory_store=True,
        test_mode=False,
        allow_redis_fallback_dev=False,
        redis_url=None,
    )

    with pytest.raises(RuntimeError):
        Runtime(settings)


async def test_runtime_services_share_one_store():
    runtime = get_runtime()

    registration = await runtime.auth.register("Runtime App", "runtime@example.com", "longenough1")

    assert runtime.gate.store is runtime.store
    assert runtime.store.get_client(registration.client_id) is not None


@pytest.mark.parametrize(
    "url, expected",
    [
        ("redis://:secret@localhost:6379/0", "redis://:***@localhost:6379/0"),
        ("postgresql://app:pw@db:5432/trustgate", "postgresql://app:***@db:5432/trustgate"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
