from datetime import datetime, timedelta, timezone

from trustgate.service.sessions import SessionRegistry


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _registry(monkeypatch, **kwargs):
    clock = _Clock()
    monkeypatch.setattr(SessionRegistry, "_now", lambda self: clock())
    return SessionRegistry(**kwargs), clock


class TestSessionRegistry:
    def test_create_and_get(self, monkeypatch):
        registry, _ = _registry(monkeypatch)

        handle = registry.create("user-1")
        record = registry.get(handle)

        assert record.user_id == "user-1"
        assert len(handle) >= 43
        assert registry.get("missing") is None
        assert registry.get(None) is None

    def test_idle_session_reads_as_absent(self, monkeypatch):
        registry, clock = _registry(monkeypatch, idle_minutes=30)
        handle = registry.create("user-1")

        clock.advance(minutes=30)

        assert registry.get(handle) is None
        assert len(registry) == 0

    def test_access_extends_idle_window(self, monkeypatch):
        registry, clock = _registry(monkeypatch, idle_minutes=30)
        handle = registry.create("user-1")

        clock.advance(minutes=20)
        assert registry.get(handle) is not None
        clock.advance(minutes=20)

        assert registry.get(handle) is not None

    def test_delete_for_user_removes_only_that_user(self, monkeypatch):
        registry, _ = _registry(monkeypatch)
        first = registry.create("user-1")
        registry.create("user-1")
        other = registry.create("user-2")

        assert registry.delete_for_user("user-1") == 2
        assert registry.get(first) is None
        assert registry.get(other) is not None

    def test_delete_handle(self, monkeypatch):
        registry, _ = _registry(monkeypatch)
        handle = registry.create("user-1")

        assert registry.delete(handle) is True
        assert registry.delete(handle) is False
        assert registry.delete(None) is False

    def test_capacity_evicts_least_recently_accessed(self, monkeypatch):
        registry, clock = _registry(monkeypatch, max_entries=10)
        handles = []
        for i in range(10):
            handles.append(registry.create(f"user-{i}"))
            clock.advance(seconds=1)
        # Touch the oldest so the second-oldest becomes the eviction target
        registry.get(handles[0])

        registry.create("user-new")

        assert len(registry) == 10
        assert registry.get(handles[0]) is not None
        assert registry.get(handles[1]) is None

    def test_periodic_cleanup_reclaims_expired(self, monkeypatch):
        registry, clock = _registry(monkeypatch, idle_minutes=30, cleanup_interval_minutes=5)
        registry.create("user-1")
        registry.create("user-2")

        clock.advance(minutes=31)
        assert registry.maybe_cleanup() == 2
        assert registry.maybe_cleanup() == 0

    def test_cleanup_waits_for_interval(self, monkeypatch):
        registry, clock = _registry(monkeypatch, idle_minutes=1, cleanup_interval_minutes=5)
        registry.create("user-1")

        clock.advance(minutes=2)

        assert registry.maybe_cleanup() == 0
        assert registry.cleanup_expired() == 1
