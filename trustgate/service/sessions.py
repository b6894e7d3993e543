from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from trustgate.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SessionRecord:
    handle: str
    user_id: str
    created_at: datetime
    last_accessed_at: datetime


class SessionRegistry:
    """Process-local table of short-lived session handles.

    Sessions are advisory and never consulted for authorization. Records idle
    longer than ``idle_minutes`` read as absent; :meth:`cleanup_expired`
    reclaims them.
    """

    def __init__(
        self,
        *,
        idle_minutes: int = 30,
        max_entries: int = 10000,
        cleanup_interval_minutes: int = 5,
    ) -> None:
        self.idle_timeout = timedelta(minutes=idle_minutes)
        self.max_entries = max_entries
        self.cleanup_interval = timedelta(minutes=cleanup_interval_minutes)
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._last_cleanup = self._now()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _is_expired(self, record: SessionRecord, now: datetime) -> bool:
        return now - record.last_accessed_at >= self.idle_timeout

    def _evict_for_capacity(self) -> None:
        # Drop ~10% least recently accessed entries; caller holds the lock
        by_age = sorted(self._sessions.values(), key=lambda s: s.last_accessed_at)
        evict_count = max(1, self.max_entries // 10)
        for old in by_age[:evict_count]:
            self._sessions.pop(old.handle, None)
        self.logger.info("session_capacity_eviction", evicted=min(evict_count, len(by_age)))

    def create(self, user_id: str) -> str:
        self.maybe_cleanup()
        now = self._now()
        handle = secrets.token_urlsafe(32)
        with self._lock:
            if len(self._sessions) >= self.max_entries:
                self._evict_for_capacity()
            self._sessions[handle] = SessionRecord(
                handle=handle, user_id=user_id, created_at=now, last_accessed_at=now
            )
        return handle

    def get(self, handle: Optional[str]) -> Optional[SessionRecord]:
        if not handle:
            return None
        now = self._now()
        with self._lock:
            record = self._sessions.get(handle)
            if not record:
                return None
            if self._is_expired(record, now):
                self._sessions.pop(handle, None)
                return None
            record.last_accessed_at = now
            return replace(record)

    def delete(self, handle: Optional[str]) -> bool:
        if not handle:
            return False
        with self._lock:
            return self._sessions.pop(handle, None) is not None

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            handles = [h for h, s in self._sessions.items() if s.user_id == user_id]
            for handle in handles:
                self._sessions.pop(handle, None)
        return len(handles)

    def cleanup_expired(self) -> int:
        now = self._now()
        with self._lock:
            expired = [h for h, s in self._sessions.items() if self._is_expired(s, now)]
            for handle in expired:
                self._sessions.pop(handle, None)
            self._last_cleanup = now
        if expired:
            self.logger.debug("session_cleanup", cleaned=len(expired))
        return len(expired)

    def maybe_cleanup(self) -> int:
        """Run :meth:`cleanup_expired` if the cleanup interval has elapsed."""
        if self._now() - self._last_cleanup >= self.cleanup_interval:
            return self.cleanup_expired()
        return 0
