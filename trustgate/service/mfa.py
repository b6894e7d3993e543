from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote, urlencode

from trustgate.config import Settings
from trustgate.logging import get_logger
from trustgate.service.errors import MfaCodeInvalid
from trustgate.storage.common import (
    CredentialStore,
    hash_backup_code,
    normalize_backup_code,
)
from trustgate.storage.models import User
from trustgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for a base32 secret at ``timestamp`` (HMAC-SHA1)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


@dataclass(frozen=True)
class MfaSecret:
    secret: str
    otpauth_uri: str


class MfaService:
    """TOTP enrolment, verification and single-use backup codes.

    Per-user lifecycle: disabled -> secret generated -> enabled -> disabled.
    Generating a secret changes nothing; only :meth:`enable` persists it.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _timestamp(self) -> float:
        return time.time()

    def generate_secret(self, user: User) -> MfaSecret:
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{user.email}")
        query = urlencode({"secret": secret, "issuer": issuer}, quote_via=quote)
        return MfaSecret(secret=secret, otpauth_uri=f"otpauth://totp/{label}?{query}")

    def verify_totp(self, code: Optional[str], secret: Optional[str]) -> bool:
        if not code or not secret:
            return False
        candidate = "".join(code.split())
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        now = self._timestamp()
        window = self.settings.totp_window
        matched = False
        for step in range(-window, window + 1):
            generated = generate_totp(secret, now + step * TOTP_INTERVAL)
            # Check every step so timing does not reveal which one matched
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def generate_backup_codes(self) -> List[str]:
        codes: set[str] = set()
        while len(codes) < self.settings.backup_code_count:
            codes.add(secrets.token_hex(4))
        return sorted(codes)

    def enable(self, user_id: str, secret: str, code: Optional[str]) -> List[str]:
        """Verify ``code`` against ``secret`` and switch MFA on.

        Returns the plaintext backup codes; they are never retrievable again.
        """
        if not self.verify_totp(code, secret):
            self.logger.info("mfa_enable_rejected", user_id=user_id)
            raise MfaCodeInvalid()
        codes = self.generate_backup_codes()
        self.store.run_in_transaction(
            lambda: self.store.set_user_mfa(
                user_id,
                enabled=True,
                secret=secret,
                backup_code_hashes=[hash_backup_code(c) for c in codes],
            )
        )
        self.logger.info("mfa_enabled", user_id=user_id, backup_codes=len(codes))
        return codes

    def disable(self, user_id: str) -> None:
        self.store.run_in_transaction(
            lambda: self.store.set_user_mfa(
                user_id, enabled=False, secret=None, backup_code_hashes=[]
            )
        )
        self.logger.info("mfa_disabled", user_id=user_id)

    def consume_backup_code(self, user_id: str, code: Optional[str]) -> bool:
        if not normalize_backup_code(code or ""):
            return False
        consumed = self.store.consume_backup_code(user_id, hash_backup_code(code))
        if consumed:
            self.logger.info("backup_code_consumed", user_id=user_id)
        return consumed


class MfaAttemptTracker:
    """Counts failed second-factor attempts and enforces a temporary lockout.

    Redis keeps the counters shared across processes when configured; the
    lock-protected in-memory fallback covers single-process deployments.
    """

    def __init__(
        self,
        cache: Optional[RedisCache],
        *,
        max_attempts: int = 5,
        lockout_seconds: int = 300,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}  # user_id -> (count, window_start)
        self._lockouts: dict[str, datetime] = {}  # user_id -> locked_until
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def record_failure(self, user_id: str) -> bool:
        """Count one failed attempt; return True once the user is locked out."""
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id,
                max_attempts=self.max_attempts,
                lockout_seconds=self.lockout_seconds,
            )
            if is_locked and attempts >= 0:
                self.logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return is_locked
        now = self._now()
        window = timedelta(seconds=self.lockout_seconds)
        with self._state_lock:
            count, window_start = self._attempts.get(user_id, (0, now))
            if now - window_start >= window:
                count, window_start = 0, now
            count += 1
            if count >= self.max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                self.logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=count)
                return True
            self._attempts[user_id] = (count, window_start)
        return False

    async def clear(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._attempts.pop(user_id, None)
