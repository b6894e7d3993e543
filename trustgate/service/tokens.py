from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from trustgate.config import Settings
from trustgate.logging import get_logger
from trustgate.service.errors import AccountNotActive, TokenInvalid
from trustgate.storage.common import CredentialStore, hash_token_value
from trustgate.storage.models import Client, Role, TokenKind, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    value: str
    kind: TokenKind
    expires_at: datetime
    jti: str
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        """Whole seconds until expiry, measured from now."""
        return max(0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds()))


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    client_id: Optional[str]
    role: Role
    kind: TokenKind
    mfa_enabled: bool
    jti: str
    expires_at: datetime
    token_id: str


class TokenService:
    """Signs, persists and verifies bearer tokens.

    ``access`` and ``api`` tokens are signed with ``jwt_secret``; ``refresh``
    tokens with ``jwt_refresh_secret``. Every issued value has an audit record
    keyed by its SHA-256 digest, and verification requires that record to be
    unrevoked and unexpired in addition to a valid signature.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _ttl(self, kind: TokenKind) -> timedelta:
        lifetimes = {
            TokenKind.ACCESS: timedelta(minutes=self.settings.access_token_ttl_minutes),
            TokenKind.REFRESH: timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            TokenKind.API: timedelta(days=self.settings.api_token_ttl_days),
        }
        return lifetimes[kind]

    def _secret_for(self, kind: TokenKind) -> str:
        if kind is TokenKind.REFRESH:
            return self.settings.jwt_refresh_secret
        return self.settings.jwt_secret

    def issue(
        self,
        user: User,
        client: Optional[Client],
        kind: TokenKind,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedToken:
        kind = TokenKind(kind)
        now = self._now()
        exp = int((now + self._ttl(kind)).timestamp())
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "user_id": user.id,
            "client_id": client.client_id if client else None,
            "role": Role(user.role).value,
            "type": kind.value,
            "mfa_enabled": bool(user.mfa_enabled),
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": exp,
        }
        value = self._encode_jwt(payload, self._secret_for(kind))
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        # The record must exist before the value leaves this method.
        self.store.create_token(
            hash_token_value(value),
            user_id=user.id,
            client_id=client.client_id if client else None,
            kind=kind,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "token_issued",
            user_id=user.id,
            client_id=payload["client_id"],
            token_kind=kind.value,
            jti=jti,
        )
        return IssuedToken(value=value, kind=kind, expires_at=expires_at, jti=jti)

    def verify(self, value: Optional[str], kind: TokenKind) -> TokenClaims:
        """Return the claims of a live token or raise :class:`TokenInvalid`.

        Every failure mode surfaces the same error; the reason is logged at
        debug level only.
        """
        kind = TokenKind(kind)
        if not value or not value.isascii():
            raise TokenInvalid()
        now = self._now()
        record = self.store.find_valid_token(hash_token_value(value), kind, now)
        if not record:
            self.logger.debug("token_rejected", reason="no_live_record", token_kind=kind.value)
            raise TokenInvalid()
        payload = self._decode_jwt(value, self._secret_for(record.kind), now=now)
        if not payload:
            self.logger.debug("token_rejected", reason="signature_or_claims", token_kind=kind.value)
            raise TokenInvalid()
        if payload.get("type") != record.kind.value or payload.get("sub") != record.user_id:
            self.logger.debug("token_rejected", reason="record_mismatch", token_kind=kind.value)
            raise TokenInvalid()
        try:
            role = Role(payload.get("role"))
        except ValueError:
            self.logger.debug("token_rejected", reason="unknown_role", token_kind=kind.value)
            raise TokenInvalid()
        self.store.touch_token(record.id, now)
        return TokenClaims(
            user_id=record.user_id,
            client_id=payload.get("client_id"),
            role=role,
            kind=record.kind,
            mfa_enabled=bool(payload.get("mfa_enabled", False)),
            jti=str(payload.get("jti")),
            expires_at=record.expires_at,
            token_id=record.id,
        )

    def refresh(self, refresh_value: Optional[str]) -> IssuedToken:
        """Mint a new access token from a live refresh token.

        The refresh token itself is not rotated.
        """
        claims = self.verify(refresh_value, TokenKind.REFRESH)
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            raise AccountNotActive(
                status=user.status.value if user else None,
            )
        client = None
        if claims.client_id:
            client = self.store.get_client(claims.client_id)
            if not client or not client.is_active:
                raise AccountNotActive(
                    "client not active",
                    status=client.status.value if client else None,
                )
        return self.issue(user, client, TokenKind.ACCESS)

    def revoke(self, value: Optional[str], kind: TokenKind) -> bool:
        if not value or not value.isascii():
            return False
        revoked = self.store.revoke_token(hash_token_value(value), TokenKind(kind))
        self.logger.info("token_revoked", token_kind=TokenKind(kind).value, found=revoked)
        return revoked

    def peek_claims(self, value: Optional[str]) -> Optional[dict[str, Any]]:
        """Signature-checked claims of a token regardless of expiry or record state."""
        if not value:
            return None
        for secret in (self.settings.jwt_secret, self.settings.jwt_refresh_secret):
            payload = self._decode_jwt(value, secret, verify_exp=False)
            if payload:
                return payload
        return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(
        self,
        token: str,
        secret: str,
        *,
        now: Optional[datetime] = None,
        verify_exp: bool = True,
    ) -> Optional[dict[str, Any]]:
        # Well-formed tokens are base64url segments only
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.debug("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.debug("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if not verify_exp:
            return payload
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (now or self._now()).timestamp():
            return None
        return payload
