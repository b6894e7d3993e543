from __future__ import annotations

import contextlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from trustgate.config import Settings
from trustgate.logging import get_logger
from trustgate.service.clients import ClientApprovalGate
from trustgate.service.errors import (
    AccountNotActive,
    BackupCodeInvalid,
    ConflictingRegistration,
    ForbiddenError,
    InternalError,
    InvalidCredentials,
    MfaCodeInvalid,
    MfaLockedOut,
    ServiceError,
    TokenInvalid,
    ValidationError,
)
from trustgate.service.mfa import MfaAttemptTracker, MfaSecret, MfaService
from trustgate.service.sessions import SessionRegistry
from trustgate.service.tokens import IssuedToken, TokenService
from trustgate.storage.common import CredentialStore
from trustgate.storage.errors import ConstraintViolation
from trustgate.storage.models import Client, ClientStatus, Role, TokenKind, User

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Roles each role satisfies; every Role member must appear here.
_ROLE_GRANTS = {
    Role.ADMIN: frozenset({Role.ADMIN, Role.USER}),
    Role.USER: frozenset({Role.USER}),
}


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"


@dataclass
class RegistrationResult:
    user_id: str
    client_id: str
    client_secret: str
    status: ClientStatus
    session_id: Optional[str] = None


@dataclass
class LoginResult:
    status: LoginStatus
    user_id: str
    client_id: Optional[str] = None
    access_token: Optional[IssuedToken] = None
    refresh_token: Optional[IssuedToken] = None
    session_id: Optional[str] = None

    @property
    def requires_mfa(self) -> bool:
        return self.status is LoginStatus.MFA_REQUIRED


@dataclass
class AuthContext:
    user_id: str
    role: Role
    client_id: Optional[str]
    token_kind: TokenKind
    mfa_enabled: bool = False


class AuthOrchestrator:
    """Registration, login, second factor and credential lifecycle.

    This is the only entry point an outer transport layer calls. Services
    raise :class:`ServiceError` subclasses; any other failure coming out of
    the store is logged in full and surfaced as :class:`InternalError`.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: TokenService,
        mfa: MfaService,
        gate: ClientApprovalGate,
        sessions: SessionRegistry,
        attempts: MfaAttemptTracker,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.mfa = mfa
        self.gate = gate
        self.sessions = sessions
        self.attempts = attempts
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @contextlib.contextmanager
    def _store_guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError() from None

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            # Burn comparable work so unknown accounts are not distinguishable by timing
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
            stored_hash = self._dummy_hash
            password = password + "\x00"
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _validate_password(self, password: Optional[str]) -> str:
        if not password or len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )
        return password

    def _create_session(self, user_id: str) -> Optional[str]:
        try:
            return self.sessions.create(user_id)
        except Exception as exc:
            # Tokens already issued stay valid; sessions are best-effort
            self.logger.warning(
                "session_create_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def _require_user(self, user_id: str) -> User:
        with self._store_guard("get_user"):
            user = self.store.get_user(user_id) if user_id else None
        if not user:
            raise InvalidCredentials()
        return user

    # registration
    async def register(
        self,
        client_name: str,
        email: str,
        password: str,
        description: Optional[str] = None,
    ) -> RegistrationResult:
        if not client_name or not client_name.strip():
            raise ValidationError("client name is required", detail={"field": "client_name"})
        if not email or not _EMAIL_RE.match(email.strip()):
            raise ValidationError("a valid email is required", detail={"field": "email"})
        self._validate_password(password)
        password_hash = self._hash_password(password)

        def _create() -> tuple[User, Client]:
            user = self.store.create_user(
                email,
                password_hash,
                display_name=client_name.strip(),
                description=description,
            )
            client = self.store.create_client(
                user.id,
                description=description,
                usage_quota=self.settings.default_usage_quota,
            )
            return user, client

        with self._store_guard("register"):
            if self.store.get_user_by_email(email):
                raise ConflictingRegistration()
            try:
                user, client = self.store.run_in_transaction(_create)
            except ConstraintViolation as exc:
                if exc.detail.get("field") == "email":
                    raise ConflictingRegistration() from None
                raise
        session_id = self._create_session(user.id)
        self.logger.info("user_registered", user_id=user.id, client_id=client.client_id)
        return RegistrationResult(
            user_id=user.id,
            client_id=client.client_id,
            client_secret=client.client_secret,
            status=client.status,
            session_id=session_id,
        )

    # login
    async def login(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if email and password:
            user, client = self._login_with_password(email, password)
            method = "password"
        elif client_id and client_secret:
            with self._store_guard("authenticate_client"):
                client, user = self.gate.authenticate_client(client_id, client_secret)
            method = "client_credentials"
        else:
            raise ValidationError(
                "email and password, or client_id and client_secret, are required"
            )

        if user.mfa_enabled:
            self.logger.info("login_mfa_required", user_id=user.id, method=method)
            return LoginResult(
                status=LoginStatus.MFA_REQUIRED,
                user_id=user.id,
                client_id=client.client_id if client else None,
            )
        result = self._complete_login(
            user, client, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("login_succeeded", user_id=user.id, method=method)
        return result

    def _login_with_password(self, email: str, password: str) -> tuple[User, Client]:
        with self._store_guard("get_user_by_email"):
            user = self.store.get_user_by_email(email)
        if not self._verify_password(user.password_hash if user else None, password) or not user:
            self.logger.info("login_failed", reason="bad_credentials")
            raise InvalidCredentials()
        if not user.is_active:
            self.logger.info("login_failed", reason="user_not_active", user_id=user.id)
            raise InvalidCredentials()
        with self._store_guard("resolve_login_client"):
            client = self.gate.resolve_login_client(user)
        return user, client

    def _complete_login(
        self,
        user: User,
        client: Optional[Client],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        self.sessions.delete_for_user(user.id)

        def _issue() -> tuple[IssuedToken, IssuedToken]:
            access = self.tokens.issue(
                user, client, TokenKind.ACCESS, ip_address=ip_address, user_agent=user_agent
            )
            refresh = self.tokens.issue(
                user, client, TokenKind.REFRESH, ip_address=ip_address, user_agent=user_agent
            )
            now = self._now()
            self.store.record_login(user.id, now)
            if client:
                self.store.update_client(client.client_id, last_used_at=now)
            return access, refresh

        with self._store_guard("issue_login_tokens"):
            access, refresh = self.store.run_in_transaction(_issue)
        return LoginResult(
            status=LoginStatus.AUTHENTICATED,
            user_id=user.id,
            client_id=client.client_id if client else None,
            access_token=access,
            refresh_token=refresh,
            session_id=self._create_session(user.id),
        )

    async def verify_two_factor(
        self,
        user_id: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
        *,
        client_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Complete an ``mfa_required`` login with a TOTP code or a backup code.

        ``client_id`` is the one carried by the ``mfa_required`` result; tokens
        are bound to it. Without it the user's login client is resolved again.
        """
        if not code and not backup_code:
            raise ValidationError("a verification code or backup code is required")
        with self._store_guard("check_mfa_lockout"):
            locked = await self.attempts.is_locked_out(user_id)
        if locked:
            self.logger.warning("mfa_locked_out", user_id=user_id)
            raise MfaLockedOut(retry_after_seconds=self.settings.mfa_lockout_seconds)

        user = self._require_user(user_id)
        if not user.is_active or not user.mfa_enabled:
            raise InvalidCredentials()
        with self._store_guard("resolve_login_client"):
            if client_id:
                client = self.store.get_client(client_id)
                if not client or client.user_id != user.id:
                    raise InvalidCredentials()
                if not client.is_active:
                    raise AccountNotActive(
                        f"client {client.status.value}", status=client.status.value
                    )
            else:
                client = self.gate.resolve_login_client(user)

        if code:
            verified = self.mfa.verify_totp(code, user.mfa_secret)
            failure: ServiceError = MfaCodeInvalid()
        else:
            with self._store_guard("consume_backup_code"):
                verified = self.mfa.consume_backup_code(user.id, backup_code)
            failure = BackupCodeInvalid()

        if not verified:
            with self._store_guard("record_mfa_failure"):
                await self.attempts.record_failure(user.id)
            self.logger.info("mfa_verification_failed", user_id=user.id)
            raise failure
        with self._store_guard("clear_mfa_attempts"):
            await self.attempts.clear(user.id)

        result = self._complete_login(
            user, client, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            method="backup_code" if not code else "totp",
        )
        return result

    async def refresh_access_token(self, refresh_token: Optional[str]) -> IssuedToken:
        with self._store_guard("refresh_access_token"):
            return self.tokens.refresh(refresh_token)

    async def logout(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Best-effort sign-out; local session state is always cleared."""
        user_ids: set[str] = set()
        for value, kind in (
            (access_token, TokenKind.ACCESS),
            (refresh_token, TokenKind.REFRESH),
        ):
            if not value:
                continue
            try:
                claims = self.tokens.peek_claims(value)
                if claims and claims.get("sub"):
                    user_ids.add(str(claims["sub"]))
                self.tokens.revoke(value, kind)
            except Exception as exc:
                self.logger.warning(
                    "logout_token_failed",
                    token_kind=kind.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        cleared = sum(self.sessions.delete_for_user(uid) for uid in user_ids)
        if self.sessions.delete(session_id):
            cleared += 1
        self.logger.info("logout", users=len(user_ids), sessions_cleared=cleared)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Optional[str]:
        """Replace the password and revoke every refresh token of the user.

        Returns a fresh session handle for the caller.
        """
        self._validate_password(new_password)
        user = self._require_user(user_id)
        if not self._verify_password(user.password_hash, current_password or ""):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentials()
        new_hash = self._hash_password(new_password)

        def _apply() -> int:
            self.store.save_password(user.id, new_hash)
            return self.store.revoke_user_tokens(user.id, [TokenKind.REFRESH])

        with self._store_guard("change_password"):
            revoked = self.store.run_in_transaction(_apply)
        self.sessions.delete_for_user(user.id)
        self.logger.info("password_changed", user_id=user.id, refresh_tokens_revoked=revoked)
        return self._create_session(user.id)

    async def change_client_secret(self, client_id: str, current_secret: str) -> str:
        with self._store_guard("get_client"):
            client = self.store.get_client(client_id) if client_id else None
        expected = client.client_secret if client else "0" * 64
        if not hmac.compare_digest(expected.encode(), (current_secret or "").encode()) or not client:
            self.logger.info("client_secret_change_rejected", client_id=client_id)
            raise InvalidCredentials()
        new_secret = secrets.token_hex(32)

        def _rotate() -> int:
            self.store.update_client(client.client_id, client_secret=new_secret)
            return self.store.revoke_client_tokens(client.client_id, list(TokenKind))

        with self._store_guard("change_client_secret"):
            revoked = self.store.run_in_transaction(_rotate)
        self.logger.info(
            "client_secret_rotated", client_id=client.client_id, tokens_revoked=revoked
        )
        return new_secret

    async def generate_api_token(
        self,
        client_id: str,
        client_secret: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedToken:
        with self._store_guard("generate_api_token"):
            client, owner = self.gate.authenticate_client(client_id, client_secret)
            return self.tokens.issue(
                owner, client, TokenKind.API, ip_address=ip_address, user_agent=user_agent
            )

    # multi-factor enrolment
    async def begin_mfa_setup(self, user_id: str) -> MfaSecret:
        user = self._require_user(user_id)
        return self.mfa.generate_secret(user)

    async def enable_mfa(self, user_id: str, secret: str, code: str) -> List[str]:
        user = self._require_user(user_id)
        with self._store_guard("enable_mfa"):
            return self.mfa.enable(user.id, secret, code)

    async def disable_mfa(self, user_id: str, code: Optional[str] = None) -> None:
        user = self._require_user(user_id)
        if not user.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        if code is not None and not self.mfa.verify_totp(code, user.mfa_secret):
            raise MfaCodeInvalid()
        with self._store_guard("disable_mfa"):
            self.mfa.disable(user.id)

    # request authentication
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        kind: TokenKind = TokenKind.ACCESS,
        consume_quota: bool = False,
    ) -> AuthContext:
        """Resolve a ``Bearer`` header into an :class:`AuthContext`.

        With ``consume_quota`` the token's client is charged one unit of usage.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalid()
        with self._store_guard("authenticate"):
            claims = self.tokens.verify(token, kind)
            user = self.store.get_user(claims.user_id)
            if not user or not user.is_active:
                raise AccountNotActive(status=user.status.value if user else None)
            if consume_quota and claims.client_id:
                self.gate.check_and_consume_quota(claims.client_id)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            client_id=claims.client_id,
            token_kind=claims.kind,
            mfa_enabled=user.mfa_enabled,
        )

    def require_role(self, context: AuthContext, role: Role) -> None:
        if Role(role) not in _ROLE_GRANTS[Role(context.role)]:
            raise ForbiddenError("insufficient role", detail={"required": Role(role).value})
