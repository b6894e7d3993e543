from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from trustgate.logging import get_logger
from trustgate.storage.common import (
    build_mfa_cipher,
    check_client_changes,
    decrypt_secret,
    encrypt_secret,
    generate_client_credentials,
    hashes_to_set,
    kind_values,
    normalize_email,
)
from trustgate.storage.errors import ConstraintViolation
from trustgate.storage.models import (
    Client,
    ClientStatus,
    Role,
    Token,
    TokenKind,
    User,
    UserStatus,
    next_reset_date,
    utcnow,
)

T = TypeVar("T")


def _parse_id(value: Any) -> Optional[str]:
    """Canonical UUID string, or None when ``value`` cannot be a row id."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        description TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'active',
        mfa_enabled BOOLEAN NOT NULL DEFAULT false,
        mfa_secret TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_client (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        client_id TEXT NOT NULL UNIQUE,
        client_secret TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        usage_count INTEGER NOT NULL DEFAULT 0,
        usage_quota INTEGER NOT NULL DEFAULT 1000,
        reset_date TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS api_client_user_idx ON api_client (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        client_id TEXT REFERENCES api_client(client_id),
        token_hash TEXT NOT NULL UNIQUE,
        kind TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT false,
        last_used_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token (user_id, kind)",
    "CREATE INDEX IF NOT EXISTS auth_token_client_idx ON auth_token (client_id, kind)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Calls made inside :meth:`transaction` share one pooled connection bound to
    the current context; everything else checks a connection out per call.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
        pool: ConnectionPool | None = None,
    ) -> None:
        if not mfa_encryption_key:
            raise RuntimeError("PostgresStore requires an MFA encryption key")
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._tx_conn: ContextVar[Any] = ContextVar(
            f"trustgate_pg_tx_{id(self)}", default=None
        )

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        bound = self._tx_conn.get()
        if bound is not None:
            yield bound
            return
        with self.pool.connection() as conn:
            yield conn

    def ensure_schema(self) -> None:
        """Create the ``app_user``, ``api_client`` and ``auth_token`` tables if missing."""
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # transactions
    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield
                finally:
                    self._tx_conn.reset(token)

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        with self.transaction():
            return fn()

    # row mapping
    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            display_name=row.get("display_name"),
            description=row.get("description"),
            role=Role(row.get("role") or Role.USER.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_secret=decrypt_secret(self._mfa_cipher, row.get("mfa_secret")),
            backup_codes=hashes_to_set(row.get("backup_codes") or []),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _client_from_row(row: dict) -> Client:
        return Client(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            client_id=row["client_id"],
            client_secret=row["client_secret"],
            description=row.get("description"),
            status=ClientStatus(row.get("status") or ClientStatus.PENDING.value),
            usage_count=int(row.get("usage_count") or 0),
            usage_quota=int(row.get("usage_quota") or 0),
            reset_date=row.get("reset_date") or next_reset_date(),
            last_used_at=row.get("last_used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> Token:
        return Token(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            kind=TokenKind(row["kind"]),
            expires_at=row["expires_at"],
            client_id=row.get("client_id"),
            revoked=bool(row.get("revoked", False)),
            last_used_at=row.get("last_used_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        role: Role = Role.USER,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, display_name, description, role, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        normalize_email(email),
                        password_hash,
                        display_name,
                        description,
                        Role(role).value,
                        UserStatus(status).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        user_id = _parse_id(user_id)
        if not user_id:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str) -> None:
        parsed = _parse_id(user_id)
        if not parsed:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, parsed),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def record_login(self, user_id: str, at: datetime) -> None:
        user_id = _parse_id(user_id)
        if not user_id:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        user_id = _parse_id(user_id)
        if not user_id:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_mfa(
        self,
        user_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_code_hashes: Iterable[str],
    ) -> None:
        parsed = _parse_id(user_id)
        if not parsed:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        encrypted = encrypt_secret(self._mfa_cipher, secret) if enabled else None
        codes = sorted(hashes_to_set(backup_code_hashes)) if enabled else []
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET mfa_enabled = %s, mfa_secret = %s, backup_codes = %s
                WHERE id = %s
                """,
                (enabled, encrypted, codes, parsed),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        user_id = _parse_id(user_id)
        if not user_id:
            return False
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT mfa_enabled, backup_codes FROM app_user WHERE id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if (
                    not row
                    or not row.get("mfa_enabled")
                    or code_hash not in (row.get("backup_codes") or [])
                ):
                    return False
                conn.execute(
                    "UPDATE app_user SET backup_codes = array_remove(backup_codes, %s) WHERE id = %s",
                    (code_hash, user_id),
                )
        return True

    # clients
    def create_client(
        self,
        user_id: str,
        *,
        description: Optional[str] = None,
        status: ClientStatus = ClientStatus.PENDING,
        usage_quota: int = 1000,
        reset_date: Optional[datetime] = None,
    ) -> Client:
        parsed = _parse_id(user_id)
        if not parsed:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        client_id, client_secret = generate_client_credentials()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO api_client (id, user_id, client_id, client_secret, description, status, usage_quota, reset_date)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        parsed,
                        client_id,
                        client_secret,
                        description,
                        ClientStatus(status).value,
                        usage_quota,
                        reset_date or next_reset_date(),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("client id already exists", {"field": "client_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._client_from_row(row)

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_client WHERE client_id = %s", (client_id,)
            ).fetchone()
        return self._client_from_row(row) if row else None

    def list_user_clients(self, user_id: str) -> List[Client]:
        user_id = _parse_id(user_id)
        if not user_id:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_client WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._client_from_row(row) for row in rows]

    def update_client(self, client_id: str, **changes: Any) -> Optional[Client]:
        check_client_changes(changes)
        if not changes:
            return self.get_client(client_id)
        if "status" in changes:
            changes["status"] = ClientStatus(changes["status"]).value
        # Column names come from the allow-list checked above.
        assignments = ", ".join(f"{name} = %s" for name in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE api_client SET {assignments} WHERE client_id = %s RETURNING *",
                (*changes.values(), client_id),
            ).fetchone()
        return self._client_from_row(row) if row else None

    def consume_client_quota(self, client_id: str, at: datetime) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE api_client
                SET usage_count = usage_count + 1, last_used_at = %s
                WHERE client_id = %s AND status = 'active' AND usage_count < usage_quota
                RETURNING *
                """,
                (at, client_id),
            ).fetchone()
        return self._client_from_row(row) if row else None

    # tokens
    def create_token(
        self,
        token_hash: str,
        *,
        user_id: str,
        client_id: Optional[str],
        kind: TokenKind,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Token:
        parsed = _parse_id(user_id)
        if not parsed:
            raise ConstraintViolation(
                "token owner not found", {"user_id": user_id, "client_id": client_id}
            )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_token (id, user_id, client_id, token_hash, kind, expires_at, ip_address, user_agent)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        parsed,
                        client_id,
                        token_hash,
                        TokenKind(kind).value,
                        expires_at,
                        ip_address,
                        user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "token owner not found", {"user_id": user_id, "client_id": client_id}
            )
        return self._token_from_row(row)

    def find_valid_token(
        self, token_hash: str, kind: TokenKind, now: datetime
    ) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_token
                WHERE token_hash = %s AND kind = ANY(%s) AND NOT revoked AND expires_at > %s
                """,
                (token_hash, kind_values(TokenKind(kind).accepted_kinds()), now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def touch_token(self, token_id: str, at: datetime) -> None:
        token_id = _parse_id(token_id)
        if not token_id:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_token SET last_used_at = %s WHERE id = %s", (at, token_id)
            )

    def revoke_token(self, token_hash: str, kind: TokenKind) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_token SET revoked = true WHERE token_hash = %s AND kind = ANY(%s)",
                (token_hash, kind_values(TokenKind(kind).accepted_kinds())),
            )
            return cur.rowcount > 0

    def revoke_user_tokens(self, user_id: str, kinds: Iterable[TokenKind]) -> int:
        user_id = _parse_id(user_id)
        if not user_id:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_token SET revoked = true WHERE user_id = %s AND kind = ANY(%s) AND NOT revoked",
                (user_id, kind_values(kinds)),
            )
            return cur.rowcount

    def revoke_client_tokens(self, client_id: str, kinds: Iterable[TokenKind]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_token SET revoked = true WHERE client_id = %s AND kind = ANY(%s) AND NOT revoked",
                (client_id, kind_values(kinds)),
            )
            return cur.rowcount
