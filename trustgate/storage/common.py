"""Storage contract and helpers shared by the memory and postgres stores.

Keeping normalization, hashing and encryption here guarantees both backends
agree on how emails, backup codes, token digests and MFA secrets look at rest.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import uuid
from datetime import datetime
from typing import (
    Any,
    Callable,
    ContextManager,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
    TypeVar,
)

from cryptography.fernet import Fernet, InvalidToken

from trustgate.storage.models import (
    Client,
    ClientStatus,
    Role,
    Token,
    TokenKind,
    User,
    UserStatus,
)

T = TypeVar("T")

# Columns of a client that ``update_client`` may change.
CLIENT_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "client_secret",
        "description",
        "usage_count",
        "usage_quota",
        "reset_date",
        "last_used_at",
    }
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_backup_code(code: str) -> str:
    """Strip all whitespace and case-fold to tolerate transcription variance."""
    return "".join((code or "").split()).casefold()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


def hash_token_value(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def generate_client_credentials() -> tuple[str, str]:
    """Return a fresh ``(client_id, client_secret)`` pair."""
    return str(uuid.uuid4()), secrets.token_hex(32)


def build_mfa_cipher(key_material: Optional[str]) -> Fernet:
    """Derive a Fernet cipher for MFA secrets from arbitrary key material."""
    material = key_material or secrets.token_urlsafe(64)
    key = base64.urlsafe_b64encode(hashlib.sha256(material.encode()).digest())
    return Fernet(key)


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, stored: Optional[str]) -> Optional[str]:
    if not stored:
        return None
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken as exc:
        raise RuntimeError("MFA secret cannot be decrypted with the configured key") from exc


class CredentialStore(Protocol):
    """Durable repository of users, clients and issued tokens."""

    def transaction(self) -> ContextManager[None]: ...

    def run_in_transaction(self, fn: Callable[[], T]) -> T: ...

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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def record_login(self, user_id: str, at: datetime) -> None: ...

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]: ...

    def set_user_mfa(
        self,
        user_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_code_hashes: Iterable[str],
    ) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    # clients
    def create_client(
        self,
        user_id: str,
        *,
        description: Optional[str] = None,
        status: ClientStatus = ClientStatus.PENDING,
        usage_quota: int = 1000,
        reset_date: Optional[datetime] = None,
    ) -> Client: ...

    def get_client(self, client_id: str) -> Optional[Client]: ...

    def list_user_clients(self, user_id: str) -> List[Client]: ...

    def update_client(self, client_id: str, **changes: Any) -> Optional[Client]: ...

    def consume_client_quota(self, client_id: str, at: datetime) -> Optional[Client]: ...

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
    ) -> Token: ...

    def find_valid_token(
        self, token_hash: str, kind: TokenKind, now: datetime
    ) -> Optional[Token]: ...

    def touch_token(self, token_id: str, at: datetime) -> None: ...

    def revoke_token(self, token_hash: str, kind: TokenKind) -> bool: ...

    def revoke_user_tokens(self, user_id: str, kinds: Iterable[TokenKind]) -> int: ...

    def revoke_client_tokens(self, client_id: str, kinds: Iterable[TokenKind]) -> int: ...


def check_client_changes(changes: dict) -> None:
    unknown = set(changes) - CLIENT_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported client fields: {', '.join(sorted(unknown))}")


def kind_values(kinds: Iterable[TokenKind]) -> List[str]:
    return [TokenKind(kind).value for kind in kinds]


def hashes_to_set(values: Iterable[str]) -> Set[str]:
    return {value for value in values if value}
