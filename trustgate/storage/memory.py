from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from trustgate.logging import get_logger
from trustgate.storage.common import (
    build_mfa_cipher,
    check_client_changes,
    decrypt_secret,
    encrypt_secret,
    generate_client_credentials,
    hashes_to_set,
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
)

T = TypeVar("T")


class MemoryStore:
    """In-process credential store for tests and local development.

    All reads return copies so callers never mutate stored records without
    going through a store method.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.clients: Dict[str, Client] = {}
        self.tokens: Dict[str, Token] = {}
        self._token_ids_by_hash: Dict[str, str] = {}
        # RLock so store methods can run inside an open transaction on the same thread
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)

    # transactions
    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return
            snapshot = self._snapshot()
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        with self.transaction():
            return fn()

    def _snapshot(self) -> tuple:
        return (
            copy.deepcopy(self.users),
            copy.deepcopy(self.clients),
            copy.deepcopy(self.tokens),
            dict(self._token_ids_by_hash),
        )

    def _restore(self, snapshot: tuple) -> None:
        self.users, self.clients, self.tokens, self._token_ids_by_hash = snapshot

    # users
    def _public_user(self, user: User) -> User:
        return replace(
            user,
            mfa_secret=decrypt_secret(self._mfa_cipher, user.mfa_secret),
            backup_codes=set(user.backup_codes),
        )

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
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                display_name=display_name,
                description=description,
                role=Role(role),
                status=UserStatus(status),
            )
            self.users[user.id] = user
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public_user(user) if user else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self._require_user(user_id).password_hash = password_hash

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            return self._public_user(user)

    def set_user_mfa(
        self,
        user_id: str,
        *,
        enabled: bool,
        secret: Optional[str],
        backup_code_hashes: Iterable[str],
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.mfa_enabled = enabled
            user.mfa_secret = encrypt_secret(self._mfa_cipher, secret) if enabled else None
            user.backup_codes = hashes_to_set(backup_code_hashes) if enabled else set()

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_enabled or code_hash not in user.backup_codes:
                return False
            user.backup_codes.discard(code_hash)
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
        with self._data_lock:
            self._require_user(user_id)
            client_id, client_secret = generate_client_credentials()
            if client_id in self.clients:
                raise ConstraintViolation("client id already exists", {"field": "client_id"})
            client = Client(
                id=str(uuid.uuid4()),
                user_id=user_id,
                client_id=client_id,
                client_secret=client_secret,
                description=description,
                status=ClientStatus(status),
                usage_quota=usage_quota,
                reset_date=reset_date or next_reset_date(),
            )
            self.clients[client_id] = client
            return replace(client)

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return replace(client) if client else None

    def list_user_clients(self, user_id: str) -> List[Client]:
        with self._data_lock:
            owned = [replace(c) for c in self.clients.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.created_at)

    def update_client(self, client_id: str, **changes: Any) -> Optional[Client]:
        check_client_changes(changes)
        if "status" in changes:
            changes["status"] = ClientStatus(changes["status"])
        with self._data_lock:
            client = self.clients.get(client_id)
            if not client:
                return None
            for name, value in changes.items():
                setattr(client, name, value)
            return replace(client)

    def consume_client_quota(self, client_id: str, at: datetime) -> Optional[Client]:
        with self._data_lock:
            client = self.clients.get(client_id)
            if (
                not client
                or not client.is_active
                or client.usage_count >= client.usage_quota
            ):
                return None
            client.usage_count += 1
            client.last_used_at = at
            return replace(client)

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
        with self._data_lock:
            if token_hash in self._token_ids_by_hash:
                raise ConstraintViolation("token already exists", {"field": "token_hash"})
            self._require_user(user_id)
            token = Token(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                kind=TokenKind(kind),
                expires_at=expires_at,
                client_id=client_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.tokens[token.id] = token
            self._token_ids_by_hash[token_hash] = token.id
            return replace(token)

    def _token_for(self, token_hash: str, kind: TokenKind) -> Optional[Token]:
        token_id = self._token_ids_by_hash.get(token_hash)
        token = self.tokens.get(token_id) if token_id else None
        if not token or token.kind not in TokenKind(kind).accepted_kinds():
            return None
        return token

    def find_valid_token(
        self, token_hash: str, kind: TokenKind, now: datetime
    ) -> Optional[Token]:
        with self._data_lock:
            token = self._token_for(token_hash, kind)
            if not token or not token.is_valid(now):
                return None
            return replace(token)

    def touch_token(self, token_id: str, at: datetime) -> None:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if token:
                token.last_used_at = at

    def revoke_token(self, token_hash: str, kind: TokenKind) -> bool:
        with self._data_lock:
            token = self._token_for(token_hash, kind)
            if not token:
                return False
            token.revoked = True
            return True

    def _revoke_where(self, predicate: Callable[[Token], bool]) -> int:
        count = 0
        with self._data_lock:
            for token in self.tokens.values():
                if not token.revoked and predicate(token):
                    token.revoked = True
                    count += 1
        return count

    def revoke_user_tokens(self, user_id: str, kinds: Iterable[TokenKind]) -> int:
        wanted = {TokenKind(k) for k in kinds}
        return self._revoke_where(lambda t: t.user_id == user_id and t.kind in wanted)

    def revoke_client_tokens(self, client_id: str, kinds: Iterable[TokenKind]) -> int:
        wanted = {TokenKind(k) for k in kinds}
        return self._revoke_where(
            lambda t: t.client_id == client_id and t.kind in wanted
        )
