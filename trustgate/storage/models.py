from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_reset_date(now: Optional[datetime] = None) -> datetime:
    """First day of the month after ``now``, at UTC midnight."""
    current = now or utcnow()
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class ClientStatus(str, Enum):
    """Approval state of an integrator application.

    Only ``active`` clients authenticate or receive tokens. Transitions are
    administrator actions performed outside this package.
    """

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    API = "api"

    def accepted_kinds(self) -> tuple["TokenKind", ...]:
        """Record kinds that satisfy a lookup for this kind.

        An API token stands in for an access token, never the reverse.
        """
        if self is TokenKind.ACCESS:
            return (TokenKind.ACCESS, TokenKind.API)
        return (self,)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    backup_codes: Set[str] = field(default_factory=set)
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status is UserStatus.ACTIVE


@dataclass
class Client:
    id: str
    user_id: str
    client_id: str
    client_secret: str
    description: Optional[str] = None
    status: ClientStatus = ClientStatus.PENDING
    usage_count: int = 0
    usage_quota: int = 1000
    reset_date: datetime = field(default_factory=next_reset_date)
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status is ClientStatus.ACTIVE

    @property
    def quota_remaining(self) -> int:
        return max(0, self.usage_quota - self.usage_count)


@dataclass
class Token:
    """Audit record of an issued bearer credential.

    Only the SHA-256 digest of the signed value is stored.
    """

    id: str
    user_id: str
    token_hash: str
    kind: TokenKind
    expires_at: datetime
    client_id: Optional[str] = None
    revoked: bool = False
    last_used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and (now or utcnow()) < self.expires_at
