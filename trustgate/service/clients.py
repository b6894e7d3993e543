from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Optional

from trustgate.config import Settings
from trustgate.logging import get_logger
from trustgate.service.errors import AccountNotActive, InvalidCredentials, QuotaExceeded
from trustgate.storage.common import CredentialStore
from trustgate.storage.models import Client, ClientStatus, User

logger = get_logger(__name__)


class ClientApprovalGate:
    """Enforces integrator client approval status and monthly usage quotas.

    The gate only reads status; promotion to ``active`` is an administrator
    action performed elsewhere. Quota counters are reset externally.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def resolve_login_client(self, user: User) -> Client:
        """Pick the client a password login is bound to.

        Raises :class:`AccountNotActive` when no client is active. A user with
        no client at all gets a fresh ``pending`` one so an administrator has
        something to approve.
        """
        clients = self.store.list_user_clients(user.id)
        active = next((c for c in clients if c.is_active), None)
        if active:
            return active
        if any(c.status is ClientStatus.PENDING for c in clients):
            raise AccountNotActive(
                "client awaiting approval", status=ClientStatus.PENDING.value
            )
        if clients:
            latest = clients[-1]
            raise AccountNotActive(
                f"client {latest.status.value}", status=latest.status.value
            )
        created = self.store.create_client(
            user.id,
            description=user.description,
            usage_quota=self.settings.default_usage_quota,
        )
        self.logger.info(
            "login_client_created", user_id=user.id, client_id=created.client_id
        )
        raise AccountNotActive(
            "client awaiting approval",
            status=ClientStatus.PENDING.value,
            detail={"client_id": created.client_id},
        )

    def authenticate_client(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> tuple[Client, User]:
        client = self.store.get_client(client_id) if client_id else None
        # Compare even when the client is unknown to keep timing uniform
        expected = client.client_secret if client else "0" * 64
        if not hmac.compare_digest(expected.encode(), (client_secret or "").encode()) or not client:
            self.logger.info("client_auth_failed", client_id=client_id)
            raise InvalidCredentials()
        if not client.is_active:
            raise AccountNotActive(
                f"client {client.status.value}", status=client.status.value
            )
        owner = self.store.get_user(client.user_id)
        if not owner or not owner.is_active:
            raise AccountNotActive(
                "account not active",
                status=owner.status.value if owner else None,
            )
        return client, owner

    def check_and_consume_quota(self, client_id: str) -> Client:
        """Charge one unit of usage, atomically with the status and quota checks."""
        charged = self.store.consume_client_quota(client_id, self._now())
        if charged:
            self.logger.debug(
                "client_quota_charged",
                client_id=client_id,
                remaining=charged.quota_remaining,
            )
            return charged
        client = self.store.get_client(client_id)
        if not client or not client.is_active:
            raise AccountNotActive(
                "client not active", status=client.status.value if client else None
            )
        self.logger.info(
            "client_quota_exceeded",
            client_id=client_id,
            usage_count=client.usage_count,
            usage_quota=client.usage_quota,
        )
        raise QuotaExceeded(reset_at=client.reset_date)
