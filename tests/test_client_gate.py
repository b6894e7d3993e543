"""Tests for client approval status and quota enforcement."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from trustgate.service.errors import AccountNotActive, InvalidCredentials, QuotaExceeded
from trustgate.storage.models import ClientStatus, UserStatus


@pytest.fixture
def user(store):
    return store.create_user("gate@example.com", "hash")


class TestResolveLoginClient:
    def test_returns_active_client(self, gate, store, user):
        store.create_client(user.id, status=ClientStatus.REVOKED)
        active = store.create_client(user.id, status=ClientStatus.ACTIVE)

        assert gate.resolve_login_client(user).client_id == active.client_id

    def test_pending_client_awaits_approval(self, gate, store, user):
        store.create_client(user.id)

        with pytest.raises(AccountNotActive) as excinfo:
            gate.resolve_login_client(user)

        assert excinfo.value.detail["status"] == "pending"
        assert len(store.list_user_clients(user.id)) == 1

    def test_missing_client_is_created_pending(self, gate, store, user):
        """A user without clients gets one pending client and is still rejected."""
        with pytest.raises(AccountNotActive) as excinfo:
            gate.resolve_login_client(user)

        clients = store.list_user_clients(user.id)
        assert len(clients) == 1
        assert clients[0].status is ClientStatus.PENDING
        assert excinfo.value.detail["client_id"] == clients[0].client_id
        assert "client_secret" not in excinfo.value.detail

    def test_suspended_only_discloses_status(self, gate, store, user):
        store.create_client(user.id, status=ClientStatus.SUSPENDED)

        with pytest.raises(AccountNotActive) as excinfo:
            gate.resolve_login_client(user)

        assert excinfo.value.detail["status"] == "suspended"
        assert len(store.list_user_clients(user.id)) == 1


class TestAuthenticateClient:
    def test_valid_credentials(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.ACTIVE)

        resolved, owner = gate.authenticate_client(client.client_id, client.client_secret)

        assert resolved.client_id == client.client_id
        assert owner.id == user.id

    @pytest.mark.parametrize("client_id", [None, "", "unknown-client"])
    def test_unknown_client(self, gate, client_id):
        with pytest.raises(InvalidCredentials):
            gate.authenticate_client(client_id, "secret")

    def test_wrong_secret(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.ACTIVE)

        with pytest.raises(InvalidCredentials):
            gate.authenticate_client(client.client_id, "0" * 64)

    def test_pending_client_rejected(self, gate, store, user):
        client = store.create_client(user.id)

        with pytest.raises(AccountNotActive):
            gate.authenticate_client(client.client_id, client.client_secret)

    def test_inactive_owner_rejected(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.ACTIVE)
        store.update_user_status(user.id, UserStatus.SUSPENDED)

        with pytest.raises(AccountNotActive):
            gate.authenticate_client(client.client_id, client.client_secret)


class TestQuota:
    def test_charge_increments_usage(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.ACTIVE)

        charged = gate.check_and_consume_quota(client.client_id)

        assert charged.usage_count == 1
        assert charged.quota_remaining == client.usage_quota - 1
        assert charged.last_used_at is not None

    def test_exhausted_quota_reports_reset_time(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.ACTIVE, usage_quota=1)
        gate.check_and_consume_quota(client.client_id)

        with pytest.raises(QuotaExceeded) as excinfo:
            gate.check_and_consume_quota(client.client_id)

        assert excinfo.value.reset_at == client.reset_date
        assert excinfo.value.status_code == 429
        assert store.get_client(client.client_id).usage_count == 1

    def test_inactive_client_not_charged(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.SUSPENDED)

        with pytest.raises(AccountNotActive):
            gate.check_and_consume_quota(client.client_id)

    def test_last_unit_granted_once_under_contention(self, gate, store, user):
        """Two callers at quota - 1 yield one success and one QuotaExceeded."""
        client = store.create_client(user.id, status=ClientStatus.ACTIVE, usage_quota=5)
        store.update_client(client.client_id, usage_count=4)

        def _charge(_):
            try:
                gate.check_and_consume_quota(client.client_id)
                return "ok"
            except QuotaExceeded:
                return "exceeded"

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = sorted(pool.map(_charge, range(2)))

        assert outcomes == ["exceeded", "ok"]

    def test_k_requests_against_m_remaining(self, gate, store, user):
        client = store.create_client(user.id, status=ClientStatus.ACTIVE, usage_quota=50)
        store.update_client(client.client_id, usage_count=38)

        def _charge(_):
            try:
                gate.check_and_consume_quota(client.client_id)
                return True
            except QuotaExceeded:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(_charge, range(40)))

        assert results.count(True) == 12
        assert store.get_client(client.client_id).usage_count == 50
