"""Unit tests for the in-memory credential store.

Covers:
- User and client creation, uniqueness and normalization
- Token lookup with kind acceptance and revocation
- Transaction rollback and nesting
- Atomic backup-code consumption and quota charging under contention
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from trustgate.storage.common import hash_backup_code
from trustgate.storage.errors import ConstraintViolation
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import ClientStatus, TokenKind, UserStatus


def _now():
    return datetime.now(timezone.utc)


class TestUsers:
    def test_create_user_normalizes_email(self, store):
        """Emails are stored trimmed and lower-cased and looked up the same way."""
        user = store.create_user("  Mixed@Example.COM ", "hash")

        assert user.email == "mixed@example.com"
        assert store.get_user_by_email("MIXED@example.com").id == user.id

    def test_duplicate_email_raises_constraint_violation(self, store):
        store.create_user("dup@example.com", "hash")

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("DUP@example.com", "other")

        assert excinfo.value.detail == {"field": "email"}

    def test_returned_user_is_a_copy(self, store):
        """Mutating a returned record does not change stored state."""
        user = store.create_user("copy@example.com", "hash")
        user.status = UserStatus.SUSPENDED

        assert store.get_user(user.id).status is UserStatus.ACTIVE

    def test_mfa_secret_encrypted_at_rest(self, store):
        user = store.create_user("mfa@example.com", "hash")
        store.set_user_mfa(
            user.id, enabled=True, secret="JBSWY3DPEHPK3PXP", backup_code_hashes=["a"]
        )

        assert store.users[user.id].mfa_secret != "JBSWY3DPEHPK3PXP"
        assert store.get_user(user.id).mfa_secret == "JBSWY3DPEHPK3PXP"

    def test_disabling_mfa_clears_secret_and_codes(self, store):
        user = store.create_user("off@example.com", "hash")
        store.set_user_mfa(user.id, enabled=True, secret="JBSWY3DP", backup_code_hashes=["a", "b"])
        store.set_user_mfa(user.id, enabled=False, secret=None, backup_code_hashes=[])

        reloaded = store.get_user(user.id)
        assert reloaded.mfa_enabled is False
        assert reloaded.mfa_secret is None
        assert reloaded.backup_codes == set()


class TestClients:
    def test_create_client_defaults(self, store):
        user = store.create_user("client@example.com", "hash")
        client = store.create_client(user.id)

        assert client.status is ClientStatus.PENDING
        assert client.usage_count == 0
        assert client.usage_quota == 1000
        assert len(client.client_secret) == 64
        assert client.reset_date.day == 1
        assert client.reset_date > _now()

    def test_create_client_for_unknown_user_fails(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_client("missing-user")

    def test_update_client_rejects_unknown_fields(self, store):
        user = store.create_user("fields@example.com", "hash")
        client = store.create_client(user.id)

        with pytest.raises(ValueError):
            store.update_client(client.client_id, user_id="someone-else")

    def test_update_client_coerces_status(self, store):
        user = store.create_user("status@example.com", "hash")
        client = store.create_client(user.id)

        updated = store.update_client(client.client_id, status="active")

        assert updated.status is ClientStatus.ACTIVE
        assert store.get_client(client.client_id).is_active

    def test_list_user_clients_only_returns_owned(self, store):
        owner = store.create_user("owner@example.com", "hash")
        other = store.create_user("other@example.com", "hash")
        mine = store.create_client(owner.id)
        store.create_client(other.id)

        assert [c.client_id for c in store.list_user_clients(owner.id)] == [mine.client_id]


class TestTokens:
    @pytest.fixture
    def owner(self, store):
        return store.create_user("tokens@example.com", "hash")

    def test_access_lookup_accepts_api_tokens(self, store, owner):
        """An API token satisfies an access lookup but not the reverse."""
        expires = _now() + timedelta(days=1)
        store.create_token("api-hash", user_id=owner.id, client_id=None, kind=TokenKind.API, expires_at=expires)
        store.create_token("access-hash", user_id=owner.id, client_id=None, kind=TokenKind.ACCESS, expires_at=expires)

        assert store.find_valid_token("api-hash", TokenKind.ACCESS, _now())
        assert store.find_valid_token("access-hash", TokenKind.API, _now()) is None
        assert store.find_valid_token("access-hash", TokenKind.REFRESH, _now()) is None

    def test_expired_token_is_not_valid(self, store, owner):
        store.create_token(
            "old",
            user_id=owner.id,
            client_id=None,
            kind=TokenKind.ACCESS,
            expires_at=_now() - timedelta(seconds=1),
        )

        assert store.find_valid_token("old", TokenKind.ACCESS, _now()) is None

    def test_revoke_token_is_idempotent(self, store, owner):
        store.create_token(
            "rev", user_id=owner.id, client_id=None, kind=TokenKind.REFRESH,
            expires_at=_now() + timedelta(hours=1),
        )

        assert store.revoke_token("rev", TokenKind.REFRESH) is True
        assert store.revoke_token("rev", TokenKind.REFRESH) is True
        assert store.revoke_token("unknown", TokenKind.REFRESH) is False
        assert store.find_valid_token("rev", TokenKind.REFRESH, _now()) is None

    def test_duplicate_token_hash_rejected(self, store, owner):
        expires = _now() + timedelta(hours=1)
        store.create_token("same", user_id=owner.id, client_id=None, kind=TokenKind.ACCESS, expires_at=expires)

        with pytest.raises(ConstraintViolation):
            store.create_token("same", user_id=owner.id, client_id=None, kind=TokenKind.ACCESS, expires_at=expires)

    def test_revoke_user_tokens_filters_by_kind(self, store, owner):
        expires = _now() + timedelta(hours=1)
        for name, kind in (("a", TokenKind.ACCESS), ("r1", TokenKind.REFRESH), ("r2", TokenKind.REFRESH)):
            store.create_token(name, user_id=owner.id, client_id=None, kind=kind, expires_at=expires)

        assert store.revoke_user_tokens(owner.id, [TokenKind.REFRESH]) == 2
        assert store.find_valid_token("a", TokenKind.ACCESS, _now())

    def test_touch_token_updates_last_used(self, store, owner):
        token = store.create_token(
            "touch", user_id=owner.id, client_id=None, kind=TokenKind.ACCESS,
            expires_at=_now() + timedelta(hours=1),
        )
        stamp = _now()
        store.touch_token(token.id, stamp)

        assert store.find_valid_token("touch", TokenKind.ACCESS, _now()).last_used_at == stamp


class TestTransactions:
    def test_exception_rolls_back_all_writes(self, store):
        def _work():
            user = store.create_user("atomic@example.com", "hash")
            store.create_client(user.id)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run_in_transaction(_work)

        assert store.get_user_by_email("atomic@example.com") is None
        assert store.clients == {}

    def test_nested_transaction_joins_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                with store.transaction():
                    store.create_user("inner@example.com", "hash")
                raise RuntimeError("outer fails")

        assert store.get_user_by_email("inner@example.com") is None

    def test_commit_keeps_writes(self, store):
        with store.transaction():
            store.create_user("kept@example.com", "hash")

        assert store.get_user_by_email("kept@example.com") is not None


class TestConcurrency:
    def test_backup_code_consumed_exactly_once(self, store):
        """N concurrent consumers of one code yield exactly one success."""
        user = store.create_user("race@example.com", "hash")
        code_hash = hash_backup_code("deadbeef")
        store.set_user_mfa(user.id, enabled=True, secret="JBSWY3DP", backup_code_hashes=[code_hash])

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: store.consume_backup_code(user.id, code_hash), range(32)))

        assert results.count(True) == 1
        assert store.get_user(user.id).backup_codes == set()

    def test_quota_never_exceeded_under_contention(self):
        """K concurrent charges against M remaining units yield exactly M successes."""
        store = MemoryStore()
        user = store.create_user("quota@example.com", "hash")
        client = store.create_client(user.id, status=ClientStatus.ACTIVE, usage_quota=10)
        store.update_client(client.client_id, usage_count=7)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: store.consume_client_quota(client.client_id, _now()), range(25)))

        assert sum(1 for r in results if r is not None) == 3
        assert store.get_client(client.client_id).usage_count == 10

    def test_inactive_client_is_never_charged(self, store):
        user = store.create_user("pending@example.com", "hash")
        client = store.create_client(user.id)

        assert store.consume_client_quota(client.client_id, _now()) is None
        assert store.get_client(client.client_id).usage_count == 0
