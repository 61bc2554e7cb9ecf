"""Tests for the in-memory credential store and RBAC graph."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authcentral.config import DEFAULT_PERMISSIONS, DEFAULT_ROLES
from authcentral.storage.errors import DuplicateField, InvalidReference
from authcentral.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


def _role_id(store: MemoryStore, name: str) -> str:
    return store.get_role_by_name(name).id


class TestSeededGraph:
    def test_default_roles_and_permissions_installed(self, store):
        assert {r.name for r in store.list_roles()} == {name for name, _ in DEFAULT_ROLES}
        assert {p.name for p in store.list_permissions()} == {p[0] for p in DEFAULT_PERMISSIONS}

    def test_seeding_is_idempotent(self, store):
        store.ensure_default_rbac()
        assert len(store.list_roles()) == len(DEFAULT_ROLES)
        assert len(store.list_permissions()) == len(DEFAULT_PERMISSIONS)

    def test_admin_holds_every_seeded_permission(self, store):
        detail = store.get_role_detail(_role_id(store, "admin"))
        assert {p.name for p in detail.permissions} == {p[0] for p in DEFAULT_PERMISSIONS}

    def test_unseeded_store_is_empty(self):
        empty = MemoryStore(seed_defaults=False)
        assert empty.list_roles() == []
        assert empty.list_permissions() == []


class TestUsers:
    def test_create_and_lookup(self, store):
        user = store.create_user("a@x.com", "hash", first_name="A", last_name="B")
        assert store.get_user(user.id).email == "a@x.com"
        assert store.get_user_by_email("a@x.com").id == user.id
        creds = store.get_credentials_by_email("a@x.com")
        assert creds.password_hash == "hash"
        assert not hasattr(store.get_user(user.id), "password_hash")

    def test_duplicate_email_rejected(self, store):
        store.create_user("a@x.com", "hash")
        with pytest.raises(DuplicateField):
            store.create_user("a@x.com", "other")

    def test_email_is_case_sensitive(self, store):
        store.create_user("a@x.com", "hash")
        store.create_user("A@x.com", "hash")
        assert store.get_user_by_email("A@X.COM") is None

    def test_returned_rows_are_copies(self, store):
        user = store.create_user("a@x.com", "hash")
        user.is_active = False
        assert store.get_user(user.id).is_active is True

    def test_set_user_active(self, store):
        user = store.create_user("a@x.com", "hash")
        assert store.set_user_active(user.id, False).is_active is False
        assert store.set_user_active("missing", False) is None


class TestLockout:
    def test_locks_at_threshold(self, store):
        user = store.create_user("a@x.com", "hash")
        for expected in range(1, 5):
            count, locked_until = store.record_failed_login(
                user.id, max_attempts=5, lockout=timedelta(minutes=15)
            )
            assert count == expected
            assert locked_until is None
        count, locked_until = store.record_failed_login(
            user.id, max_attempts=5, lockout=timedelta(minutes=15)
        )
        assert count == 5
        assert locked_until > datetime.now(timezone.utc)

    def test_locked_account_not_incremented(self, store):
        user = store.create_user("a@x.com", "hash")
        store.lock_account(user.id, timedelta(minutes=5))
        count, locked_until = store.record_failed_login(
            user.id, max_attempts=5, lockout=timedelta(minutes=15)
        )
        assert count == 0
        assert locked_until is not None

    def test_concurrent_failures_lock_exactly_once(self, store):
        user = store.create_user("a@x.com", "hash")
        results = []
        barrier = threading.Barrier(25)

        def attempt():
            barrier.wait()
            results.append(
                store.record_failed_login(user.id, max_attempts=5, lockout=timedelta(minutes=15))
            )

        threads = [threading.Thread(target=attempt) for _ in range(25)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        counts = sorted(count for count, _ in results)
        # Exactly one attempt crossed the threshold; the rest saw it locked
        assert counts[:5] == [1, 2, 3, 4, 5]
        assert all(count == 5 for count in counts[5:])
        lock_times = {locked for _, locked in results if locked is not None}
        assert len(lock_times) == 1
        assert store.get_user(user.id).failed_login_attempts == 5

    def test_unlock_resets_counter(self, store):
        user = store.create_user("a@x.com", "hash")
        for _ in range(5):
            store.record_failed_login(user.id, max_attempts=5, lockout=timedelta(minutes=15))
        store.unlock_account(user.id)
        refreshed = store.get_user(user.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.locked_until is None

    def test_reset_failed_logins_refuses_locked_account(self, store):
        user = store.create_user("a@x.com", "hash")
        for _ in range(5):
            store.record_failed_login(user.id, max_attempts=5, lockout=timedelta(minutes=15))

        assert store.reset_failed_logins(user.id) is False
        assert store.get_user(user.id).failed_login_attempts == 5

        store.users[user.id].locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        assert store.reset_failed_logins(user.id) is True
        assert store.get_user(user.id).failed_login_attempts == 0
        assert store.get_user(user.id).locked_until is None

    def test_reset_failed_logins_unknown_user(self, store):
        assert store.reset_failed_logins("missing") is False


class TestRbacGraph:
    def test_resolution_is_deduplicated_closure(self):
        store = MemoryStore(seed_defaults=False)
        user = store.create_user("a@x.com", "hash")
        role_a = store.create_role("A")
        role_b = store.create_role("B")
        p1 = store.create_permission("p1", "r", "one")
        p2 = store.create_permission("p2", "r", "two")
        p3 = store.create_permission("p3", "r", "three")
        # Insert joins in a scrambled order
        store.add_permission_to_role(role_b.id, p3.id)
        store.add_permission_to_role(role_a.id, p2.id)
        store.assign_role(user.id, role_b.id)
        store.add_permission_to_role(role_b.id, p2.id)
        store.add_permission_to_role(role_a.id, p1.id)
        store.assign_role(user.id, role_a.id)

        access = store.resolve_access(user.id)
        assert access.roles == ["A", "B"]
        assert access.permissions == ["p1", "p2", "p3"]

    def test_user_without_roles_resolves_empty(self, store):
        user = store.create_user("a@x.com", "hash")
        access = store.resolve_access(user.id)
        assert access.roles == []
        assert access.permissions == []

    def test_assign_role_is_idempotent(self, store):
        user = store.create_user("a@x.com", "hash")
        admin = _role_id(store, "admin")
        assert store.assign_role(user.id, admin) is True
        assert store.assign_role(user.id, admin) is False
        assert store.resolve_access(user.id).roles == ["admin"]

    def test_assign_unknown_role_is_invalid_reference(self, store):
        user = store.create_user("a@x.com", "hash")
        with pytest.raises(InvalidReference):
            store.assign_role(user.id, "no-such-role")

    def test_duplicate_role_and_permission_names(self, store):
        with pytest.raises(DuplicateField):
            store.create_role("admin")
        with pytest.raises(DuplicateField):
            store.create_permission("users:read", "users", "read")

    def test_delete_role_cascades(self, store):
        user = store.create_user("a@x.com", "hash")
        role = store.create_role("temp")
        perm = store.get_permission(store.list_permissions()[0].id)
        store.add_permission_to_role(role.id, perm.id)
        store.assign_role(user.id, role.id)

        assert store.delete_role(role.id) is True
        assert all(rid != role.id for _, rid in store.user_roles)
        assert all(rid != role.id for rid, _ in store.role_permissions)
        assert store.resolve_access(user.id).roles == []
        assert store.delete_role(role.id) is False

    def test_delete_permission_cascades(self, store):
        user = store.create_user("a@x.com", "hash")
        perm = store.create_permission("reports:read", "reports", "read")
        user_role = _role_id(store, "user")
        store.add_permission_to_role(user_role, perm.id)
        store.assign_role(user.id, user_role)
        assert "reports:read" in store.resolve_access(user.id).permissions

        assert store.delete_permission(perm.id) is True
        assert all(pid != perm.id for _, pid in store.role_permissions)
        assert "reports:read" not in store.resolve_access(user.id).permissions

    def test_remove_permission_from_role(self, store):
        role = store.create_role("temp")
        perm = store.create_permission("x:y", "x", "y")
        assert store.add_permission_to_role(role.id, perm.id) is True
        assert store.add_permission_to_role(role.id, perm.id) is False
        assert store.remove_permission_from_role(role.id, perm.id) is True
        assert store.remove_permission_from_role(role.id, perm.id) is False
        assert store.get_role_detail(role.id).permissions == []


class TestRefreshTokenRows:
    def test_valid_lookup_reports_owner_active_flag(self, store):
        user = store.create_user("a@x.com", "hash")
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        store.create_refresh_token(user.id, "h1", expires)
        assert store.find_valid_refresh_token("h1").user_is_active is True
        store.set_user_active(user.id, False)
        assert store.find_valid_refresh_token("h1").user_is_active is False

    def test_revoked_and_expired_rows_are_invisible(self, store):
        user = store.create_user("a@x.com", "hash")
        now = datetime.now(timezone.utc)
        store.create_refresh_token(user.id, "live", now + timedelta(hours=1))
        store.create_refresh_token(user.id, "old", now - timedelta(seconds=1))

        assert store.find_valid_refresh_token("old") is None
        assert store.revoke_refresh_token("live") is True
        assert store.revoke_refresh_token("live") is False
        assert store.find_valid_refresh_token("live") is None

    def test_revoke_all_and_purge(self, store):
        user = store.create_user("a@x.com", "hash")
        now = datetime.now(timezone.utc)
        for idx in range(3):
            store.create_refresh_token(user.id, f"h{idx}", now + timedelta(hours=1))
        store.create_refresh_token(user.id, "stale", now - timedelta(hours=1))

        # expired rows are revoked too until the purge removes them
        assert store.revoke_all_refresh_tokens(user.id) == 4
        assert store.revoke_all_refresh_tokens(user.id) == 0
        assert store.delete_expired_refresh_tokens() == 1
        assert len(store.refresh_tokens) == 3

    def test_token_for_unknown_user_rejected(self, store):
        with pytest.raises(InvalidReference):
            store.create_refresh_token("nobody", "h", datetime.now(timezone.utc))
