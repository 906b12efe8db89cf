"""AccountStore: get-or-create, version-conditioned writes and locks."""

import pytest
from sqlalchemy import update

from credit_kernel.domain.dtos import AccountRef
from credit_kernel.exceptions import (
    AccountNotFoundError,
    InvalidParameterError,
    LedgerSystemError,
    OperationLockedError,
    VersionConflictError,
)
from credit_kernel.models.account import CreditAccount
from credit_kernel.services.account_lock import AccountLockRegistry
from credit_kernel.services.account_store import AccountStore


@pytest.fixture
def store(session, locks, clock):
    return AccountStore(session, locks, clock)


class TestGetOrCreate:

    def test_creates_zeroed_account(self, store, account, clock):
        row = store.get_or_create(account)
        assert (row.balance, row.frozen_amount, row.version, row.last_seq) == (0, 0, 0, 0)
        assert row.is_active
        assert row.created_at == clock.now()

    def test_second_call_returns_same_row(self, store, account):
        assert store.get_or_create(account).id == store.get_or_create(account).id

    def test_get_unknown_raises(self, store, account):
        assert store.find(account) is None
        with pytest.raises(AccountNotFoundError):
            store.get(account)

    def test_batch_create_collapses_duplicates(self, store, make_ref):
        a, b = make_ref(), make_ref()
        rows = store.batch_create([a, b, a])
        assert [r.ref for r in rows] == [a, b]


class TestUpdateWithVersion:

    def test_write_bumps_version(self, store, account):
        row = store.get_or_create(account)
        store.update_with_version(
            row, {"balance": 10, "total_income": 10}, expected_version=0
        )
        assert (row.balance, row.version) == (10, 1)

    def test_stale_version_conflicts_and_writes_nothing(self, store, session, account):
        row = store.get_or_create(account)
        store.update_with_version(row, {"balance": 10, "total_income": 10}, 0)

        with pytest.raises(VersionConflictError) as exc_info:
            store.update_with_version(row, {"balance": 99, "total_income": 99}, 0)
        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 1

        session.expire_all()
        assert store.get(account).balance == 10

    def test_concurrent_writer_detected(self, store, session, account):
        row = store.get_or_create(account)
        # another writer moves the version underneath us
        session.execute(
            update(CreditAccount.__table__)
            .where(CreditAccount.__table__.c.id == row.id)
            .values(version=5)
        )
        with pytest.raises(VersionConflictError) as exc_info:
            store.update_with_version(row, {"level": 2}, row.version)
        assert exc_info.value.actual_version == 5

    def test_unknown_field_rejected(self, store, account):
        row = store.get_or_create(account)
        with pytest.raises(InvalidParameterError):
            store.update_with_version(row, {"version": 10}, 0)


class TestLocks:

    def test_lock_is_exclusive_until_released(self, store, account):
        handle = store.acquire_lock(account, timeout=1)
        with pytest.raises(OperationLockedError) as exc_info:
            store.acquire_lock(account, timeout=0.05)
        assert exc_info.value.account_ref == account.key

        store.release(handle)
        store.release(store.acquire_lock(account, timeout=0.05))

    def test_colon_refs_lock_independently(self, store):
        left, right = AccountRef("u:x", "POINTS"), AccountRef("u", "x:POINTS")
        handle = store.acquire_lock(left, timeout=1)
        try:
            store.release(store.acquire_lock(right, timeout=0.05))
        finally:
            store.release(handle)

    def test_release_requires_owning_handle(self, account):
        registry = AccountLockRegistry()
        handle = registry.acquire(account.lock_key, 1)
        registry.release(handle)
        with pytest.raises(LedgerSystemError):
            registry.release(handle)

    def test_registry_forgets_released_keys(self, account):
        registry = AccountLockRegistry()
        handle = registry.acquire(account.lock_key, 1)
        assert registry.is_locked(account.lock_key)
        assert registry.holds(handle, account.lock_key)
        assert not registry.holds(handle, AccountRef("other", "POINTS").lock_key)
        registry.release(handle)
        assert not registry.is_locked(account.lock_key)
        assert registry._entries == {}
