"""Unit tests for the file-backed memory account store.

Tests for:
- Account creation and uniqueness
- Lookups by id, handle and email
- Field updates and refresh token swaps
- Listing, bulk updates and deletes
- Persistence across store instances
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from accountcore.storage.errors import AccountNotFound, ConstraintViolation, StorageFailure
from accountcore.storage.memory import MemoryStore
from accountcore.storage.models import AccountRole, default_preferences, utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def account(memory_store):
    return memory_store.create_account(
        handle="alice", email="alice@example.com", password_hash="hash", full_name="Alice"
    )


def test_utcnow_is_naive_utc():
    now = utcnow()

    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)


class TestCreate:
    def test_create_account_defaults(self, account):
        assert account.id
        assert account.role == AccountRole.STANDARD
        assert account.is_active is True
        assert account.is_email_verified is False
        assert account.login_count == 0
        assert account.refresh_token is None
        assert account.preferences == default_preferences()

    def test_identifiers_are_normalized(self, memory_store):
        created = memory_store.create_account(
            handle=" Bob ", email="Bob@Example.COM", password_hash="hash"
        )

        assert created.handle == "bob"
        assert created.email == "bob@example.com"

    def test_duplicate_email_raises(self, memory_store, account):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_account(handle="other", email="ALICE@example.com", password_hash="h")

        assert excinfo.value.detail == {"field": "email"}

    def test_duplicate_handle_raises(self, memory_store, account):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_account(handle="Alice", email="new@example.com", password_hash="h")

        assert excinfo.value.detail == {"field": "handle"}


class TestLookup:
    def test_get_account_missing(self, memory_store):
        with pytest.raises(AccountNotFound):
            memory_store.get_account("missing")

    def test_find_by_handle_and_email_is_case_insensitive(self, memory_store, account):
        assert memory_store.find_account("handle", "ALICE").id == account.id
        assert memory_store.find_account("email", " Alice@Example.com ").id == account.id

    def test_find_rejects_non_unique_fields(self, memory_store):
        with pytest.raises(ValueError):
            memory_store.find_account("full_name", "Alice")

    def test_reads_are_copies(self, memory_store, account):
        loaded = memory_store.get_account(account.id)
        loaded.full_name = "Mallory"

        assert memory_store.get_account(account.id).full_name == "Alice"


class TestUpdate:
    def test_update_fields(self, memory_store, account):
        updated = memory_store.update_fields(account.id, full_name="Alice L.", role="moderator")

        assert updated.full_name == "Alice L."
        assert updated.role == AccountRole.MODERATOR
        assert updated.updated_at >= account.updated_at

    def test_update_to_taken_email_raises(self, memory_store, account):
        memory_store.create_account(handle="bob", email="bob@example.com", password_hash="h")

        with pytest.raises(ConstraintViolation):
            memory_store.update_fields(account.id, email="BOB@example.com")

    def test_update_own_email_to_same_value(self, memory_store, account):
        assert memory_store.update_fields(account.id, email="alice@example.com").email == "alice@example.com"

    def test_update_rejects_unknown_fields(self, memory_store, account):
        with pytest.raises(ValueError):
            memory_store.update_fields(account.id, login_count=99)

    def test_update_missing_account(self, memory_store):
        with pytest.raises(AccountNotFound):
            memory_store.update_fields("missing", full_name="x")

    def test_record_login(self, memory_store, account):
        at = datetime(2024, 1, 2, 3, 4, 5)

        updated = memory_store.record_login(account.id, "refresh-1", at=at)

        assert updated.refresh_token == "refresh-1"
        assert updated.login_count == 1
        assert updated.last_login_at == at
        assert updated.last_activity_at == at

    def test_swap_refresh_token_is_compare_and_set(self, memory_store, account):
        memory_store.record_login(account.id, "refresh-1", at=utcnow())

        assert memory_store.swap_refresh_token(account.id, "refresh-1", "refresh-2") is True
        assert memory_store.swap_refresh_token(account.id, "refresh-1", "refresh-3") is False
        assert memory_store.get_account(account.id).refresh_token == "refresh-2"


class TestListingAndBulk:
    def _seed(self, memory_store, count):
        return [
            memory_store.create_account(
                handle=f"user{n}", email=f"user{n}@example.com", password_hash="h"
            )
            for n in range(count)
        ]

    def test_list_accounts_pages_and_counts(self, memory_store):
        self._seed(memory_store, 5)

        page, total = memory_store.list_accounts(offset=2, limit=2, sort_by="handle", descending=False)

        assert total == 5
        assert [a.handle for a in page] == ["user2", "user3"]

    def test_list_accounts_puts_missing_values_last(self, memory_store):
        accounts = self._seed(memory_store, 3)
        memory_store.record_login(accounts[1].id, "t", at=utcnow())

        page, _ = memory_store.list_accounts(sort_by="last_login_at")

        assert page[0].id == accounts[1].id

    def test_list_accounts_rejects_unknown_sort(self, memory_store):
        with pytest.raises(ValueError):
            memory_store.list_accounts(sort_by="password_hash")

    def test_bulk_update_counts_existing_accounts(self, memory_store):
        accounts = self._seed(memory_store, 2)
        ids = [a.id for a in accounts] + ["missing"]

        assert memory_store.bulk_update(ids, is_active=False) == 2
        assert all(not memory_store.get_account(a.id).is_active for a in accounts)

    def test_bulk_update_refuses_unique_fields(self, memory_store):
        accounts = self._seed(memory_store, 2)

        with pytest.raises(ValueError):
            memory_store.bulk_update([a.id for a in accounts], email="same@example.com")

    def test_bulk_delete(self, memory_store):
        accounts = self._seed(memory_store, 3)

        assert memory_store.bulk_delete([accounts[0].id, accounts[1].id, "missing"]) == 2
        assert list(memory_store.accounts) == [accounts[2].id]

    def test_delete_account(self, memory_store, account):
        memory_store.delete_account(account.id)

        with pytest.raises(AccountNotFound):
            memory_store.delete_account(account.id)


class TestPersistence:
    def test_state_survives_new_instance(self, tmp_path, memory_store, account):
        memory_store.record_login(account.id, "refresh-1", at=datetime(2024, 5, 6))
        memory_store.update_fields(account.id, preferences={"theme": "dark"})

        reloaded = MemoryStore(fs_root=str(tmp_path)).get_account(account.id)

        assert reloaded.handle == "alice"
        assert reloaded.refresh_token == "refresh-1"
        assert reloaded.last_login_at == datetime(2024, 5, 6)
        assert reloaded.preferences == {"theme": "dark"}

    def test_corrupt_state_file_is_a_storage_failure(self, tmp_path):
        root = tmp_path / "corrupt"
        state = root / "state"
        state.mkdir(parents=True)
        (state / "account_store.json").write_text("{not json")

        with pytest.raises(StorageFailure):
            MemoryStore(fs_root=str(root))

    def test_ping(self, memory_store):
        assert memory_store.ping() is True


@pytest.fixture
def failing_writes(monkeypatch):
    def _disk_full(self, *args, **kwargs):
        raise OSError("No space left on device")

    def _arm():
        monkeypatch.setattr(Path, "write_text", _disk_full)

    return _arm


class TestFailedWrites:
    def test_failed_login_leaves_account_untouched(self, memory_store, account, failing_writes):
        memory_store.record_login(account.id, "refresh-1", at=datetime(2024, 1, 1))
        failing_writes()

        with pytest.raises(StorageFailure):
            memory_store.record_login(account.id, "refresh-2", at=datetime(2024, 1, 2))

        current = memory_store.get_account(account.id)
        assert current.refresh_token == "refresh-1"
        assert current.login_count == 1
        assert current.last_login_at == datetime(2024, 1, 1)

    def test_failed_update_and_swap_keep_old_values(self, memory_store, account, failing_writes):
        memory_store.record_login(account.id, "refresh-1", at=datetime(2024, 1, 1))
        failing_writes()

        with pytest.raises(StorageFailure):
            memory_store.update_fields(account.id, full_name="Mallory")
        with pytest.raises(StorageFailure):
            memory_store.swap_refresh_token(account.id, "refresh-1", "refresh-2")

        current = memory_store.get_account(account.id)
        assert current.full_name == "Alice"
        assert current.refresh_token == "refresh-1"

    def test_failed_create_and_delete_change_nothing(self, memory_store, account, failing_writes):
        failing_writes()

        with pytest.raises(StorageFailure):
            memory_store.create_account(handle="bob", email="bob@example.com", password_hash="h")
        with pytest.raises(StorageFailure):
            memory_store.delete_account(account.id)

        assert list(memory_store.accounts) == [account.id]

    def test_failed_bulk_operations_change_nothing(self, memory_store, account, failing_writes):
        failing_writes()

        with pytest.raises(StorageFailure):
            memory_store.bulk_update([account.id], is_active=False)
        with pytest.raises(StorageFailure):
            memory_store.bulk_delete([account.id])

        assert memory_store.get_account(account.id).is_active is True
