import asyncio
import importlib.util
from pathlib import Path

import pytest

from accountcore.service.runtime import get_runtime, reset_runtime_for_tests
from accountcore.storage.models import AccountRole

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
PASSWORD = "Bootstrap-Pass-42"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def signup_closed(monkeypatch):
    monkeypatch.setenv("ALLOW_SIGNUP", "false")
    reset_runtime_for_tests()


def test_password_policy(bootstrap):
    assert bootstrap.validate_password(PASSWORD) is True
    assert bootstrap.validate_password("short1!") is False
    assert bootstrap.validate_password("alllowercaseletters") is False


def test_creates_admin_when_signup_is_closed(bootstrap, signup_closed):
    result = asyncio.run(bootstrap.bootstrap_admin("root", "root@example.com", PASSWORD))

    account = get_runtime().store.get_account(result["account_id"])
    assert result["status"] == "created"
    assert account.role == AccountRole.ADMIN
    assert account.is_email_verified is True
    assert account.refresh_token is None
    assert account.login_count == 0


def test_promotes_existing_account(bootstrap):
    store = get_runtime().store
    existing = store.create_account(handle="alice", email="alice@example.com", password_hash="h")

    result = asyncio.run(bootstrap.bootstrap_admin("alice", "alice@example.com", PASSWORD))

    assert result == {"account_id": existing.id, "email": "alice@example.com", "status": "promoted"}
    assert store.get_account(existing.id).role == AccountRole.ADMIN


def test_dry_run_changes_nothing(bootstrap):
    result = asyncio.run(bootstrap.bootstrap_admin("root", "root@example.com", PASSWORD, dry_run=True))

    assert result["status"] == "dry_run"
    assert get_runtime().store.accounts == {}
