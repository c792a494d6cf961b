"""Integration tests for the administrative account endpoints."""

import pytest
from fastapi.testclient import TestClient

from accountcore import app as app_module
from accountcore.service.runtime import get_runtime
from accountcore.storage.models import AccountRole

PASSWORD = "CorrectHorse9!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, handle, role=AccountRole.STANDARD):
    response = client.post(
        "/v1/users/register",
        json={
            "handle": handle,
            "email": f"{handle}@example.com",
            "full_name": handle.title(),
            "password": PASSWORD,
        },
    )
    assert response.status_code == 201
    data = response.json()["data"]
    if role != AccountRole.STANDARD:
        get_runtime().store.update_fields(data["account"]["id"], role=role)
    return data["account"]["id"], {"Authorization": f"Bearer {data['tokens']['access_token']}"}


@pytest.fixture
def admin(client):
    return _register(client, "root", AccountRole.ADMIN)


def test_standard_account_cannot_list(client):
    _, headers = _register(client, "alice")

    response = client.get("/v1/users/admin/all-users", headers=headers)

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_admin_lists_accounts_with_pagination(client, admin):
    _, headers = admin
    for handle in ("alice", "bob", "carol"):
        _register(client, handle)

    response = client.get(
        "/v1/users/admin/all-users",
        params={"page": 1, "limit": 2, "sort_by": "handle", "sort_order": "asc"},
        headers=headers,
    )

    data = response.json()["data"]
    assert response.status_code == 200
    assert [a["handle"] for a in data["accounts"]] == ["alice", "bob"]
    assert data["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
    assert all("password_hash" not in a for a in data["accounts"])


def test_list_rejects_oversized_page(client, admin):
    _, headers = admin

    response = client.get("/v1/users/admin/all-users", params={"limit": 1000}, headers=headers)

    assert response.status_code == 400


def test_moderator_can_view_activity(client):
    target_id, _ = _register(client, "alice")
    _, headers = _register(client, "mod", AccountRole.MODERATOR)

    response = client.get(f"/v1/users/admin/activity/{target_id}", headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["total_logins"] == 1


def test_activity_for_unknown_account(client, admin):
    _, headers = admin

    response = client.get("/v1/users/admin/activity/missing", headers=headers)

    assert response.status_code == 404


def test_admin_deactivates_account(client, admin):
    _, headers = admin
    target_id, target_headers = _register(client, "alice")

    response = client.patch(
        f"/v1/users/admin/update-status/{target_id}", json={"is_active": False}, headers=headers
    )

    assert response.status_code == 200
    assert response.json()["data"]["is_active"] is False
    assert client.get("/v1/users/me", headers=target_headers).status_code == 401


def test_moderator_cannot_update_status(client):
    target_id, _ = _register(client, "alice")
    _, headers = _register(client, "mod", AccountRole.MODERATOR)

    response = client.patch(
        f"/v1/users/admin/update-status/{target_id}", json={"role": "admin"}, headers=headers
    )

    assert response.status_code == 403


def test_update_status_requires_a_change(client, admin):
    _, headers = admin

    response = client.patch("/v1/users/admin/update-status/anything", json={}, headers=headers)

    assert response.status_code == 400


def test_bulk_operations(client, admin):
    _, headers = admin
    ids = [_register(client, handle)[0] for handle in ("alice", "bob")]

    verified = client.post(
        "/v1/users/admin/bulk-operations",
        json={"operation": "update", "account_ids": ids, "data": {"is_email_verified": True}},
        headers=headers,
    )
    deleted = client.post(
        "/v1/users/admin/bulk-operations",
        json={"operation": "delete", "account_ids": ids},
        headers=headers,
    )

    assert verified.json()["data"] == {"operation": "update", "modified_count": 2}
    assert deleted.json()["data"] == {"operation": "delete", "modified_count": 2}
    assert get_runtime().store.accounts.keys() == {admin[0]}


def test_bulk_update_requires_data(client, admin):
    _, headers = admin

    response = client.post(
        "/v1/users/admin/bulk-operations",
        json={"operation": "update", "account_ids": [admin[0]]},
        headers=headers,
    )

    assert response.status_code == 400


@pytest.mark.parametrize(
    "data",
    [
        {"full_name": None, "avatar": 123},
        {"is_email_verified": "maybe"},
        {"password_hash": "x"},
        {},
    ],
)
def test_bulk_update_rejects_bad_data(client, admin, data):
    _, headers = admin
    target_id, _ = _register(client, "alice")

    response = client.post(
        "/v1/users/admin/bulk-operations",
        json={"operation": "update", "account_ids": [target_id], "data": data},
        headers=headers,
    )
    login = client.post("/v1/users/login", json={"handle": "alice", "password": PASSWORD})

    assert response.status_code == 400
    assert login.status_code == 200
    assert login.json()["data"]["account"]["full_name"] == "Alice"
