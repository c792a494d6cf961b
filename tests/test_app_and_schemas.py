import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from accountcore import app as app_module
from accountcore.api import schemas
from accountcore.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def test_security_headers_and_health(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"] == {"status": "healthy", "type": "memory"}
    assert body["version"] == app_module.__version__
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["API-Version"] == app_module.__version__
    assert "no-store" in response.headers["Cache-Control"]
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_no_hsts_over_plain_http(client):
    response = client.get("/healthz")

    assert "Strict-Transport-Security" not in response.headers


def test_unhealthy_store_reports_503(client, monkeypatch):
    store = get_runtime().store

    def _fail():
        raise OSError("disk gone")

    monkeypatch.setattr(store, "ping", _fail)

    response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert response.json()["checks"]["store"]["status"] == "unhealthy"


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_is_generated(client):
    first = client.get("/healthz").headers["X-Request-ID"]
    second = client.get("/healthz").headers["X-Request-ID"]

    assert first and second and first != second


def test_unknown_origin_is_not_allowed(client):
    response = client.get("/healthz", headers={"Origin": "https://evil.example"})

    assert "access-control-allow-origin" not in response.headers


class TestRegisterRequest:
    def _payload(self, **overrides):
        payload = {
            "handle": "Alice_01",
            "email": "  Alice@Example.COM ",
            "full_name": "  Alice Liddell ",
            "password": "CorrectHorse9!",
        }
        payload.update(overrides)
        return payload

    def test_normalizes_fields(self):
        request = schemas.RegisterRequest(**self._payload())

        assert request.handle == "alice_01"
        assert request.email == "alice@example.com"
        assert request.full_name == "Alice Liddell"

    def test_zero_width_characters_are_stripped(self):
        request = schemas.RegisterRequest(**self._payload(handle="al\u200bice"))

        assert request.handle == "alice"

    @pytest.mark.parametrize("handle", ["ab", "a" * 31, "has space", "dots.not.allowed"])
    def test_rejects_bad_handles(self, handle):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(**self._payload(handle=handle))

    @pytest.mark.parametrize(
        "email", ["no-at-sign", "user@localhost", "@example.com", "user@-bad-.com", "a b@example.com"]
    )
    def test_rejects_bad_emails(self, email):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(**self._payload(email=email))

    def test_rejects_short_password(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(**self._payload(password="short"))

    def test_rejects_blank_full_name(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(**self._payload(full_name="   "))


class TestLoginRequest:
    def test_requires_handle_or_email(self):
        with pytest.raises(ValidationError):
            schemas.LoginRequest(password="whatever")

    def test_handle_is_lowercased(self):
        assert schemas.LoginRequest(handle=" ALICE ", password="x").handle == "alice"

    def test_email_only(self):
        request = schemas.LoginRequest(email="Alice@Example.com", password="x")

        assert request.email == "alice@example.com"
        assert request.handle is None


def test_update_account_requires_a_field():
    with pytest.raises(ValidationError):
        schemas.UpdateAccountRequest()

    assert schemas.UpdateAccountRequest(avatar="https://cdn.example/a.png").avatar


def test_preferences_changes_only_carry_provided_values():
    request = schemas.PreferencesUpdateRequest(theme="auto", notifications={"push": False})

    assert request.changes() == {"theme": "auto", "notifications": {"push": False}}


def test_preferences_reject_unknown_visibility():
    with pytest.raises(ValidationError):
        schemas.PreferencesUpdateRequest(privacy={"profile_visibility": "everyone"})


def test_update_status_requires_a_change():
    with pytest.raises(ValidationError):
        schemas.UpdateStatusRequest()

    assert schemas.UpdateStatusRequest(is_active=False).is_active is False


class TestBulkOperationRequest:
    def test_update_requires_data(self):
        with pytest.raises(ValidationError):
            schemas.BulkOperationRequest(operation="update", account_ids=["a"])

    def test_unknown_operation(self):
        with pytest.raises(ValidationError):
            schemas.BulkOperationRequest(operation="purge", account_ids=["a"])

    def test_requires_ids(self):
        with pytest.raises(ValidationError):
            schemas.BulkOperationRequest(operation="delete", account_ids=[])

    def test_delete_without_data(self):
        request = schemas.BulkOperationRequest(operation="delete", account_ids=["a", "b"])

        assert request.data is None

    def test_update_data_is_typed(self):
        request = schemas.BulkOperationRequest(
            operation="update", account_ids=["a"], data={"role": "moderator", "avatar": None}
        )

        assert request.data.changes() == {"role": "moderator", "avatar": None}

    @pytest.mark.parametrize(
        "data", [{"full_name": None}, {"avatar": 123}, {"is_email_verified": "maybe"}, {"login_count": 5}, {}]
    )
    def test_update_data_rejects_bad_values(self, data):
        with pytest.raises(ValidationError):
            schemas.BulkOperationRequest(operation="update", account_ids=["a"], data=data)
