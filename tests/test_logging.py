from accountcore.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_credential_and_contact_fields():
    event = _redact_pii(
        None,
        "info",
        {"event": "login", "email": "alice@example.com", "refresh_token": "abcdefgh", "account_id": "42"},
    )

    assert event["email"] == "al***om"
    assert event["refresh_token"] == "ab***gh"
    assert event["account_id"] == "42"


def test_short_values_are_left_alone():
    assert _redact_pii(None, "info", {"token": "abc"})["token"] == "abc"


def test_correlation_id_is_added_to_events():
    cid = set_correlation_id("req-42")

    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"


def test_correlation_id_is_generated_when_absent():
    assert set_correlation_id(None)


def test_sanitize_strips_paths_and_inline_secrets():
    message = sanitize_error_message("failed reading /srv/accountcore/.jwt_secret with password=hunter2")

    assert "/srv/accountcore" not in message
    assert "hunter2" not in message


def test_sanitize_caps_length():
    assert len(sanitize_error_message("x" * 2000)) == 500


def test_sanitize_handles_empty():
    assert sanitize_error_message("") == "An error occurred"
