from trustgate.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_credential_fields():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2-long",
            "client_secret": "abcdef123456",
            "email": "person@example.com",
            "user_id": "u-123456",
        },
    )

    assert event["password"] == "hu***ng"
    assert event["client_secret"] == "ab***56"
    assert "person" not in event["email"]
    assert event["user_id"] == "u-123456"
    assert event["event"] == "login_failed"


def test_token_kind_is_not_redacted():
    event = _redact_pii(None, "info", {"event": "token_issued", "token_kind": "refresh"})

    assert event["token_kind"] == "refresh"


def test_correlation_id_round_trip():
    cid = set_correlation_id("req-42")

    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert set_correlation_id()


def test_sanitize_strips_sql_and_paths():
    message = sanitize_error_message(
        "duplicate key: INSERT INTO app_user VALUES (...) at /srv/trustgate/db"
    )

    assert "INSERT" not in message
    assert "/srv/trustgate" not in message
    assert "[redacted]" in message


def test_sanitize_handles_empty_and_long_messages():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500
