from app.core.logging import REDACTED, redact_sensitive


def test_secrets_are_redacted():
    event = {"event": "user_login", "user_id": "u1", "password": "hunter2", "token": "abc"}
    out = redact_sensitive(None, "info", event)
    assert out["password"] == REDACTED
    assert out["token"] == REDACTED
    assert out["user_id"] == "u1"


def test_other_fields_untouched():
    event = {"event": "credits_settled", "checkout_ref": "cs_1", "credits": 100}
    assert redact_sensitive(None, "info", dict(event)) == event
