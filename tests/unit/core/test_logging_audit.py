from app.shared.core.logging import bind_event_context, pii_redactor


def test_pii_redactor_nested():
    event_dict = {
        "event": "stripe_webhook_received",
        "email": "amina@example.test",
        "nested": {"stripe_signature": "t=1,v1=abc", "safe": "data"},
        "list": [{"bot_token": "123:abc"}, "safe_item"],
    }

    redacted = pii_redactor(None, None, event_dict)

    assert redacted["email"] == "[REDACTED]"
    assert redacted["nested"]["stripe_signature"] == "[REDACTED]"
    assert redacted["nested"]["safe"] == "data"
    assert redacted["list"][0]["bot_token"] == "[REDACTED]"
    assert redacted["list"][1] == "safe_item"


def test_pii_redactor_sensitive_suffixes():
    redacted = pii_redactor(
        None, None, {"STRIPE-SECRET-KEY": "sk_live_x", "webhook_secret": "whsec", "amount": 49}
    )
    assert redacted["STRIPE-SECRET-KEY"] == "[REDACTED]"
    assert redacted["webhook_secret"] == "[REDACTED]"
    assert redacted["amount"] == 49


def test_pii_redactor_regex():
    redacted = pii_redactor(
        None, None, {"event": "reminder failed for amina@example.test", "chat_id": "555001"}
    )
    assert "amina@example.test" not in redacted["event"]
    assert "[EMAIL_REDACTED]" in redacted["event"]
    assert redacted["chat_id"] == "555001"


def test_bind_event_context_drops_missing_identifiers():
    import structlog

    structlog.contextvars.clear_contextvars()
    bind_event_context(event_id="evt_1", invoice_id=None)

    context = structlog.contextvars.get_contextvars()
    assert context == {"event_id": "evt_1"}
    structlog.contextvars.clear_contextvars()
