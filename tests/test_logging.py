import json
import logging

from commerce_core.core.logging_config import (
    SecurityFilter, StructuredFormatter, set_request_context, user_id_var,
)


def make_record(msg, extra_fields=None):
    record = logging.LogRecord("commerce_core.test", logging.INFO, __file__, 1, msg, None, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record


def test_custom_fields_redacted():
    record = make_record("Payment method added", {
        "card_number": "4242424242424242",
        "client_secret": "pi_1_secret_x",
        "nested": {"cvc": "123", "last4": "4242"},
        "order_id": 7,
    })
    SecurityFilter().filter(record)
    assert record.extra_fields["card_number"] == "***REDACTED***"
    assert record.extra_fields["client_secret"] == "***REDACTED***"
    assert record.extra_fields["nested"] == {"cvc": "***REDACTED***", "last4": "4242"}
    assert record.extra_fields["order_id"] == 7


def test_message_redacted():
    record = make_record("webhook secret=abc rejected, token: xyz")
    SecurityFilter().filter(record)
    assert "abc" not in record.msg and "xyz" not in record.msg


def test_formatter_emits_json_with_context():
    token = user_id_var.set(None)
    try:
        set_request_context(user_id="user-1")
        line = StructuredFormatter().format(make_record("Order created", {"order_id": 1}))
    finally:
        user_id_var.reset(token)
    body = json.loads(line)
    assert body["message"] == "Order created"
    assert body["custom"] == {"order_id": 1}
    assert body["trace"]["user_id"] == "user-1"
