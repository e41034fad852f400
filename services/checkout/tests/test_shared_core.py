import json
import logging

from shared.core import HealthStatus, ServiceHealth, check_result, clear_request_context, set_request_context
from shared.core.logging_config import SecurityFilter, StructuredFormatter, current_context


def make_record(msg, extra_fields=None):
    record = logging.LogRecord("checkout", logging.INFO, __file__, 1, msg, None, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record


def test_security_filter_redacts_secrets_and_cards():
    record = make_record(
        "Calling gateway with sk_live_abc123 and Bearer eyJhbGciOi.payload.sig for card 4084 0840 8408 4081"
    )

    SecurityFilter().filter(record)

    message = record.getMessage()
    assert "sk_live_abc123" not in message
    assert "eyJhbGciOi" not in message
    assert "4084 0840 8408 4081" not in message
    assert message.count(SecurityFilter.REDACTED) == 3


def test_security_filter_scrubs_nested_extra_fields():
    record = make_record("Payment confirmed", {
        "reference": "ref_1",
        "authorization_code": "AUTH_x",
        "card": {"bin": "408408", "last4": "4081"},
    })

    SecurityFilter().filter(record)

    assert record.extra_fields == {
        "reference": "ref_1",
        "authorization_code": SecurityFilter.REDACTED,
        "card": {"bin": SecurityFilter.REDACTED, "last4": "4081"},
    }


def test_formatter_emits_json_with_context():
    clear_request_context()
    set_request_context(request_id="req-9")
    record = make_record("Checkout ORD-1 created", {"checkout_id": "7", "items": 2})

    line = json.loads(StructuredFormatter().format(record))
    clear_request_context()

    assert line["message"] == "Checkout ORD-1 created"
    assert line["level"] == "INFO"
    assert line["trace"] == {"request_id": "req-9"}
    assert line["custom"] == {"checkout_id": "7", "items": 2}


def test_request_context_round_trip():
    clear_request_context()
    set_request_context(request_id="req-1", user_id="user-1", checkout_id=42)

    assert current_context() == {"request_id": "req-1", "user_id": "user-1", "checkout_id": "42"}
    clear_request_context()
    assert current_context() == {}


def test_overall_status():
    ok = check_result(HealthStatus.PASS, "datastore")
    degraded = check_result(HealthStatus.WARN, "cache")
    down = check_result(HealthStatus.FAIL, "datastore")

    assert ServiceHealth.overall_status({"a": ok}) == HealthStatus.PASS
    assert ServiceHealth.overall_status({"a": ok, "b": degraded}) == HealthStatus.WARN
    assert ServiceHealth.overall_status({"a": degraded, "b": down}) == HealthStatus.FAIL


def test_readiness_report(engine):
    def broken_worker():
        raise RuntimeError("worker wedged")

    health = ServiceHealth(
        "checkout-service",
        engine=engine,
        readiness_checks={"worker:ok": lambda: check_result(HealthStatus.PASS, "worker"), "worker:broken": broken_worker},
    )

    checks = health.readiness_report()

    assert checks["database:connectivity"]["status"] == HealthStatus.PASS
    assert "cache:connectivity" not in checks
    assert checks["worker:ok"]["status"] == HealthStatus.PASS
    assert checks["worker:broken"]["status"] == HealthStatus.WARN
    assert checks["worker:broken"]["output"] == "worker wedged"


def test_startup_report(engine):
    health = ServiceHealth("checkout-service", engine=engine, required_settings={"PAYSTACK_SECRET_KEY": ""})

    checks = health.startup_report()

    assert checks["database:migrations"]["status"] == HealthStatus.WARN
    assert checks["config:environment"]["status"] == HealthStatus.FAIL
    assert "PAYSTACK_SECRET_KEY" in checks["config:environment"]["output"]
