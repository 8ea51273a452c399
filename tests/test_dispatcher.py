"""Tests for notification fan-out and message rendering."""
import threading
import time
import pytest

from alerts.dispatcher import NotificationDispatcher, DispatchResult, parse_email_addresses
from alerts.evaluator import evaluate
from alerts.recipients import ConfigRecipientResolver, Recipient
from models.enums import FallbackPolicy, Severity


RECIPIENTS = {
    "dash-1": {
        "manager": [{"id": "u1", "address": "u1@example.com"}, {"id": "u2", "address": "u2@example.com"}],
        "editor": [{"id": "u3", "address": "u3@example.com"}],
    },
}


@pytest.fixture
def resolver():
    return ConfigRecipientResolver(RECIPIENTS, admins=[{"id": "admin", "address": "admin@example.com"}])


@pytest.fixture
def dispatcher(sink, resolver):
    return NotificationDispatcher(sink, resolver, site_name="Campus", timeout=5)


def test_parse_email_addresses():
    text = "a@example.com, b@example.com;c@example.com\n\nnot-an-email\na@example.com ;  "
    assert parse_email_addresses(text) == ["a@example.com", "b@example.com", "c@example.com"]


def test_parse_email_addresses_empty():
    assert parse_email_addresses("") == []
    assert parse_email_addresses(None) == []


def test_dispatch_result_success():
    assert not DispatchResult().success
    assert DispatchResult(attempted=3, succeeded=1, errors=["x", "y"]).success


def test_internal_fanout(dispatcher, sink, make_rule):
    rule = make_rule(id=1, notify_roles=["manager"])
    result = dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85))
    assert result.attempted == 2
    assert result.succeeded == 2
    assert result.errors == []
    assert [r.id for r, _ in sink.internal] == ["u1", "u2"]


def test_email_channel(dispatcher, sink, make_rule):
    rule = make_rule(id=1, notify_message=False, notify_email=True,
                     notify_emails="ops@example.com; bogus; ops@example.com\nceo@example.com")
    result = dispatcher.send(rule, Severity.CRITICAL, evaluate(rule, 99))
    assert result.succeeded == 2
    assert [a for a, _ in sink.emails] == ["ops@example.com", "ceo@example.com"]
    assert sink.internal == []


def test_email_toggle_off_skips_addresses(dispatcher, sink, make_rule):
    rule = make_rule(id=1, notify_roles=["editor"], notify_email=False, notify_emails="ops@example.com")
    result = dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85))
    assert result.succeeded == 1
    assert sink.emails == []


def test_both_channels(dispatcher, sink, make_rule):
    rule = make_rule(id=1, notify_roles=["editor"], notify_email=True, notify_emails="ops@example.com")
    result = dispatcher.send(rule, Severity.RECOVERY, evaluate(rule, 10))
    assert result.attempted == 2
    assert result.succeeded == 2


def test_partial_failure_is_success(resolver, make_rule, sink_factory):
    sink = sink_factory(fail={"u1"})
    dispatcher = NotificationDispatcher(sink, resolver, timeout=5)
    rule = make_rule(id=1, notify_roles=["manager"])
    result = dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85))
    assert result.success
    assert result.succeeded == 1
    assert len(result.errors) == 1
    assert "u1" in result.errors[0]
    assert "cannot reach" in result.errors[0]


def test_refused_delivery_is_reported(resolver, make_rule, sink_factory):
    sink = sink_factory(refuse={"u3"})
    dispatcher = NotificationDispatcher(sink, resolver, timeout=5)
    rule = make_rule(id=1, notify_roles=["editor"])
    result = dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85))
    assert not result.success
    assert result.errors == ["Failed to message user u3"]


def test_no_recipients_without_fallback(dispatcher, sink, make_rule):
    rule = make_rule(id=1, notify_roles=["nobody"])
    result = dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85))
    assert result.attempted == 0
    assert not result.success


def test_admin_fallback_is_explicit(sink, resolver, make_rule):
    dispatcher = NotificationDispatcher(sink, resolver, fallback_policy=FallbackPolicy.ADMINS, timeout=5)
    rule = make_rule(id=1, notify_roles=[])
    result = dispatcher.send(rule, Severity.CRITICAL, evaluate(rule, 99))
    assert result.succeeded == 1
    assert sink.internal[0][0] == Recipient(id="admin", address="admin@example.com")


def test_slow_sink_times_out(resolver, make_rule, sink_factory):
    class SlowSink(sink_factory):
        def deliver_internal(self, recipient, message):
            time.sleep(1)
            return True

    dispatcher = NotificationDispatcher(SlowSink(), resolver, timeout=0.05)
    rule = make_rule(id=1, notify_roles=["editor"])
    result = dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85))
    assert result.succeeded == 0
    assert "timed out" in result.errors[0]


def test_hung_deliveries_do_not_starve_later_sends(resolver, make_rule, sink_factory):
    release = threading.Event()

    class HangingSink(sink_factory):
        def deliver_internal(self, recipient, message):
            if recipient.id == "u1":
                release.wait(5)
                return True
            return super().deliver_internal(recipient, message)

    sink = HangingSink()
    dispatcher = NotificationDispatcher(sink, resolver, timeout=0.1)
    rule = make_rule(id=1, notify_roles=["manager"])
    try:
        results = [dispatcher.send(rule, Severity.WARNING, evaluate(rule, 85)) for _ in range(6)]
    finally:
        release.set()
    assert [r.succeeded for r in results] == [1] * 6
    assert all("u1: timed out" in r.errors[0] for r in results)
    assert [r.id for r, _ in sink.internal] == ["u2"] * 6


def test_build_message(dispatcher, make_rule):
    rule = make_rule(id=3, name="Active <users>", description="Daily logins")
    message = dispatcher.build_message(rule, Severity.CRITICAL, evaluate(rule, 97))
    assert message.subject == "[Campus] Critical: Active <users>"
    assert "Current value: 97.00" in message.body
    assert "Threshold: 95.00" in message.body
    assert "Daily logins" in message.body
    assert "Active &lt;users&gt;" in message.html
    assert "#dc3545" in message.html
    assert message.rule_id == 3
    assert message.severity == Severity.CRITICAL


def test_recovery_message_label(dispatcher, make_rule):
    rule = make_rule(id=3)
    message = dispatcher.build_message(rule, Severity.RECOVERY, evaluate(rule, 10))
    assert message.subject == "[Campus] Recovered: active_users"
    assert "back within" in message.body
