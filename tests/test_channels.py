"""Tests for message sinks."""
import json
import pytest
from io import StringIO

from rich.console import Console

from alerts.channels import (
    ConsoleChannel, FileChannel, SmtpChannel, CompositeSink, MessageSink, build_sink,
)
from alerts.recipients import Recipient
from models.alerts import RenderedMessage
from models.enums import Severity


@pytest.fixture
def message():
    return RenderedMessage(subject="[KPI Watch] Warning: Users [beta]", body="Value 85", html="",
                           severity=Severity.WARNING, alert_name="Users", scope="dash-1",
                           rule_id=4, value=85.0)


def test_console_channel(message):
    buf = StringIO()
    channel = ConsoleChannel(Console(file=buf, width=200, color_system=None))
    assert channel.deliver_internal(Recipient("u1", "", "Ann"), message)
    assert channel.deliver_email("ops@x.org", message)
    out = buf.getvalue()
    assert "WARNING -> Ann" in out
    assert "ops@x.org" in out
    assert "[beta]" in out


def test_file_channel_appends_jsonl(tmp_path, message):
    path = tmp_path / "out" / "notifications.jsonl"
    channel = FileChannel(str(path))
    channel.deliver_internal(Recipient("u1", "u1@x.org"), message)
    channel.deliver_email("ops@x.org", message)

    lines = [json.loads(l) for l in path.read_text().splitlines()]
    assert [l["channel"] for l in lines] == ["internal", "email"]
    assert lines[0]["to"] == "u1"
    assert lines[1]["to"] == "ops@x.org"
    assert lines[0]["severity"] == "warning"
    assert lines[0]["rule_id"] == 4


class Broken:
    def deliver_internal(self, recipient, message):
        raise OSError("down")

    def deliver_email(self, address, message):
        raise OSError("down")


class Refusing:
    def deliver_internal(self, recipient, message):
        return False

    def deliver_email(self, address, message):
        return False


def test_composite_succeeds_if_any_sink_delivers(tmp_path, message):
    sink = CompositeSink([Broken(), FileChannel(str(tmp_path / "n.jsonl"))])
    assert sink.deliver_email("ops@x.org", message) is True


def test_composite_raises_when_all_fail(message):
    sink = CompositeSink([Broken(), Refusing()])
    with pytest.raises(RuntimeError, match="down"):
        sink.deliver_email("ops@x.org", message)


def test_composite_refusal_without_errors(message):
    assert CompositeSink([Refusing()]).deliver_internal(Recipient("u1", ""), message) is False


def test_build_sink(tmp_path):
    config = {"notifications": {"channels": ["file"], "file_log_path": str(tmp_path / "x.jsonl")}}
    assert isinstance(build_sink(config), FileChannel)

    config["notifications"]["channels"] = ["console", "file", "smtp", "pager"]
    sink = build_sink(config)
    assert isinstance(sink, CompositeSink)
    assert [type(s) for s in sink.sinks] == [ConsoleChannel, FileChannel, SmtpChannel]


def test_sinks_satisfy_protocol(tmp_path):
    for sink in (ConsoleChannel(), FileChannel(str(tmp_path / "a")), CompositeSink([])):
        assert isinstance(sink, MessageSink)
