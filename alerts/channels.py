"""Message sinks: the transports that actually deliver a rendered notification."""
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger("kpiwatch.alerts.channels")


@runtime_checkable
class MessageSink(Protocol):
    def deliver_internal(self, recipient, message) -> bool: ...

    def deliver_email(self, address, message) -> bool: ...


class ConsoleChannel:
    """Print notifications to the terminal with rich formatting."""

    severity_styles = {
        "critical": "bold white on red",
        "warning": "bold yellow",
        "recovery": "bold green",
    }

    def __init__(self, console=None):
        self.console = console or Console()

    def _print(self, target, message):
        sev = message.severity.value if hasattr(message.severity, "value") else str(message.severity)
        style = self.severity_styles.get(sev, "bold")
        self.console.print(f"[{style}]{sev.upper()}[/] -> {escape(str(target))}: {escape(message.subject)}")
        return True

    def deliver_internal(self, recipient, message):
        return self._print(recipient.name or recipient.id, message)

    def deliver_email(self, address, message):
        return self._print(address, message)


class FileChannel:
    """Append every delivery to a JSON lines outbox file."""

    def __init__(self, log_path="data/notifications.jsonl"):
        self.log_path = log_path
        self._lock = threading.Lock()

    def _write(self, channel, target, message):
        sev = message.severity.value if hasattr(message.severity, "value") else str(message.severity)
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "channel": channel,
            "to": target,
            "scope": message.scope,
            "rule_id": message.rule_id,
            "alert_name": message.alert_name,
            "severity": sev,
            "value": message.value,
            "subject": message.subject,
            "body": message.body,
        }
        Path(self.log_path).parent.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self.log_path, "a") as f:
            f.write(json.dumps(entry) + "\n")
        return True

    def deliver_internal(self, recipient, message):
        return self._write("internal", recipient.id, message)

    def deliver_email(self, address, message):
        return self._write("email", address, message)


class SmtpChannel:
    """Deliver by SMTP. Internal recipients are mailed at their delivery address."""

    def __init__(self, config: dict, sender=None):
        if sender is None:
            from notifications.email_sender import EmailSender
            sender = EmailSender(config)
        self.sender = sender

    def deliver_internal(self, recipient, message):
        if not recipient.address:
            logger.warning(f"Recipient {recipient.id} has no delivery address")
            return False
        return self.deliver_email(recipient.address, message)

    def deliver_email(self, address, message):
        return self.sender.send_message(address, message.subject, message.body, message.html)


class CompositeSink:
    """Hand each delivery to several sinks; delivered if any of them accepted it."""

    def __init__(self, sinks):
        self.sinks = list(sinks)

    def _fan(self, method, target, message):
        delivered = False
        errors = []
        for sink in self.sinks:
            try:
                delivered = getattr(sink, method)(target, message) or delivered
            except Exception as e:
                errors.append(f"{type(sink).__name__}: {e}")
                logger.warning(f"Sink {type(sink).__name__} failed: {e}")
        if not delivered and errors:
            raise RuntimeError("; ".join(errors))
        return delivered

    def deliver_internal(self, recipient, message):
        return self._fan("deliver_internal", recipient, message)

    def deliver_email(self, address, message):
        return self._fan("deliver_email", address, message)


def build_sink(config):
    """Create the sink described by ``notifications.channels``."""
    notif = config.get("notifications", {})
    sinks = []
    for name in notif.get("channels", ["file"]):
        if name == "console":
            sinks.append(ConsoleChannel())
        elif name == "file":
            sinks.append(FileChannel(notif.get("file_log_path", "data/notifications.jsonl")))
        elif name == "smtp":
            sinks.append(SmtpChannel(config))
        else:
            logger.warning(f"Unknown notification channel: {name}")
    if len(sinks) == 1:
        return sinks[0]
    return CompositeSink(sinks)
