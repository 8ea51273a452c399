"""Notification fan-out to internal recipients and direct email addresses."""
import html
import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field

from email_validator import validate_email, EmailNotValidError

from models.alerts import RenderedMessage
from models.enums import FallbackPolicy, Severity
from utils.formatters import format_value, format_threshold

logger = logging.getLogger("kpiwatch.alerts.dispatcher")

DEFAULT_TIMEOUT_SECONDS = 30

_SPLIT_RE = re.compile(r"[\n,;]+")

SEVERITY_LABELS = {
    Severity.WARNING: "Warning",
    Severity.CRITICAL: "Critical",
    Severity.RECOVERY: "Recovered",
}
SEVERITY_COLORS = {
    Severity.WARNING: "#ffc107",
    Severity.CRITICAL: "#dc3545",
    Severity.RECOVERY: "#17a2b8",
}
SEVERITY_INTROS = {
    Severity.WARNING: "A monitored metric is approaching its limit.",
    Severity.CRITICAL: "A monitored metric has crossed its critical threshold.",
    Severity.RECOVERY: "A monitored metric is back within its thresholds.",
}


@dataclass
class DispatchResult:
    attempted: int = 0
    succeeded: int = 0
    errors: list = field(default_factory=list)

    @property
    def success(self):
        """At least one delivery went through; partial failure still counts."""
        return self.succeeded > 0


def parse_email_addresses(text):
    """Split a free-text list on newlines, commas and semicolons; keep valid, unique addresses."""
    emails = []
    for part in _SPLIT_RE.split(text or ""):
        candidate = part.strip()
        if not candidate or candidate in emails:
            continue
        try:
            validate_email(candidate, check_deliverability=False)
        except EmailNotValidError:
            logger.debug(f"Dropping invalid address: {candidate!r}")
            continue
        emails.append(candidate)
    return emails


class NotificationDispatcher:
    def __init__(self, sink, resolver, site_name="KPI Watch", site_url="",
                 fallback_policy=FallbackPolicy.NONE, timeout=DEFAULT_TIMEOUT_SECONDS):
        self.sink = sink
        self.resolver = resolver
        self.site_name = site_name
        self.site_url = site_url
        self.fallback_policy = FallbackPolicy(fallback_policy)
        self.timeout = timeout

    def send(self, rule, severity, evaluation):
        severity = Severity(severity)
        message = self.build_message(rule, severity, evaluation)
        result = DispatchResult()

        jobs = []
        if rule.notify_message:
            recipients = self.resolver.resolve(rule.scope, rule.notify_roles, self.fallback_policy)
            if not recipients:
                logger.info(f"No internal recipients for rule {rule.id} in {rule.scope}")
            for recipient in recipients:
                jobs.append((self.sink.deliver_internal, recipient, f"Failed to message user {recipient.id}"))

        if rule.notify_email and rule.notify_emails:
            for address in parse_email_addresses(rule.notify_emails):
                jobs.append((self.sink.deliver_email, address, f"Failed to email {address}"))

        if jobs:
            # One worker per delivery so a hung sink only holds its own thread
            executor = ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="kpiwatch-dispatch")
            try:
                for deliver, target, error_prefix in jobs:
                    self._deliver(executor, result, deliver, target, message, error_prefix)
            finally:
                executor.shutdown(wait=False)

        if result.errors:
            logger.warning(
                f"Rule {rule.id} {severity.value}: {result.succeeded}/{result.attempted} delivered; "
                f"errors: {result.errors}"
            )
        else:
            logger.info(f"Rule {rule.id} {severity.value}: {result.succeeded} notification(s) delivered")
        return result

    def _deliver(self, executor, result, deliver, target, message, error_prefix):
        """One delivery under a bounded timeout. Failures are recorded, never raised."""
        result.attempted += 1
        future = executor.submit(deliver, target, message)
        try:
            if future.result(timeout=self.timeout):
                result.succeeded += 1
            else:
                result.errors.append(error_prefix)
        except FutureTimeout:
            result.errors.append(f"{error_prefix}: timed out after {self.timeout}s")
        except Exception as e:
            result.errors.append(f"{error_prefix}: {e}")

    def build_message(self, rule, severity, evaluation):
        severity = Severity(severity)
        label = SEVERITY_LABELS[severity]
        alert_name = rule.display_name
        value = evaluation.value if evaluation is not None else rule.last_value
        threshold = evaluation.breached_threshold if evaluation is not None else None
        details = evaluation.details if evaluation is not None else ""

        subject = f"[{self.site_name}] {label}: {alert_name}"

        lines = [
            SEVERITY_INTROS[severity],
            "",
            f"Alert: {alert_name}",
            f"Metric: {rule.metric_key} ({rule.scope})",
            f"Current value: {format_value(value)}",
            f"Threshold: {format_threshold(threshold)}",
            f"Details: {details}",
        ]
        if rule.description:
            lines += ["", rule.description]
        if self.site_url:
            lines += ["", f"View dashboard: {self.site_url}"]
        lines += ["", "---", f"Sent by {self.site_name}"]

        return RenderedMessage(
            subject=subject,
            body="\n".join(lines),
            html=self._build_html(rule, severity, alert_name, value, threshold, details),
            severity=severity,
            alert_name=alert_name,
            scope=rule.scope,
            rule_id=rule.id,
            value=value,
        )

    def _build_html(self, rule, severity, alert_name, value, threshold, details):
        color = SEVERITY_COLORS[severity]
        esc = html.escape
        link = ""
        if self.site_url:
            link = (f'<p><a href="{esc(self.site_url)}" style="background: {color}; color: #fff; '
                    f'padding: 10px 20px; border-radius: 5px; text-decoration: none;">View dashboard</a></p>')
        description = f"<p>{esc(rule.description)}</p>" if rule.description else ""
        return f"""
        <div style="font-family: system-ui, sans-serif; max-width: 600px; margin: 0 auto;">
            <div style="background: {color}; color: #fff; padding: 20px; border-radius: 8px 8px 0 0;">
                <h2 style="margin: 0;">{esc(SEVERITY_LABELS[severity])}: {esc(alert_name)}</h2>
            </div>
            <div style="background: #f8f9fa; padding: 20px; border: 1px solid #e9ecef;">
                <p>{esc(SEVERITY_INTROS[severity])}</p>
                <div style="background: #fff; padding: 15px; border-left: 4px solid {color};">
                    <div style="font-size: 28px; font-weight: bold; color: {color};">{esc(format_value(value))}</div>
                    <div style="color: #6c757d;">{esc(rule.metric_key)} ({esc(str(rule.scope))})</div>
                    <div>Threshold: {esc(format_threshold(threshold))}</div>
                </div>
                <p><strong>Details:</strong> {esc(details)}</p>
                {description}
                {link}
            </div>
            <p style="color: #6c757d; font-size: 12px;">Sent by {esc(self.site_name)}</p>
        </div>
        """
