"""Dataclasses for alert rules, evaluations, history and the notification ledger."""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

from models.enums import AlertStatus, Operator, Severity, ThresholdKind


@dataclass
class AlertRule:
    id: Optional[int] = None
    scope: str = ""
    metric_key: str = ""
    operator: Operator = Operator.GT
    warning_threshold: Optional[float] = None
    critical_threshold: Optional[float] = None
    check_interval_seconds: int = 3600
    cooldown_seconds: int = 3600  # stored for reference; the notification ledger decides repeats
    baseline_value: Optional[float] = None
    baseline_period: str = "previous"
    notify_on_warning: bool = True
    notify_on_critical: bool = True
    notify_on_recovery: bool = True
    notify_roles: list = field(default_factory=list)
    notify_emails: str = ""
    notify_message: bool = True
    notify_email: bool = False
    enabled: bool = True
    name: str = ""
    description: str = ""
    # State, written only by the state machine
    current_status: AlertStatus = AlertStatus.OK
    last_checked_at: Optional[datetime] = None
    last_value: Optional[float] = None
    last_alert_sent_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self):
        return self.name or self.metric_key

    def notifies_for(self, severity):
        """Whether the rule's preferences allow a notification of this severity."""
        return {
            Severity.WARNING: self.notify_on_warning,
            Severity.CRITICAL: self.notify_on_critical,
            Severity.RECOVERY: self.notify_on_recovery,
        }.get(severity, False)


@dataclass
class AlertEvaluation:
    status: AlertStatus = AlertStatus.OK
    value: float = 0.0
    previous_value: Optional[float] = None
    breached_threshold: Optional[float] = None
    threshold_kind: Optional[ThresholdKind] = None
    percent_change: Optional[float] = None
    details: str = ""

    def to_dict(self):
        d = asdict(self)
        d["status"] = self.status.value
        d["threshold_kind"] = self.threshold_kind.value if self.threshold_kind else None
        return d


@dataclass
class AlertHistoryEntry:
    id: Optional[int] = None
    rule_id: int = 0
    scope: str = ""
    metric_key: str = ""
    previous_status: AlertStatus = AlertStatus.OK
    new_status: AlertStatus = AlertStatus.OK
    metric_value: float = 0.0
    threshold_value: Optional[float] = None
    threshold_kind: Optional[str] = None
    evaluation_details: str = "{}"
    notified: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class NotificationLedgerEntry:
    id: Optional[int] = None
    scope: str = ""
    rule_id: int = 0
    severity: Severity = Severity.WARNING
    metric_key: str = ""
    alert_name: str = ""
    triggered_value: Optional[float] = None
    threshold_value: Optional[float] = None
    details: str = ""
    confirmed: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ApplyOutcome:
    rule_id: int = 0
    old_status: AlertStatus = AlertStatus.OK
    new_status: AlertStatus = AlertStatus.OK
    changed: bool = False
    history_id: Optional[int] = None
    evaluation: Optional[AlertEvaluation] = None
    # Filled in by the engine after the notification step
    severity: Optional[Severity] = None
    notified: bool = False
    suppressed: bool = False
    notification_count: int = 0
    notification_errors: list = field(default_factory=list)
    error: Optional[str] = None

    @property
    def persisted_status(self):
        if self.new_status == AlertStatus.RECOVERY:
            return AlertStatus.OK
        return self.new_status


@dataclass
class RenderedMessage:
    """One notification, rendered once and shared by every channel."""
    subject: str = ""
    body: str = ""
    html: str = ""
    severity: Severity = Severity.WARNING
    alert_name: str = ""
    scope: str = ""
    rule_id: int = 0
    value: Optional[float] = None


@dataclass
class StatusSummary:
    total: int = 0
    ok: int = 0
    warning: int = 0
    critical: int = 0
    active_rules: list = field(default_factory=list)
    highest_severity: AlertStatus = AlertStatus.OK
