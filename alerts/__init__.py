"""Alert system module."""
from alerts.engine import AlertEngine
from alerts.rules_manager import RulesManager, RuleValidationError
from alerts.ledger import NotificationDedupeLedger
from alerts.dispatcher import NotificationDispatcher, DispatchResult
from alerts.channels import ConsoleChannel, FileChannel, SmtpChannel, CompositeSink
