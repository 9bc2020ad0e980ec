"""Alert system module."""
from alerts.evaluator import RuleEvaluator
from alerts.rule_store import RuleStore, RuleValidationError
from alerts.instances import AlertInstanceManager
from alerts.events import EventBus, AlertEvent
from alerts.channels import AlertChannel, ConsoleChannel, FileChannel
