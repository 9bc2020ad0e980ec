"""Alert rule storage, scope resolution, and YAML seeding."""
import logging
from datetime import datetime, timezone
from pathlib import Path

import yaml

from alerts.evaluator import condition_problem
from models.alerts import AlertCondition, AlertRule
from models.enums import Severity

logger = logging.getLogger("mspalerts.alerts.rules")


class RuleValidationError(ValueError):
    """Raised when an authored rule cannot be stored."""


def validate_rule(rule):
    """Raise RuleValidationError unless ``rule`` can be stored and evaluated."""
    if not rule.id:
        raise RuleValidationError("Rule id is required")
    if not rule.name:
        raise RuleValidationError(f"Rule {rule.id}: name is required")
    if not isinstance(rule.severity, Severity):
        raise RuleValidationError(f"Rule {rule.id}: invalid severity {rule.severity!r}")
    problem = condition_problem(rule.condition)
    if problem:
        raise RuleValidationError(f"Rule {rule.id}: {problem}")


class RuleStore:
    def __init__(self, db):
        self.db = db

    def find_applicable_rules(self, device_id):
        """Active, non-deleted rules for ``device_id`` or global, device-specific first."""
        return self.db.find_rules_for_device(device_id)

    def find_effective_rules(self, device_id):
        """Applicable rules with scope precedence applied.

        A global rule is dropped when a rule scoped to this device watches the
        same metric. Duplicate device-scoped rules all stay, in creation order.
        """
        rules = self.find_applicable_rules(device_id)
        # a device rule that can never fire must not hide the global one
        device_metrics = {
            r.condition.metric for r in rules
            if not r.is_global and condition_problem(r.condition) is None
        }
        effective = []
        for rule in rules:
            if rule.is_global and rule.condition.metric in device_metrics:
                logger.debug(f"Global rule {rule.id} shadowed for device {device_id}")
                continue
            effective.append(rule)
        return effective

    def save_rule(self, rule, now=None):
        validate_rule(rule)
        self.db.upsert_rule(rule, now or datetime.now(timezone.utc))
        return rule

    def soft_delete_rule(self, rule_id, now=None):
        deleted = self.db.soft_delete_rule(rule_id, now or datetime.now(timezone.utc))
        if deleted:
            logger.info(f"Rule {rule_id} soft-deleted")
        return deleted

    def get_rule(self, rule_id):
        return self.db.get_rule(rule_id)

    def list_rules(self, include_deleted=False):
        return self.db.list_rules(include_deleted=include_deleted)

    def load_yaml(self, rules_path):
        """Upsert every valid rule from a YAML file; returns the stored rules."""
        path = Path(rules_path)
        if not path.exists():
            logger.warning(f"Alert rules file not found: {path}")
            return []
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        rules = []
        for rule in self._parse_rules(data.get("rules", [])):
            try:
                self.save_rule(rule)
            except RuleValidationError as e:
                logger.warning(f"Skipping rule: {e}")
                continue
            rules.append(rule)
        logger.info(f"Loaded {len(rules)} rules from {path}")
        return rules

    def _parse_rules(self, raw_rules):
        rules = []
        for r in raw_rules:
            if not isinstance(r, dict) or not r.get("id"):
                logger.warning(f"Rule entry without id: {r}")
                continue
            condition = r.get("condition") or {}
            try:
                severity = Severity(str(r.get("severity", "medium")).lower())
            except ValueError:
                logger.warning(f"Invalid severity in rule {r['id']}: {r.get('severity')}")
                continue
            rules.append(AlertRule(
                id=str(r["id"]),
                name=r.get("name", r["id"]),
                alert_type=r.get("alert_type", "threshold"),
                severity=severity,
                device_id=r.get("device_id"),
                condition=AlertCondition(
                    metric=condition.get("metric", ""),
                    operator=condition.get("operator", ""),
                    threshold=_threshold(condition.get("threshold")),
                ),
                is_active=r.get("is_active", True),
                description=r.get("description", ""),
            ))
        return rules


def _threshold(value):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return value
