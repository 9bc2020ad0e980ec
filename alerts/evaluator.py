"""Alert rule evaluation against batches of metric samples."""
import logging
from numbers import Real

from models.alerts import FiredAlert

logger = logging.getLogger("mspalerts.alerts.evaluator")

OPERATOR_MAP = {
    "<": lambda v, t: v < t,
    ">": lambda v, t: v > t,
    "<=": lambda v, t: v <= t,
    ">=": lambda v, t: v >= t,
    "==": lambda v, t: v == t,
    "=": lambda v, t: v == t,
}

# Older agents report usage under different keys
METRIC_ALIASES = {
    "cpu_percent": ("cpu_usage",),
    "memory_percent": ("memory_usage",),
    "disk_percent": ("disk_usage",),
}


def condition_problem(condition):
    """Return a description of what makes ``condition`` unevaluable, or None."""
    if condition is None:
        return "missing condition"
    if not condition.metric:
        return "missing metric"
    if condition.operator not in OPERATOR_MAP:
        return f"unknown operator {condition.operator!r}"
    if condition.threshold is None:
        return "missing threshold"
    if isinstance(condition.threshold, bool) or not isinstance(condition.threshold, Real):
        return f"non-numeric threshold {condition.threshold!r}"
    return None


class RuleEvaluator:
    def extract_metric_value(self, sample, metric):
        """Get the metric value from a sample, falling back to legacy aliases."""
        if metric in sample.values:
            return sample.values[metric]
        for alias in METRIC_ALIASES.get(metric, ()):
            if alias in sample.values:
                return sample.values[alias]
        return None

    def evaluate_condition(self, value, operator, threshold):
        if value is None or not isinstance(value, Real):
            return False
        func = OPERATOR_MAP.get(operator)
        if func is None:
            return False
        return func(value, threshold)

    def evaluate(self, samples, rules):
        """Return one FiredAlert per (rule, sample) pair whose condition holds.

        Rules are independent: a malformed or failing rule is logged and skipped
        so it never blocks the rest of the set.
        """
        fired = []
        for rule in rules:
            problem = condition_problem(rule.condition)
            if problem:
                logger.warning(f"Rule {rule.id} ({rule.name}) never fires: {problem}")
                continue
            try:
                fired.extend(self._evaluate_rule(rule, samples))
            except Exception as e:
                logger.error(f"Rule {rule.id} evaluation failed, skipping: {e}")
        return fired

    def _evaluate_rule(self, rule, samples):
        cond = rule.condition
        matches = []
        for sample in samples:
            value = self.extract_metric_value(sample, cond.metric)
            if value is None:
                continue
            if self.evaluate_condition(value, cond.operator, cond.threshold):
                matches.append(FiredAlert(rule=rule, sample=sample, metric_value=value))
        return matches

    def test_rules(self, sample, rules):
        """Report, for every rule, whether it would fire on ``sample``."""
        results = []
        for rule in rules:
            cond = rule.condition
            value = self.extract_metric_value(sample, cond.metric) if cond.metric else None
            problem = condition_problem(cond)
            would_fire = problem is None and self.evaluate_condition(value, cond.operator, cond.threshold)
            results.append({
                "rule_id": rule.id,
                "name": rule.name,
                "metric": cond.metric,
                "operator": cond.operator,
                "threshold": cond.threshold,
                "current_value": value,
                "would_fire": would_fire,
                "problem": problem,
                "severity": rule.severity.value,
                "scope": rule.device_id or "global",
            })
        return results
