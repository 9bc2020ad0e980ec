"""Escalation policy authoring: validation, storage, and YAML loading."""
import logging
from datetime import datetime, timezone
from pathlib import Path

import yaml

from models.enums import Severity
from models.escalation import EscalationPolicy, EscalationStep

logger = logging.getLogger("mspalerts.escalation.policies")


class PolicyValidationError(ValueError):
    """Raised when an escalation policy is rejected at authoring time."""


def validate_policy(policy):
    """Check the authoring invariants; raises PolicyValidationError on the first violation."""
    if not policy.id:
        raise PolicyValidationError("Policy id is required")
    if not policy.policy_name or not policy.policy_name.strip():
        raise PolicyValidationError(f"Policy {policy.id}: name is required")
    if policy.trigger_after_minutes < 1:
        raise PolicyValidationError(f"Policy {policy.id}: trigger_after_minutes must be at least 1")
    if not policy.trigger_severities:
        raise PolicyValidationError(f"Policy {policy.id}: at least one trigger severity is required")
    if policy.enabled and not policy.steps:
        raise PolicyValidationError(f"Policy {policy.id}: an enabled policy needs at least one step")
    for step in policy.steps:
        if step.wait_minutes < 0:
            raise PolicyValidationError(f"Policy {policy.id} step {step.order}: wait_minutes cannot be negative")
        if not step.roles:
            raise PolicyValidationError(f"Policy {policy.id} step {step.order}: select at least one role")
        if not step.channels:
            raise PolicyValidationError(
                f"Policy {policy.id} step {step.order}: enable at least one notification channel"
            )
    orders = [s.order for s in policy.steps]
    if len(orders) != len(set(orders)):
        raise PolicyValidationError(f"Policy {policy.id}: step orders must be unique")


class PolicyStore:
    def __init__(self, db):
        self.db = db

    def save_policy(self, policy, now=None):
        validate_policy(policy)
        self.db.upsert_policy(policy, now or datetime.now(timezone.utc))
        logger.info(f"Saved escalation policy {policy.id} ({policy.policy_name}), {len(policy.steps)} steps")
        return policy

    def get_policy(self, policy_id):
        return self.db.get_policy(policy_id)

    def list_policies(self, enabled_only=False):
        return self.db.list_policies(enabled_only=enabled_only)

    def load_yaml(self, policies_path):
        """Validate and store every policy in a YAML file; invalid ones are logged and skipped."""
        path = Path(policies_path)
        if not path.exists():
            logger.warning(f"Escalation policies file not found: {path}")
            return []
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        saved = []
        for raw in data.get("policies", []):
            try:
                saved.append(self.save_policy(parse_policy(raw)))
            except (PolicyValidationError, KeyError, ValueError) as e:
                logger.warning(f"Skipping escalation policy {raw.get('id')}: {e}")
        logger.info(f"Loaded {len(saved)} escalation policies from {path}")
        return saved


def parse_policy(raw):
    return EscalationPolicy(
        id=str(raw["id"]),
        policy_name=raw.get("policy_name", raw["id"]),
        description=raw.get("description", ""),
        trigger_severities=frozenset(
            Severity(str(s).lower()) for s in raw.get("trigger_severities", ["high", "critical"])
        ),
        trigger_after_minutes=int(raw.get("trigger_after_minutes", 30)),
        enabled=raw.get("enabled", True),
        steps=[EscalationStep.from_dict(s) for s in raw.get("steps", [])],
    )
