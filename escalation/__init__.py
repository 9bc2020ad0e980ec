"""Escalation module."""
from escalation.engine import EscalationEngine
from escalation.policies import PolicyStore, PolicyValidationError, validate_policy
from escalation.directory import RoleDirectory, StaticDirectory
