"""
Policy Registry
===============

Holds the static access-control configuration for the school records
system:

- Resources with their sensitive columns and audit requirements
- Row rules keyed by (resource, role), each covering a set of operations
- Column sensitivity rules keyed by resource
- Role time windows for validity-windowed roles

Invariant: for any (resource, operation, role) at most one rule is
active. Registration of a rule whose operation set overlaps an existing
rule for the same resource and role is rejected, unless the two rules
are identical, in which case registration is a no-op.

The registry is written at configuration time and read on every
request. Writes are serialized with a lock; reads take no lock and have
no side effects.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from models.domain import (
    ColumnRule, Operation, PolicyRule, ResourceDescriptor, Role, TimeWindow,
    AuditRequirement
)
from .errors import ConfigurationConflictError, UnknownResourceError

logger = logging.getLogger(__name__)


def _key(name: str) -> str:
    return name.strip().upper()


class PolicyRegistry:
    """
    Registry of resources, row rules, column rules and role windows.

    Lookups are dispatched on the closed Role enumeration, so granting a
    role access is a data change made through register().
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._resources: Dict[str, ResourceDescriptor] = {}
        self._rules: Dict[Tuple[str, Role], Tuple[PolicyRule, ...]] = {}
        self._column_rules: Dict[str, Tuple[ColumnRule, ...]] = {}
        self._windows: Dict[Role, TimeWindow] = {}

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def register_resource(self, descriptor: ResourceDescriptor) -> ResourceDescriptor:
        """
        Register a resource descriptor.

        Re-registering an identical descriptor is a no-op; a different
        descriptor under the same name is a configuration conflict.
        """
        key = _key(descriptor.name)
        with self._lock:
            existing = self._resources.get(key)
            if existing is not None:
                if existing == descriptor:
                    return existing
                raise ConfigurationConflictError(
                    f"Resource '{descriptor.name}' is already registered with a different definition",
                    existing=existing,
                    attempted=descriptor
                )
            self._resources[key] = descriptor
        logger.debug("Registered resource %s", descriptor.name)
        return descriptor

    def resource(self, name: str) -> ResourceDescriptor:
        try:
            return self._resources[_key(name)]
        except KeyError:
            raise UnknownResourceError(f"Unknown resource: {name}") from None

    def has_resource(self, name: str) -> bool:
        return _key(name) in self._resources

    def resources(self) -> List[ResourceDescriptor]:
        return list(self._resources.values())

    def audit_requirement(self, resource: str, operation: Operation) -> AuditRequirement:
        descriptor = self._resources.get(_key(resource))
        if descriptor is None:
            return AuditRequirement.never()
        return descriptor.audit_requirement(operation)

    # ------------------------------------------------------------------
    # Row rules
    # ------------------------------------------------------------------

    def register(self, rule: PolicyRule) -> PolicyRule:
        """
        Register a row rule.

        Args:
            rule: The rule to activate

        Returns:
            The active rule (the existing one if an identical rule was
            already registered)

        Raises:
            UnknownResourceError: If the rule's resource is not registered
            ConfigurationConflictError: If an overlapping, different rule
                already exists for the same resource and role
        """
        if not rule.operations:
            raise ValueError("A policy rule must cover at least one operation")
        resource_key = _key(rule.resource)
        if resource_key not in self._resources:
            raise UnknownResourceError(f"Cannot register rule for unknown resource: {rule.resource}")

        with self._lock:
            key = (resource_key, rule.role)
            existing_rules = self._rules.get(key, ())
            for existing in existing_rules:
                if existing == rule:
                    logger.debug("Rule already registered: %s", rule)
                    return existing
                overlap = existing.operations & rule.operations
                if overlap:
                    ops = ", ".join(sorted(op.value for op in overlap))
                    raise ConfigurationConflictError(
                        f"Rule for role {rule.role.value} on {rule.resource} overlaps "
                        f"existing rule on operations: {ops}",
                        existing=existing,
                        attempted=rule
                    )
            self._rules[key] = existing_rules + (rule,)

        logger.info(
            "Registered %s rule: %s %s on %s",
            rule.effect.kind.value,
            rule.role.value,
            ",".join(sorted(op.value for op in rule.operations)),
            rule.resource
        )
        return rule

    def register_all(self, rules: Iterable[PolicyRule]) -> None:
        for rule in rules:
            self.register(rule)

    def lookup(self, resource: str, operation: Operation, role: Role) -> Optional[PolicyRule]:
        """
        Find the single active rule for (resource, operation, role).

        Returns:
            The matching PolicyRule, or None (callers treat None as Denied)
        """
        for rule in self._rules.get((_key(resource), role), ()):
            if rule.covers(operation):
                return rule
        return None

    def rules(self, resource: Optional[str] = None) -> List[PolicyRule]:
        """List registered rules, optionally for one resource, in a stable order."""
        selected = [
            rule
            for (res, _), rules in self._rules.items()
            if resource is None or res == _key(resource)
            for rule in rules
        ]
        return sorted(
            selected,
            key=lambda r: (_key(r.resource), r.role.value, sorted(op.value for op in r.operations))
        )

    # ------------------------------------------------------------------
    # Column rules
    # ------------------------------------------------------------------

    def register_column_rule(self, rule: ColumnRule) -> ColumnRule:
        resource_key = _key(rule.resource)
        if resource_key not in self._resources:
            raise UnknownResourceError(f"Cannot register column rule for unknown resource: {rule.resource}")
        with self._lock:
            existing = self._column_rules.get(resource_key, ())
            if rule in existing:
                return rule
            self._column_rules[resource_key] = existing + (rule,)
        return rule

    def column_rules(self, resource: str) -> Tuple[ColumnRule, ...]:
        return self._column_rules.get(_key(resource), ())

    # ------------------------------------------------------------------
    # Role windows
    # ------------------------------------------------------------------

    def set_role_window(self, role: Role, window: TimeWindow) -> None:
        with self._lock:
            self._windows[role] = window
        logger.info("Role %s restricted to %s", role.value, window.describe())

    def role_window(self, role: Role) -> Optional[TimeWindow]:
        return self._windows.get(role)
