"""
Predicate Evaluator
===================

Turns (identity, resource, operation) into an AccessDecision:

1. Role time window: validity-windowed roles outside their window are
   rejected with OutOfWindowError before anything else is computed.
2. Rule lookup: no rule means DENIED (fail-closed), never "all rows".
3. Unrestricted rules yield a MatchAll filter.
4. Filtered rules bind their template to the identity. Any binding
   failure (no owned ids, no department, lookup unavailable) degrades to
   a zero-row MatchNone filter.
5. Masked columns are computed from column rules independently of the
   row effect. When several rules disagree about one column, masked wins.

The evaluator holds no mutable state of its own and is safe to call
from many request threads at once.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, Mapping, Optional

from models.domain import (
    AccessDecision, ColumnRule, EffectKind, Filtered, Identity, MaskStyle,
    Operation, Unrestricted
)
from .errors import OutOfWindowError, PredicateBindingFailure
from .predicates import MatchAll, MatchNone, OwnershipLookup
from .registry import PolicyRegistry

logger = logging.getLogger(__name__)

MASK_CHARACTER = "*"
PARTIAL_VISIBLE_CHARS = 4


class PredicateEvaluator:
    """
    Policy decision point for row filtering and column masking.

    Args:
        registry: Policy registry holding rules and column rules
        ownership: Ownership lookup used to bind OwnedRows templates
        clock: Source of the current time (defaults to datetime.utcnow)
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        ownership: Optional[OwnershipLookup] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.registry = registry
        self.ownership = ownership
        self.clock = clock

    def evaluate(
        self,
        identity: Identity,
        resource: str,
        operation: Operation,
        at: Optional[datetime] = None
    ) -> AccessDecision:
        """
        Evaluate an access request.

        Args:
            identity: Resolved caller identity
            resource: Target resource name
            operation: Requested operation
            at: Moment of the request (defaults to the evaluator's clock)

        Returns:
            AccessDecision with filter predicate and masked columns

        Raises:
            OutOfWindowError: If the role is time-gated and ``at`` is outside
        """
        moment = at or self.clock()
        self.check_window(identity, moment)

        masked = self.masked_columns(identity, resource)
        rule = self.registry.lookup(resource, operation, identity.role)

        if rule is None:
            logger.info(
                "No rule for %s %s on %s; denying",
                identity.role.value, operation.value, resource
            )
            return AccessDecision(
                resource=resource,
                operation=operation,
                effect=EffectKind.DENIED,
                filter=MatchNone("no matching rule"),
                masked_columns=masked | self._sensitive_columns(resource)
            )

        effect = rule.effect
        if isinstance(effect, Unrestricted):
            predicate = MatchAll()
        elif isinstance(effect, Filtered):
            try:
                predicate = effect.template.bind(identity, self.ownership)
            except PredicateBindingFailure as e:
                logger.warning("Predicate binding failed for %s on %s: %s", identity.id, resource, e)
                predicate = MatchNone(str(e))
        else:
            return AccessDecision(
                resource=resource,
                operation=operation,
                effect=EffectKind.DENIED,
                filter=MatchNone("denied by rule"),
                masked_columns=masked | self._sensitive_columns(resource),
                rule=rule
            )

        return AccessDecision(
            resource=resource,
            operation=operation,
            effect=effect.kind,
            filter=predicate,
            masked_columns=masked,
            rule=rule
        )

    def check_window(self, identity: Identity, moment: datetime) -> None:
        window = self.registry.role_window(identity.role)
        if window is not None and not window.contains(moment):
            logger.warning("Out-of-window access by %s (%s) at %s", identity.id, identity.role.value, moment)
            raise OutOfWindowError(identity.role, moment, window)

    def masked_columns(self, identity: Identity, resource: str) -> FrozenSet[str]:
        """
        Columns the identity may not see on this resource.

        A column is masked if any of its rules denies visibility, so a
        malformed configuration with conflicting rules fails closed.
        """
        visible: Dict[str, bool] = {}
        for rule in self.registry.column_rules(resource):
            column = rule.column.upper()
            visible[column] = visible.get(column, True) and rule.is_visible_to(identity)
        return frozenset(column for column, ok in visible.items() if not ok)

    def _sensitive_columns(self, resource: str) -> FrozenSet[str]:
        if not self.registry.has_resource(resource):
            return frozenset()
        return frozenset(c.upper() for c in self.registry.resource(resource).sensitive_columns)


# ============================================================================
# Reference application of a decision to in-memory rows
# ============================================================================

def mask_value(value: Any, style: MaskStyle = MaskStyle.FULL) -> Any:
    """Obscure a single value; None stays None."""
    if value is None:
        return None
    text = str(value)
    if style is MaskStyle.PARTIAL and len(text) > PARTIAL_VISIBLE_CHARS:
        return MASK_CHARACTER * (len(text) - PARTIAL_VISIBLE_CHARS) + text[-PARTIAL_VISIBLE_CHARS:]
    return MASK_CHARACTER * len(text)


def apply_decision(
    rows: Iterable[Mapping[str, Any]],
    decision: AccessDecision,
    column_rules: Iterable[ColumnRule] = ()
) -> Iterator[Dict[str, Any]]:
    """
    Filter and mask rows according to a decision.

    This is what a query layer does with a decision when the rows are
    already in memory. Denied decisions yield nothing.

    Args:
        rows: Candidate rows as mappings
        decision: Decision returned by the evaluator
        column_rules: Column rules for the resource, used to pick a mask style

    Yields:
        Copies of the visible rows with masked columns obscured
    """
    if decision.is_denied:
        return
    styles: Dict[str, MaskStyle] = {}
    for rule in column_rules:
        column = rule.column.upper()
        if column in decision.masked_columns:
            # Full masking wins over partial when rules disagree
            if styles.get(column) is not MaskStyle.FULL:
                styles[column] = rule.mask_style

    for row in rows:
        if not decision.filter.matches(row):
            continue
        visible = {}
        for key, value in row.items():
            column = str(key).upper()
            if column in decision.masked_columns:
                visible[key] = mask_value(value, styles.get(column, MaskStyle.FULL))
            else:
                visible[key] = value
        yield visible
