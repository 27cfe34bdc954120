"""
Domain Types for School Records Access Control
==============================================

Value objects shared by the policy registry, the predicate evaluator,
the audit obligation engine and the anomaly monitor.

Roles and operations are closed enumerations. Row rule effects are a
tagged variant (Unrestricted / Filtered / Denied) so that adding a role
or changing what a role may see is a registry change, not a code change.

All value objects are immutable: an Identity lives for exactly one
session, audit records are append-only, and rules are static
configuration loaded once at startup.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union


class Role(enum.Enum):
    """Closed set of staff roles known to the school records system."""
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    COUNSELOR = "COUNSELOR"
    REGISTRAR = "REGISTRAR"
    READ_ONLY = "READ_ONLY"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a role name leniently; unknown names map to OTHER."""
        normalized = value.strip().upper().replace("-", "_").replace(" ", "_")
        if normalized == "READONLY":
            normalized = "READ_ONLY"
        try:
            return cls(normalized)
        except ValueError:
            return cls.OTHER


class Operation(enum.Enum):
    """Operations that can be requested against a resource."""
    READ = "READ"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @property
    def is_mutation(self) -> bool:
        return self is not Operation.READ

    @classmethod
    def parse(cls, value: str) -> "Operation":
        normalized = value.strip().upper()
        if normalized == "SELECT":
            return cls.READ
        return cls(normalized)


ALL_OPERATIONS: FrozenSet[Operation] = frozenset(Operation)
MUTATIONS: FrozenSet[Operation] = frozenset(op for op in Operation if op.is_mutation)


class Outcome(enum.Enum):
    """Outcome recorded for an access attempt."""
    ALLOWED = "ALLOWED"
    FILTERED = "FILTERED"
    DENIED = "DENIED"


class EventType(enum.Enum):
    """Kinds of events written to the audit trail."""
    ACCESS = "ACCESS"
    LOGON = "LOGON"
    PRIVILEGE_CHANGE = "PRIVILEGE_CHANGE"


class Severity(enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class EffectKind(enum.Enum):
    UNRESTRICTED = "UNRESTRICTED"
    FILTERED = "FILTERED"
    DENIED = "DENIED"


class AuditMode(enum.Enum):
    """When an access to a (resource, operation) pair must be recorded."""
    ALWAYS = "ALWAYS"
    CONDITIONAL = "CONDITIONAL"  # only when a listed column is touched
    NEVER = "NEVER"


class ColumnTreatment(enum.Enum):
    MASKED = "MASKED"
    ENCRYPTED_AT_REST = "ENCRYPTED_AT_REST"  # storage encryption is external


class MaskStyle(enum.Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"  # keep the trailing characters visible


# ============================================================================
# Identity
# ============================================================================

@dataclass(frozen=True)
class Identity:
    """
    Resolved caller identity for the duration of one session.

    Args:
        id: Stable user identifier (e.g. 'TEACHER_USER' or a staff number)
        role: The caller's single active role
        department: Scoping attribute used by department-bound predicates
        session_start: When the session was opened
    """
    id: str
    role: Role
    department: Optional[str] = None
    session_start: datetime = field(default_factory=datetime.utcnow)


# ============================================================================
# Policy configuration
# ============================================================================

@dataclass(frozen=True)
class AuditRequirement:
    mode: AuditMode = AuditMode.NEVER
    columns: FrozenSet[str] = frozenset()

    @classmethod
    def always(cls) -> "AuditRequirement":
        return cls(AuditMode.ALWAYS)

    @classmethod
    def never(cls) -> "AuditRequirement":
        return cls(AuditMode.NEVER)

    @classmethod
    def on_columns(cls, *columns: str) -> "AuditRequirement":
        return cls(AuditMode.CONDITIONAL, frozenset(c.upper() for c in columns))

    def applies(self, touched_columns) -> bool:
        """Return True if an access touching these columns must be audited."""
        if self.mode is AuditMode.ALWAYS:
            return True
        if self.mode is AuditMode.CONDITIONAL:
            touched = {c.upper() for c in touched_columns}
            return bool(self.columns & touched)
        return False


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    A named collection of records with its declared sensitive columns
    and per-operation audit requirements.
    """
    name: str
    sensitive_columns: FrozenSet[str] = frozenset()
    audit: Tuple[Tuple[Operation, AuditRequirement], ...] = ()
    description: str = ""

    def audit_requirement(self, operation: Operation) -> AuditRequirement:
        for op, requirement in self.audit:
            if op is operation:
                return requirement
        return AuditRequirement.never()


@dataclass(frozen=True)
class Unrestricted:
    kind = EffectKind.UNRESTRICTED


@dataclass(frozen=True)
class Denied:
    kind = EffectKind.DENIED


@dataclass(frozen=True)
class Filtered:
    """Rows are restricted by a predicate template bound per identity."""
    template: Any  # core.predicates.PredicateTemplate
    kind = EffectKind.FILTERED


Effect = Union[Unrestricted, Filtered, Denied]


@dataclass(frozen=True)
class PolicyRule:
    """
    Row-level rule for one role on one resource.

    At most one rule may be active for a given (resource, operation, role);
    the registry rejects overlapping operation sets.
    """
    resource: str
    operations: FrozenSet[Operation]
    role: Role
    effect: Effect

    def covers(self, operation: Operation) -> bool:
        return operation in self.operations


@dataclass(frozen=True)
class ColumnRule:
    """Column is visible to the listed roles and masked for everybody else."""
    resource: str
    column: str
    visible_to: FrozenSet[Role]
    treatment: ColumnTreatment = ColumnTreatment.MASKED
    mask_style: MaskStyle = MaskStyle.FULL

    def is_visible_to(self, identity: Identity) -> bool:
        return identity.role in self.visible_to


def hour_in_range(hour: int, start_hour: int, end_hour: int) -> bool:
    """Inclusive hour range; wraps past midnight when start_hour > end_hour."""
    if start_hour <= end_hour:
        return start_hour <= hour <= end_hour
    return hour >= start_hour or hour <= end_hour


@dataclass(frozen=True)
class TimeWindow:
    """
    Hours (inclusive, 24h clock) and weekdays (0 = Monday) a role may act in.

    An hour value is compared at hour granularity, so a window of 7-18
    admits 18:59 and rejects 19:00. A start later than the end wraps past
    midnight: 22-6 admits 23:30 and 05:59 and rejects 07:00. Weekdays are
    those of the moment being checked.
    """
    start_hour: int
    end_hour: int
    weekdays: FrozenSet[int] = frozenset(range(7))

    def __post_init__(self):
        for hour in (self.start_hour, self.end_hour):
            if not 0 <= hour <= 23:
                raise ValueError(f"Hour out of range 0-23: {hour}")

    def contains(self, moment: datetime) -> bool:
        if moment.weekday() not in self.weekdays:
            return False
        return hour_in_range(moment.hour, self.start_hour, self.end_hour)

    def describe(self) -> str:
        days = "Mon-Fri" if self.weekdays == frozenset(range(5)) else (
            "daily" if self.weekdays == frozenset(range(7)) else
            ",".join(str(d) for d in sorted(self.weekdays))
        )
        return f"{self.start_hour:02d}:00-{self.end_hour:02d}:59 {days}"


# ============================================================================
# Decisions, audit records and alerts
# ============================================================================

@dataclass(frozen=True)
class AccessDecision:
    """
    Result of evaluating one access request.

    The query layer must apply ``filter`` to every row and blank out
    ``masked_columns``. A DENIED effect means the request is refused.
    """
    resource: str
    operation: Operation
    effect: EffectKind
    filter: Any  # core.predicates.Predicate
    masked_columns: FrozenSet[str] = frozenset()
    rule: Optional[PolicyRule] = None

    @property
    def is_denied(self) -> bool:
        return self.effect is EffectKind.DENIED

    @property
    def outcome(self) -> Outcome:
        if self.effect is EffectKind.DENIED:
            return Outcome.DENIED
        if self.effect is EffectKind.FILTERED:
            return Outcome.FILTERED
        return Outcome.ALLOWED


@dataclass(frozen=True)
class AuditRecord:
    sequence_id: int
    timestamp: datetime
    event_type: EventType
    identity_id: str
    role: Role
    outcome: Outcome
    resource: Optional[str] = None
    operation: Optional[Operation] = None
    columns: FrozenSet[str] = frozenset()
    before: Optional[str] = None
    after: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence_id': self.sequence_id,
            'timestamp': self.timestamp.isoformat(),
            'event_type': self.event_type.value,
            'identity_id': self.identity_id,
            'role': self.role.value,
            'outcome': self.outcome.value,
            'resource': self.resource,
            'operation': self.operation.value if self.operation else None,
            'columns': sorted(self.columns),
            'before': self.before,
            'after': self.after,
            'detail': self.detail,
        }


@dataclass(frozen=True)
class Alert:
    alert_type: str
    message: str
    severity: Severity
    raised_at: datetime
    id: Optional[int] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def with_id(self, alert_id: int) -> "Alert":
        return replace(self, id=alert_id)

    def resolved(self, resolved_by: str, at: datetime) -> "Alert":
        return replace(self, resolved_at=at, resolved_by=resolved_by)
