"""
School Records Access Control Facade
====================================

Single entry point used by the query-execution layer, the scheduler and
operator tooling. It wires together:

- IdentityContext: token -> Identity
- PredicateEvaluator: row filter and masked columns
- AuditObligationEngine: audit records for accesses and security events
- AnomalyMonitor: threshold checks over the audit trail

Request flow:

    identity = service.authenticate(token)
    decision = service.evaluate_access(identity, "STUDENTS", Operation.READ)
    ... query layer applies decision.filter and decision.masked_columns ...
    service.record_access(identity, "STUDENTS", Operation.READ, decision.outcome)

Denied decisions must be refused by the caller, which still reports the
attempt through record_access. An OutOfWindowError is recorded here
(when the resource requires it) before it propagates, because the caller
never receives a decision in that case.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from models.domain import (
    AccessDecision, Alert, AuditRecord, EventType, Identity, Operation, Outcome, Role
)
from .alerts import AlertSink, SQLAlertSink
from .audit import AuditObligationEngine, AuditStore, SQLAuditStore
from .errors import AuditAppendFailure, AuthenticationError, OutOfWindowError
from .evaluator import PredicateEvaluator
from .identity import IdentityContext, SessionStore, SQLSessionStore
from .monitor import AnomalyCheck, AnomalyMonitor, default_checks
from .predicates import OwnershipLookup
from .registry import PolicyRegistry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

UNKNOWN_IDENTITY = "unknown"


def checks_from_settings(settings: Settings) -> List[AnomalyCheck]:
    return default_checks(
        failed_login_threshold=settings.failed_login_threshold,
        off_hours_threshold=settings.off_hours_threshold,
        grade_change_threshold=settings.grade_change_threshold,
        sensitive_read_threshold=settings.sensitive_read_threshold,
        allowed_hours=(settings.allowed_hours_start, settings.allowed_hours_end),
        grade_resource=settings.grade_resource,
        sensitive_resource=settings.sensitive_resource
    )


class SchoolAccessControl:
    """
    Access-control decision and audit-obligation engine.

    Args:
        registry: Configured policy registry
        sessions: Session store used to resolve tokens
        audit_store: Durable audit trail
        alert_sink: Destination for anomaly alerts
        ownership: Ownership lookup for filtered rules
        settings: Thresholds, retry and retention configuration
        checks: Anomaly checks (defaults to the configured standard set)
        clock: Source of the current time
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        sessions: SessionStore,
        audit_store: AuditStore,
        alert_sink: AlertSink,
        ownership: Optional[OwnershipLookup] = None,
        settings: Optional[Settings] = None,
        checks: Optional[Sequence[AnomalyCheck]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.registry = registry
        self.audit_store = audit_store
        self.alert_sink = alert_sink
        self.identity = IdentityContext(sessions, clock=clock)
        self.evaluator = PredicateEvaluator(registry, ownership, clock=clock)
        self.audit = AuditObligationEngine(
            registry,
            audit_store,
            retry_policy=RetryPolicy(
                retry_limit=self.settings.audit_retry_limit,
                base_delay=self.settings.audit_retry_base_delay
            ),
            clock=clock
        )
        self.monitor = AnomalyMonitor(
            audit_store,
            alert_sink,
            checks=checks if checks is not None else checks_from_settings(self.settings),
            deduplicate=self.settings.deduplicate_alerts,
            clock=clock
        )

    @classmethod
    def from_settings(
        cls,
        registry: PolicyRegistry,
        ownership: Optional[OwnershipLookup] = None,
        session_factory: Optional[sessionmaker] = None,
        settings: Optional[Settings] = None
    ) -> "SchoolAccessControl":
        """Build a service backed by the SQL adapters."""
        return cls(
            registry=registry,
            sessions=SQLSessionStore(session_factory),
            audit_store=SQLAuditStore(session_factory),
            alert_sink=SQLAlertSink(session_factory),
            ownership=ownership,
            settings=settings
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def authenticate(self, token: str) -> Identity:
        """
        Resolve a session token and record the logon attempt.

        Raises:
            AuthenticationError: If the session cannot be resolved
        """
        try:
            identity = self.identity.resolve(token)
        except AuthenticationError as e:
            logger.warning("Authentication failed: %s", e)
            try:
                self.audit.record_event(
                    UNKNOWN_IDENTITY, Role.OTHER, EventType.LOGON, Outcome.DENIED, detail=str(e)
                )
            except AuditAppendFailure as failure:
                logger.error("Failed logon could not be audited: %s", failure)
            raise
        self.audit.record_event(identity.id, identity.role, EventType.LOGON, Outcome.ALLOWED)
        return identity

    def record_failed_login(self, user_id: str, reason: str = "invalid credentials") -> AuditRecord:
        """Record a failed credential check made outside the session store."""
        return self.audit.record_event(
            user_id, Role.OTHER, EventType.LOGON, Outcome.DENIED, detail=reason
        )

    def record_privilege_change(
        self,
        actor: Identity,
        target_user: str,
        privilege: str,
        granted: bool = True
    ) -> AuditRecord:
        """Record a GRANT or REVOKE performed by an administrator."""
        verb = "GRANT" if granted else "REVOKE"
        return self.audit.record_event(
            actor.id,
            actor.role,
            EventType.PRIVILEGE_CHANGE,
            Outcome.ALLOWED,
            detail=f"{verb} {privilege} {'TO' if granted else 'FROM'} {target_user}"
        )

    # ------------------------------------------------------------------
    # Access decisions
    # ------------------------------------------------------------------

    def evaluate_access(
        self,
        identity: Identity,
        resource: str,
        operation: Operation,
        at: Optional[datetime] = None
    ) -> AccessDecision:
        """
        Decide the row filter and masked columns for a request.

        Raises:
            OutOfWindowError: If the role is used outside its window; the
                denied attempt has been recorded when auditing requires it
        """
        try:
            return self.evaluator.evaluate(identity, resource, operation, at=at)
        except OutOfWindowError as e:
            self.audit.record_if_required(
                identity, resource, operation, Outcome.DENIED, at=at, detail=str(e)
            )
            raise

    def record_access(
        self,
        identity: Identity,
        resource: str,
        operation: Operation,
        outcome: Outcome,
        columns: Iterable[str] = (),
        before: Optional[str] = None,
        after: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> Optional[AuditRecord]:
        """
        Record an access after (or instead of) executing it.

        Raises:
            AuditAppendFailure: If the access is ALWAYS audited and the
                store is unavailable; the caller must fail the access
        """
        return self.audit.record_if_required(
            identity, resource, operation, outcome,
            columns=columns, before=before, after=after, at=at
        )

    def access_summary(self, identity: Identity, at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Summarize what an identity can do on every resource.

        Useful for access reviews and compliance reporting.
        """
        summary: Dict[str, Any] = {
            'identity': {'id': identity.id, 'role': identity.role.value, 'department': identity.department},
            'resources': {}
        }
        for descriptor in self.registry.resources():
            entry = {}
            for operation in Operation:
                try:
                    decision = self.evaluator.evaluate(identity, descriptor.name, operation, at=at)
                except OutOfWindowError:
                    entry[operation.value] = {'effect': 'OUT_OF_WINDOW'}
                    continue
                entry[operation.value] = {
                    'effect': decision.effect.value,
                    'filter': decision.filter.describe(),
                    'masked': sorted(decision.masked_columns)
                }
            summary['resources'][descriptor.name] = entry
        return summary

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def run_anomaly_scan(self, window: Optional[timedelta] = None, now: Optional[datetime] = None) -> List[Alert]:
        if window is None:
            window = timedelta(minutes=self.settings.scan_window_minutes)
        return self.monitor.scan(window, now=now)

    def resolve_alert(self, alert_id: int, resolved_by: str) -> Alert:
        """
        Mark an alert resolved.

        Raises:
            AlertNotFoundError: If the alert does not exist
        """
        alert = self.alert_sink.mark_resolved(alert_id, resolved_by, at=self.clock())
        logger.info("Alert %d (%s) resolved by %s", alert_id, alert.alert_type, resolved_by)
        return alert

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_audit_before(self, timestamp: datetime) -> int:
        purged = self.audit_store.purge_before(timestamp)
        logger.info("Purged %d audit record(s) older than %s", purged, timestamp.isoformat())
        return purged

    def purge_expired_audit(self) -> int:
        cutoff = self.clock() - timedelta(days=self.settings.audit_retention_days)
        return self.purge_audit_before(cutoff)
