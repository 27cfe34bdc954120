"""
Audit Obligation Engine
=======================

Decides whether an access must be recorded and appends the resulting
audit record to a durable, append-only store.

Every resource declares, per operation, an audit requirement:

- ALWAYS: every attempt is recorded, whatever its outcome
- CONDITIONAL(columns): recorded only if the access touches a listed column
- NEVER: not recorded

Allowed, filtered and denied attempts are all recordable. Sequence ids
are unique and strictly increasing across concurrent callers (gaps are
acceptable). Appends are retried with backoff; if the store stays
unavailable and the requirement is ALWAYS, AuditAppendFailure is raised
so the triggering access fails closed instead of proceeding un-audited.

Stores:
- InMemoryAuditStore: development and tests
- SQLAuditStore: SQLAlchemy table ``audit_records``, with reporting
  helpers (statistics, export for SIEM ingestion)
"""

import csv
import io
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from models.database import get_session
from models.domain import (
    AuditMode, AuditRecord, EventType, Identity, Operation, Outcome, Role
)
from models.entities import AuditRecordRow, AuditSequence
from .errors import AuditAppendFailure
from .registry import PolicyRegistry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

SEQUENCE_NAME = "audit_records"


# ============================================================================
# Store port and adapters
# ============================================================================

class AuditStore(ABC):
    """Durable append-only audit trail."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        ...

    @abstractmethod
    def query(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        resource: Optional[str] = None,
        identity_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        outcome: Optional[Outcome] = None,
        limit: Optional[int] = None
    ) -> Iterator[AuditRecord]:
        """Stream matching records in sequence order (oldest first)."""
        ...

    @abstractmethod
    def purge_before(self, timestamp: datetime) -> int:
        """Retention hook: delete records older than timestamp, return count."""
        ...

    @abstractmethod
    def last_sequence_id(self) -> int:
        """Highest sequence id ever appended, including purged records."""
        ...


def _matches(
    record: AuditRecord,
    since: Optional[datetime],
    until: Optional[datetime],
    resource: Optional[str],
    identity_id: Optional[str],
    event_type: Optional[EventType],
    outcome: Optional[Outcome]
) -> bool:
    if since is not None and record.timestamp < since:
        return False
    if until is not None and record.timestamp > until:
        return False
    if resource is not None and (record.resource or "").upper() != resource.upper():
        return False
    if identity_id is not None and record.identity_id != identity_id:
        return False
    if event_type is not None and record.event_type is not event_type:
        return False
    if outcome is not None and record.outcome is not outcome:
        return False
    return True


class InMemoryAuditStore(AuditStore):
    """
    In-memory audit trail.

    Readers take a snapshot under a short lock and iterate it without
    blocking writers.
    """

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._high_water = 0
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._high_water = max(self._high_water, record.sequence_id)

    def query(self, since=None, until=None, resource=None, identity_id=None,
              event_type=None, outcome=None, limit=None) -> Iterator[AuditRecord]:
        with self._lock:
            snapshot = list(self._records)
        snapshot.sort(key=lambda r: r.sequence_id)
        emitted = 0
        for record in snapshot:
            if limit is not None and emitted >= limit:
                return
            if _matches(record, since, until, resource, identity_id, event_type, outcome):
                emitted += 1
                yield record

    def purge_before(self, timestamp: datetime) -> int:
        with self._lock:
            kept = [r for r in self._records if r.timestamp >= timestamp]
            purged = len(self._records) - len(kept)
            self._records = kept
        return purged

    def last_sequence_id(self) -> int:
        with self._lock:
            return self._high_water

    def __len__(self):
        with self._lock:
            return len(self._records)


def _to_row(record: AuditRecord) -> AuditRecordRow:
    return AuditRecordRow(
        sequence_id=record.sequence_id,
        timestamp=record.timestamp,
        event_type=record.event_type,
        identity_id=record.identity_id,
        role=record.role,
        resource=record.resource,
        operation=record.operation.value if record.operation else None,
        columns=",".join(sorted(record.columns)) or None,
        outcome=record.outcome,
        before_value=record.before,
        after_value=record.after,
        detail=record.detail
    )


def _from_row(row: AuditRecordRow) -> AuditRecord:
    return AuditRecord(
        sequence_id=row.sequence_id,
        timestamp=row.timestamp,
        event_type=row.event_type,
        identity_id=row.identity_id,
        role=row.role,
        outcome=row.outcome,
        resource=row.resource,
        operation=Operation(row.operation) if row.operation else None,
        columns=frozenset(row.columns.split(",")) if row.columns else frozenset(),
        before=row.before_value,
        after=row.after_value,
        detail=row.detail
    )


class SQLAuditStore(AuditStore):
    """
    Audit trail persisted in the ``audit_records`` table.

    Each call runs in its own short session, so readers see committed
    rows only and never block the request path.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def append(self, record: AuditRecord) -> None:
        with get_session(self.session_factory) as session:
            session.add(_to_row(record))
            # Same transaction as the record, so the mark never lags a stored id
            mark = session.query(AuditSequence).filter(AuditSequence.name == SEQUENCE_NAME).first()
            if mark is None:
                session.add(AuditSequence(name=SEQUENCE_NAME, value=record.sequence_id))
            elif record.sequence_id > mark.value:
                mark.value = record.sequence_id

    def _filtered(self, session, since=None, until=None, resource=None, identity_id=None,
                  event_type=None, outcome=None):
        query = session.query(AuditRecordRow)
        if since is not None:
            query = query.filter(AuditRecordRow.timestamp >= since)
        if until is not None:
            query = query.filter(AuditRecordRow.timestamp <= until)
        if resource is not None:
            query = query.filter(func.upper(AuditRecordRow.resource) == resource.upper())
        if identity_id is not None:
            query = query.filter(AuditRecordRow.identity_id == identity_id)
        if event_type is not None:
            query = query.filter(AuditRecordRow.event_type == event_type)
        if outcome is not None:
            query = query.filter(AuditRecordRow.outcome == outcome)
        return query

    def query(self, since=None, until=None, resource=None, identity_id=None,
              event_type=None, outcome=None, limit=None) -> Iterator[AuditRecord]:
        with get_session(self.session_factory) as session:
            query = self._filtered(session, since, until, resource, identity_id, event_type, outcome)
            query = query.order_by(AuditRecordRow.sequence_id)
            if limit is not None:
                query = query.limit(limit)
            records = [_from_row(row) for row in query.all()]
        return iter(records)

    def recent(self, limit: int = 20, **filters) -> List[AuditRecord]:
        """Most recent records first, for operator display."""
        with get_session(self.session_factory) as session:
            query = self._filtered(session, **filters)
            rows = query.order_by(AuditRecordRow.sequence_id.desc()).limit(limit).all()
            return [_from_row(row) for row in rows]

    def purge_before(self, timestamp: datetime) -> int:
        with get_session(self.session_factory) as session:
            return session.query(AuditRecordRow).filter(
                AuditRecordRow.timestamp < timestamp
            ).delete(synchronize_session=False)

    def last_sequence_id(self) -> int:
        with get_session(self.session_factory) as session:
            mark = session.query(AuditSequence.value).filter(AuditSequence.name == SEQUENCE_NAME).scalar()
            stored = session.query(func.max(AuditRecordRow.sequence_id)).scalar()
            return max(mark or 0, stored or 0)

    def statistics(self, hours: int = 24, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Get overall access statistics for the trailing period.

        Args:
            hours: Analysis period
            now: End of the period (defaults to utcnow)

        Returns:
            Statistics dictionary
        """
        cutoff = (now or datetime.utcnow()) - timedelta(hours=hours)
        records = list(self.query(since=cutoff))

        access = [r for r in records if r.event_type is EventType.ACCESS]
        by_outcome = {outcome.value: 0 for outcome in Outcome}
        by_resource: Dict[str, int] = {}
        for record in access:
            by_outcome[record.outcome.value] += 1
            if record.resource:
                by_resource[record.resource] = by_resource.get(record.resource, 0) + 1

        total = len(access)
        denials = by_outcome[Outcome.DENIED.value]
        failed_logins = sum(
            1 for r in records
            if r.event_type is EventType.LOGON and r.outcome is Outcome.DENIED
        )
        return {
            'period_hours': hours,
            'total_records': len(records),
            'total_accesses': total,
            'by_outcome': by_outcome,
            'denial_rate': denials / total if total > 0 else 0,
            'by_resource': by_resource,
            'failed_logins': failed_logins,
            'privilege_changes': sum(1 for r in records if r.event_type is EventType.PRIVILEGE_CHANGE),
            'unique_identities': len({r.identity_id for r in records})
        }

    def export(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        format: str = 'json'
    ) -> str:
        """
        Export audit records for external SIEM integration.

        Args:
            since: Export start time
            until: Export end time
            format: Output format ('json' or 'csv')

        Returns:
            Formatted record data as string
        """
        records = [r.to_dict() for r in self.query(since=since, until=until)]

        if format == 'json':
            return json.dumps(records, indent=2)

        elif format == 'csv':
            fields = ['sequence_id', 'timestamp', 'event_type', 'identity_id', 'role',
                      'resource', 'operation', 'outcome', 'detail']
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=fields, extrasaction='ignore', lineterminator='\n')
            writer.writeheader()
            writer.writerows(records)
            return buffer.getvalue()

        else:
            raise ValueError(f"Unsupported format: {format}")


# ============================================================================
# Engine
# ============================================================================

class SequenceGenerator:
    """Thread-safe strictly increasing id source."""

    def __init__(self, start: int = 0):
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def current(self) -> int:
        return self._value


class AuditObligationEngine:
    """
    Records accesses when policy requires it.

    Args:
        registry: Registry holding per-resource audit requirements
        store: Durable audit store
        retry_policy: Retry/backoff for store appends
        clock: Source of record timestamps
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        store: AuditStore,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.registry = registry
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self._sequence = SequenceGenerator(store.last_sequence_id())

    def is_required(self, resource: str, operation: Operation, columns: Iterable[str] = ()) -> bool:
        return self.registry.audit_requirement(resource, operation).applies(columns)

    def record_if_required(
        self,
        identity: Identity,
        resource: str,
        operation: Operation,
        outcome: Outcome,
        columns: Iterable[str] = (),
        before: Optional[str] = None,
        after: Optional[str] = None,
        at: Optional[datetime] = None,
        detail: Optional[str] = None
    ) -> Optional[AuditRecord]:
        """
        Record an access attempt if the resource's audit requirement applies.

        Args:
            identity: Who attempted the access
            resource: Target resource
            operation: Attempted operation
            outcome: ALLOWED, FILTERED or DENIED
            columns: Columns touched by the access
            before: Summary of values before a mutation
            after: Summary of values after a mutation
            at: Timestamp of the attempt (defaults to the engine clock)
            detail: Free text context (e.g. denial reason)

        Returns:
            The appended AuditRecord, or None if no audit was required

        Raises:
            AuditAppendFailure: If an ALWAYS-audited access could not be recorded
        """
        touched = frozenset(c.upper() for c in columns)
        requirement = self.registry.audit_requirement(resource, operation)
        if not requirement.applies(touched):
            return None

        record = AuditRecord(
            sequence_id=self._sequence.next(),
            timestamp=at or self.clock(),
            event_type=EventType.ACCESS,
            identity_id=identity.id,
            role=identity.role,
            outcome=outcome,
            resource=resource,
            operation=operation,
            columns=touched,
            before=before if operation.is_mutation else None,
            after=after if operation.is_mutation else None,
            detail=detail
        )
        try:
            self._append(record)
        except AuditAppendFailure:
            if requirement.mode is AuditMode.ALWAYS:
                raise
            logger.error(
                "Conditional audit record %d for %s on %s was dropped",
                record.sequence_id, identity.id, resource
            )
            return None
        return record

    def record_event(
        self,
        identity_id: str,
        role: Role,
        event_type: EventType,
        outcome: Outcome,
        detail: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> AuditRecord:
        """
        Record a non-access security event (logon, privilege change).

        These events are always audited.

        Raises:
            AuditAppendFailure: If the store stays unavailable
        """
        record = AuditRecord(
            sequence_id=self._sequence.next(),
            timestamp=at or self.clock(),
            event_type=event_type,
            identity_id=identity_id,
            role=role,
            outcome=outcome,
            detail=detail
        )
        self._append(record)
        return record

    def _append(self, record: AuditRecord) -> None:
        try:
            self.retry_policy.call(self.store.append, record)
        except Exception as e:
            logger.error("Audit append failed for record %d: %s", record.sequence_id, e)
            raise AuditAppendFailure(f"Could not append audit record {record.sequence_id}", cause=e) from e
        logger.debug(
            "Audit %d: %s %s %s %s",
            record.sequence_id,
            record.identity_id,
            record.event_type.value,
            record.resource or "-",
            record.outcome.value
        )
