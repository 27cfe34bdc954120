import json
import threading
from datetime import timedelta

import pytest

from core.audit import AuditObligationEngine, InMemoryAuditStore, SQLAuditStore
from core.errors import AuditAppendFailure
from core.retry import RetryPolicy
from models.domain import EventType, Operation, Outcome, Role
from tests.conftest import NOW, make_record


class FlakyStore(InMemoryAuditStore):
    """Fails the first ``failures`` appends."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def append(self, record):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("audit database unavailable")
        super().append(record)


def make_engine(registry, store, clock, retry_limit=2):
    return AuditObligationEngine(
        registry,
        store,
        retry_policy=RetryPolicy(retry_limit=retry_limit, sleep=lambda _: None),
        clock=clock
    )


def test_always_audited_access_is_recorded(registry, audit_store, clock, teacher):
    engine = make_engine(registry, audit_store, clock)
    record = engine.record_if_required(teacher, "STUDENTS", Operation.READ, Outcome.FILTERED)

    assert record is not None
    assert record.timestamp == NOW
    assert record.outcome is Outcome.FILTERED
    assert list(audit_store.query()) == [record]


def test_denied_attempts_are_recorded(registry, audit_store, clock, outsider):
    engine = make_engine(registry, audit_store, clock)
    record = engine.record_if_required(outsider, "ENROLLMENTS", Operation.UPDATE, Outcome.DENIED)
    assert record.outcome is Outcome.DENIED


def test_never_audited_resource_is_skipped(registry, audit_store, clock, admin):
    engine = make_engine(registry, audit_store, clock)
    assert engine.record_if_required(admin, "COURSES", Operation.UPDATE, Outcome.ALLOWED) is None
    assert len(audit_store) == 0


def test_conditional_audit_depends_on_touched_columns(registry, audit_store, clock, admin):
    engine = make_engine(registry, audit_store, clock)
    assert engine.record_if_required(admin, "TEACHERS", Operation.READ, Outcome.ALLOWED,
                                     columns=["NAME"]) is None
    record = engine.record_if_required(admin, "TEACHERS", Operation.UPDATE, Outcome.ALLOWED,
                                       columns=["name", "salary"])
    assert record.columns == frozenset({"NAME", "SALARY"})


def test_value_summaries_only_kept_for_mutations(registry, audit_store, clock, registrar):
    engine = make_engine(registry, audit_store, clock)
    read = engine.record_if_required(registrar, "ENROLLMENTS", Operation.READ, Outcome.ALLOWED,
                                     before="B", after="A")
    update = engine.record_if_required(registrar, "ENROLLMENTS", Operation.UPDATE, Outcome.ALLOWED,
                                       before="B", after="A")
    assert (read.before, read.after) == (None, None)
    assert (update.before, update.after) == ("B", "A")


def test_concurrent_records_get_unique_increasing_ids(registry, audit_store, clock, teacher):
    engine = make_engine(registry, audit_store, clock)
    start = threading.Barrier(100)

    def worker():
        start.wait()
        engine.record_if_required(teacher, "STUDENTS", Operation.READ, Outcome.FILTERED)

    threads = [threading.Thread(target=worker) for _ in range(100)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    ids = [record.sequence_id for record in audit_store.query()]
    assert len(ids) == 100
    assert ids == sorted(set(ids))


def test_sequence_continues_after_existing_records(registry, clock, admin):
    store = InMemoryAuditStore()
    store.append(make_record(41, NOW))
    engine = make_engine(registry, store, clock)
    record = engine.record_if_required(admin, "STUDENTS", Operation.READ, Outcome.ALLOWED)
    assert record.sequence_id == 42


def test_transient_store_failure_is_retried(registry, clock, teacher):
    store = FlakyStore(failures=2)
    engine = make_engine(registry, store, clock, retry_limit=2)
    record = engine.record_if_required(teacher, "STUDENTS", Operation.READ, Outcome.FILTERED)
    assert record is not None
    assert store.attempts == 3
    assert len(store) == 1


def test_always_audited_access_fails_closed(registry, clock, teacher):
    store = FlakyStore(failures=10)
    engine = make_engine(registry, store, clock, retry_limit=2)
    with pytest.raises(AuditAppendFailure) as exc:
        engine.record_if_required(teacher, "STUDENTS", Operation.READ, Outcome.FILTERED)
    assert isinstance(exc.value.cause, ConnectionError)
    assert store.attempts == 3


def test_conditional_audit_failure_is_not_raised(registry, clock, admin):
    store = FlakyStore(failures=10)
    engine = make_engine(registry, store, clock)
    assert engine.record_if_required(admin, "TEACHERS", Operation.READ, Outcome.ALLOWED,
                                     columns=["SIN"]) is None


def test_security_events_are_always_recorded(registry, audit_store, clock):
    engine = make_engine(registry, audit_store, clock)
    record = engine.record_event("unknown", Role.OTHER, EventType.LOGON, Outcome.DENIED, detail="bad token")
    assert record.event_type is EventType.LOGON
    assert record.resource is None


def test_in_memory_query_filters_and_purge(audit_store):
    audit_store.append(make_record(1, NOW - timedelta(days=100), resource="STUDENTS"))
    audit_store.append(make_record(2, NOW, resource="STUDENTS", outcome=Outcome.DENIED))
    audit_store.append(make_record(3, NOW, resource="COURSES"))

    assert [r.sequence_id for r in audit_store.query(resource="students")] == [1, 2]
    assert [r.sequence_id for r in audit_store.query(outcome=Outcome.DENIED)] == [2]
    assert [r.sequence_id for r in audit_store.query(since=NOW - timedelta(hours=1))] == [2, 3]
    assert [r.sequence_id for r in audit_store.query(limit=1)] == [1]

    assert audit_store.purge_before(NOW - timedelta(days=90)) == 1
    assert audit_store.last_sequence_id() == 3


def test_ids_are_not_reissued_after_purging_everything(registry, audit_store, clock, admin):
    first = make_engine(registry, audit_store, clock).record_event(
        admin.id, admin.role, EventType.LOGON, Outcome.ALLOWED
    )
    assert audit_store.purge_before(NOW + timedelta(days=1)) == 1
    assert len(audit_store) == 0

    # A fresh engine, as after a restart, continues past the purged id
    second = make_engine(registry, audit_store, clock).record_event(
        admin.id, admin.role, EventType.LOGON, Outcome.ALLOWED
    )
    assert second.sequence_id > first.sequence_id


# ============================================================================
# SQL store
# ============================================================================

@pytest.fixture
def sql_store(sql_factory):
    return SQLAuditStore(sql_factory)


def test_sql_store_round_trip(registry, sql_store, clock, registrar):
    engine = make_engine(registry, sql_store, clock)
    written = engine.record_if_required(registrar, "ENROLLMENTS", Operation.UPDATE, Outcome.ALLOWED,
                                        columns=["GRADE"], before="B", after="A")

    stored = list(sql_store.query())
    assert stored == [written]
    assert sql_store.last_sequence_id() == written.sequence_id


def test_sql_store_statistics(sql_store):
    sql_store.append(make_record(1, NOW, resource="STUDENTS", operation=Operation.READ))
    sql_store.append(make_record(2, NOW, resource="STUDENTS", operation=Operation.READ, outcome=Outcome.DENIED))
    sql_store.append(make_record(3, NOW, event_type=EventType.LOGON, outcome=Outcome.DENIED,
                                 identity_id="unknown", role=Role.OTHER))

    stats = sql_store.statistics(hours=24, now=NOW)
    assert stats['total_records'] == 3
    assert stats['total_accesses'] == 2
    assert stats['denial_rate'] == 0.5
    assert stats['by_resource'] == {"STUDENTS": 2}
    assert stats['failed_logins'] == 1
    assert stats['unique_identities'] == 2


def test_sql_store_export_and_purge(sql_store):
    sql_store.append(make_record(1, NOW - timedelta(days=120), resource="STUDENTS", operation=Operation.READ))
    sql_store.append(make_record(2, NOW, resource="ENROLLMENTS", operation=Operation.UPDATE))

    exported = json.loads(sql_store.export(format='json'))
    assert [r['sequence_id'] for r in exported] == [1, 2]

    csv_lines = sql_store.export(format='csv').splitlines()
    assert csv_lines[0].startswith("sequence_id,timestamp,event_type")
    assert len(csv_lines) == 3

    with pytest.raises(ValueError):
        sql_store.export(format='xml')

    assert sql_store.purge_before(NOW - timedelta(days=90)) == 1
    assert [r.sequence_id for r in sql_store.recent()] == [2]


def test_sql_ids_are_not_reissued_after_purging_everything(registry, sql_store, clock, registrar):
    engine = make_engine(registry, sql_store, clock)
    issued = [
        engine.record_if_required(registrar, "ENROLLMENTS", Operation.UPDATE, Outcome.ALLOWED).sequence_id
        for _ in range(3)
    ]
    assert sql_store.purge_before(NOW + timedelta(days=1)) == 3
    assert list(sql_store.query()) == []
    assert sql_store.last_sequence_id() == issued[-1]

    restarted = make_engine(registry, sql_store, clock)
    again = restarted.record_if_required(registrar, "ENROLLMENTS", Operation.UPDATE, Outcome.ALLOWED)
    assert again.sequence_id > max(issued)
    assert again.sequence_id not in issued
