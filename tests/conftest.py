from datetime import datetime, timedelta

import pytest

from config import Settings
from core.alerts import InMemoryAlertSink
from core.audit import InMemoryAuditStore
from core.identity import InMemorySessionStore
from core.service import SchoolAccessControl
from models.database import init_db, make_engine, make_session_factory
from models.domain import AuditRecord, EventType, Identity, Operation, Outcome, Role
from scenarios.school_policy import build_school_registry, demo_ownership

# Wednesday, inside every role window
NOW = datetime(2024, 3, 13, 10, 0)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None, audit_retry_base_delay=0.0, deduplicate_alerts=False)


@pytest.fixture
def registry():
    return build_school_registry()


@pytest.fixture
def ownership():
    return demo_ownership()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def alert_sink():
    return InMemoryAlertSink()


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def service(registry, sessions, audit_store, alert_sink, ownership, settings, clock):
    return SchoolAccessControl(
        registry=registry,
        sessions=sessions,
        audit_store=audit_store,
        alert_sink=alert_sink,
        ownership=ownership,
        settings=settings,
        clock=clock
    )


@pytest.fixture
def sql_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def admin():
    return Identity(id="ADMIN_USER", role=Role.ADMIN, session_start=NOW)


@pytest.fixture
def teacher():
    return Identity(id="TEACHER_USER", role=Role.TEACHER, department="MATHEMATICS", session_start=NOW)


@pytest.fixture
def counselor():
    return Identity(id="COUNSELOR_USER", role=Role.COUNSELOR, session_start=NOW)


@pytest.fixture
def registrar():
    return Identity(id="REGISTRAR_USER", role=Role.REGISTRAR, session_start=NOW)


@pytest.fixture
def outsider():
    return Identity(id="TEST_USER", role=Role.OTHER, session_start=NOW)


def make_record(sequence_id, timestamp, event_type=EventType.ACCESS, outcome=Outcome.ALLOWED,
                resource=None, operation=None, identity_id="ADMIN_USER", role=Role.ADMIN):
    return AuditRecord(
        sequence_id=sequence_id,
        timestamp=timestamp,
        event_type=event_type,
        identity_id=identity_id,
        role=role,
        outcome=outcome,
        resource=resource,
        operation=operation
    )


def access_record(sequence_id, timestamp, resource, operation=Operation.READ, outcome=Outcome.ALLOWED):
    return make_record(sequence_id, timestamp, resource=resource, operation=operation, outcome=outcome)
