from datetime import timedelta

import pytest

from core.errors import AlertNotFoundError, AuditAppendFailure, AuthenticationError, OutOfWindowError
from core.monitor import EXCESSIVE_GRADE_CHANGES, FAILED_LOGIN, PRIVILEGE_CHANGE
from core.service import UNKNOWN_IDENTITY, SchoolAccessControl
from models.domain import EffectKind, EventType, Operation, Outcome, Role
from scenarios.school_policy import build_school_registry, demo_ownership
from tests.conftest import NOW, make_record


def test_teacher_after_hours_is_rejected_and_audited(service, audit_store, clock, teacher):
    clock.now = NOW.replace(hour=21)

    with pytest.raises(OutOfWindowError):
        service.evaluate_access(teacher, "STUDENTS", Operation.READ)

    records = list(audit_store.query())
    assert len(records) == 1
    assert records[0].outcome is Outcome.DENIED
    assert records[0].identity_id == "TEACHER_USER"
    assert records[0].resource == "STUDENTS"
    assert "not permitted" in records[0].detail


def test_out_of_window_on_unaudited_resource_leaves_no_record(service, audit_store, clock, teacher):
    clock.now = NOW.replace(hour=21)
    with pytest.raises(OutOfWindowError):
        service.evaluate_access(teacher, "COURSES", Operation.READ)
    assert len(audit_store) == 0


def test_request_flow_records_filtered_access(service, audit_store, teacher):
    decision = service.evaluate_access(teacher, "ENROLLMENTS", Operation.UPDATE)
    assert decision.effect is EffectKind.FILTERED

    record = service.record_access(teacher, "ENROLLMENTS", Operation.UPDATE, decision.outcome,
                                   columns=["GRADE"], before="B", after="A")
    assert record.outcome is Outcome.FILTERED
    assert list(audit_store.query()) == [record]


def test_denied_decision_is_reported_by_caller(service, audit_store, outsider):
    decision = service.evaluate_access(outsider, "STUDENTS", Operation.READ)
    assert decision.is_denied
    service.record_access(outsider, "STUDENTS", Operation.READ, decision.outcome)
    assert [r.outcome for r in audit_store.query()] == [Outcome.DENIED]


class DownStore:
    def append(self, record):
        raise ConnectionError("audit database unavailable")

    def last_sequence_id(self):
        return 0


@pytest.fixture
def service_without_audit(registry, sessions, alert_sink, ownership, settings, clock):
    return SchoolAccessControl(registry, sessions, DownStore(), alert_sink,
                               ownership=ownership, settings=settings, clock=clock)


def test_record_access_fails_closed_when_store_is_down(service_without_audit, teacher):
    with pytest.raises(AuditAppendFailure):
        service_without_audit.record_access(teacher, "STUDENTS", Operation.READ, Outcome.FILTERED)


def test_bad_token_still_reports_authentication_error_when_store_is_down(service_without_audit):
    with pytest.raises(AuthenticationError):
        service_without_audit.authenticate("forged-token")


def test_authentication_records_logons(service, sessions, audit_store):
    info = sessions.open("ADMIN_USER", Role.ADMIN, now=NOW)
    identity = service.authenticate(info.token)
    assert identity.role is Role.ADMIN

    with pytest.raises(AuthenticationError):
        service.authenticate("forged-token")

    logons = list(audit_store.query(event_type=EventType.LOGON))
    assert [(r.identity_id, r.outcome) for r in logons] == [
        ("ADMIN_USER", Outcome.ALLOWED),
        (UNKNOWN_IDENTITY, Outcome.DENIED),
    ]


def test_repeated_failed_logins_raise_alert(service):
    for _ in range(5):
        service.record_failed_login("TEST_USER")
    assert service.run_anomaly_scan() == []

    service.record_failed_login("TEST_USER")
    alerts = service.run_anomaly_scan()
    assert [a.alert_type for a in alerts] == [FAILED_LOGIN]


def test_zero_length_scan_window_is_honoured(service, clock):
    for _ in range(6):
        service.record_failed_login("TEST_USER")
    clock.advance(minutes=1)

    assert service.run_anomaly_scan(timedelta(0)) == []
    assert [a.alert_type for a in service.run_anomaly_scan()] == [FAILED_LOGIN]


def test_privilege_change_is_audited_and_alerted(service, audit_store, admin):
    record = service.record_privilege_change(admin, "TEACHER_USER", "UPDATE ON STUDENTS")
    assert record.event_type is EventType.PRIVILEGE_CHANGE
    assert record.detail == "GRANT UPDATE ON STUDENTS TO TEACHER_USER"

    revoke = service.record_privilege_change(admin, "TEACHER_USER", "UPDATE ON STUDENTS", granted=False)
    assert revoke.detail == "REVOKE UPDATE ON STUDENTS FROM TEACHER_USER"

    alerts = service.run_anomaly_scan()
    assert [a.alert_type for a in alerts] == [PRIVILEGE_CHANGE]


def test_grade_change_burst_raises_single_alert(service, registrar):
    start = NOW - timedelta(minutes=10)
    for i in range(21):
        service.record_access(registrar, "ENROLLMENTS", Operation.UPDATE, Outcome.ALLOWED,
                              columns=["GRADE"], at=start + timedelta(seconds=i * 20))
    alerts = service.run_anomaly_scan(timedelta(hours=1))
    assert [a.alert_type for a in alerts] == [EXCESSIVE_GRADE_CHANGES]


def test_resolve_alert(service, alert_sink):
    for _ in range(6):
        service.record_failed_login("TEST_USER")
    alert = service.run_anomaly_scan()[0]

    resolved = service.resolve_alert(alert.id, "security-officer")
    assert resolved.is_resolved
    assert resolved.resolved_at == NOW
    assert service.resolve_alert(alert.id, "someone-else").resolved_by == "security-officer"

    with pytest.raises(AlertNotFoundError):
        service.resolve_alert(12345, "security-officer")


def test_retention_purge(service, audit_store):
    audit_store.append(make_record(1, NOW - timedelta(days=91)))
    audit_store.append(make_record(2, NOW - timedelta(days=10)))
    assert service.purge_expired_audit() == 1
    assert [r.sequence_id for r in audit_store.query()] == [2]
    assert service.purge_audit_before(NOW) == 1


def test_access_summary(service, teacher, clock):
    summary = service.access_summary(teacher)
    assert summary['resources']['STUDENTS']['READ']['effect'] == "FILTERED"
    assert summary['resources']['STUDENTS']['DELETE']['effect'] == "DENIED"
    assert summary['resources']['TEACHERS']['READ']['masked'] == ["SALARY", "SIN"]

    clock.now = NOW.replace(hour=22)
    late = service.access_summary(teacher)
    assert late['resources']['COURSES']['READ']['effect'] == "OUT_OF_WINDOW"


def test_sql_backed_service(sql_factory, settings, teacher):
    service = SchoolAccessControl.from_settings(
        build_school_registry(), demo_ownership(), session_factory=sql_factory, settings=settings
    )
    decision = service.evaluate_access(teacher, "STUDENTS", Operation.READ, at=NOW)
    service.record_access(teacher, "STUDENTS", Operation.READ, decision.outcome, at=NOW)

    records = list(service.audit_store.query())
    assert [(r.identity_id, r.outcome) for r in records] == [("TEACHER_USER", Outcome.FILTERED)]

    for _ in range(6):
        service.record_failed_login("TEST_USER")
    alerts = service.run_anomaly_scan()
    assert FAILED_LOGIN in [a.alert_type for a in alerts]
    assert service.alert_sink.get(alerts[0].id).alert_type == alerts[0].alert_type
