import pytest
from sqlalchemy import event

from core.alerts import InMemoryAlertSink, SQLAlertSink
from core.errors import AlertNotFoundError
from models.domain import Alert, Severity
from models.entities import SecurityAlert
from tests.conftest import NOW


@pytest.fixture(params=["memory", "sql"])
def sink(request, sql_factory):
    if request.param == "memory":
        return InMemoryAlertSink()
    return SQLAlertSink(sql_factory)


def make_alert(alert_type="failed-login"):
    return Alert(alert_type=alert_type, message="test", severity=Severity.HIGH, raised_at=NOW)


def test_append_assigns_ids(sink):
    first = sink.append(make_alert())
    second = sink.append(make_alert("privilege-change"))
    assert first.id is not None and second.id > first.id
    assert [a.id for a in sink.list()] == [second.id, first.id]
    assert sink.get(first.id) == first


def test_resolve_is_idempotent(sink):
    alert = sink.append(make_alert())
    resolved = sink.mark_resolved(alert.id, "security-officer", at=NOW)
    assert resolved.resolved_by == "security-officer"
    assert resolved.resolved_at == NOW

    again = sink.mark_resolved(alert.id, "someone-else")
    assert again == resolved
    assert sink.unresolved() == []


def test_unknown_alert(sink):
    with pytest.raises(AlertNotFoundError):
        sink.mark_resolved(999, "security-officer")
    with pytest.raises(AlertNotFoundError):
        sink.get(999)


def test_append_all_stores_a_batch(sink):
    stored = sink.append_all([make_alert(), make_alert("privilege-change")])
    assert [a.alert_type for a in stored] == ["failed-login", "privilege-change"]
    assert stored[1].id > stored[0].id
    assert len(sink.list()) == 2
    assert sink.append_all([]) == []


def test_sql_batch_rolls_back_when_an_insert_fails(sql_factory):
    sink = SQLAlertSink(sql_factory)
    inserts = []

    def fail_second_insert(mapper, connection, target):
        inserts.append(target)
        if len(inserts) == 2:
            raise ConnectionError("alert table locked")

    event.listen(SecurityAlert, "before_insert", fail_second_insert)
    try:
        with pytest.raises(ConnectionError):
            sink.append_all([make_alert(), make_alert("privilege-change")])
    finally:
        event.remove(SecurityAlert, "before_insert", fail_second_insert)

    assert sink.list() == []
    assert sink.unresolved() == []
