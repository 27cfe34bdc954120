"""
Anomaly Monitor
===============

Scans the audit trail over a trailing window and raises alerts when
configured thresholds are exceeded. The default checks mirror the
school's security monitoring procedure:

+-------------------------+----------------------------------------------+----------+
| Alert type              | Counted records                              | Severity |
+-------------------------+----------------------------------------------+----------+
| failed-login            | LOGON events with a DENIED outcome           | HIGH     |
| privilege-change        | any GRANT/REVOKE (threshold 0)               | HIGH     |
| off-hours-access        | accesses outside the allowed hours           | MEDIUM   |
| excessive-grade-changes | mutations on the grade resource              | HIGH     |
| sensitive-data-access   | reads on the sensitive resource              | MEDIUM   |
+-------------------------+----------------------------------------------+----------+

An alert is raised when the count is strictly greater than the
threshold, at most once per check per scan. Checks are stateless; the
only state the monitor reads is the audit trail itself (and, when
de-duplication is enabled, the open alerts in the sink).

A scan works on a snapshot of the audit trail. Records appended while
the scan runs may or may not be counted. A cancelled scan emits nothing.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from models.domain import Alert, AuditRecord, EventType, Outcome, Severity, hour_in_range
from .alerts import AlertSink
from .audit import AuditStore
from .errors import ScanCancelled

logger = logging.getLogger(__name__)

FAILED_LOGIN = "failed-login"
PRIVILEGE_CHANGE = "privilege-change"
OFF_HOURS_ACCESS = "off-hours-access"
EXCESSIVE_GRADE_CHANGES = "excessive-grade-changes"
SENSITIVE_DATA_ACCESS = "sensitive-data-access"


@dataclass(frozen=True)
class AnomalyCheck:
    """
    A named threshold check over audit records.

    Args:
        alert_type: Type of alert raised (e.g. 'failed-login')
        severity: Severity of the raised alert
        threshold: Alert when the count exceeds this value
        counts: Predicate selecting the records to count
        description: Human readable label used in the alert message
    """
    alert_type: str
    severity: Severity
    threshold: int
    counts: Callable[[AuditRecord], bool]
    description: str

    def evaluate(self, records: Sequence[AuditRecord], now: datetime) -> Optional[Alert]:
        count = sum(1 for record in records if self.counts(record))
        if count <= self.threshold:
            return None
        return Alert(
            alert_type=self.alert_type,
            message=f"{self.description} detected: {count} (threshold {self.threshold})",
            severity=self.severity,
            raised_at=now
        )


def _is_failed_login(record: AuditRecord) -> bool:
    return record.event_type is EventType.LOGON and record.outcome is Outcome.DENIED


def _is_privilege_change(record: AuditRecord) -> bool:
    return record.event_type is EventType.PRIVILEGE_CHANGE


def default_checks(
    failed_login_threshold: int = 5,
    off_hours_threshold: int = 10,
    grade_change_threshold: int = 20,
    sensitive_read_threshold: int = 50,
    allowed_hours: tuple = (7, 18),
    grade_resource: str = "ENROLLMENTS",
    sensitive_resource: str = "STUDENTS"
) -> List[AnomalyCheck]:
    """Build the standard set of checks from thresholds."""
    start_hour, end_hour = allowed_hours
    grade = grade_resource.upper()
    sensitive = sensitive_resource.upper()

    def off_hours(record: AuditRecord) -> bool:
        return (
            record.event_type is EventType.ACCESS
            and not hour_in_range(record.timestamp.hour, start_hour, end_hour)
        )

    def grade_mutation(record: AuditRecord) -> bool:
        return (
            record.event_type is EventType.ACCESS
            and (record.resource or "").upper() == grade
            and record.operation is not None
            and record.operation.is_mutation
        )

    def sensitive_read(record: AuditRecord) -> bool:
        return (
            record.event_type is EventType.ACCESS
            and (record.resource or "").upper() == sensitive
            and record.operation is not None
            and not record.operation.is_mutation
        )

    return [
        AnomalyCheck(FAILED_LOGIN, Severity.HIGH, failed_login_threshold,
                     _is_failed_login, "Multiple failed login attempts"),
        AnomalyCheck(PRIVILEGE_CHANGE, Severity.HIGH, 0,
                     _is_privilege_change, "Privilege changes"),
        AnomalyCheck(OFF_HOURS_ACCESS, Severity.MEDIUM, off_hours_threshold,
                     off_hours, "Unusual access times"),
        AnomalyCheck(EXCESSIVE_GRADE_CHANGES, Severity.HIGH, grade_change_threshold,
                     grade_mutation, "Excessive grade changes"),
        AnomalyCheck(SENSITIVE_DATA_ACCESS, Severity.MEDIUM, sensitive_read_threshold,
                     sensitive_read, "High volume of sensitive data access"),
    ]


class AnomalyMonitor:
    """
    Runs anomaly checks over the audit trail.

    Args:
        store: Audit store to read
        sink: Alert sink receiving raised alerts
        checks: Checks to run (see default_checks)
        deduplicate: Suppress an alert when an unresolved alert of the
            same type and severity was raised within the scan window
        clock: Source of the current time
    """

    def __init__(
        self,
        store: AuditStore,
        sink: AlertSink,
        checks: Optional[Sequence[AnomalyCheck]] = None,
        deduplicate: bool = False,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.sink = sink
        self.checks = list(checks) if checks is not None else default_checks()
        self.deduplicate = deduplicate
        self.clock = clock

    def scan(
        self,
        window: timedelta,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> List[Alert]:
        """
        Run every check over records with timestamp >= now - window.

        Args:
            window: Trailing window to scan
            now: End of the window (defaults to the monitor clock)
            cancel_event: Set to cancel the scan

        Returns:
            Alerts appended to the sink by this scan

        Raises:
            ScanCancelled: If cancel_event was set before alerts were emitted
        """
        now = now or self.clock()
        since = now - window

        def check_cancelled():
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Anomaly scan cancelled; discarding partial results")
                raise ScanCancelled("Anomaly scan cancelled")

        records = []
        for record in self.store.query(since=since):
            records.append(record)
            if len(records) % 1000 == 0:
                check_cancelled()

        pending: List[Alert] = []
        for check in self.checks:
            check_cancelled()
            alert = check.evaluate(records, now)
            if alert is not None:
                pending.append(alert)

        if self.deduplicate and pending:
            pending = self._without_duplicates(pending, since)

        check_cancelled()
        raised = self.sink.append_all(pending) if pending else []
        logger.info(
            "Anomaly scan over %d records since %s raised %d alert(s)",
            len(records), since.isoformat(), len(raised)
        )
        return raised

    def _without_duplicates(self, pending: List[Alert], since: datetime) -> List[Alert]:
        open_keys = {
            (alert.alert_type, alert.severity)
            for alert in self.sink.unresolved()
            if alert.raised_at >= since
        }
        kept = []
        for alert in pending:
            if (alert.alert_type, alert.severity) in open_keys:
                logger.info("Suppressing duplicate %s alert", alert.alert_type)
                continue
            kept.append(alert)
        return kept


class MonitorScheduler:
    """
    Runs anomaly scans on a fixed cadence in a background thread.

    A failing scan (e.g. audit store or sink unreachable) is logged and
    retried on the next tick; it never affects access evaluation.
    """

    def __init__(self, monitor: AnomalyMonitor, window: timedelta, interval_seconds: float = 300.0):
        self.monitor = monitor
        self.window = window
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_alerts: List[Alert] = []
        self.runs = 0
        self.failures = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._cancel.clear()
        self._thread = threading.Thread(target=self._loop, name="anomaly-monitor", daemon=True)
        self._thread.start()
        logger.info("Anomaly monitor started (every %.0fs over %s)", self.interval_seconds, self.window)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and cancel an in-flight scan."""
        self._stop.set()
        self._cancel.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Anomaly monitor stopped")

    def run_once(self) -> List[Alert]:
        try:
            alerts = self.monitor.scan(self.window, cancel_event=self._cancel)
        except ScanCancelled:
            return []
        except Exception as e:
            self.failures += 1
            logger.error("Anomaly scan failed, will retry next cadence: %s", e)
            return []
        finally:
            self.runs += 1
        self.last_alerts = alerts
        return alerts

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.interval_seconds):
                break
