"""
Alert Sink
==========

Where the anomaly monitor sends alerts. An alert is created once and
afterwards only mutated by its resolution; sinks never delete alerts.

- InMemoryAlertSink: development and tests
- SQLAlertSink: SQLAlchemy table ``security_alerts``
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from models.database import get_session
from models.domain import Alert
from models.entities import SecurityAlert
from .errors import AlertNotFoundError

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    """Alert persistence / notification port."""

    def append(self, alert: Alert) -> Alert:
        """Persist a new alert and return it with its assigned id."""
        return self.append_all([alert])[0]

    @abstractmethod
    def append_all(self, alerts: Sequence[Alert]) -> List[Alert]:
        """
        Persist a batch of alerts atomically.

        Either every alert is stored or, if the sink fails part-way,
        none of them is.
        """
        ...

    @abstractmethod
    def mark_resolved(self, alert_id: int, resolved_by: str, at: Optional[datetime] = None) -> Alert:
        """
        Resolve an alert.

        Resolving an already resolved alert leaves it unchanged.

        Raises:
            AlertNotFoundError: If no alert has this id
        """
        ...

    @abstractmethod
    def get(self, alert_id: int) -> Alert:
        ...

    @abstractmethod
    def unresolved(self) -> List[Alert]:
        ...

    @abstractmethod
    def list(self, limit: int = 50) -> List[Alert]:
        """Most recent alerts first."""
        ...


class InMemoryAlertSink(AlertSink):

    def __init__(self):
        self._alerts: Dict[int, Alert] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def append_all(self, alerts: Sequence[Alert]) -> List[Alert]:
        with self._lock:
            stored = [self._assign_id(alert) for alert in alerts]
            for alert in stored:
                self._alerts[alert.id] = alert
        for alert in stored:
            logger.warning("SECURITY ALERT: %s - %s", alert.alert_type, alert.message)
        return stored

    def _assign_id(self, alert: Alert) -> Alert:
        return alert.with_id(next(self._ids))

    def mark_resolved(self, alert_id: int, resolved_by: str, at: Optional[datetime] = None) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            if alert.is_resolved:
                return alert
            resolved = alert.resolved(resolved_by, at or datetime.utcnow())
            self._alerts[alert_id] = resolved
            return resolved

    def get(self, alert_id: int) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    def unresolved(self) -> List[Alert]:
        with self._lock:
            return [a for a in self._alerts.values() if not a.is_resolved]

    def list(self, limit: int = 50) -> List[Alert]:
        with self._lock:
            alerts = sorted(self._alerts.values(), key=lambda a: a.id, reverse=True)
        return alerts[:limit]


def _from_row(row: SecurityAlert) -> Alert:
    return Alert(
        id=row.id,
        alert_type=row.alert_type,
        message=row.message,
        severity=row.severity,
        raised_at=row.raised_at,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by
    )


class SQLAlertSink(AlertSink):
    """Alerts persisted in the ``security_alerts`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def append_all(self, alerts: Sequence[Alert]) -> List[Alert]:
        # One transaction: a failed insert rolls back the whole batch
        with get_session(self.session_factory) as session:
            rows = [
                SecurityAlert(
                    alert_type=alert.alert_type,
                    message=alert.message,
                    severity=alert.severity,
                    raised_at=alert.raised_at
                )
                for alert in alerts
            ]
            session.add_all(rows)
            session.flush()
            stored = [_from_row(row) for row in rows]
        for alert in stored:
            logger.warning("SECURITY ALERT: %s - %s", alert.alert_type, alert.message)
        return stored

    def mark_resolved(self, alert_id: int, resolved_by: str, at: Optional[datetime] = None) -> Alert:
        with get_session(self.session_factory) as session:
            row = session.query(SecurityAlert).filter(SecurityAlert.id == alert_id).first()
            if row is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            if row.resolved_at is None:
                row.resolved_at = at or datetime.utcnow()
                row.resolved_by = resolved_by
                session.flush()
            return _from_row(row)

    def get(self, alert_id: int) -> Alert:
        with get_session(self.session_factory) as session:
            row = session.query(SecurityAlert).filter(SecurityAlert.id == alert_id).first()
            if row is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            return _from_row(row)

    def unresolved(self) -> List[Alert]:
        with get_session(self.session_factory) as session:
            rows = session.query(SecurityAlert).filter(
                SecurityAlert.resolved_at.is_(None)
            ).order_by(SecurityAlert.raised_at.desc()).all()
            return [_from_row(row) for row in rows]

    def list(self, limit: int = 50) -> List[Alert]:
        with get_session(self.session_factory) as session:
            rows = session.query(SecurityAlert).order_by(SecurityAlert.id.desc()).limit(limit).all()
            return [_from_row(row) for row in rows]
