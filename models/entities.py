"""
Entity Models for School Records Access Control
===============================================

SQLAlchemy tables backing the reference adapters:

- audit_records: append-only audit trail written by the audit engine
- audit_sequence: highest audit sequence id ever issued
- security_alerts: alerts raised by the anomaly monitor
- user_sessions: session tokens resolved by the identity context

Enumerated columns store the value of the matching domain enum so the
tables stay readable from plain SQL tooling.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, Enum as SQLEnum
)

from .database import Base
from .domain import EventType, Outcome, Role, Severity


class AuditRecordRow(Base):
    """
    One entry of the audit trail.

    sequence_id is assigned by the audit engine, not by the database, so
    that ids are unique and increasing across every configured store.
    Rows are never updated; only the retention purge deletes them.
    """
    __tablename__ = 'audit_records'

    sequence_id = Column(Integer, primary_key=True, autoincrement=False)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)
    event_type = Column(SQLEnum(EventType), nullable=False, index=True)

    # Who
    identity_id = Column(String(100), nullable=False, index=True)
    role = Column(SQLEnum(Role), nullable=False)

    # What
    resource = Column(String(100), index=True)
    operation = Column(String(20))
    columns = Column(Text)  # comma separated column names touched
    outcome = Column(SQLEnum(Outcome), nullable=False)

    # Value summaries for mutations
    before_value = Column(Text)
    after_value = Column(Text)
    detail = Column(Text)

    def __repr__(self):
        return (
            f"<AuditRecordRow(seq={self.sequence_id}, identity='{self.identity_id}', "
            f"resource='{self.resource}', operation='{self.operation}', outcome={self.outcome})>"
        )


class AuditSequence(Base):
    """
    High-water mark of issued audit sequence ids.

    Kept apart from audit_records so that purging old records never
    lets a restarted engine hand out an id again.
    """
    __tablename__ = 'audit_sequence'

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<AuditSequence(name='{self.name}', value={self.value})>"


class SecurityAlert(Base):
    """Alert raised by the anomaly monitor; only resolution mutates it."""
    __tablename__ = 'security_alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_type = Column(String(50), nullable=False, index=True)
    message = Column(String(500))
    severity = Column(SQLEnum(Severity), nullable=False)
    raised_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(100))

    def __repr__(self):
        return f"<SecurityAlert(id={self.id}, type='{self.alert_type}', severity={self.severity})>"


class UserSession(Base):
    """
    Session token issued at login.

    The identity context only reads this table; sessions past expires_at
    or flagged revoked are rejected.
    """
    __tablename__ = 'user_sessions'

    token = Column(String(128), primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    role = Column(SQLEnum(Role), nullable=False)
    department = Column(String(100))
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked = Column(Boolean, default=False)

    def __repr__(self):
        return f"<UserSession(user_id='{self.user_id}', role={self.role})>"
