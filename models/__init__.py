# School Records Access Control - Models
# Domain value objects and SQLAlchemy tables for the reference adapters

from .database import Base, engine, get_session, init_db, make_engine, make_session_factory
from .domain import (
    Role,
    Operation,
    Outcome,
    EventType,
    Severity,
    EffectKind,
    AuditMode,
    Identity,
    ResourceDescriptor,
    AuditRequirement,
    PolicyRule,
    ColumnRule,
    TimeWindow,
    Unrestricted,
    Filtered,
    Denied,
    AccessDecision,
    AuditRecord,
    Alert
)
from .entities import AuditRecordRow, AuditSequence, SecurityAlert, UserSession

__all__ = [
    'Base',
    'engine',
    'get_session',
    'init_db',
    'make_engine',
    'make_session_factory',
    'Role',
    'Operation',
    'Outcome',
    'EventType',
    'Severity',
    'EffectKind',
    'AuditMode',
    'Identity',
    'ResourceDescriptor',
    'AuditRequirement',
    'PolicyRule',
    'ColumnRule',
    'TimeWindow',
    'Unrestricted',
    'Filtered',
    'Denied',
    'AccessDecision',
    'AuditRecord',
    'Alert',
    'AuditRecordRow',
    'AuditSequence',
    'SecurityAlert',
    'UserSession'
]
