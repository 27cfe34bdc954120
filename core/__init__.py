# School Records Access Control - Core Modules
# Policy registry, predicate evaluation, auditing and anomaly monitoring

from .errors import (
    AccessControlError,
    AuthenticationError,
    ConfigurationConflictError,
    OutOfWindowError,
    PredicateBindingFailure,
    AuditAppendFailure,
    ScanCancelled,
    AlertNotFoundError,
    UnknownResourceError
)
from .registry import PolicyRegistry
from .evaluator import PredicateEvaluator
from .audit import AuditObligationEngine, InMemoryAuditStore, SQLAuditStore
from .alerts import InMemoryAlertSink, SQLAlertSink
from .monitor import AnomalyMonitor, MonitorScheduler, default_checks
from .identity import IdentityContext, InMemorySessionStore, SQLSessionStore
from .service import SchoolAccessControl

__all__ = [
    'AccessControlError',
    'AuthenticationError',
    'ConfigurationConflictError',
    'OutOfWindowError',
    'PredicateBindingFailure',
    'AuditAppendFailure',
    'ScanCancelled',
    'AlertNotFoundError',
    'UnknownResourceError',
    'PolicyRegistry',
    'PredicateEvaluator',
    'AuditObligationEngine',
    'InMemoryAuditStore',
    'SQLAuditStore',
    'InMemoryAlertSink',
    'SQLAlertSink',
    'AnomalyMonitor',
    'MonitorScheduler',
    'default_checks',
    'IdentityContext',
    'InMemorySessionStore',
    'SQLSessionStore',
    'SchoolAccessControl'
]
