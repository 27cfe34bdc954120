"""
Error Taxonomy
==============

Every denial path in the engine is fail-closed. The exceptions below are
the ones that cross component boundaries:

- AuthenticationError: session token unknown, expired or revoked
- ConfigurationConflictError: registry invariant violated at registration
- OutOfWindowError: role used outside its allowed hours/days
- PredicateBindingFailure: ownership data unavailable (never reaches callers;
  the evaluator degrades it to a zero-row predicate)
- AuditAppendFailure: audit store unavailable after retries
- ScanCancelled: an anomaly scan was cancelled; nothing was emitted
"""

from datetime import datetime
from typing import Optional


class AccessControlError(Exception):
    """Base class for all access control errors."""


class AuthenticationError(AccessControlError):
    """The session token could not be resolved to a live identity."""


class ConfigurationConflictError(AccessControlError):
    """A rule overlaps an already registered rule for the same resource and role."""

    def __init__(self, message: str, existing=None, attempted=None):
        super().__init__(message)
        self.existing = existing
        self.attempted = attempted


ConflictError = ConfigurationConflictError


class UnknownResourceError(AccessControlError, KeyError):
    """A rule or request names a resource that was never registered."""

    def __str__(self):
        return Exception.__str__(self)


class OutOfWindowError(AccessControlError):
    """The identity's role may not act at this time of day or week."""

    def __init__(self, role, at: datetime, window=None):
        described = window.describe() if window is not None else "no window"
        super().__init__(
            f"Role {role.value} is not permitted at {at:%Y-%m-%d %H:%M} (allowed {described})"
        )
        self.role = role
        self.at = at
        self.window = window


class PredicateBindingFailure(AccessControlError):
    """A predicate template could not be bound to the identity's attributes."""


class AuditAppendFailure(AccessControlError):
    """The audit store rejected an append and retries are exhausted."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ScanCancelled(AccessControlError):
    """An anomaly scan was cancelled before it completed."""


class AlertNotFoundError(AccessControlError, KeyError):
    """No alert exists with the requested id."""

    def __str__(self):
        return Exception.__str__(self)
