from datetime import timedelta

import pytest

from core.errors import AuthenticationError
from core.identity import IdentityContext, SQLSessionStore
from models.domain import Role
from tests.conftest import NOW


@pytest.fixture
def context(sessions, clock):
    return IdentityContext(sessions, clock=clock)


def test_resolves_live_session(context, sessions):
    info = sessions.open("TEACHER_USER", Role.TEACHER, department="MATHEMATICS", now=NOW)
    identity = context.resolve(info.token)
    assert identity.id == "TEACHER_USER"
    assert identity.role is Role.TEACHER
    assert identity.department == "MATHEMATICS"
    assert identity.session_start == NOW


@pytest.mark.parametrize("token", ["", "not-a-token"])
def test_unknown_tokens_are_rejected(context, token):
    with pytest.raises(AuthenticationError):
        context.resolve(token)


def test_expired_session_is_rejected(context, sessions, clock):
    info = sessions.open("ADMIN_USER", Role.ADMIN, ttl=timedelta(minutes=30), now=NOW)
    clock.advance(minutes=30)
    with pytest.raises(AuthenticationError, match="expired"):
        context.resolve(info.token)


def test_revoked_session_is_rejected(context, sessions):
    info = sessions.open("ADMIN_USER", Role.ADMIN, now=NOW)
    assert sessions.revoke(info.token)
    with pytest.raises(AuthenticationError, match="revoked"):
        context.resolve(info.token)
    assert not sessions.revoke("not-a-token")


def test_resolution_does_not_change_sessions(context, sessions):
    info = sessions.open("ADMIN_USER", Role.ADMIN, now=NOW)
    context.resolve(info.token)
    assert sessions.get(info.token) == info


def test_sql_session_store(sql_factory, clock):
    store = SQLSessionStore(sql_factory)
    info = store.open("COUNSELOR_USER", Role.COUNSELOR, ttl=timedelta(hours=1), now=NOW)

    assert store.get(info.token) == info
    assert IdentityContext(store, clock=clock).resolve(info.token).role is Role.COUNSELOR

    assert store.revoke(info.token)
    assert store.get(info.token).revoked
    assert store.get("missing") is None
