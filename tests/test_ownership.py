"""Tests for order access decisions."""
from datetime import timedelta

import pytest

from bitloot import config
from bitloot.auth import CurrentUser, SessionTokenService
from bitloot.exceptions import ForbiddenError, NotFoundError
from bitloot.ownership import CallerContext, OwnershipResolver

from .factories import make_order


def _user(user_id="u1", email="a@x.com", role="user"):
    return CurrentUser(id=user_id, email=email, role=role, token="t")


def test_session_token_grants_access(db):
    order = make_order(db, email="guest@x.com")
    token = SessionTokenService().issue(order.id, "Guest@X.com")

    decision = OwnershipResolver(db).resolve_access(order.id, CallerContext(session_token=token))

    assert decision.granted
    assert decision.method == "session_token"


def test_session_token_for_other_order_is_rejected(db):
    order_a = make_order(db, email="a@x.com")
    order_b = make_order(db, email="a@x.com")
    token = SessionTokenService().issue(order_a.id, "a@x.com")

    decision = OwnershipResolver(db).resolve_access(order_b.id, CallerContext(session_token=token))

    assert not decision.granted
    assert decision.method == "denied"


def test_session_token_with_other_email_is_rejected(db):
    order = make_order(db, email="a@x.com")
    token = SessionTokenService().issue(order.id, "b@x.com")

    decision = OwnershipResolver(db).resolve_access(order.id, CallerContext(session_token=token))

    assert not decision.granted


def test_expired_session_token_is_rejected(db):
    order = make_order(db)
    past = config.utcnow() - timedelta(days=30)
    token = SessionTokenService(ttl_minutes=1, clock=lambda: past).issue(order.id, order.email)

    decision = OwnershipResolver(db).resolve_access(order.id, CallerContext(session_token=token))

    assert not decision.granted


def test_invalid_session_token_falls_through_to_user(db):
    order = make_order(db, user_id="u1")

    decision = OwnershipResolver(db).resolve_access(
        order.id, CallerContext(user=_user("u1", "other@x.com"), session_token="garbage")
    )

    assert decision.granted
    assert decision.method == "user_id_match"


def test_admin_is_granted(db):
    order = make_order(db, email="someone@x.com")

    decision = OwnershipResolver(db).resolve_access(
        order.id, CallerContext(user=_user("admin-1", "ops@x.com", role="admin"))
    )

    assert decision.method == "admin"


def test_email_match_for_guest_order(db):
    order = make_order(db, email="a@x.com", user_id=None)

    decision = OwnershipResolver(db).resolve_access(order.id, CallerContext(user=_user("u1", "A@X.com")))

    assert decision.granted
    assert decision.method == "email_match"


def test_missing_user_id_on_order_does_not_match(db):
    order = make_order(db, email="a@x.com", user_id=None)

    decision = OwnershipResolver(db).resolve_access(order.id, CallerContext(user=_user("", "b@x.com")))

    assert not decision.granted


def test_require_access_errors(db):
    order = make_order(db, email="a@x.com", user_id="u1")
    resolver = OwnershipResolver(db)

    with pytest.raises(NotFoundError):
        resolver.require_access("missing", CallerContext(user=_user()))

    with pytest.raises(ForbiddenError) as exc:
        resolver.require_access(order.id, CallerContext(user=_user("u2", "b@x.com")))
    assert exc.value.message == "Forbidden"
