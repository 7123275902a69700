from datetime import timedelta

from facilitator.ledger.models import Session, SessionStatus
from facilitator.ledger.status import EffectiveStatusResolver, parse_status_filter
from facilitator.utils.clock import utcnow

import pytest


def _session(status=SessionStatus.ACTIVE, expires_in=3600, **kw):
    now = utcnow()
    return Session(
        id=kw.get("id", "0x1"),
        payer="0xp",
        receiver="0xr",
        network_id="eip155:84532",
        token_address="0xt",
        authorization_expiry=now + timedelta(seconds=expires_in),
        refund_expiry=now + timedelta(seconds=expires_in + 3600),
        status=status,
        created_at=now,
    )


def test_active_before_expiry():
    r = EffectiveStatusResolver()
    s = _session()
    assert r.resolve(s, utcnow()) == SessionStatus.ACTIVE
    assert r.is_chargeable(s, utcnow())


def test_expired_is_a_view_only():
    r = EffectiveStatusResolver()
    s = _session(expires_in=-1)
    assert r.resolve(s, utcnow()) == SessionStatus.EXPIRED
    # Le statut stocké n'est pas réécrit
    assert s.status == SessionStatus.ACTIVE
    assert not r.is_chargeable(s, utcnow())


def test_terminal_statuses_are_kept():
    r = EffectiveStatusResolver()
    assert r.resolve(_session(SessionStatus.VOIDED, expires_in=-1), utcnow()) == SessionStatus.VOIDED
    assert r.resolve(_session(SessionStatus.CAPTURED), utcnow()) == SessionStatus.CAPTURED


def test_closing_session_is_not_chargeable():
    r = EffectiveStatusResolver()
    s = _session().model_copy(update={"closing": True})
    assert r.resolve(s, utcnow()) == SessionStatus.ACTIVE
    assert not r.is_chargeable(s, utcnow())


def test_filter_by_effective_status():
    r = EffectiveStatusResolver()
    sessions = [_session(id="a"), _session(id="b", expires_in=-10), _session(SessionStatus.VOIDED, id="c")]
    now = utcnow()
    assert [s.id for s in r.filter(sessions, "active", now)] == ["a"]
    assert [s.id for s in r.filter(sessions, SessionStatus.EXPIRED, now)] == ["b"]
    assert len(r.filter(sessions, None, now)) == 3


def test_parse_status_filter():
    assert parse_status_filter(None) is None
    assert parse_status_filter("all") is None
    assert parse_status_filter("Expired") == SessionStatus.EXPIRED
    with pytest.raises(ValueError):
        parse_status_filter("pending")
