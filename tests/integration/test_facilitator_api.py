from facilitator.errors import SettlementRejected, SettlementTimeout
from facilitator.ledger.models import SessionStatus

from conftest import PAYER, creation_request, usage_request


def _open(client, clock, **kw):
    r = client.post("/api/settle", json=creation_request(clock, **kw))
    assert r.status_code == 200
    return r.json()


def test_settle_creation_opens_session_and_charges_first_request(client, ledger, gateway, clock, as_operator):
    body = _open(client, clock, deposit="10000000", amount="1000")

    assert body["success"] is True
    assert body["payer"] == PAYER
    assert body["network"] == "eip155:84532"
    assert body["transaction"].startswith("0xauthorize")
    session = body["session"]
    assert session["token"].startswith("sess_")
    assert session["balance"]["available"] == "9999000"
    assert session["balance"]["pending"] == "1000"
    assert gateway.count("authorize") == 1

    stored = ledger.get(session["id"])
    assert stored.session.operator_id == as_operator["id"]
    assert stored.session.token_hash != session["token"]
    debits = ledger.repository.list_debits(session["id"])
    assert [d.request_id for d in debits] == ["initial:0x" + "11" * 32]
    assert debits[0].description == "Initial request charge"


def test_usage_settle_debits_idempotently(client, ledger, clock, as_operator):
    session = _open(client, clock)["session"]

    r1 = client.post("/api/settle", json=usage_request(session["id"], session["token"], "2500", "req-1")).json()
    r2 = client.post("/api/settle", json=usage_request(session["id"], session["token"], "2500", "req-1")).json()

    assert r1["success"] is True and r2["success"] is True
    assert r1["transaction"] == ""
    assert "token" not in r1["session"]
    assert r1["session"]["balance"] == r2["session"]["balance"]
    assert ledger.get(session["id"]).balance.available == 10_000_000 - 1000 - 2500


def test_usage_with_wrong_token_is_refused(client, ledger, clock, as_operator):
    session = _open(client, clock)["session"]
    body = client.post("/api/settle", json=usage_request(session["id"], "sess_forged", "10", "req-x")).json()
    assert body == {"success": False, "errorReason": "invalid_session_token", "transaction": "",
                    "network": "eip155:84532"}
    assert ledger.repository.find_debit(session["id"], "req-x") is None


def test_usage_insufficient_balance(client, ledger, clock, as_operator):
    session = _open(client, clock, deposit="5000000", amount="1000")["session"]
    body = client.post("/api/settle", json=usage_request(session["id"], session["token"], "4999001", "req-big")).json()
    assert body["success"] is False
    assert body["errorReason"] == "insufficient_balance"


def test_usage_on_unknown_session(client, ledger, clock, as_operator):
    body = client.post("/api/settle", json=usage_request("0xdead", "sess_x", "10")).json()
    assert body["errorReason"] == "session_not_found"


def test_usage_from_other_operator_is_not_found(client, ledger, clock, as_operator, app):
    session = _open(client, clock)["session"]
    from facilitator.utils.security import require_api_key
    app.dependency_overrides[require_api_key] = lambda: {"id": "someone-else", "key_id": "k9"}
    body = client.post("/api/settle", json=usage_request(session["id"], session["token"], "10")).json()
    assert body["errorReason"] == "session_not_found"


def test_replayed_creation_is_idempotent(client, ledger, gateway, clock, as_operator):
    first = _open(client, clock)
    second = _open(client, clock)

    assert second["success"] is True
    assert second["session"]["id"] == first["session"]["id"]
    assert "token" not in second["session"]
    assert second["transaction"] == first["transaction"]
    assert gateway.count("authorize") == 1
    assert ledger.get(first["session"]["id"]).balance.pending == 1000


def test_replayed_nonce_for_other_session_is_refused(client, ledger, clock, as_operator):
    _open(client, clock)
    body = client.post("/api/settle", json=creation_request(clock, deposit="20000000")).json()
    assert body["success"] is False
    assert body["errorReason"] == "nonce_already_used"


def test_rejected_authorization_closes_session(client, ledger, gateway, clock, as_operator):
    gateway.fail["authorize"] = SettlementRejected("revert")
    body = _open(client, clock)
    assert body["success"] is False
    assert body["errorReason"] == "settlement_rejected"
    sessions = ledger.list_by_payer(PAYER)
    assert len(sessions) == 1
    assert sessions[0].status == SessionStatus.VOIDED
    assert sessions[0].balance.available == 0


def test_authorization_timeout_can_be_retried(client, ledger, gateway, clock, as_operator):
    gateway.fail["authorize"] = SettlementTimeout()
    body = _open(client, clock)
    assert body["errorReason"] == "settlement_timeout"

    del gateway.fail["authorize"]
    retry = _open(client, clock)
    assert retry["success"] is True
    assert retry["session"]["token"].startswith("sess_")
    assert gateway.count("authorize") == 2

    # Le jeton remis à la resoumission est utilisable
    session = retry["session"]
    usage = client.post("/api/settle", json=usage_request(session["id"], session["token"], "10", "req-2")).json()
    assert usage["success"] is True


def test_invalid_signature(client, ledger, gateway, clock, as_operator):
    gateway.signatures_valid = False
    body = _open(client, clock)
    assert body["errorReason"] == "invalid_signature"
    assert ledger.list_by_payer(PAYER) == []


def test_creation_checks(client, ledger, clock, as_operator):
    bad_deposit = client.post("/api/settle", json=creation_request(clock, deposit="1")).json()
    assert bad_deposit["errorReason"] == "deposit_out_of_bounds"

    cheap = client.post("/api/settle", json=creation_request(clock, nonce="0x" + "22" * 32,
                                                             deposit="5000000", amount="6000000")).json()
    assert cheap["errorReason"] == "deposit_less_than_cost"

    req = creation_request(clock, nonce="0x" + "33" * 32)
    req["paymentPayload"]["payload"]["authorization"]["validBefore"] = "1"
    assert client.post("/api/settle", json=req).json()["errorReason"] == "authorization_expired"

    req = creation_request(clock, nonce="0x" + "44" * 32)
    req["paymentPayload"]["payload"]["authorization"]["to"] = PAYER
    assert client.post("/api/settle", json=req).json()["errorReason"] == "invalid_token_collector"


def test_usage_payload_with_signature_is_invalid(client, ledger, clock, as_operator):
    req = usage_request("0xabc", "sess_x")
    req["paymentPayload"]["payload"]["signature"] = "0xsig"
    body = client.post("/api/settle", json=req).json()
    assert body["errorReason"] == "unexpected_signature"


def test_unsupported_scheme(client, ledger, clock, as_operator):
    req = creation_request(clock)
    req["paymentRequirements"]["scheme"] = "exact"
    req["paymentPayload"]["scheme"] = "exact"
    assert client.post("/api/settle", json=req).json()["errorReason"] == "unsupported_scheme"


def test_sync_capture_near_authorization_expiry(client, ledger, gateway, clock, as_operator):
    session = _open(client, clock, authorization_seconds=20 * 60)["session"]
    body = client.post("/api/settle", json=usage_request(session["id"], session["token"], "500", "req-2")).json()
    assert body["success"] is True
    assert gateway.count("capture") == 1
    balance = ledger.get(session["id"]).balance
    assert (balance.captured, balance.pending) == (1000, 500)


def test_sync_capture_failure_refuses_debit(client, ledger, gateway, clock, as_operator):
    session = _open(client, clock, authorization_seconds=20 * 60)["session"]
    gateway.fail["capture"] = SettlementTimeout()
    body = client.post("/api/settle", json=usage_request(session["id"], session["token"], "500", "req-2")).json()
    assert body["success"] is False
    assert body["errorReason"] == "sync_capture_failed"
    assert ledger.repository.find_debit(session["id"], "req-2") is None


# --- verify ---

def test_verify_creation_does_not_mutate(client, ledger, token_store, clock, as_operator):
    body = client.post("/api/verify", json=creation_request(clock)).json()
    assert body == {"isValid": True, "payer": PAYER}
    assert ledger.list_by_payer(PAYER) == []
    assert token_store.is_usable("0x" + "11" * 32, scope="erc3009")


def test_verify_usage(client, ledger, clock, as_operator):
    session = _open(client, clock, deposit="5000000")["session"]
    ok = client.post("/api/verify", json=usage_request(session["id"], session["token"], "1000", "req-2")).json()
    assert ok["isValid"] is True
    assert ok["payer"] == PAYER

    too_much = client.post("/api/verify", json=usage_request(session["id"], session["token"], "6000000", "req-3")).json()
    assert too_much["isValid"] is False
    assert too_much["invalidReason"] == "insufficient_balance"
    assert ledger.get(session["id"]).balance.available == 4_999_000


def test_verify_replayed_nonce(client, ledger, clock, as_operator):
    _open(client, clock)
    body = client.post("/api/verify", json=creation_request(clock)).json()
    assert body["isValid"] is False
    assert body["invalidReason"] == "nonce_already_used"


# --- transport ---

def test_api_key_required(client, ledger, clock):
    r = client.post("/api/settle", json=creation_request(clock))
    assert r.status_code == 401
    assert r.json()["reason"] == "missing_api_key"


def test_malformed_body_is_400(client, ledger, as_operator):
    r = client.post("/api/settle", json={"paymentPayload": {}})
    assert r.status_code == 400
    assert r.json()["reason"] == "invalid_payload"


def test_supported_lists_active_networks(client, ledger):
    body = client.get("/api/supported").json()
    networks = {k["network"] for k in body["kinds"]}
    assert networks == {"eip155:8453", "eip155:84532"}
    kind = body["kinds"][0]
    assert kind["scheme"] == "escrow"
    assert kind["extra"]["minDeposit"] == "5000000"
    assert body["extensions"] == ["agentokratia"]


def test_supported_is_cached(client, ledger):
    first = client.get("/api/supported").json()
    ledger.repository.add_network(ledger.repository.get_network("eip155:8453").model_copy(
        update={"id": "eip155:1", "name": "Ethereum"}))
    assert client.get("/api/supported").json() == first
