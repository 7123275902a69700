import json

import httpx
import pytest

from facilitator.chain.gateway import RelayerGateway
from facilitator.errors import SettlementRejected, SettlementTimeout
from facilitator.infra.ledger_provider import default_networks

NETWORK = default_networks()[1]


def _gateway(handler):
    return RelayerGateway(base_url="http://relayer.test", token="relayer-token", transport=httpx.MockTransport(handler))


def test_capture_returns_transaction_and_sends_auth():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "transaction": "0xabc"})

    tx = _gateway(handler).capture(NETWORK, {"payer": "0x1"}, 1000)
    assert tx == "0xabc"
    assert seen["path"] == "/escrow/capture"
    assert seen["auth"] == "Bearer relayer-token"
    assert seen["body"]["amount"] == "1000"


def test_verify_authorization_reads_valid_flag():
    gw = _gateway(lambda request: httpx.Response(200, json={"valid": False}))
    assert gw.verify_authorization(NETWORK, {"nonce": "0x1"}, "0xsig") is False


def test_client_error_is_rejection():
    gw = _gateway(lambda request: httpx.Response(400, json={"error": "execution reverted"}))
    with pytest.raises(SettlementRejected) as exc:
        gw.void(NETWORK, {})
    assert exc.value.retryable is False


def test_success_false_is_rejection():
    gw = _gateway(lambda request: httpx.Response(200, json={"success": False, "error": "bad"}))
    with pytest.raises(SettlementRejected):
        gw.authorize(NETWORK, {}, 1, {}, "0xsig")


def test_server_error_is_retryable():
    gw = _gateway(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(SettlementTimeout) as exc:
        gw.capture(NETWORK, {}, 1)
    assert exc.value.reason == "settlement_unavailable"
    assert exc.value.retryable is True


def test_timeout_is_settlement_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(SettlementTimeout) as exc:
        _gateway(handler).capture(NETWORK, {}, 1)
    assert exc.value.reason == "settlement_timeout"


def test_missing_transaction_is_rejection():
    gw = _gateway(lambda request: httpx.Response(200, json={"success": True}))
    with pytest.raises(SettlementRejected):
        gw.capture(NETWORK, {}, 1)


def test_plain_text_client_error_is_rejection():
    gw = _gateway(lambda request: httpx.Response(400, text="Bad Request"))
    with pytest.raises(SettlementRejected) as exc:
        gw.capture(NETWORK, {}, 1000)
    assert exc.value.retryable is False


def test_unreadable_success_reply_is_retryable():
    gw = _gateway(lambda request: httpx.Response(200, text="<html>ok</html>"))
    with pytest.raises(SettlementTimeout) as exc:
        gw.void(NETWORK, {})
    assert exc.value.reason == "settlement_unavailable"


def test_non_object_json_is_handled():
    gw = _gateway(lambda request: httpx.Response(422, json=["reverted"]))
    with pytest.raises(SettlementRejected):
        gw.capture(NETWORK, {}, 1)
