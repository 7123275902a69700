import pytest

from conftest import creation_request, usage_request

CRON = {"Authorization": "Bearer cron-test-secret"}


@pytest.mark.functional
def test_session_lifecycle(client, ledger, gateway, clock, as_operator, as_payer):
    """
    Vie complète d'une session:
    ouverture (1er paiement) -> requêtes suivantes -> capture planifiée -> remboursement du reste.
    """
    opened = client.post("/api/settle", json=creation_request(clock, deposit="10000000", amount="400000")).json()
    assert opened["success"] is True
    session_id = opened["session"]["id"]
    token = opened["session"]["token"]

    for i in range(3):
        resp = client.post("/api/settle", json=usage_request(session_id, token, amount="400000", request_id=f"req-{i}"))
        assert resp.json()["success"] is True

    # 1 600 000 en pending: au-dessus du seuil du tier 1
    job = client.post("/api/capture", headers=CRON).json()
    assert job["tier1"] == 1
    assert job["captured"][0]["amount"] == "1600000"

    clock.advance(3600)
    client.post("/api/settle", json=usage_request(session_id, token, amount="100000", request_id="req-late"))

    stats = client.get("/api/payer/stats").json()
    assert stats["totalCaptured"] == "1600000"
    assert stats["totalPending"] == "100000"
    assert stats["totalAvailable"] == "8300000"

    reclaim = client.post(f"/api/payer/sessions/{session_id}/reclaim").json()
    assert reclaim["capturedAmount"] == "100000"
    assert reclaim["amount"] == "8300000"

    final = client.get(f"/api/payer/sessions/{session_id}").json()["session"]
    assert final["status"] == "voided"
    assert final["balance"] == {
        "authorized": "10000000",
        "captured": "1700000",
        "pending": "0",
        "available": "0",
        "reclaimed": "8300000",
    }
    assert [op for op, _ in gateway.calls if op != "verify_authorization"] == [
        "authorize", "capture", "capture", "void",
    ]

    # Session close: plus aucun débit
    late = client.post("/api/settle", json=usage_request(session_id, token, amount="1", request_id="req-after"))
    assert late.json()["success"] is False
    assert late.json()["errorReason"] == "session_inactive"
