import os

# Doit précéder tout import de facilitator (config lue à l'import)
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")
os.environ.setdefault("USE_FAKE_REDIS_FOR_TESTS", "1")
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("TOKEN_STORE_BACKEND", "redis")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-entropy-0123456789")
os.environ.setdefault("FACILITATOR_ADDRESS", "0xfac11174702000000000000000000000000000aa")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")

import pytest
from datetime import timedelta
from typing import Generator, Dict, Any
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

import fakeredis

from facilitator.app import app as fastapi_app
from facilitator.chain.gateway import ChainGateway, set_gateway
from facilitator.infra.ledger_provider import default_networks, set_ledger
from facilitator.ledger.repository import MemoryLedgerRepository
from facilitator.ledger.service import SessionLedger
from facilitator.payments.discovery import clear_supported_cache
from facilitator.tokens.store import RedisTokenStore, set_token_store
from facilitator.utils.clock import utcnow
from facilitator.utils.security import require_api_key, require_payer

PAYER = "0x1111111111111111111111111111111111111111"
RECEIVER = "0x2222222222222222222222222222222222222222"
OPERATOR_ID = "operator-user-id"
NETWORK = "eip155:84532"


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)
        elif "tests/functional/" in nodeid:
            item.add_marker(pytest.mark.functional)


class FakeClock:
    """Horloge pilotable: ancrée sur l'heure réelle, avance à la demande."""

    def __init__(self):
        self.now = utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGateway(ChainGateway):
    """
    Passerelle on-chain simulée.
    - fail["capture"] = SettlementTimeout() -> l'opération lève cette erreur
    - calls: historique des opérations soumises
    """

    def __init__(self):
        self.signatures_valid = True
        self.messages_valid = True
        self.fail: Dict[str, Exception] = {}
        self.calls = []
        self._counter = 0

    def _tx(self, op: str, **details) -> str:
        self.calls.append((op, details))
        err = self.fail.get(op)
        if err is not None:
            raise err
        self._counter += 1
        return f"0x{op}{self._counter:04d}"

    def verify_authorization(self, network, authorization, signature):
        self.calls.append(("verify_authorization", {"nonce": authorization.get("nonce")}))
        return self.signatures_valid

    def verify_message(self, address, message, signature, chain_id):
        self.calls.append(("verify_message", {"address": address}))
        return self.messages_valid

    def authorize(self, network, payment_info, amount, authorization, signature):
        return self._tx("authorize", amount=amount)

    def capture(self, network, payment_info, amount):
        return self._tx("capture", amount=amount)

    def void(self, network, payment_info):
        return self._tx("void")

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)


@pytest.fixture(scope="session")
def app():
    return fastapi_app


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def token_store():
    store = RedisTokenStore(fakeredis.FakeRedis(decode_responses=True))
    set_token_store(store)
    yield store
    set_token_store(None)


@pytest.fixture()
def gateway():
    gw = FakeGateway()
    set_gateway(gw)
    yield gw
    set_gateway(None)


@pytest.fixture()
def ledger(token_store, gateway, clock):
    """Ledger mémoire installé comme instance partagée (utilisé par les routes)."""
    instance = SessionLedger(
        MemoryLedgerRepository(default_networks()),
        token_store,
        gateway,
        clock=clock,
        operator_address=os.environ["FACILITATOR_ADDRESS"],
    )
    set_ledger(instance)
    clear_supported_cache()
    yield instance
    set_ledger(None)
    clear_supported_cache()


@pytest.fixture()
def open_session(ledger, clock):
    """Fabrique de sessions actives dont l'autorisation on-chain est confirmée."""
    counter = {"n": 0}

    def _open(deposit: int = 10_000_000, payer: str = PAYER, receiver: str = RECEIVER,
              authorization_seconds: int = 24 * 3600, refund_seconds: int = 48 * 3600,
              operator_id: str = OPERATOR_ID, confirm: bool = True):
        counter["n"] += 1
        session = ledger.create_session(
            NETWORK,
            payer,
            receiver,
            deposit,
            clock.now + timedelta(seconds=authorization_seconds),
            clock.now + timedelta(seconds=refund_seconds),
            f"0x{counter['n']:064x}",
            salt=f"salt-{counter['n']}",
            operator_id=operator_id,
        )
        if confirm:
            ledger.confirm_authorization(session.id, f"0xauth{counter['n']:04d}")
        return session.id

    return _open


# Identités simulées pour les routes protégées
@pytest.fixture()
def as_operator(app):
    app.dependency_overrides[require_api_key] = lambda: {"id": OPERATOR_ID, "key_id": "key-1"}
    try:
        yield {"id": OPERATOR_ID}
    finally:
        app.dependency_overrides.pop(require_api_key, None)


@pytest.fixture()
def as_payer(app):
    fake_user: Dict[str, Any] = {"id": "payer-user-id", "wallet": PAYER}
    app.dependency_overrides[require_payer] = lambda: fake_user
    try:
        yield fake_user
    finally:
        app.dependency_overrides.pop(require_payer, None)


# Aucun accès Supabase réel pendant les tests
@pytest.fixture(scope="function", autouse=True)
def mock_db_dependency(monkeypatch):
    monkeypatch.setattr("facilitator.infra.supabase_client.get_service_supabase", lambda: MagicMock())


# --- Requêtes x402 (schéma escrow) ---

TOKEN_COLLECTOR = "0x0e3df9510de65469c4518d7843919c0b8c7a7757"
SEPOLIA_USDC = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"


def requirements(amount: str = "1000", network: str = NETWORK) -> Dict[str, Any]:
    return {
        "scheme": "escrow",
        "network": network,
        "amount": amount,
        "asset": SEPOLIA_USDC,
        "payTo": RECEIVER,
        "maxTimeoutSeconds": 60,
        "extra": {},
    }


def creation_request(clock: FakeClock, nonce: str = "0x" + "11" * 32, deposit: str = "10000000",
                     amount: str = "1000", authorization_seconds: int = 24 * 3600,
                     refund_seconds: int = 48 * 3600, **payload_extra) -> Dict[str, Any]:
    now = int(clock.now.timestamp())
    payload = {
        "signature": "0x" + "ee" * 65,
        "authorization": {
            "from": PAYER,
            "to": TOKEN_COLLECTOR,
            "value": deposit,
            "validAfter": "0",
            "validBefore": str(now + authorization_seconds + 60),
            "nonce": nonce,
        },
        "sessionParams": {
            "salt": "0x" + "01" * 32,
            "authorizationExpiry": now + authorization_seconds,
            "refundExpiry": now + refund_seconds,
        },
    }
    payload.update(payload_extra)
    return {
        "x402Version": 2,
        "paymentPayload": {"x402Version": 2, "scheme": "escrow", "network": NETWORK, "payload": payload},
        "paymentRequirements": requirements(amount),
    }


def usage_request(session_id: str, token: str, amount: str = "1000", request_id: str = "req-1") -> Dict[str, Any]:
    return {
        "x402Version": 2,
        "paymentPayload": {
            "x402Version": 2,
            "scheme": "escrow",
            "network": NETWORK,
            "payload": {"session": {"id": session_id, "token": token}, "amount": amount, "requestId": request_id},
        },
        "paymentRequirements": requirements(amount),
    }
