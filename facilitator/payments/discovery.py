"""
Réponse de découverte (/api/supported).
- un "kind" escrow par réseau actif, avec les paramètres EIP-712 et les bornes de dépôt
- mise en cache en mémoire (TTL court): coûteux mais stable
"""
import threading
import time
from typing import Any, Dict, Optional

from facilitator.config import FACILITATOR_ADDRESS, SUPPORTED_CACHE_TTL_SECONDS
from facilitator.ledger.service import SessionLedger

EXTENSIONS = ["agentokratia"]

_cache: Dict[str, Any] = {"expires_at": 0.0, "data": None}
_lock = threading.Lock()


def build_supported(ledger: SessionLedger) -> Dict[str, Any]:
    kinds = []
    for network in ledger.repository.list_networks(active_only=True):
        kinds.append({
            "x402Version": 2,
            "scheme": "escrow",
            "network": network.id,
            "asset": network.token_address,
            "extra": {
                "name": network.eip712_name,
                "version": network.eip712_version,
                "facilitator": FACILITATOR_ADDRESS,
                "escrowContract": network.escrow_contract,
                "tokenCollector": network.token_collector,
                "minDeposit": str(network.min_deposit),
                "maxDeposit": str(network.max_deposit),
            },
        })
    return {
        "kinds": kinds,
        "extensions": EXTENSIONS,
        "signers": {"eip155:*": [FACILITATOR_ADDRESS] if FACILITATOR_ADDRESS else []},
    }


def get_supported(ledger: SessionLedger, ttl_seconds: int = SUPPORTED_CACHE_TTL_SECONDS,
                  now: Optional[float] = None) -> Dict[str, Any]:
    now = time.monotonic() if now is None else now
    with _lock:
        if _cache["data"] is not None and now < _cache["expires_at"]:
            return _cache["data"]
        data = build_supported(ledger)
        _cache["data"] = data
        _cache["expires_at"] = now + ttl_seconds
        return data


def clear_supported_cache() -> None:
    with _lock:
        _cache["data"] = None
        _cache["expires_at"] = 0.0
