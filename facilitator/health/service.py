import logging
from typing import Any, Dict

from facilitator.config import LEDGER_BACKEND, TOKEN_STORE_BACKEND
from facilitator.infra.ledger_provider import get_ledger
from facilitator.tokens.store import get_token_store

logger = logging.getLogger(__name__)


def ledger_health_info() -> Dict[str, Any]:
    info: Dict[str, Any] = {"backend": LEDGER_BACKEND, "ok": False}
    try:
        info["networks"] = len(get_ledger().repository.list_networks(active_only=True))
        info["ok"] = True
    except Exception as e:
        logger.warning("Ledger injoignable: %s", e)
        info["error"] = str(e)
    return info


def token_store_health_info() -> Dict[str, Any]:
    info: Dict[str, Any] = {"backend": TOKEN_STORE_BACKEND, "ok": False}
    try:
        # Lecture d'une clé absente: suffit à valider la connexion
        get_token_store().get("health-probe")
        info["ok"] = True
    except Exception as e:
        logger.warning("Store de jetons injoignable: %s", e)
        info["error"] = str(e)
    return info
