from fastapi import APIRouter, Depends
from typing import Dict, Any

from facilitator.config import RATE_LIMIT_FACILITATOR
from facilitator.infra.ledger_provider import get_ledger
from facilitator.utils.rate_limit import optional_rate_limit
from facilitator.utils.security import require_api_key
from .discovery import get_supported
from .schemas import FacilitatorRequest
from .service import settle_payment, verify_payment

# --- Facilitateur x402 (/api) ---

router = APIRouter(prefix="/api", tags=["Facilitator"])


@router.post("/verify", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_FACILITATOR))])
def api_verify(req: FacilitatorRequest, owner: Dict[str, Any] = Depends(require_api_key)):
    """Vérifie un paiement sans rien muter. Toujours 200: le résultat est dans isValid/invalidReason."""
    result = verify_payment(req, operator_id=owner["id"])
    return result.model_dump(by_alias=True, exclude_none=True)


@router.post("/settle", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_FACILITATOR))])
def api_settle(req: FacilitatorRequest, owner: Dict[str, Any] = Depends(require_api_key)):
    """Règle un paiement.
    - Création: ouvre la session, autorise le dépôt on-chain, débite la première requête
      et renvoie le jeton de session (une seule fois).
    - Usage: débite la session (idempotent par requestId).
    """
    result = settle_payment(req, operator_id=owner["id"])
    return result.model_dump(by_alias=True, exclude_none=True)


@router.get("/supported")
def api_supported():
    return get_supported(get_ledger())
