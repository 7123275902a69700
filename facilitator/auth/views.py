from fastapi import APIRouter, Depends
from typing import Dict, Any

from facilitator.config import RATE_LIMIT_AUTH_VERIFY, RATE_LIMIT_MANAGEMENT, RATE_LIMIT_NONCE
from facilitator.utils.rate_limit import optional_rate_limit
from facilitator.utils.security import require_payer
from .models import ApiKeyCreate, VerifyRequest
from .service import (
    create_api_key as svc_create_api_key,
    get_profile as svc_get_profile,
    issue_nonce as svc_issue_nonce,
    list_api_keys as svc_list_api_keys,
    revoke_api_key as svc_revoke_api_key,
    verify_siwe as svc_verify_siwe,
)

# --- API Router (/api/auth) ---

api_router = APIRouter(prefix="/api/auth", tags=["Auth API"])


@api_router.get("/nonce", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_NONCE))])
def api_nonce():
    """Nonce SIWE à usage unique, à inclure dans le message signé."""
    return svc_issue_nonce()


@api_router.post("/verify", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_AUTH_VERIFY))])
def api_verify(req: VerifyRequest):
    """Connexion par wallet.
    - Vérifie la signature du message SIWE et consomme le nonce (une seule fois).
    - Crée l'utilisateur au premier login.
    - Retourne {token, user}; le token s'utilise en Bearer sur les routes payeur.
    """
    return svc_verify_siwe(req.message, req.signature).model_dump()


@api_router.get("/me")
def api_me(user: Dict[str, Any] = Depends(require_payer)):
    return {"user": svc_get_profile(user["id"])}


# --- Clés API (/api/keys) ---

keys_router = APIRouter(prefix="/api/keys", tags=["API Keys"])


@keys_router.post("", status_code=201, dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def api_create_key(body: ApiKeyCreate, user: Dict[str, Any] = Depends(require_payer)):
    """La clé complète n'apparaît que dans cette réponse."""
    return {"apiKey": svc_create_api_key(user["id"], body.name)}


@keys_router.get("", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def api_list_keys(user: Dict[str, Any] = Depends(require_payer)):
    return {"apiKeys": svc_list_api_keys(user["id"])}


@keys_router.delete("/{key_id}", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def api_revoke_key(key_id: str, user: Dict[str, Any] = Depends(require_payer)):
    svc_revoke_api_key(user["id"], key_id)
    return {"success": True}
