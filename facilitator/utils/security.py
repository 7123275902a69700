import hmac
from typing import Any, Dict, Optional

from fastapi import Depends, Request

from facilitator.config import CRON_SECRET
from facilitator.errors import AuthenticationError

API_KEY_PREFIX = "x402_"


def get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def get_current_payer(request: Request) -> Dict[str, Any]:
    """
    Identité payeur (JWT SIWE uniquement).
    - une clé API x402_ n'ouvre jamais les routes payeur
    """
    token = get_bearer_token(request)
    if not token:
        raise AuthenticationError("Non authentifié", reason="missing_token")
    if token.startswith(API_KEY_PREFIX):
        raise AuthenticationError("Les clés API ne donnent pas accès aux routes payeur", reason="jwt_required")

    # Délégué au service Auth
    from facilitator.auth.service import get_user_from_token as _svc_get_user_from_token
    return _svc_get_user_from_token(token)


def require_payer(user: Dict[str, Any] = Depends(get_current_payer)) -> Dict[str, Any]:
    return user


def require_api_key(request: Request) -> Dict[str, Any]:
    """Serveur de ressources authentifié par clé API (Bearer x402_...)."""
    token = get_bearer_token(request)
    if not token or not token.startswith(API_KEY_PREFIX):
        raise AuthenticationError("Clé API requise", reason="missing_api_key")

    from facilitator.auth.service import resolve_api_key as _svc_resolve_api_key
    owner = _svc_resolve_api_key(token)
    if not owner:
        raise AuthenticationError("Clé API invalide", reason="invalid_api_key")
    return owner


def require_cron(request: Request) -> None:
    """Déclenchement de la capture planifiée (Bearer CRON_SECRET)."""
    token = get_bearer_token(request) or ""
    if not CRON_SECRET or not hmac.compare_digest(token, CRON_SECRET):
        raise AuthenticationError("Non autorisé", reason="unauthorized")
