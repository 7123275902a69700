"""
Cas d'usage Auth.

- issue_nonce: nonce SIWE à usage unique (5 minutes)
- verify_siwe: signature du message, claim atomique du nonce, find-or-create utilisateur, JWT
- JWT (PyJWT, HS256): sub = id utilisateur, address = wallet
- clés API (serveurs de ressources): x402_<hex>, stockées en sha256
"""
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

import jwt

from facilitator.auth.models import AuthResponse, build_api_key_dict, build_user_dict
from facilitator.auth.repository import (
    find_active_api_key,
    insert_api_key,
    list_api_keys as _repo_list_api_keys,
    revoke_api_key as _repo_revoke_api_key,
    touch_api_key,
)
from facilitator.auth.siwe import parse_siwe_message
from facilitator.chain.gateway import get_gateway
from facilitator.config import (
    AUTH_NONCE_TTL_SECONDS,
    JWT_AUDIENCE,
    JWT_EXPIRATION_HOURS,
    JWT_ISSUER,
    JWT_SECRET,
)
from facilitator.errors import AuthenticationError, NotFound, SettlementFailed, TokenClaimError, ValidationError
from facilitator.tokens.store import get_token_store
from facilitator.users.repository import get_or_create_user, get_user_by_id
from facilitator.utils.clock import utcnow

logger = logging.getLogger(__name__)

SIWE_SCOPE = "siwe"
API_KEY_PREFIX = "x402_"


# --- Nonces / SIWE ---

def issue_nonce() -> Dict[str, Any]:
    token = get_token_store().issue(SIWE_SCOPE, AUTH_NONCE_TTL_SECONDS)
    return {"nonce": token.value, "expiresAt": token.expires_at.isoformat()}


def verify_siwe(message: str, signature: str) -> AuthResponse:
    """Vérification SIWE:
    - Parse le message EIP-4361 (adresse, chain id, nonce, expiration)
    - Vérifie la signature via la passerelle (EOA et smart wallets)
    - Claim atomique du nonce, le wallet étant enregistré comme consommateur
    - Crée l'utilisateur au premier login puis émet le JWT
    """
    parsed = parse_siwe_message(message)
    now = utcnow()
    if parsed.expiration_time and now >= parsed.expiration_time:
        raise AuthenticationError("Message expiré", reason="message_expired")
    if parsed.not_before and now < parsed.not_before:
        raise AuthenticationError("Message pas encore valide", reason="message_not_yet_valid")

    try:
        valid = get_gateway().verify_message(parsed.address, message, signature, parsed.chain_id)
    except SettlementFailed as e:
        logger.warning("Vérification SIWE indisponible: %s", e.reason)
        raise AuthenticationError("Vérification de signature indisponible", reason="verification_failed")
    if not valid:
        raise AuthenticationError("Signature invalide", reason="invalid_signature")

    wallet = parsed.address.lower()
    claim = get_token_store().claim(parsed.nonce, now=now, claimed_by=wallet, scope=SIWE_SCOPE)
    if not claim.ok:
        logger.warning("Claim du nonce SIWE refusé (%s) pour %s", claim.status.value, wallet)
        raise TokenClaimError("Nonce invalide ou déjà utilisé", reason=claim.reason)

    user = get_or_create_user(wallet)
    return AuthResponse(token=create_access_token(user), user=build_user_dict(user))


# --- JWT ---

def create_access_token(user: Dict[str, Any]) -> str:
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET manquant")
    now = utcnow()
    claims = {
        "sub": str(user["id"]),
        "address": (user.get("wallet") or "").lower(),
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=["HS256"], audience=JWT_AUDIENCE, issuer=JWT_ISSUER)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expirée, veuillez vous reconnecter", reason="token_expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Jeton invalide", reason="invalid_token")
    if not claims.get("sub") or not claims.get("address"):
        raise AuthenticationError("Jeton invalide", reason="invalid_token")
    return claims


def get_user_from_token(token: str) -> Dict[str, Any]:
    claims = decode_access_token(token)
    return {"id": claims["sub"], "wallet": claims["address"].lower()}


def get_profile(user_id: str) -> Dict[str, Any]:
    user = get_user_by_id(user_id)
    if not user:
        raise NotFound("Utilisateur introuvable", reason="user_not_found")
    return build_user_dict(user)


# --- Clés API ---

def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def create_api_key(user_id: str, name: str) -> Dict[str, Any]:
    """La clé en clair n'est renvoyée qu'une seule fois, à la création."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Nom requis", reason="invalid_name")
    raw_key = API_KEY_PREFIX + secrets.token_hex(32)
    row = insert_api_key(user_id, name, hash_api_key(raw_key), raw_key[:12])
    logger.info("Clé API créée pour %s", user_id)
    return build_api_key_dict(row, raw_key=raw_key)


def list_api_keys(user_id: str) -> List[Dict[str, Any]]:
    return [build_api_key_dict(r) for r in _repo_list_api_keys(user_id)]


def revoke_api_key(user_id: str, key_id: str) -> None:
    if not _repo_revoke_api_key(user_id, key_id):
        raise NotFound("Clé API introuvable", reason="api_key_not_found")
    logger.info("Clé API %s révoquée", key_id)


def resolve_api_key(raw_key: str) -> Optional[Dict[str, Any]]:
    if not raw_key or not raw_key.startswith(API_KEY_PREFIX):
        return None
    row = find_active_api_key(hash_api_key(raw_key))
    if not row:
        return None
    try:
        touch_api_key(row["id"])
    except Exception as e:
        logger.warning("Mise à jour last_used_at impossible: %s", e)
    return {"id": str(row["user_id"]), "key_id": str(row["id"])}
