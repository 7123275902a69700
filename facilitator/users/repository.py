# module facilitator.users.repository
from typing import Any, Dict, Optional
import logging
from postgrest.exceptions import APIError
from facilitator.infra.supabase_client import api_error_code, get_service_supabase

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, wallet, name, created_at"

def get_user_by_wallet(wallet: str) -> Optional[Dict[str, Any]]:
    res = (
        get_service_supabase()
        .table("users")
        .select(USER_COLUMNS)
        .eq("wallet", (wallet or "").lower())
        .limit(1)
        .execute()
    )
    rows = res.data or []
    return rows[0] if rows else None

def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    res = get_service_supabase().table("users").select(USER_COLUMNS).eq("id", user_id).limit(1).execute()
    rows = res.data or []
    return rows[0] if rows else None

def create_user(wallet: str, name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Insère un utilisateur (wallet en minuscules).
    Retourne None en cas de doublon (23505): un autre login concurrent l'a créé.
    """
    payload = {"wallet": wallet.lower(), "name": name}
    try:
        res = get_service_supabase().table("users").insert(payload).execute()
    except APIError as e:
        if api_error_code(e) == "23505":
            return None
        raise
    data = res.data or []
    return data[0] if data else None

def get_or_create_user(wallet: str) -> Dict[str, Any]:
    user = get_user_by_wallet(wallet)
    if user:
        return user
    created = create_user(wallet)
    if created:
        logger.info("Nouvel utilisateur créé pour %s", wallet.lower())
        return created
    user = get_user_by_wallet(wallet)
    if not user:
        raise RuntimeError("Impossible de créer l'utilisateur")
    return user
