# module facilitator.auth.repository
"""
Accès Supabase aux clés API des serveurs de ressources (table api_keys).
Les clés ne sont jamais stockées en clair: seul leur sha256 est persisté.
"""
from typing import Any, Dict, List, Optional
from facilitator.infra.supabase_client import get_service_supabase
from facilitator.utils.clock import utcnow

API_KEY_COLUMNS = "id, user_id, name, key_prefix, status, created_at, revoked_at, last_used_at"

def insert_api_key(user_id: str, name: str, key_hash: str, key_prefix: str) -> Dict[str, Any]:
    payload = {
        "user_id": user_id,
        "name": name,
        "api_key_hash": key_hash,
        "key_prefix": key_prefix,
        "status": "active",
    }
    res = get_service_supabase().table("api_keys").insert(payload).execute()
    data = res.data or []
    return data[0] if data else payload

def list_api_keys(user_id: str) -> List[Dict[str, Any]]:
    res = (
        get_service_supabase()
        .table("api_keys")
        .select(API_KEY_COLUMNS)
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    return res.data or []

def find_active_api_key(key_hash: str) -> Optional[Dict[str, Any]]:
    res = (
        get_service_supabase()
        .table("api_keys")
        .select("id, user_id, status")
        .eq("api_key_hash", key_hash)
        .eq("status", "active")
        .limit(1)
        .execute()
    )
    rows = res.data or []
    return rows[0] if rows else None

def revoke_api_key(user_id: str, key_id: str) -> bool:
    res = (
        get_service_supabase()
        .table("api_keys")
        .update({"status": "revoked", "revoked_at": utcnow().isoformat()})
        .eq("id", key_id)
        .eq("user_id", user_id)
        .eq("status", "active")
        .execute()
    )
    return bool(res.data)

def touch_api_key(key_id: str) -> None:
    get_service_supabase().table("api_keys").update({"last_used_at": utcnow().isoformat()}).eq("id", key_id).execute()
