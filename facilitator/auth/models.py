from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class VerifyRequest(BaseModel):
    message: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class ApiKeyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class AuthResponse(BaseModel):
    token: str
    user: Dict[str, Any]


def build_user_dict(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user.get("id")),
        "wallet": user.get("wallet"),
        "name": user.get("name"),
    }


def build_api_key_dict(row: Dict[str, Any], raw_key: Optional[str] = None) -> Dict[str, Any]:
    data = {
        "id": str(row.get("id")),
        "name": row.get("name"),
        "prefix": row.get("key_prefix"),
        "status": row.get("status", "active"),
        "createdAt": row.get("created_at"),
        "lastUsedAt": row.get("last_used_at"),
    }
    if raw_key:
        data["key"] = raw_key
    return data
