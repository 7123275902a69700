# module facilitator.tokens.store
"""
Store de jetons à usage unique (nonces d'authentification, nonces d'autorisation ERC-3009).

Contrat:
- issue(scope, ttl_seconds, value=None) -> SingleUseToken
  Crée un jeton non utilisé; si `value` est fournie et existe déjà, l'enregistrement
  existant est renvoyé tel quel (jamais écrasé).
- claim(value, now, claimed_by, scope) -> ClaimResult
  Opération atomique unique: marque le jeton utilisé si et seulement s'il est
  actuellement inutilisé et non expiré. Sur N claims concurrents, un seul réussit.

Implémentations:
- RedisTokenStore: SET NX sur une clé de claim dédiée (compare-and-set natif Redis)
- SupabaseTokenStore: UPDATE conditionnel (used_at IS NULL AND expires_at > now)
"""
import json
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from facilitator.config import TOKEN_RETENTION_SECONDS, TOKEN_STORE_BACKEND
from facilitator.tokens.models import ClaimResult, ClaimStatus, SingleUseToken
from facilitator.utils.clock import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "siwe"


def generate_nonce() -> str:
    """16 octets aléatoires en hexadécimal (32 caractères)."""
    return secrets.token_hex(16)


class SingleUseTokenStore(ABC):

    @abstractmethod
    def issue(self, scope: str, ttl_seconds: int, value: Optional[str] = None,
              now: Optional[datetime] = None) -> SingleUseToken:
        ...

    @abstractmethod
    def claim(self, value: str, now: Optional[datetime] = None, claimed_by: Optional[str] = None,
              scope: str = DEFAULT_SCOPE) -> ClaimResult:
        ...

    @abstractmethod
    def get(self, value: str, scope: str = DEFAULT_SCOPE) -> Optional[SingleUseToken]:
        ...

    def is_usable(self, value: str, now: Optional[datetime] = None, scope: str = DEFAULT_SCOPE) -> bool:
        """Lecture non atomique (verify): vrai si le jeton n'existe pas encore ou est libre et valide."""
        now = now or utcnow()
        token = self.get(value, scope)
        if token is None:
            return True
        return not token.is_used and not token.is_expired(now)


class RedisTokenStore(SingleUseTokenStore):
    """
    Deux clés par jeton:
    - <prefix>:<scope>:<value>        enregistrement immuable (JSON), créé en SET NX
    - <prefix>:<scope>:<value>:claim  marque d'utilisation, créée en SET NX (le claim)
    Les clés vivent ttl + rétention: un jeton expiré reste distinguable (Expired) puis disparaît.
    """

    def __init__(self, client, prefix: str = "sut", retention_seconds: int = TOKEN_RETENTION_SECONDS):
        self._redis = client
        self._prefix = prefix
        self._retention = retention_seconds

    def _key(self, scope: str, value: str) -> str:
        return f"{self._prefix}:{scope}:{value}"

    def issue(self, scope, ttl_seconds, value=None, now=None):
        now = now or utcnow()
        value = value or generate_nonce()
        record = {
            "value": value,
            "scope": scope,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=int(ttl_seconds))).isoformat(),
        }
        key = self._key(scope, value)
        created = self._redis.set(key, json.dumps(record), nx=True, ex=max(int(ttl_seconds), 1) + self._retention)
        if not created:
            existing = self.get(value, scope)
            if existing is not None:
                return existing
        return SingleUseToken(
            value=value,
            scope=scope,
            created_at=now,
            expires_at=parse_timestamp(record["expires_at"]),
        )

    def get(self, value, scope=DEFAULT_SCOPE):
        key = self._key(scope, value)
        raw, raw_claim = self._redis.mget([key, f"{key}:claim"])
        if not raw:
            return None
        data = json.loads(raw)
        token = SingleUseToken(
            value=data["value"],
            scope=data["scope"],
            created_at=parse_timestamp(data["created_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
        )
        if raw_claim:
            claim = json.loads(raw_claim)
            token.used_at = parse_timestamp(claim.get("used_at"))
            token.claimed_by = claim.get("claimed_by")
        return token

    def claim(self, value, now=None, claimed_by=None, scope=DEFAULT_SCOPE):
        now = now or utcnow()
        token = self.get(value, scope)
        if token is None:
            return ClaimResult(status=ClaimStatus.NOT_FOUND)
        if token.is_used:
            return ClaimResult(status=ClaimStatus.ALREADY_USED, token=token)
        if token.is_expired(now):
            return ClaimResult(status=ClaimStatus.EXPIRED, token=token)

        key = f"{self._key(scope, value)}:claim"
        marker = json.dumps({"used_at": now.isoformat(), "claimed_by": claimed_by})
        remaining = int((token.expires_at - now).total_seconds()) + 1
        if not self._redis.set(key, marker, nx=True, ex=remaining + self._retention):
            return ClaimResult(status=ClaimStatus.ALREADY_USED, token=self.get(value, scope))

        token.used_at = now
        token.claimed_by = claimed_by
        return ClaimResult(status=ClaimStatus.CLAIMED, token=token)


class SupabaseTokenStore(SingleUseTokenStore):
    """
    Table auth_nonces(nonce, scope, created_at, expires_at, used_at, claimed_by).
    """

    table = "auth_nonces"

    def __init__(self, client_factory=None):
        if client_factory is None:
            from facilitator.infra.supabase_client import get_service_supabase
            client_factory = get_service_supabase
        self._client = client_factory

    @staticmethod
    def _to_token(row) -> SingleUseToken:
        return SingleUseToken(
            value=row["nonce"],
            scope=row.get("scope") or DEFAULT_SCOPE,
            created_at=parse_timestamp(row.get("created_at")),
            expires_at=parse_timestamp(row.get("expires_at")),
            used_at=parse_timestamp(row.get("used_at")),
            claimed_by=row.get("claimed_by"),
        )

    def issue(self, scope, ttl_seconds, value=None, now=None):
        now = now or utcnow()
        payload = {
            "nonce": value or generate_nonce(),
            "scope": scope,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=int(ttl_seconds))).isoformat(),
        }
        if value is None:
            self._client().table(self.table).insert(payload).execute()
            return self._to_token(payload)
        # Valeur choisie par l'appelant: ne jamais écraser un enregistrement existant
        self._client().table(self.table).upsert(payload, on_conflict="nonce", ignore_duplicates=True).execute()
        return self.get(payload["nonce"], scope) or self._to_token(payload)

    def get(self, value, scope=DEFAULT_SCOPE):
        res = (
            self._client()
            .table(self.table)
            .select("nonce, scope, created_at, expires_at, used_at, claimed_by")
            .eq("nonce", value)
            .eq("scope", scope)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return self._to_token(rows[0]) if rows else None

    def claim(self, value, now=None, claimed_by=None, scope=DEFAULT_SCOPE):
        now = now or utcnow()
        res = (
            self._client()
            .table(self.table)
            .update({"used_at": now.isoformat(), "claimed_by": claimed_by})
            .eq("nonce", value)
            .eq("scope", scope)
            .is_("used_at", "null")
            .gt("expires_at", now.isoformat())
            .execute()
        )
        rows = res.data or []
        if rows:
            return ClaimResult(status=ClaimStatus.CLAIMED, token=self._to_token(rows[0]))

        # L'update n'a rien touché: diagnostiquer pour distinguer retry vs interdit
        token = self.get(value, scope)
        if token is None:
            return ClaimResult(status=ClaimStatus.NOT_FOUND)
        if token.is_used:
            return ClaimResult(status=ClaimStatus.ALREADY_USED, token=token)
        if token.is_expired(now):
            return ClaimResult(status=ClaimStatus.EXPIRED, token=token)
        return ClaimResult(status=ClaimStatus.ALREADY_USED, token=token)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Supprime les nonces expirés depuis plus que la période de rétention."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=TOKEN_RETENTION_SECONDS)
        res = self._client().table(self.table).delete().lt("expires_at", cutoff.isoformat()).execute()
        count = len(res.data or [])
        if count:
            logger.info("Purge des nonces expirés: %s supprimés", count)
        return count


_store: Optional[SingleUseTokenStore] = None


def get_token_store() -> SingleUseTokenStore:
    global _store
    if _store is None:
        if TOKEN_STORE_BACKEND == "supabase":
            _store = SupabaseTokenStore()
        else:
            from facilitator.infra.redis_client import get_redis
            _store = RedisTokenStore(get_redis())
    return _store


def set_token_store(store: Optional[SingleUseTokenStore]) -> None:
    global _store
    _store = store
