# module facilitator.ledger.supabase_repository
"""
Backend Supabase du ledger.

- Les lectures passent par les tables (sessions, session_balances, usage_logs)
- Chaque mutation atomique est une fonction Postgres (supabase/migrations/000_initial.sql)
  qui verrouille la ligne de session FOR UPDATE et lève un code d'erreur stable
- Le filtre de statut effectif est traduit en conditions SQL (expired = active ET expiré)
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from facilitator.errors import (
    InsufficientBalance,
    LedgerError,
    PendingCaptureRequired,
    RefundWindowClosed,
    SessionNotActive,
    SessionNotFound,
    StateConflict,
    ValidationError,
)
from facilitator.infra.supabase_client import api_error_code
from facilitator.ledger.models import (
    CaptureRecord,
    Debit,
    Network,
    Session,
    SessionBalance,
    SessionStatus,
    SessionTransactions,
)
from facilitator.ledger.repository import LedgerRepository, SessionExists
from facilitator.utils.clock import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SESSION_COLUMNS = (
    "id, network_id, operator_id, payer, receiver, token, authorization_expiry, refund_expiry, "
    "pre_approval_expiry, salt, session_token_hash, status, closing, authorize_tx_hash, "
    "capture_tx_hashes, void_tx_hash, created_at"
)

# Codes levés par les fonctions SQL -> exceptions du domaine
_ERRORS = {
    "SESSION_NOT_FOUND": lambda: SessionNotFound(),
    "SESSION_EXPIRED": lambda: SessionNotActive("Session expirée", reason="session_expired"),
    "SESSION_INACTIVE": lambda: SessionNotActive(),
    "SESSION_CAPTURED": lambda: SessionNotActive("Session entièrement capturée", reason="session_captured"),
    "INSUFFICIENT_BALANCE": lambda: InsufficientBalance(),
    "INSUFFICIENT_PENDING": lambda: InsufficientBalance("Montant supérieur au pending", reason="insufficient_pending"),
    "INVALID_AMOUNT": lambda: ValidationError("Montant invalide", reason="invalid_amount"),
    "REFUND_WINDOW_CLOSED": lambda: RefundWindowClosed(),
    "RECLAIM_IN_PROGRESS": lambda: StateConflict("Remboursement déjà en cours", reason="reclaim_in_progress"),
    "CAPTURE_IN_PROGRESS": lambda: StateConflict("Capture en cours", reason="capture_in_progress"),
    "NOTHING_TO_RECLAIM": lambda: StateConflict("Aucun montant à rembourser", reason="nothing_to_reclaim"),
    "PENDING_CAPTURE_REQUIRED": lambda: PendingCaptureRequired(),
    "CAPTURE_NOT_RESERVED": lambda: StateConflict("Capture inconnue ou déjà résolue", reason="capture_not_reserved"),
    "RECLAIM_AMOUNT_MISMATCH": lambda: InsufficientBalance("Solde modifié pendant le remboursement",
                                                           reason="reclaim_amount_mismatch"),
}


def _error_message(e: APIError) -> str:
    message = getattr(e, "message", None)
    if not message and e.args and isinstance(e.args[0], dict):
        message = e.args[0].get("message")
    return str(message or "")


def _translate(e: APIError) -> LedgerError:
    message = _error_message(e)
    for code, factory in _ERRORS.items():
        if code in message:
            return factory()
    logger.exception("Erreur Supabase inattendue: %s", message)
    return LedgerError("Erreur de stockage", reason="storage_error")


def _to_network(row: Dict[str, Any]) -> Network:
    return Network(
        id=row["id"],
        name=row["name"],
        chain_id=int(row["chain_id"]),
        token_address=row["usdc_address"],
        eip712_name=row.get("usdc_eip712_name") or "USD Coin",
        eip712_version=row.get("usdc_eip712_version") or "2",
        escrow_contract=row["escrow_contract"],
        token_collector=row["erc3009_collector"],
        min_deposit=int(row["min_deposit"]),
        max_deposit=int(row["max_deposit"]),
        is_active=bool(row.get("is_active", True)),
    )


def _to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        payer=row["payer"],
        receiver=row["receiver"],
        operator_id=row.get("operator_id"),
        network_id=row["network_id"],
        token_address=row["token"],
        authorization_expiry=parse_timestamp(row["authorization_expiry"]),
        refund_expiry=parse_timestamp(row["refund_expiry"]),
        pre_approval_expiry=parse_timestamp(row.get("pre_approval_expiry")),
        salt=row.get("salt"),
        token_hash=row.get("session_token_hash"),
        status=SessionStatus(row.get("status") or "active"),
        closing=bool(row.get("closing")),
        created_at=parse_timestamp(row["created_at"]),
        transactions=SessionTransactions(
            authorize_tx_id=row.get("authorize_tx_hash"),
            capture_tx_ids=list(row.get("capture_tx_hashes") or []),
            void_tx_id=row.get("void_tx_hash"),
        ),
    )


def _to_balance(row: Dict[str, Any]) -> SessionBalance:
    return SessionBalance(
        session_id=row["session_id"],
        authorized=int(row["authorized"]),
        captured=int(row["captured"]),
        pending=int(row["pending"]),
        available=int(row["available"]),
        reclaimed=int(row["reclaimed"]),
    )


def _to_debit(row: Dict[str, Any]) -> Debit:
    return Debit(
        id=str(row["id"]),
        session_id=row["session_id"],
        amount=int(row["amount"]),
        request_id=row["request_id"],
        description=row.get("description"),
        available_after=int(row["available_after"]),
        created_at=parse_timestamp(row["created_at"]),
    )


def apply_status_filter(query, status: Optional[SessionStatus], now: datetime):
    """
    Traduit un statut effectif en conditions SQL:
    - active: stocké active ET authorization_expiry >= now
    - expired: stocké active ET authorization_expiry < now (ou stocké expired)
    - captured / voided: statut stocké
    """
    if status is None:
        return query
    iso = now.isoformat()
    if status == SessionStatus.ACTIVE:
        return query.eq("status", "active").gte("authorization_expiry", iso)
    if status == SessionStatus.EXPIRED:
        return query.or_(f"status.eq.expired,and(status.eq.active,authorization_expiry.lt.{iso})")
    return query.eq("status", status.value)


class SupabaseLedgerRepository(LedgerRepository):

    def __init__(self, client_factory=None):
        if client_factory is None:
            from facilitator.infra.supabase_client import get_service_supabase
            client_factory = get_service_supabase
        self._client = client_factory

    def _rpc(self, name: str, params: Dict[str, Any]):
        try:
            return self._client().rpc(name, params).execute().data
        except APIError as e:
            raise _translate(e)

    # --- Réseaux ---
    def get_network(self, network_id):
        res = self._client().table("networks").select("*").eq("id", network_id).limit(1).execute()
        rows = res.data or []
        return _to_network(rows[0]) if rows else None

    def list_networks(self, active_only=True):
        query = self._client().table("networks").select("*")
        if active_only:
            query = query.eq("is_active", True)
        return [_to_network(r) for r in (query.order("chain_id").execute().data or [])]

    # --- Lectures ---
    def get_session(self, session_id):
        res = self._client().table("sessions").select(SESSION_COLUMNS).eq("id", session_id).limit(1).execute()
        rows = res.data or []
        return _to_session(rows[0]) if rows else None

    def get_balance(self, session_id):
        res = self._client().table("session_balances").select("*").eq("session_id", session_id).limit(1).execute()
        rows = res.data or []
        return _to_balance(rows[0]) if rows else None

    def list_sessions(self, *, payer=None, receiver=None, operator_id=None, status=None,
                      now=None, limit=50, offset=0):
        query = self._client().table("sessions").select(SESSION_COLUMNS)
        if payer:
            query = query.eq("payer", payer.lower())
        if receiver:
            query = query.eq("receiver", receiver.lower())
        if operator_id:
            query = query.eq("operator_id", operator_id)
        query = apply_status_filter(query, status, now or utcnow())
        res = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        return [_to_session(r) for r in (res.data or [])]

    def find_debit(self, session_id, request_id):
        res = (
            self._client()
            .table("usage_logs")
            .select("*")
            .eq("session_id", session_id)
            .eq("request_id", request_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return _to_debit(rows[0]) if rows else None

    def list_debits(self, session_id):
        res = self._client().table("usage_logs").select("*").eq("session_id", session_id).order("created_at").execute()
        return [_to_debit(r) for r in (res.data or [])]

    def list_capture_candidates(self, *, min_pending, expiring_before, limit):
        rows = self._rpc("get_capture_candidates", {
            "p_min_pending": min_pending,
            "p_expiring_before": expiring_before.isoformat() if expiring_before else None,
            "p_limit": limit,
        }) or []
        return [r["session_id"] for r in rows]

    # --- Mutations ---
    def insert_session(self, session, balance):
        payload = {
            "id": session.id,
            "network_id": session.network_id,
            "operator_id": session.operator_id,
            "payer": session.payer,
            "receiver": session.receiver,
            "token": session.token_address,
            "authorization_expiry": session.authorization_expiry.isoformat(),
            "refund_expiry": session.refund_expiry.isoformat(),
            "pre_approval_expiry": session.pre_approval_expiry.isoformat() if session.pre_approval_expiry else None,
            "salt": session.salt,
            "session_token_hash": session.token_hash,
            "created_at": session.created_at.isoformat(),
        }
        try:
            self._client().rpc("create_session", {"p_session": payload, "p_authorized": balance.authorized}).execute()
        except APIError as e:
            if api_error_code(e) == "23505":
                raise SessionExists()
            raise _translate(e)

    def debit(self, session_id, amount, request_id, description, now):
        data = self._rpc("debit_session", {
            "p_session_id": session_id,
            "p_amount": amount,
            "p_request_id": request_id,
            "p_description": description,
        })
        return _to_debit(data), bool(data.get("replayed"))

    def attach_authorization(self, session_id, tx_id, token_hash=None):
        self._rpc("attach_authorization", {"p_session_id": session_id, "p_tx_hash": tx_id, "p_token_hash": token_hash})
        return self.get_session(session_id)

    def fail_authorization(self, session_id):
        self._rpc("fail_authorization", {"p_session_id": session_id})
        return self.get_session(session_id)

    def reserve_capture(self, session_id, amount, now):
        data = self._rpc("reserve_capture", {"p_session_id": session_id, "p_amount": amount})
        return CaptureRecord(
            id=str(data.get("id") or ""),
            session_id=session_id,
            amount=int(data["amount"]),
            created_at=parse_timestamp(data.get("created_at")) or now,
        )

    def confirm_capture(self, capture_id, tx_id):
        return _to_balance(self._rpc("confirm_capture", {"p_capture_id": capture_id, "p_tx_hash": tx_id}))

    def release_capture(self, capture_id, to_available):
        return _to_balance(self._rpc("release_capture", {"p_capture_id": capture_id, "p_to_available": to_available}))

    def reserve_reclaim(self, session_id, now):
        return int(self._rpc("reserve_reclaim", {"p_session_id": session_id}) or 0)

    def confirm_reclaim(self, session_id, amount, tx_id):
        return _to_balance(self._rpc("confirm_reclaim", {
            "p_session_id": session_id,
            "p_amount": amount,
            "p_tx_hash": tx_id,
        }))

    def release_reclaim(self, session_id):
        self._rpc("release_reclaim", {"p_session_id": session_id})
