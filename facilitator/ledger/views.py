"""
Routes de lecture et de remboursement des sessions.

- /api/payer/*: identité payeur (JWT SIWE), ne voit que ses propres sessions
- /api/sessions: serveur de ressources (clé API), sessions ouvertes via ses clés
- /api/capture: job planifié (CRON_SECRET), tiers 1 et 2
"""
from fastapi import APIRouter, Depends, Query
from typing import Dict, Any, Optional

from facilitator.config import RATE_LIMIT_MANAGEMENT, RATE_LIMIT_RECLAIM
from facilitator.errors import SessionNotFound, ValidationError
from facilitator.infra.ledger_provider import get_capture_policy, get_ledger, get_reclaim_engine
from facilitator.utils.rate_limit import optional_rate_limit
from facilitator.utils.security import require_api_key, require_cron, require_payer
from .capture import run_capture_tiers
from .models import SessionView
from .serializers import session_to_dict
from .status import parse_status_filter

payer_router = APIRouter(prefix="/api/payer", tags=["Payer"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["Sessions"])
capture_router = APIRouter(prefix="/api", tags=["Capture"])


def _status_filter(value: Optional[str]):
    try:
        return parse_status_filter(value)
    except ValueError:
        raise ValidationError("Statut inconnu", reason="invalid_status")


def _network_names() -> Dict[str, str]:
    return {n.id: n.name for n in get_ledger().repository.list_networks(active_only=False)}


def _serialize(view: SessionView, names: Dict[str, str]) -> Dict[str, Any]:
    return session_to_dict(view, names.get(view.session.network_id))


def _own_session(session_id: str, wallet: str) -> SessionView:
    view = get_ledger().get(session_id)
    if view.session.payer != wallet.lower():
        raise SessionNotFound()
    return view


# --- Payeur ---

@payer_router.get("/sessions", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def payer_sessions(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: Dict[str, Any] = Depends(require_payer),
):
    views = get_ledger().list_by_payer(user["wallet"], _status_filter(status), limit=limit, offset=offset)
    names = _network_names()
    return {"sessions": [_serialize(v, names) for v in views], "limit": limit, "offset": offset}


@payer_router.get("/reclaimable", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def payer_reclaimable(user: Dict[str, Any] = Depends(require_payer)):
    data = get_reclaim_engine().list_reclaimable(user["wallet"])
    names = _network_names()
    sessions = []
    for view, amount in data["sessions"]:
        row = _serialize(view, names)
        row["reclaimable"] = str(amount)
        sessions.append(row)
    return {"sessions": sessions, "totalAvailable": str(data["total_available"])}


@payer_router.get("/stats", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def payer_stats(user: Dict[str, Any] = Depends(require_payer)):
    stats = get_ledger().payer_stats(user["wallet"])
    return {
        "totalAuthorized": str(stats["total_authorized"]),
        "totalCaptured": str(stats["total_captured"]),
        "totalPending": str(stats["total_pending"]),
        "totalAvailable": str(stats["total_available"]),
        "totalReclaimed": str(stats["total_reclaimed"]),
        "activeSessions": stats["active_sessions"],
        "totalSessions": stats["total_sessions"],
    }


@payer_router.get("/sessions/{session_id}", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def payer_session(session_id: str, user: Dict[str, Any] = Depends(require_payer)):
    view = _own_session(session_id, user["wallet"])
    return {"session": _serialize(view, _network_names())}


@payer_router.post("/sessions/{session_id}/reclaim", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_RECLAIM))])
def payer_reclaim(session_id: str, user: Dict[str, Any] = Depends(require_payer)):
    """Rembourse le solde disponible.
    - Le pending est capturé d'abord (il revient au receveur).
    - Rejouer sur une session déjà remboursée renvoie un montant nul.
    """
    result = get_reclaim_engine().reclaim(session_id, payer=user["wallet"])
    return {
        "success": True,
        "sessionId": result.session_id,
        "amount": str(result.reclaimed_amount),
        "transaction": result.void_tx_id,
        "capturedAmount": str(result.captured_amount),
        "captureTransaction": result.capture_tx_id,
    }


# --- Serveur de ressources ---

@sessions_router.get("", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def receiver_sessions(
    receiver: str = Query(min_length=1),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    owner: Dict[str, Any] = Depends(require_api_key),
):
    views = get_ledger().list_by_receiver(receiver.lower(), _status_filter(status), operator_id=owner["id"],
                                          limit=limit, offset=offset)
    names = _network_names()
    return {"sessions": [_serialize(v, names) for v in views], "limit": limit, "offset": offset}


@sessions_router.get("/{session_id}", dependencies=[Depends(optional_rate_limit(*RATE_LIMIT_MANAGEMENT))])
def receiver_session(session_id: str, owner: Dict[str, Any] = Depends(require_api_key)):
    view = get_ledger().get(session_id)
    if view.session.operator_id and view.session.operator_id != owner["id"]:
        raise SessionNotFound()
    return {"session": _serialize(view, _network_names())}


# --- Job de capture ---

@capture_router.post("/capture", dependencies=[Depends(require_cron)])
def scheduled_capture():
    return run_capture_tiers(get_ledger(), get_capture_policy())
