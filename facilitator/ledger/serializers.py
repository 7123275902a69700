"""
Projection JSON des sessions (API payeur / receveur).
- montants en chaînes décimales entières (jamais de flottants)
- dates d'expiration en secondes unix
- available masqué ("0") si la session n'est pas effectivement active
"""
from typing import Any, Dict, Optional

from facilitator.ledger.models import SessionBalance, SessionStatus, SessionView
from facilitator.utils.clock import to_unix


def balance_to_dict(balance: SessionBalance, hide_available: bool = False) -> Dict[str, str]:
    return {
        "authorized": str(balance.authorized),
        "captured": str(balance.captured),
        "pending": str(balance.pending),
        "available": "0" if hide_available else str(balance.available),
        "reclaimed": str(balance.reclaimed),
    }


def session_to_dict(view: SessionView, network_name: Optional[str] = None) -> Dict[str, Any]:
    session = view.session
    return {
        "id": session.id,
        "networkId": session.network_id,
        "networkName": network_name,
        "payer": session.payer,
        "receiver": session.receiver,
        "balance": balance_to_dict(view.balance, hide_available=view.status != SessionStatus.ACTIVE),
        "authorizationExpiry": to_unix(session.authorization_expiry),
        "refundExpiry": to_unix(session.refund_expiry),
        "status": view.status.value,
        "createdAt": session.created_at.isoformat(),
        "transactions": {
            "authorize": session.transactions.authorize_tx_id,
            "captures": list(session.transactions.capture_tx_ids),
            "void": session.transactions.void_tx_id,
        },
    }
