"""
Transitions pures du ledger sur (Session, SessionBalance).

- Toutes les vérifications d'invariants sont faites AVANT de produire le nouvel état
- Les fonctions ne modifient jamais leurs arguments: elles renvoient des copies
- Le backend mémoire les applique sous verrou de session; les fonctions SQL
  (supabase/migrations) appliquent exactement les mêmes règles sous FOR UPDATE
"""
from datetime import datetime
from typing import Tuple

from facilitator.errors import (
    InsufficientBalance,
    LedgerError,
    PendingCaptureRequired,
    RefundWindowClosed,
    SessionNotActive,
    StateConflict,
    ValidationError,
)
from facilitator.ledger.models import Session, SessionBalance, SessionStatus
from facilitator.ledger.status import resolver


def _check_consistent(balance: SessionBalance) -> SessionBalance:
    if not balance.is_consistent():
        raise LedgerError("Invariant de solde violé", reason="balance_invariant_violated")
    return balance


def ensure_chargeable(session: Session, now: datetime) -> None:
    effective = resolver.resolve(session, now)
    if effective == SessionStatus.EXPIRED:
        raise SessionNotActive("Session expirée", reason="session_expired")
    if effective != SessionStatus.ACTIVE or session.closing:
        raise SessionNotActive()


def apply_debit(session: Session, balance: SessionBalance, amount: int, now: datetime) -> SessionBalance:
    if amount <= 0:
        raise ValidationError("Montant invalide", reason="invalid_amount")
    ensure_chargeable(session, now)
    if amount > balance.available:
        raise InsufficientBalance()
    updated = balance.model_copy(update={
        "available": balance.available - amount,
        "pending": balance.pending + amount,
    })
    return _check_consistent(updated)


def reserve_capture(session: Session, balance: SessionBalance, amount=None) -> Tuple[SessionBalance, int]:
    """pending -> captured (provisoire, en attente du tx on-chain)."""
    if SessionStatus(session.status) != SessionStatus.ACTIVE:
        raise SessionNotActive()
    if session.closing:
        raise StateConflict("Remboursement en cours", reason="reclaim_in_progress")
    if amount is None:
        amount = balance.pending
    if amount < 0:
        raise ValidationError("Montant invalide", reason="invalid_amount")
    if amount > balance.pending:
        raise InsufficientBalance("Montant supérieur au pending", reason="insufficient_pending")
    updated = balance.model_copy(update={
        "pending": balance.pending - amount,
        "captured": balance.captured + amount,
    })
    return _check_consistent(updated), amount


def confirm_capture(session: Session, balance: SessionBalance, tx_id: str, other_reserved: bool) -> Session:
    transactions = session.transactions.model_copy(deep=True)
    if tx_id:
        transactions.capture_tx_ids.append(tx_id)
    update = {"transactions": transactions}
    if balance.pending == 0 and balance.available == 0 and not other_reserved:
        update["status"] = SessionStatus.CAPTURED
    return session.model_copy(update=update)


def release_capture(balance: SessionBalance, amount: int, to_available: bool) -> SessionBalance:
    """
    Compensation d'une capture échouée:
    - timeout (retry possible): retour en pending, comme si l'appel n'avait pas eu lieu
    - rejet définitif: retour en available (récupérable par le payeur)
    """
    update = {"captured": balance.captured - amount}
    if to_available:
        update["available"] = balance.available + amount
    else:
        update["pending"] = balance.pending + amount
    return _check_consistent(balance.model_copy(update=update))


def reserve_reclaim(session: Session, balance: SessionBalance, now: datetime,
                    capture_in_flight: bool) -> Tuple[Session, int]:
    """
    Marque la session en cours de fermeture et renvoie le montant à rembourser.
    Session déjà voided: montant 0 (no-op idempotent).
    Le pending doit avoir été capturé: le void on-chain rend tout le solde restant de l'escrow.
    """
    status = SessionStatus(session.status)
    if status == SessionStatus.VOIDED:
        return session, 0
    if status == SessionStatus.CAPTURED:
        raise SessionNotActive("Session entièrement capturée", reason="session_captured")
    if session.closing:
        raise StateConflict("Remboursement déjà en cours", reason="reclaim_in_progress")
    if capture_in_flight:
        raise StateConflict("Capture en cours", reason="capture_in_progress")
    if now > session.refund_expiry:
        raise RefundWindowClosed()
    if balance.available <= 0:
        raise StateConflict("Aucun montant à rembourser", reason="nothing_to_reclaim")
    if balance.pending > 0:
        raise PendingCaptureRequired()
    return session.model_copy(update={"closing": True}), balance.available


def confirm_reclaim(session: Session, balance: SessionBalance, amount: int, tx_id: str) -> Tuple[Session, SessionBalance]:
    if amount > balance.available:
        raise InsufficientBalance("Solde modifié pendant le remboursement", reason="reclaim_amount_mismatch")
    updated_balance = _check_consistent(balance.model_copy(update={
        "available": balance.available - amount,
        "reclaimed": balance.reclaimed + amount,
    }))
    transactions = session.transactions.model_copy(update={"void_tx_id": tx_id})
    updated_session = session.model_copy(update={
        "status": SessionStatus.VOIDED,
        "closing": False,
        "transactions": transactions,
    })
    return updated_session, updated_balance


def release_reclaim(session: Session) -> Session:
    return session.model_copy(update={"closing": False})


def fail_authorization(session: Session, balance: SessionBalance) -> Tuple[Session, SessionBalance]:
    """Autorisation on-chain jamais obtenue: rien n'est en escrow, la session est fermée."""
    updated_balance = _check_consistent(balance.model_copy(update={
        "available": 0,
        "reclaimed": balance.reclaimed + balance.available,
    }))
    return session.model_copy(update={"status": SessionStatus.VOIDED, "closing": False}), updated_balance
