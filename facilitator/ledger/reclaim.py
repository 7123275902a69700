# module facilitator.ledger.reclaim
"""
ReclaimEngine: politique d'ordonnancement capture -> void.

- le montant remboursable est `available`; le pending (déjà gagné par le receveur) en est exclu
- si du pending existe, il est capturé d'abord; si cette capture échoue, le void n'est pas tenté
- un débit arrivé entre capture et void relance le cycle (RECLAIM_ATTEMPTS au plus)
- pas de remboursement groupé: un appel = une session (l'autorisation opérateur lie l'appelant)
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from facilitator.errors import PendingCaptureRequired, SessionNotFound
from facilitator.ledger.models import SessionStatus, SessionView
from facilitator.ledger.service import SessionLedger

logger = logging.getLogger(__name__)

RECLAIM_ATTEMPTS = 3


class ReclaimResult(BaseModel):
    session_id: str
    reclaimed_amount: int
    captured_amount: int = 0
    void_tx_id: Optional[str] = None
    capture_tx_id: Optional[str] = None


class ReclaimEngine:

    def __init__(self, ledger: SessionLedger):
        self.ledger = ledger

    def reclaimable_amount(self, view: SessionView) -> int:
        if view.status not in (SessionStatus.ACTIVE, SessionStatus.EXPIRED):
            return 0
        if view.session.closing or self.ledger.clock() > view.session.refund_expiry:
            return 0
        return view.balance.available

    def reclaim(self, session_id: str, payer: Optional[str] = None) -> ReclaimResult:
        view = self.ledger.get(session_id)
        # Session d'un autre payeur: indistinguable d'une session absente
        if payer is not None and view.session.payer != payer.lower():
            raise SessionNotFound()

        if view.status == SessionStatus.VOIDED:
            return ReclaimResult(session_id=session_id, reclaimed_amount=0,
                                 void_tx_id=view.session.transactions.void_tx_id)

        captured_amount = 0
        capture_tx_id = None
        for attempt in range(1, RECLAIM_ATTEMPTS + 1):
            if self.ledger.get(session_id).balance.pending > 0:
                ref = self.ledger.capture(session_id)
                captured_amount += ref.amount
                capture_tx_id = ref.tx_id
                logger.info("Reclaim %s: pending %s capturé avant void", session_id, ref.amount)
            try:
                ref = self.ledger.reclaim(session_id)
            except PendingCaptureRequired:
                # Débit arrivé entre la capture et la fermeture
                logger.info("Reclaim %s: nouveau pending après la tentative %s", session_id, attempt)
                continue
            return ReclaimResult(
                session_id=session_id,
                reclaimed_amount=ref.amount,
                captured_amount=captured_amount,
                void_tx_id=ref.tx_id,
                capture_tx_id=capture_tx_id,
            )
        logger.warning("Reclaim %s abandonné: pending toujours alimenté", session_id)
        raise PendingCaptureRequired()

    def list_reclaimable(self, payer: str) -> Dict[str, Any]:
        views: List[SessionView] = self.ledger.list_by_payer(payer, limit=10_000)
        rows = []
        total = 0
        for v in views:
            amount = self.reclaimable_amount(v)
            if amount <= 0:
                continue
            total += amount
            rows.append((v, amount))
        return {"sessions": rows, "total_available": total}
