# module facilitator.ledger.capture
"""
Politique de capture par paliers.

- tier 1: pending >= CAPTURE_THRESHOLD
- tier 2: pending > 0 et autorisation expirant sous CAPTURE_EXPIRY_WINDOW_SECONDS
- tier 3: sur un débit, si l'autorisation expire sous SYNC_CAPTURE_THRESHOLD_SECONDS
  et qu'il reste du pending, la capture est faite de façon synchrone
Les tiers 1 et 2 sont exécutés par un job externe (POST /api/capture).
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List

from facilitator.config import (
    CAPTURE_BATCH_SIZE,
    CAPTURE_EXPIRY_WINDOW_SECONDS,
    CAPTURE_THRESHOLD,
    SYNC_CAPTURE_THRESHOLD_SECONDS,
)
from facilitator.errors import LedgerError
from facilitator.ledger.models import SessionView
from facilitator.ledger.service import SessionLedger

logger = logging.getLogger(__name__)


class CapturePolicy:

    def __init__(self, threshold: int = CAPTURE_THRESHOLD,
                 expiry_window_seconds: int = CAPTURE_EXPIRY_WINDOW_SECONDS,
                 sync_threshold_seconds: int = SYNC_CAPTURE_THRESHOLD_SECONDS,
                 batch_size: int = CAPTURE_BATCH_SIZE):
        self.threshold = threshold
        self.expiry_window_seconds = expiry_window_seconds
        self.sync_threshold_seconds = sync_threshold_seconds
        self.batch_size = batch_size

    def requires_sync_capture(self, view: SessionView, now) -> bool:
        """Tier 3: temps restant avant expiration de l'autorisation sous le seuil, pending non nul."""
        if view.balance.pending <= 0:
            return False
        remaining = (view.session.authorization_expiry - now).total_seconds()
        return remaining < self.sync_threshold_seconds

    def due_sessions(self, ledger: SessionLedger) -> Dict[str, List[str]]:
        now = ledger.clock()
        tier1 = ledger.repository.list_capture_candidates(
            min_pending=self.threshold, expiring_before=None, limit=self.batch_size
        )
        tier2 = [
            sid for sid in ledger.repository.list_capture_candidates(
                min_pending=None,
                expiring_before=now + timedelta(seconds=self.expiry_window_seconds),
                limit=self.batch_size,
            )
            if sid not in tier1
        ]
        return {"tier1": tier1, "tier2": tier2}


def run_capture_tiers(ledger: SessionLedger, policy: CapturePolicy) -> Dict[str, Any]:
    """
    Capture chaque session due, une par une; un échec n'arrête pas le lot.
    """
    due = policy.due_sessions(ledger)
    result: Dict[str, Any] = {"captured": [], "failed": [], "tier1": len(due["tier1"]), "tier2": len(due["tier2"])}
    for session_id in (due["tier1"] + due["tier2"])[:policy.batch_size]:
        try:
            ref = ledger.capture(session_id)
        except LedgerError as e:
            logger.warning("Capture planifiée échouée pour %s: %s", session_id, e.reason)
            result["failed"].append({"sessionId": session_id, "reason": e.reason})
            continue
        result["captured"].append({"sessionId": session_id, "amount": str(ref.amount), "transaction": ref.tx_id})
    logger.info("Job de capture: %s capturées, %s échecs", len(result["captured"]), len(result["failed"]))
    return result
