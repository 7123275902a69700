"""
Taxonomie des erreurs du ledger.

Chaque erreur porte:
- status_code: code HTTP équivalent
- reason: code machine stable (les agents clients branchent dessus)
- message: texte lisible

Familles:
- ValidationError: entrée malformée (4xx, pas de retry automatique)
- AuthenticationError: signature invalide, nonce expiré/réutilisé
- StateConflict: solde insuffisant, session inactive, fenêtre de remboursement close
- ExternalOperationFailure: règlement on-chain échoué ou expiré (état du ledger restauré)
- NotFound: ressource absente
"""
from typing import Optional


class LedgerError(Exception):
    status_code = 400
    reason = "ledger_error"
    default_message = "Erreur du ledger"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if reason:
            self.reason = reason

    def to_dict(self):
        return {"error": self.message, "reason": self.reason}


class ValidationError(LedgerError):
    status_code = 400
    reason = "invalid_payload"
    default_message = "Requête invalide"


class AuthenticationError(LedgerError):
    status_code = 401
    reason = "unauthorized"
    default_message = "Non authentifié"


class StateConflict(LedgerError):
    status_code = 409
    reason = "state_conflict"
    default_message = "Conflit d'état"


class NotFound(LedgerError):
    status_code = 404
    reason = "not_found"
    default_message = "Ressource introuvable"


class ExternalOperationFailure(LedgerError):
    status_code = 502
    reason = "settlement_failed"
    default_message = "Opération on-chain échouée"
    retryable = True


# --- Erreurs spécifiques ---

class SessionNotFound(NotFound):
    reason = "session_not_found"
    default_message = "Session introuvable"


class NetworkNotFound(ValidationError):
    reason = "invalid_network"
    default_message = "Réseau inconnu ou inactif"


class SessionNotActive(StateConflict):
    reason = "session_inactive"
    default_message = "Session inactive"


class InsufficientBalance(StateConflict):
    reason = "insufficient_balance"
    default_message = "Solde insuffisant"


class RefundWindowClosed(StateConflict):
    reason = "refund_window_closed"
    default_message = "Fenêtre de remboursement close"


class PendingCaptureRequired(StateConflict):
    reason = "pending_capture_required"
    default_message = "Pending à capturer avant remboursement"


class AuthorizationUnconfirmed(StateConflict):
    reason = "authorization_unconfirmed"
    default_message = "Autorisation on-chain non confirmée"


class TokenClaimError(AuthenticationError):
    """Échec de claim d'un jeton à usage unique (reason = nonce_not_found / nonce_expired / nonce_already_used)."""
    reason = "nonce_already_used"
    default_message = "Nonce invalide"


class SettlementFailed(ExternalOperationFailure):
    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None, retryable: bool = True):
        super().__init__(message, reason)
        self.retryable = retryable


class SettlementTimeout(SettlementFailed):
    status_code = 504
    reason = "settlement_timeout"
    default_message = "Délai dépassé pour l'opération on-chain"


class SettlementRejected(SettlementFailed):
    reason = "settlement_rejected"
    default_message = "Opération on-chain rejetée"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, reason, retryable=False)
