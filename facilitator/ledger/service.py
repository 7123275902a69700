# module facilitator.ledger.service
"""
SessionLedger: cas d'usage du ledger de sessions.

- create_session: claim atomique du nonce d'autorisation puis insertion (active)
- debit: idempotent par (session_id, request_id)
- capture: pending -> captured en deux phases (réservation, appel on-chain, confirmation/compensation)
- reclaim: void on-chain puis available -> reclaimed, statut voided (idempotent)
- get / list_by_payer / list_by_receiver: projections filtrées par statut effectif
"""
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from facilitator.chain.gateway import ChainGateway
from facilitator.config import FACILITATOR_ADDRESS
from facilitator.errors import (
    AuthorizationUnconfirmed,
    NetworkNotFound,
    SessionNotFound,
    SettlementRejected,
    SettlementTimeout,
    TokenClaimError,
    ValidationError,
)
from facilitator.ledger import transitions
from facilitator.ledger.models import (
    Network,
    Receipt,
    Session,
    SessionBalance,
    SessionStatus,
    SessionView,
    TxRef,
)
from facilitator.ledger.repository import LedgerRepository
from facilitator.ledger.status import EffectiveStatusResolver, resolver as default_resolver
from facilitator.tokens.store import SingleUseTokenStore
from facilitator.utils.clock import utcnow

logger = logging.getLogger(__name__)

AUTHORIZATION_NONCE_SCOPE = "erc3009"


def compute_session_id(network_id: str, payer: str, receiver: str, token_address: str,
                       deposit_amount: int, authorization_expiry: datetime, refund_expiry: datetime,
                       salt: Optional[str]) -> str:
    """Identifiant déterministe: une même autorisation désigne toujours la même session."""
    canonical = json.dumps({
        "network": network_id,
        "payer": payer.lower(),
        "receiver": receiver.lower(),
        "token": token_address.lower(),
        "amount": str(deposit_amount),
        "authorizationExpiry": int(authorization_expiry.timestamp()),
        "refundExpiry": int(refund_expiry.timestamp()),
        "salt": salt or "",
    }, sort_keys=True, separators=(",", ":"))
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionLedger:

    def __init__(self, repository: LedgerRepository, token_store: SingleUseTokenStore,
                 gateway: ChainGateway, clock: Callable[[], datetime] = utcnow,
                 resolver: EffectiveStatusResolver = default_resolver,
                 operator_address: str = FACILITATOR_ADDRESS):
        self.repository = repository
        self.token_store = token_store
        self.gateway = gateway
        self.clock = clock
        self.resolver = resolver
        self.operator_address = operator_address

    # ------------------------------------------------------------------ helpers
    def network(self, network_id: str) -> Network:
        network = self.repository.get_network(network_id)
        if network is None or not network.is_active:
            raise NetworkNotFound()
        return network

    def _load(self, session_id: str) -> Session:
        session = self.repository.get_session(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    def _require_confirmed(self, session: Session) -> None:
        if not session.authorization_confirmed:
            raise AuthorizationUnconfirmed()

    # ------------------------------------------------------------------ create
    def create_session(self, network_id: str, payer: str, receiver: str, deposit_amount: int,
                       authorization_expiry: datetime, refund_expiry: datetime, authorization_nonce: str,
                       *, nonce_expires_at: Optional[datetime] = None, salt: Optional[str] = None,
                       operator_id: Optional[str] = None, token_hash: Optional[str] = None,
                       pre_approval_expiry: Optional[datetime] = None) -> Session:
        """
        Ouvre une session.
        - dépôt dans les bornes du réseau, fenêtres temporelles cohérentes
        - le nonce d'autorisation est claim atomiquement: rejouer la même autorisation échoue
        """
        now = self.clock()
        network = self.network(network_id)
        if deposit_amount <= 0 or deposit_amount < network.min_deposit or deposit_amount > network.max_deposit:
            raise ValidationError("Dépôt hors bornes", reason="deposit_out_of_bounds")
        if authorization_expiry <= now or refund_expiry < authorization_expiry:
            raise ValidationError("Expirations de session invalides", reason="session_expiry_invalid")

        nonce_deadline = nonce_expires_at or authorization_expiry
        ttl = max(int((nonce_deadline - now).total_seconds()), 0)
        self.token_store.issue(AUTHORIZATION_NONCE_SCOPE, ttl, value=authorization_nonce, now=now)
        claim = self.token_store.claim(authorization_nonce, now=now, claimed_by=payer.lower(),
                                       scope=AUTHORIZATION_NONCE_SCOPE)
        if not claim.ok:
            logger.warning("Claim du nonce d'autorisation refusé (%s) pour %s", claim.status.value, payer)
            raise TokenClaimError("Nonce d'autorisation inutilisable", reason=claim.reason)

        session = Session(
            id=compute_session_id(network.id, payer, receiver, network.token_address, deposit_amount,
                                  authorization_expiry, refund_expiry, salt),
            payer=payer.lower(),
            receiver=receiver.lower(),
            operator_id=operator_id,
            network_id=network.id,
            token_address=network.token_address.lower(),
            authorization_expiry=authorization_expiry,
            refund_expiry=refund_expiry,
            pre_approval_expiry=pre_approval_expiry,
            salt=salt,
            token_hash=token_hash,
            status=SessionStatus.ACTIVE,
            created_at=now,
        )
        balance = SessionBalance(session_id=session.id, authorized=deposit_amount, available=deposit_amount)
        self.repository.insert_session(session, balance)
        logger.info("Session %s créée (payer=%s, dépôt=%s)", session.id, session.payer, deposit_amount)
        return session

    def confirm_authorization(self, session_id: str, tx_id: str, token_hash: Optional[str] = None) -> Session:
        """token_hash: remplace le jeton de session (création rejouée après un timeout)."""
        session = self.repository.attach_authorization(session_id, tx_id, token_hash)
        logger.info("Autorisation on-chain confirmée pour %s: %s", session_id, tx_id)
        return session

    def abandon_session(self, session_id: str) -> Session:
        """Autorisation on-chain échouée: la session est fermée sans mouvement de fonds."""
        session = self.repository.fail_authorization(session_id)
        logger.warning("Session %s fermée: autorisation on-chain échouée", session_id)
        return session

    # ------------------------------------------------------------------ debit
    def debit(self, session_id: str, amount: int, request_id: str, description: Optional[str] = None) -> Receipt:
        if not request_id:
            raise ValidationError("requestId requis", reason="missing_request_id")
        previous = self.repository.find_debit(session_id, request_id)
        if previous is not None:
            return Receipt.from_debit(previous)

        now = self.clock()
        session = self._load(session_id)
        transitions.ensure_chargeable(session, now)
        debit, replayed = self.repository.debit(session_id, amount, request_id, description, now)
        if replayed:
            logger.info("Débit %s rejoué sur la session %s", request_id, session_id)
        return Receipt.from_debit(debit)

    # ------------------------------------------------------------------ capture
    def capture(self, session_id: str, amount: Optional[int] = None) -> TxRef:
        """
        Capture tout ou partie du pending.
        - timeout: le montant revient en pending (état d'avant l'appel), erreur retryable
        - rejet définitif: le montant revient en available (jamais perdu)
        """
        session = self._load(session_id)
        self._require_confirmed(session)
        network = self.network(session.network_id)
        record = self.repository.reserve_capture(session_id, amount, self.clock())
        if record.amount == 0:
            return TxRef(session_id=session_id, kind="capture", amount=0)

        try:
            tx_id = self.gateway.capture(network, session.payment_info(self.operator_address), record.amount)
        except SettlementTimeout:
            self.repository.release_capture(record.id, to_available=False)
            logger.warning("Capture %s expirée pour %s, montant remis en pending", record.amount, session_id)
            raise
        except SettlementRejected:
            self.repository.release_capture(record.id, to_available=True)
            logger.warning("Capture %s rejetée pour %s, montant remis en available", record.amount, session_id)
            raise
        except Exception:
            self.repository.release_capture(record.id, to_available=False)
            logger.exception("Capture %s en erreur pour %s, montant remis en pending", record.amount, session_id)
            raise

        self.repository.confirm_capture(record.id, tx_id)
        logger.info("Session %s: %s capturés (tx %s)", session_id, record.amount, tx_id)
        return TxRef(session_id=session_id, kind="capture", amount=record.amount, tx_id=tx_id)

    # ------------------------------------------------------------------ reclaim
    def reclaim(self, session_id: str) -> TxRef:
        """
        Rembourse available au payeur et passe la session en voided.
        Session déjà voided: succès no-op (montant 0).
        """
        session = self._load(session_id)
        if SessionStatus(session.status) == SessionStatus.VOIDED:
            return TxRef(session_id=session_id, kind="void", amount=0, tx_id=session.transactions.void_tx_id)
        self._require_confirmed(session)
        network = self.network(session.network_id)

        amount = self.repository.reserve_reclaim(session_id, self.clock())
        if amount == 0:
            return TxRef(session_id=session_id, kind="void", amount=0)
        try:
            tx_id = self.gateway.void(network, session.payment_info(self.operator_address))
        except (SettlementTimeout, SettlementRejected):
            self.repository.release_reclaim(session_id)
            logger.warning("Void échoué pour %s, session rouverte", session_id)
            raise
        except Exception:
            self.repository.release_reclaim(session_id)
            logger.exception("Void en erreur pour %s, session rouverte", session_id)
            raise

        self.repository.confirm_reclaim(session_id, amount, tx_id)
        logger.info("Session %s voided: %s remboursés (tx %s)", session_id, amount, tx_id)
        return TxRef(session_id=session_id, kind="void", amount=amount, tx_id=tx_id)

    # ------------------------------------------------------------------ lectures
    def view(self, session: Session) -> SessionView:
        balance = self.repository.get_balance(session.id)
        return SessionView(session=session, balance=balance, status=self.resolver.resolve(session, self.clock()))

    def get(self, session_id: str) -> SessionView:
        return self.view(self._load(session_id))

    def list_by_payer(self, payer: str, status: Optional[SessionStatus] = None,
                      limit: int = 50, offset: int = 0) -> List[SessionView]:
        sessions = self.repository.list_sessions(payer=payer, status=status, now=self.clock(),
                                                 limit=limit, offset=offset)
        return [self.view(s) for s in sessions]

    def list_by_receiver(self, receiver: str, status: Optional[SessionStatus] = None,
                         operator_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[SessionView]:
        sessions = self.repository.list_sessions(receiver=receiver, operator_id=operator_id, status=status,
                                                 now=self.clock(), limit=limit, offset=offset)
        return [self.view(s) for s in sessions]

    def list_by_operator(self, operator_id: str, status: Optional[SessionStatus] = None,
                         limit: int = 50, offset: int = 0) -> List[SessionView]:
        sessions = self.repository.list_sessions(operator_id=operator_id, status=status, now=self.clock(),
                                                 limit=limit, offset=offset)
        return [self.view(s) for s in sessions]

    def payer_stats(self, payer: str, max_sessions: int = 10_000) -> dict:
        """Agrégats du tableau de bord payeur (available compté seulement si la session est active)."""
        views = self.list_by_payer(payer, limit=max_sessions)
        stats = {
            "total_authorized": 0,
            "total_captured": 0,
            "total_pending": 0,
            "total_available": 0,
            "total_reclaimed": 0,
            "active_sessions": 0,
            "total_sessions": len(views),
        }
        for v in views:
            stats["total_authorized"] += v.balance.authorized
            stats["total_captured"] += v.balance.captured
            stats["total_pending"] += v.balance.pending
            stats["total_reclaimed"] += v.balance.reclaimed
            if v.status == SessionStatus.ACTIVE:
                stats["total_available"] += v.balance.available
                stats["active_sessions"] += 1
        return stats

    def seconds_until_expiry(self, session: Session) -> float:
        return (session.authorization_expiry - self.clock()) / timedelta(seconds=1)
