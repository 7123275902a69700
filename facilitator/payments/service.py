"""
Cas d'usage 'payments' (facilitateur x402, schéma escrow): orchestre classifier, ledger et passerelle.

- verify_payment: contrôles sans mutation -> {isValid, invalidReason, payer}
- settle_payment: Creation -> session + autorisation on-chain + premier débit
                  Usage    -> capture synchrone éventuelle (tier 3) + débit idempotent
Les erreurs du ledger ne remontent jamais en exception au client: elles deviennent
invalidReason / errorReason (codes stables).
"""
import hmac
import logging
import secrets
from typing import Optional, Tuple

from facilitator.config import FACILITATOR_ADDRESS
from facilitator.errors import (
    AuthenticationError,
    InsufficientBalance,
    LedgerError,
    SessionNotFound,
    SettlementRejected,
    SettlementTimeout,
    TokenClaimError,
    ValidationError,
)
from facilitator.infra.ledger_provider import get_capture_policy, get_ledger
from facilitator.ledger import transitions
from facilitator.ledger.models import Network, Session, SessionStatus
from facilitator.ledger.serializers import balance_to_dict
from facilitator.ledger.service import (
    AUTHORIZATION_NONCE_SCOPE,
    SessionLedger,
    compute_session_id,
    hash_session_token,
)
from facilitator.payments.classifier import Creation, Invalid, Usage, classify
from facilitator.payments.schemas import FacilitatorRequest, SettleResponse, VerifyResponse
from facilitator.utils.clock import from_unix, to_unix

logger = logging.getLogger(__name__)

SCHEME = "escrow"
SESSION_TOKEN_PREFIX = "sess_"


def generate_session_token() -> str:
    return SESSION_TOKEN_PREFIX + secrets.token_hex(32)


def _check_envelope(request: FacilitatorRequest) -> None:
    payment = request.payment_payload
    requirements = request.payment_requirements
    if (payment.requested_scheme() or requirements.scheme) != SCHEME or requirements.scheme != SCHEME:
        raise ValidationError("Schéma non supporté", reason="unsupported_scheme")
    network = payment.requested_network()
    if network and network != requirements.network:
        raise ValidationError("Réseau incohérent", reason="network_mismatch")


def _creation_network(ledger: SessionLedger, creation: Creation, request: FacilitatorRequest) -> Network:
    """Contrôles statiques d'une création (aucun appel on-chain, aucune mutation)."""
    requirements = request.payment_requirements
    auth = creation.authorization
    params = creation.session_params
    network = ledger.network(requirements.network)

    facilitator = (requirements.extra or {}).get("facilitator")
    if facilitator and FACILITATOR_ADDRESS and facilitator.lower() != FACILITATOR_ADDRESS:
        raise ValidationError("Facilitateur inattendu", reason="invalid_facilitator")
    if auth.to.lower() != network.token_collector.lower():
        raise ValidationError("Collecteur de jetons invalide", reason="invalid_token_collector")
    accepted = request.payment_payload.accepted or {}
    if accepted.get("payTo") and accepted["payTo"].lower() != requirements.pay_to.lower():
        raise ValidationError("Destinataire incohérent", reason="invalid_recipient")
    if requirements.asset.lower() != network.token_address.lower():
        raise ValidationError("Actif non supporté", reason="invalid_asset")

    if auth.value <= 0 or auth.value < network.min_deposit or auth.value > network.max_deposit:
        raise ValidationError("Dépôt hors bornes", reason="deposit_out_of_bounds")
    if auth.value < int(requirements.amount):
        raise ValidationError("Dépôt inférieur au coût", reason="deposit_less_than_cost")

    now = to_unix(ledger.clock())
    if now < auth.valid_after:
        raise ValidationError("Autorisation pas encore valide", reason="authorization_not_yet_valid")
    if now >= auth.valid_before:
        raise ValidationError("Autorisation expirée", reason="authorization_expired")
    if params.authorization_expiry <= now or params.refund_expiry < params.authorization_expiry:
        raise ValidationError("Expirations de session invalides", reason="session_expiry_invalid")
    if params.authorization_expiry > auth.valid_before:
        raise ValidationError("Expiration au-delà de l'autorisation", reason="session_expiry_exceeds_authorization")
    return network


def _verify_creation(ledger: SessionLedger, creation: Creation, request: FacilitatorRequest) -> Network:
    network = _creation_network(ledger, creation, request)
    if not ledger.token_store.is_usable(creation.authorization.nonce, ledger.clock(), scope=AUTHORIZATION_NONCE_SCOPE):
        raise TokenClaimError("Nonce d'autorisation déjà utilisé", reason="nonce_already_used")
    if not ledger.gateway.verify_authorization(network, creation.authorization.to_wire(), creation.signature):
        raise AuthenticationError("Signature invalide", reason="invalid_signature")
    return network


def _usage_session(ledger: SessionLedger, usage: Usage, request: FacilitatorRequest,
                   operator_id: Optional[str]) -> Session:
    session = ledger.repository.get_session(usage.session.id)
    # Une session ouverte via une autre clé API est traitée comme absente
    if session is None or (operator_id and session.operator_id and session.operator_id != operator_id):
        raise SessionNotFound()
    if session.network_id != request.payment_requirements.network:
        raise ValidationError("Réseau incohérent", reason="network_mismatch")
    if not session.token_hash:
        raise AuthenticationError("Jeton de session non configuré", reason="session_token_not_configured")
    if not hmac.compare_digest(hash_session_token(usage.session.token), session.token_hash):
        raise AuthenticationError("Jeton de session invalide", reason="invalid_session_token")
    return session


def _verify_usage(ledger: SessionLedger, usage: Usage, request: FacilitatorRequest, operator_id: Optional[str]) -> None:
    session = _usage_session(ledger, usage, request, operator_id)
    if ledger.repository.find_debit(session.id, usage.request_id) is not None:
        return
    if usage.amount <= 0:
        raise ValidationError("Montant invalide", reason="invalid_amount")
    transitions.ensure_chargeable(session, ledger.clock())
    balance = ledger.repository.get_balance(session.id)
    if balance is None or usage.amount > balance.available:
        raise InsufficientBalance()


def verify_payment(request: FacilitatorRequest, operator_id: Optional[str] = None) -> VerifyResponse:
    ledger = get_ledger()
    classified = classify(request.payment_payload.payload)
    payer = classified.payer if isinstance(classified, Creation) else None
    if isinstance(classified, Invalid):
        return VerifyResponse(isValid=False, invalidReason=classified.reason)
    try:
        _check_envelope(request)
        if isinstance(classified, Creation):
            _verify_creation(ledger, classified, request)
        else:
            _verify_usage(ledger, classified, request, operator_id)
            session = ledger.repository.get_session(classified.session.id)
            payer = session.payer if session else None
    except (SettlementTimeout, SettlementRejected) as e:
        logger.warning("Vérification on-chain indisponible: %s", e.reason)
        return VerifyResponse(isValid=False, invalidReason="verification_failed", payer=payer)
    except LedgerError as e:
        return VerifyResponse(isValid=False, invalidReason=e.reason, payer=payer)
    return VerifyResponse(isValid=True, payer=payer)


def _session_body(ledger: SessionLedger, session_id: str, token: Optional[str] = None):
    view = ledger.get(session_id)
    body = {
        "id": session_id,
        "balance": balance_to_dict(view.balance, hide_available=view.status != SessionStatus.ACTIVE),
        "expiresAt": to_unix(view.session.authorization_expiry),
    }
    if token:
        body["token"] = token
    return body


def _authorize_on_chain(ledger: SessionLedger, network: Network, session: Session,
                        creation: Creation, token_hash: Optional[str] = None) -> str:
    try:
        tx_id = ledger.gateway.authorize(
            network,
            session.payment_info(ledger.operator_address),
            creation.authorization.value,
            creation.authorization.to_wire(),
            creation.signature,
        )
    except SettlementRejected:
        # Une resoumission concurrente a pu confirmer la session entre-temps
        current = ledger.repository.get_session(session.id)
        if current is not None and not current.authorization_confirmed:
            ledger.abandon_session(session.id)
        raise
    ledger.confirm_authorization(session.id, tx_id, token_hash)
    return tx_id


def _replayed_creation(ledger: SessionLedger, network: Network, creation: Creation,
                       request: FacilitatorRequest) -> Optional[Tuple[Session, str, Optional[str]]]:
    """
    Autorisation déjà consommée: si la session correspondante existe (même payeur),
    la création est rejouée de façon idempotente (sans renvoyer le jeton de session).
    Une autorisation restée non confirmée (timeout précédent) est resoumise; le jeton
    n'ayant jamais été remis au client, un nouveau jeton est émis à la confirmation.
    """
    params = creation.session_params
    session_id = compute_session_id(
        network.id, creation.payer, request.payment_requirements.pay_to, network.token_address,
        creation.authorization.value, from_unix(params.authorization_expiry), from_unix(params.refund_expiry),
        params.salt,
    )
    session = ledger.repository.get_session(session_id)
    if session is None or session.payer != creation.payer or session.status != SessionStatus.ACTIVE:
        return None
    tx_id = session.transactions.authorize_tx_id
    token = None
    if tx_id is None:
        token = generate_session_token()
        tx_id = _authorize_on_chain(ledger, network, session, creation, hash_session_token(token))
    return session, tx_id, token


def _settle_creation(ledger: SessionLedger, creation: Creation, request: FacilitatorRequest,
                     operator_id: Optional[str]) -> SettleResponse:
    requirements = request.payment_requirements
    network = _creation_network(ledger, creation, request)
    if not ledger.gateway.verify_authorization(network, creation.authorization.to_wire(), creation.signature):
        raise AuthenticationError("Signature invalide", reason="invalid_signature")

    params = creation.session_params
    token = generate_session_token()
    try:
        session = ledger.create_session(
            network.id,
            creation.payer,
            requirements.pay_to,
            creation.authorization.value,
            from_unix(params.authorization_expiry),
            from_unix(params.refund_expiry),
            creation.authorization.nonce,
            nonce_expires_at=from_unix(creation.authorization.valid_before),
            salt=params.salt,
            operator_id=operator_id,
            token_hash=hash_session_token(token),
            pre_approval_expiry=from_unix(creation.authorization.valid_before),
        )
    except TokenClaimError:
        replay = _replayed_creation(ledger, network, creation, request)
        if replay is None:
            raise
        session, tx_id, token = replay
        logger.info("Création rejouée pour la session %s", session.id)
    else:
        tx_id = _authorize_on_chain(ledger, network, session, creation)

    ledger.debit(session.id, int(requirements.amount), creation.effective_request_id(), "Initial request charge")
    return SettleResponse(
        success=True,
        payer=creation.payer,
        transaction=tx_id,
        network=network.id,
        session=_session_body(ledger, session.id, token),
    )


def _settle_usage(ledger: SessionLedger, usage: Usage, request: FacilitatorRequest,
                  operator_id: Optional[str]) -> SettleResponse:
    session = _usage_session(ledger, usage, request, operator_id)
    if ledger.repository.find_debit(session.id, usage.request_id) is None:
        view = ledger.get(session.id)
        if get_capture_policy().requires_sync_capture(view, ledger.clock()):
            try:
                ref = ledger.capture(session.id)
                logger.info("Capture synchrone (tier 3) de %s sur %s", ref.amount, session.id)
            except LedgerError as e:
                logger.warning("Capture synchrone échouée pour %s: %s", session.id, e.reason)
                return SettleResponse(success=False, errorReason="sync_capture_failed",
                                      payer=session.payer, network=session.network_id)

    ledger.debit(session.id, usage.amount, usage.request_id)
    return SettleResponse(
        success=True,
        payer=session.payer,
        transaction="",
        network=session.network_id,
        session=_session_body(ledger, session.id),
    )


def settle_payment(request: FacilitatorRequest, operator_id: Optional[str] = None) -> SettleResponse:
    ledger = get_ledger()
    classified = classify(request.payment_payload.payload)
    if isinstance(classified, Invalid):
        return SettleResponse(success=False, errorReason=classified.reason)
    payer = classified.payer if isinstance(classified, Creation) else None
    try:
        _check_envelope(request)
        if isinstance(classified, Creation):
            return _settle_creation(ledger, classified, request, operator_id)
        return _settle_usage(ledger, classified, request, operator_id)
    except LedgerError as e:
        if not isinstance(e, (SettlementTimeout, SettlementRejected)):
            logger.info("Settle refusé (%s)", e.reason)
        return SettleResponse(success=False, errorReason=e.reason, payer=payer,
                              network=request.payment_requirements.network)
