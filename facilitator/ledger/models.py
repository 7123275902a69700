from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CAPTURED = "captured"
    VOIDED = "voided"
    EXPIRED = "expired"


class Network(BaseModel):
    """Données de référence d'un réseau (jamais modifiées par le ledger)."""
    id: str  # CAIP-2, ex: "eip155:8453"
    name: str
    chain_id: int
    token_address: str
    eip712_name: str = "USD Coin"
    eip712_version: str = "2"
    escrow_contract: str
    token_collector: str
    min_deposit: int
    max_deposit: int
    is_active: bool = True


class SessionTransactions(BaseModel):
    authorize_tx_id: Optional[str] = None
    capture_tx_ids: List[str] = Field(default_factory=list)
    void_tx_id: Optional[str] = None


class Session(BaseModel):
    id: str
    payer: str
    receiver: str
    operator_id: Optional[str] = None
    network_id: str
    token_address: str
    authorization_expiry: datetime
    refund_expiry: datetime
    pre_approval_expiry: Optional[datetime] = None
    salt: Optional[str] = None
    token_hash: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    closing: bool = False
    created_at: datetime
    transactions: SessionTransactions = Field(default_factory=SessionTransactions)

    @property
    def authorization_confirmed(self) -> bool:
        return self.transactions.authorize_tx_id is not None

    def payment_info(self, operator: str) -> Dict[str, Any]:
        """Paramètres transmis au contrat d'escrow pour capture/void."""
        return {
            "operator": operator,
            "payer": self.payer,
            "receiver": self.receiver,
            "token": self.token_address,
            "preApprovalExpiry": int((self.pre_approval_expiry or self.authorization_expiry).timestamp()),
            "authorizationExpiry": int(self.authorization_expiry.timestamp()),
            "refundExpiry": int(self.refund_expiry.timestamp()),
            "salt": self.salt,
        }


class SessionBalance(BaseModel):
    session_id: str
    authorized: int
    captured: int = 0
    pending: int = 0
    available: int = 0
    reclaimed: int = 0

    def is_consistent(self) -> bool:
        parts = (self.captured, self.pending, self.available, self.reclaimed)
        return all(p >= 0 for p in parts) and self.authorized == sum(parts)


class Debit(BaseModel):
    id: str
    session_id: str
    amount: int
    request_id: str
    description: Optional[str] = None
    available_after: int
    created_at: datetime


class CaptureStatus(str, Enum):
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class CaptureRecord(BaseModel):
    id: str
    session_id: str
    amount: int
    status: CaptureStatus = CaptureStatus.RESERVED
    tx_id: Optional[str] = None
    created_at: datetime


class Receipt(BaseModel):
    """Reçu d'un débit; identique pour toute relecture du même requestId."""
    debit_id: str
    session_id: str
    request_id: str
    amount: int
    available_after: int
    created_at: datetime

    @classmethod
    def from_debit(cls, debit: Debit) -> "Receipt":
        return cls(
            debit_id=debit.id,
            session_id=debit.session_id,
            request_id=debit.request_id,
            amount=debit.amount,
            available_after=debit.available_after,
            created_at=debit.created_at,
        )


class TxRef(BaseModel):
    session_id: str
    kind: str  # "capture" | "void"
    amount: int
    tx_id: Optional[str] = None


class SessionView(BaseModel):
    """Projection en lecture: session + solde + statut effectif."""
    session: Session
    balance: SessionBalance
    status: SessionStatus
