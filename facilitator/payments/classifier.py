# module facilitator.payments.classifier
"""
Classification structurelle du payload de paiement (schéma "escrow").

Un même schéma transporte deux opérations sans champ discriminant:
- Creation: signature + authorization{from,to,...} + sessionParams  -> ouverture de session
- Usage: session{id,token} + amount                                 -> débit d'une session existante
Règles:
- la forme Creation est testée en premier (la plus spécifique)
- un payload Usage qui contient aussi des champs de signature est Invalid
- un payload qui correspond aux deux formes, ou à aucune, est Invalid
"""
import re
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

_UINT = re.compile(r"^\d+$")

SIGNATURE_FIELDS = ("signature", "authorization", "sessionParams")


def parse_amount(value: Any) -> int:
    """Montant en plus petite unité: chaîne décimale entière uniquement (jamais un nombre JSON)."""
    if not isinstance(value, str) or not _UINT.match(value):
        raise ValueError("amount must be a decimal-integer string")
    return int(value)


def parse_uint(value: Any) -> int:
    """Timestamp ou entier non signé: entier JSON ou chaîne décimale."""
    if isinstance(value, bool):
        raise ValueError("expected unsigned integer")
    if isinstance(value, int) and value >= 0:
        return value
    if isinstance(value, str) and _UINT.match(value):
        return int(value)
    raise ValueError("expected unsigned integer")


class Authorization(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: str
    value: int
    valid_after: int = Field(alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str

    @field_validator("value", mode="before")
    @classmethod
    def check_value(cls, v):
        return parse_amount(v)

    @field_validator("valid_after", "valid_before", mode="before")
    @classmethod
    def check_window(cls, v):
        return parse_uint(v)

    def to_wire(self) -> Dict[str, str]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


class SessionParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    salt: str
    authorization_expiry: int = Field(alias="authorizationExpiry")
    refund_expiry: int = Field(alias="refundExpiry")

    @field_validator("authorization_expiry", "refund_expiry", mode="before")
    @classmethod
    def check_expiries(cls, v):
        return parse_uint(v)


class SessionHandle(BaseModel):
    id: str
    token: str


class Creation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    authorization: Authorization
    signature: str
    session_params: SessionParams = Field(alias="sessionParams")
    request_id: Optional[str] = Field(default=None, alias="requestId")

    @property
    def payer(self) -> str:
        return self.authorization.from_address.lower()

    def effective_request_id(self) -> str:
        return self.request_id or f"initial:{self.authorization.nonce}"


class Usage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session: SessionHandle
    amount: int
    request_id: str = Field(alias="requestId")

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, v):
        return parse_amount(v)


class Invalid(BaseModel):
    reason: str


Classified = Union[Creation, Usage, Invalid]


def _has_creation_shape(payload: Dict[str, Any]) -> bool:
    auth = payload.get("authorization")
    return (
        isinstance(payload.get("signature"), str)
        and isinstance(auth, dict)
        and isinstance(auth.get("from"), str)
        and isinstance(auth.get("to"), str)
        and isinstance(payload.get("sessionParams"), dict)
    )


def _has_usage_shape(payload: Dict[str, Any]) -> bool:
    handle = payload.get("session")
    return (
        isinstance(handle, dict)
        and isinstance(handle.get("id"), str)
        and isinstance(handle.get("token"), str)
        and "amount" in payload
    )


def classify(payload: Any) -> Classified:
    if not isinstance(payload, dict):
        return Invalid(reason="invalid_payload")

    if _has_creation_shape(payload):
        if "session" in payload:
            return Invalid(reason="ambiguous_payload")
        try:
            return Creation.model_validate(payload)
        except PydanticValidationError:
            return Invalid(reason="invalid_creation_payload")

    if _has_usage_shape(payload):
        if any(field in payload for field in SIGNATURE_FIELDS):
            return Invalid(reason="unexpected_signature")
        try:
            return Usage.model_validate(payload)
        except PydanticValidationError:
            return Invalid(reason="invalid_usage_payload")

    return Invalid(reason="unrecognized_payload")
