from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    x402_version: int = Field(default=2, alias="x402Version")
    scheme: Optional[str] = None
    network: Optional[str] = None
    accepted: Optional[Dict[str, Any]] = None
    payload: Dict[str, Any]

    def requested_network(self) -> Optional[str]:
        return self.network or (self.accepted or {}).get("network")

    def requested_scheme(self) -> Optional[str]:
        return self.scheme or (self.accepted or {}).get("scheme")


class PaymentRequirements(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    scheme: str
    network: str
    amount: str
    asset: str
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: Optional[int] = Field(default=None, alias="maxTimeoutSeconds")
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount")
    @classmethod
    def check_amount(cls, v: str) -> str:
        if not v or not v.isdigit():
            raise ValueError("amount doit être un entier décimal")
        return v


class FacilitatorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x402_version: int = Field(default=2, alias="x402Version")
    payment_payload: PaymentPayload = Field(alias="paymentPayload")
    payment_requirements: PaymentRequirements = Field(alias="paymentRequirements")


class VerifyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    invalid_reason: Optional[str] = Field(default=None, alias="invalidReason")
    payer: Optional[str] = None


class SettleResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    payer: Optional[str] = None
    transaction: str = ""
    network: Optional[str] = None
    session: Optional[Dict[str, Any]] = None
