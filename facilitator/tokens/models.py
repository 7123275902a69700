from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


class SingleUseToken(BaseModel):
    value: str
    scope: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    claimed_by: Optional[str] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ClaimResult(BaseModel):
    status: ClaimStatus
    token: Optional[SingleUseToken] = None

    @property
    def ok(self) -> bool:
        return self.status == ClaimStatus.CLAIMED

    @property
    def reason(self) -> str:
        """Code machine exposé aux clients ("nonce_expired", ...)."""
        if self.status == ClaimStatus.CLAIMED:
            return "claimed"
        return f"nonce_{self.status.value}"
