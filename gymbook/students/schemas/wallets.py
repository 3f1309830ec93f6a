from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gymbook.core.database import utc_now
from gymbook.core.exceptions import ValidationError
from gymbook.students.models.wallets import GrantSource


class TokenGrantRead(BaseModel):
    id: int
    wallet_id: int
    plan_id: Optional[int] = None
    tokens: int
    consumed_tokens: int = 0
    source: GrantSource
    expires_at: Optional[datetime] = None
    swept_at: Optional[datetime] = None
    expired_tokens: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TokenWalletRead(BaseModel):
    id: int
    user_id: int
    gym_id: int
    balance: int

    model_config = ConfigDict(from_attributes=True)


class WalletOverview(BaseModel):
    """Кошелек и действующие партии токенов"""

    wallet: TokenWalletRead
    active_grants: List[TokenGrantRead] = []


class AssignTokensRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    gym_id: int = Field(..., gt=0)
    tokens: int = Field(..., gt=0, le=1000, description="Number of tokens to grant")
    source: GrantSource = GrantSource.ASSIGNMENT
    expires_at: Optional[datetime] = None
    plan_id: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("expires_at")
    @classmethod
    def validate_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None:
            raise ValidationError("expires_at must include a timezone offset")
        if v <= utc_now():
            raise ValidationError("expires_at must be in the future")
        return v


class AssignTokensResponse(BaseModel):
    wallet: TokenWalletRead
    grant: TokenGrantRead


class TransferTokensRequest(BaseModel):
    from_user_id: int = Field(..., gt=0)
    to_user_id: int = Field(..., gt=0)
    gym_id: int = Field(..., gt=0)
    tokens: int = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("to_user_id")
    @classmethod
    def validate_distinct_users(cls, v: int, info) -> int:
        if info.data.get("from_user_id") == v:
            raise ValidationError("Cannot transfer tokens to the same user")
        return v


class TransferTokensResponse(BaseModel):
    from_wallet: TokenWalletRead
    to_wallet: TokenWalletRead
    grant: TokenGrantRead


class SweepResponse(BaseModel):
    processed_grants: int
    expired_tokens: int
    wallets_affected: int


class TokenHistoryResponse(BaseModel):
    wallet: Optional[TokenWalletRead] = None
    grants: List[TokenGrantRead]
