from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from gymbook.students.models.payments import PaymentStatus
from gymbook.students.schemas.wallets import TokenGrantRead, TokenWalletRead


class PurchaseTokensRequest(BaseModel):
    plan_id: int = Field(..., gt=0, description="Package plan to buy")


class PaymentRead(BaseModel):
    id: int
    user_id: int
    gym_id: int
    plan_id: int
    amount: Decimal
    currency: str
    status: PaymentStatus
    external_id: Optional[str] = None
    grant_id: Optional[int] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConfirmPurchaseRequest(BaseModel):
    external_id: Optional[str] = Field(
        None, max_length=255, description="Transaction id from the payment provider"
    )


class ConfirmPurchaseResponse(BaseModel):
    payment: PaymentRead
    wallet: TokenWalletRead
    grant: TokenGrantRead


class PaymentListResponse(BaseModel):
    payments: List[PaymentRead]
    total: int
