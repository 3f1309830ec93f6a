from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import get_session
from gymbook.core.dependencies import get_current_principal
from gymbook.core.limits import limiter
from gymbook.core.permissions import Principal, require_self_or_staff
from gymbook.students.crud.payments import get_user_payments, purchase_tokens
from gymbook.students.crud.tokens import (
    get_token_history,
    get_wallet_overview,
    transfer_tokens,
)
from gymbook.students.schemas.payments import (
    PaymentListResponse,
    PaymentRead,
    PurchaseTokensRequest,
)
from gymbook.students.schemas.wallets import (
    TokenHistoryResponse,
    TransferTokensRequest,
    TransferTokensResponse,
    WalletOverview,
)

router = APIRouter(prefix="/tokens", tags=["Wallet"])


@router.get("/wallet", response_model=WalletOverview)
@limiter.limit("60/minute")
async def get_my_wallet(
    request: Request,
    gym_id: int = Query(..., gt=0),
    user_id: Optional[int] = Query(None, gt=0, description="Staff only: another user's wallet"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Wallet balance and usable grants in a gym. Created with balance 0 on first access."""
    target = user_id or principal.user_id
    require_self_or_staff(principal, target, "view wallet of", f"user {target}")

    wallet, grants = await get_wallet_overview(db, target, gym_id)
    return WalletOverview(wallet=wallet, active_grants=grants)


@router.get("/history", response_model=TokenHistoryResponse)
@limiter.limit("30/minute")
async def get_my_token_history(
    request: Request,
    gym_id: int = Query(..., gt=0),
    user_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    target = user_id or principal.user_id
    require_self_or_staff(principal, target, "view token history of", f"user {target}")

    wallet, grants = await get_token_history(db, target, gym_id, limit=limit)
    return TokenHistoryResponse(wallet=wallet, grants=grants)


@router.post("/transfer", response_model=TransferTokensResponse)
@limiter.limit("10/minute")
async def transfer_my_tokens(
    request: Request,
    data: TransferTokensRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Move tokens to another member of the same gym as a 30-day BONUS grant."""
    source, target, grant = await transfer_tokens(db, data, principal)
    return TransferTokensResponse(from_wallet=source, to_wallet=target, grant=grant)


@router.post("/purchase", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def purchase_token_package(
    request: Request,
    data: PurchaseTokensRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """Start a purchase. Tokens are minted when the payment is confirmed."""
    return await purchase_tokens(db, principal.user_id, data.plan_id, principal)


@router.get("/payments", response_model=PaymentListResponse)
@limiter.limit("30/minute")
async def list_my_payments(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    payments = await get_user_payments(db, principal.user_id)
    return PaymentListResponse(payments=payments, total=len(payments))
