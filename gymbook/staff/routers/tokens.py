from fastapi import APIRouter, Depends, Path, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from gymbook.core.database import get_session
from gymbook.core.dependencies import get_current_principal, require_admin
from gymbook.core.limits import limiter
from gymbook.core.permissions import Principal
from gymbook.students.crud.payments import confirm_purchase
from gymbook.students.crud.tokens import assign_tokens, sweep_expired_grants
from gymbook.students.schemas.payments import ConfirmPurchaseRequest, ConfirmPurchaseResponse
from gymbook.students.schemas.wallets import (
    AssignTokensRequest,
    AssignTokensResponse,
    SweepResponse,
)

router = APIRouter(prefix="/tokens", tags=["Token Ledger"])


@router.post("/assign", response_model=AssignTokensResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def assign_tokens_to_student(
    request: Request,
    data: AssignTokensRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
):
    """
    Grant tokens to a gym member (ADMIN / PROFESSOR).

    - **tokens**: Number of tokens in the grant
    - **source**: PURCHASE, ASSIGNMENT or BONUS
    - **expires_at**: Optional expiry; expired grants are removed by the sweep
    """
    wallet, grant = await assign_tokens(db, data, principal)
    return AssignTokensResponse(wallet=wallet, grant=grant)


@router.post("/sweep", response_model=SweepResponse)
@limiter.limit("5/minute")
async def sweep_expired_tokens(
    request: Request,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Expire the unused remainder of grants past their expiry. Safe to repeat."""
    result = await sweep_expired_grants(db, actor=principal)
    return SweepResponse(
        processed_grants=result.processed_grants,
        expired_tokens=result.expired_tokens,
        wallets_affected=result.wallets_affected,
    )


@router.post("/payments/{payment_id}/confirm", response_model=ConfirmPurchaseResponse)
@limiter.limit("30/minute")
async def confirm_token_purchase(
    request: Request,
    data: ConfirmPurchaseRequest,
    payment_id: int = Path(..., gt=0),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Confirm a pending payment and mint the plan's tokens."""
    payment, wallet, grant = await confirm_purchase(
        db, payment_id, actor=principal, external_id=data.external_id
    )
    return ConfirmPurchaseResponse(payment=payment, wallet=wallet, grant=grant)
