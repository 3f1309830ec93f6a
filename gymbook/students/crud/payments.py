"""Покупка пакетов токенов: ожидающий платеж и его подтверждение провайдером"""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from gymbook.core.audit import audit_trail
from gymbook.core.database import TransactionManager, db_operation, utc_now
from gymbook.core.exceptions import InvalidStateError, NotFoundError, PermissionDeniedError
from gymbook.core.permissions import Principal, require_self_or_staff
from gymbook.staff.crud.memberships import has_active_membership
from gymbook.staff.models import PackagePlan
from gymbook.students.crud.tokens import ensure_wallet, create_grant
from gymbook.students.models import (
    GrantSource,
    Payment,
    PaymentStatus,
    TokenGrant,
    TokenWallet,
)

logger = logging.getLogger(__name__)


@db_operation
async def purchase_tokens(
    session: AsyncSession, user_id: int, plan_id: int, actor: Principal
) -> Payment:
    """Создать ожидающий платеж за пакет токенов"""
    require_self_or_staff(actor, user_id, "purchase tokens for", f"user {user_id}")

    async with TransactionManager(session):
        plan = await session.get(PackagePlan, plan_id)
        if not plan or not plan.is_active:
            raise NotFoundError("Package plan", str(plan_id))

        if not await has_active_membership(session, user_id, plan.gym_id):
            raise PermissionDeniedError(
                "purchase tokens in", f"gym {plan.gym_id}", "no active membership"
            )

        payment = Payment(
            user_id=user_id,
            gym_id=plan.gym_id,
            plan_id=plan.id,
            amount=plan.price,
            currency=plan.currency,
            status=PaymentStatus.PENDING,
        )
        session.add(payment)
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id,
            entity="Payment",
            entity_id=payment.id,
            action="CREATE",
            diff={"plan_id": plan.id, "amount": str(plan.price), "currency": plan.currency},
            gym_id=plan.gym_id,
        )

    logger.info(
        f"Payment {payment.id} initiated for plan {plan_id}",
        extra={"payment_id": payment.id, "user_id": user_id, "plan_id": plan_id},
    )
    return payment


@db_operation
async def confirm_purchase(
    session: AsyncSession,
    payment_id: int,
    actor: Optional[Principal] = None,
    external_id: Optional[str] = None,
) -> Tuple[Payment, TokenWallet, TokenGrant]:
    """
    Подтвердить платеж: выпустить партию PURCHASE по плану
    (срок = сейчас + validity_days) и отметить платеж выполненным.

    Raises:
        NotFoundError: платеж или план не найден
        InvalidStateError: платеж уже обработан
    """
    async with TransactionManager(session):
        result = await session.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", str(payment_id))

        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(
                "Payment",
                payment.status.value,
                f"Payment {payment_id} has already been processed",
            )

        plan = await session.get(PackagePlan, payment.plan_id)
        if not plan:
            raise NotFoundError("Package plan", str(payment.plan_id))

        now = utc_now()
        wallet = await ensure_wallet(session, payment.user_id, payment.gym_id)
        grant = await create_grant(
            session,
            wallet,
            plan.tokens,
            GrantSource.PURCHASE,
            actor.user_id if actor else None,
            expires_at=now + timedelta(days=plan.validity_days),
            plan_id=plan.id,
            reason=f"Purchase of plan '{plan.name}'",
        )

        payment.status = PaymentStatus.COMPLETED
        payment.paid_at = now
        payment.grant_id = grant.id
        if external_id:
            payment.external_id = external_id
        await session.flush()

        audit_trail.stage(
            session,
            actor_id=actor.user_id if actor else None,
            entity="Payment",
            entity_id=payment.id,
            action="COMPLETE",
            diff={"grant_id": grant.id, "tokens": plan.tokens, "external_id": external_id},
            gym_id=payment.gym_id,
        )

    return payment, wallet, grant


@db_operation
async def get_user_payments(
    session: AsyncSession, user_id: int, status: Optional[PaymentStatus] = None
) -> List[Payment]:
    query = select(Payment).where(Payment.user_id == user_id)
    if status is not None:
        query = query.where(Payment.status == status)
    result = await session.execute(query.order_by(Payment.created_at.desc(), Payment.id.desc()))
    return list(result.scalars().all())
