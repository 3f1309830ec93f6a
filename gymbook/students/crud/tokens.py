"""
Token ledger.

Баланс кошелька - агрегированный счетчик и источник истины для проверок.
Партии (TokenGrant) хранят происхождение и срок действия. Все изменения
баланса - атомарные UPDATE на стороне БД, списание условное
(balance >= count), поэтому баланс не может стать отрицательным даже
при конкурентных запросах.

Примитивы consume_tokens / refund_tokens не коммитят: их вызывают
внутри транзакций бронирования и переводов.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from gymbook.core.audit import audit_trail
from gymbook.core.config import TRANSFER_GRANT_VALIDITY_DAYS
from gymbook.core.database import TransactionManager, db_operation, utc_now
from gymbook.core.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from gymbook.core.permissions import (
    Principal,
    STAFF_ROLES,
    UserRole,
    require_capability,
)
from gymbook.staff.crud.memberships import has_active_membership
from gymbook.staff.models import PackagePlan
from gymbook.students.models import GrantSource, TokenGrant, TokenWallet
from gymbook.students.schemas.wallets import AssignTokensRequest, TransferTokensRequest

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed_grants: int = 0
    expired_tokens: int = 0
    wallets_affected: int = 0


# ===== Wallet lookup =====


async def get_wallet(
    session: AsyncSession, user_id: int, gym_id: int, lock: bool = False
) -> Optional[TokenWallet]:
    query = select(TokenWallet).where(
        and_(TokenWallet.user_id == user_id, TokenWallet.gym_id == gym_id)
    )
    if lock:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def ensure_wallet(
    session: AsyncSession, user_id: int, gym_id: int
) -> TokenWallet:
    if not await has_active_membership(session, user_id, gym_id):
        raise PermissionDeniedError(
            "access wallet in", f"gym {gym_id}", f"user {user_id} has no active membership"
        )

    wallet = await get_wallet(session, user_id, gym_id, lock=True)
    if wallet:
        return wallet

    # Параллельное создание упрется в uq_token_wallet_user_gym
    wallet = TokenWallet(user_id=user_id, gym_id=gym_id, balance=0)
    session.add(wallet)
    await session.flush()

    logger.info(
        f"Token wallet created for user {user_id} in gym {gym_id}",
        extra={"user_id": user_id, "gym_id": gym_id, "wallet_id": wallet.id},
    )
    return wallet


@db_operation
async def get_or_create_wallet(
    session: AsyncSession, user_id: int, gym_id: int
) -> TokenWallet:
    """Кошелек пользователя в зале; создается с балансом 0 при первом обращении"""
    async with TransactionManager(session):
        wallet = await ensure_wallet(session, user_id, gym_id)
    return wallet


async def get_usable_grants(
    session: AsyncSession, wallet_id: int, now: Optional[datetime] = None
) -> List[TokenGrant]:
    """Неистекшие и не списанные партии, старые первыми"""
    now = now or utc_now()
    result = await session.execute(
        select(TokenGrant)
        .where(
            and_(
                TokenGrant.wallet_id == wallet_id,
                TokenGrant.swept_at.is_(None),
                or_(TokenGrant.expires_at.is_(None), TokenGrant.expires_at > now),
            )
        )
        .order_by(TokenGrant.created_at, TokenGrant.id)
    )
    return list(result.scalars().all())


@db_operation
async def get_wallet_overview(
    session: AsyncSession, user_id: int, gym_id: int
) -> Tuple[TokenWallet, List[TokenGrant]]:
    wallet = await get_or_create_wallet(session, user_id, gym_id)
    grants = await get_usable_grants(session, wallet.id)
    return wallet, grants


@db_operation
async def get_token_history(
    session: AsyncSession, user_id: int, gym_id: int, limit: int = 50
) -> Tuple[Optional[TokenWallet], List[TokenGrant]]:
    """История партий токенов, новые первыми"""
    wallet = await get_wallet(session, user_id, gym_id)
    if wallet is None:
        return None, []

    result = await session.execute(
        select(TokenGrant)
        .where(TokenGrant.wallet_id == wallet.id)
        .order_by(TokenGrant.created_at.desc(), TokenGrant.id.desc())
        .limit(limit)
    )
    return wallet, list(result.scalars().all())


# ===== Balance primitives =====


async def _debit(session: AsyncSession, wallet: TokenWallet, count: int) -> Optional[int]:
    """Условное атомарное списание. Новый баланс или None при нехватке."""
    result = await session.execute(
        update(TokenWallet)
        .where(and_(TokenWallet.id == wallet.id, TokenWallet.balance >= count))
        .values(balance=TokenWallet.balance - count, updated_at=utc_now())
        .returning(TokenWallet.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is not None:
        set_committed_value(wallet, "balance", new_balance)
    return new_balance


async def _credit(session: AsyncSession, wallet: TokenWallet, count: int) -> int:
    result = await session.execute(
        update(TokenWallet)
        .where(TokenWallet.id == wallet.id)
        .values(balance=TokenWallet.balance + count, updated_at=utc_now())
        .returning(TokenWallet.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one()
    set_committed_value(wallet, "balance", new_balance)
    return new_balance


async def _reload_balance(session: AsyncSession, wallet: TokenWallet) -> int:
    result = await session.execute(
        select(TokenWallet.balance).where(TokenWallet.id == wallet.id)
    )
    balance = result.scalar_one()
    set_committed_value(wallet, "balance", balance)
    return balance


async def consume_tokens(
    session: AsyncSession,
    wallet: TokenWallet,
    count: int,
    reason: str,
    actor: Optional[Principal] = None,
) -> int:
    """
    Списать токены с кошелька (без commit).

    Raises:
        InsufficientBalanceError: если balance < count
    """
    if count <= 0:
        raise ValidationError("Token count must be positive")

    new_balance = await _debit(session, wallet, count)
    if new_balance is None:
        balance = await _reload_balance(session, wallet)
        raise InsufficientBalanceError(wallet.id, balance, count)

    charges = await charge_grants(session, wallet, count)

    audit_trail.stage(
        session,
        actor_id=actor.user_id if actor else None,
        entity="TokenWallet",
        entity_id=wallet.id,
        action="CONSUME",
        diff={
            "tokens": -count,
            "balance": new_balance,
            "reason": reason,
            "charges": charges,
        },
        gym_id=wallet.gym_id,
    )
    return new_balance


async def refund_tokens(
    session: AsyncSession,
    wallet: TokenWallet,
    count: int,
    reason: str,
    actor: Optional[Principal] = None,
    grant: Optional[TokenGrant] = None,
) -> int:
    """
    Вернуть токены на кошелек (без commit).

    Сам примитив не ограничивает сумму; не более одного возврата на бронь
    обеспечивает Booking.refunded_at. Если передана партия и она еще не
    списана sweep-ом, возврат уменьшает ее consumed_tokens.
    """
    if count <= 0:
        raise ValidationError("Token count must be positive")

    new_balance = await _credit(session, wallet, count)

    if grant is not None:
        await session.refresh(grant, with_for_update=True)
        if grant.swept_at is None and grant.consumed_tokens:
            grant.consumed_tokens -= min(count, grant.consumed_tokens)
            await session.flush()

    audit_trail.stage(
        session,
        actor_id=actor.user_id if actor else None,
        entity="TokenWallet",
        entity_id=wallet.id,
        action="REFUND",
        diff={"tokens": count, "balance": new_balance, "reason": reason},
        gym_id=wallet.gym_id,
    )
    return new_balance


async def charge_grants(
    session: AsyncSession,
    wallet: TokenWallet,
    count: int,
    now: Optional[datetime] = None,
) -> List[dict]:
    """
    Распределить списание по действующим партиям, старые первыми.

    Вызывается после успешного _debit, пока строка кошелька заблокирована.
    Часть списания, не покрытая партиями (возвраты по списанным партиям),
    ни к одной партии не относится.
    """
    now = now or utc_now()
    result = await session.execute(
        select(TokenGrant)
        .where(
            and_(
                TokenGrant.wallet_id == wallet.id,
                TokenGrant.swept_at.is_(None),
                TokenGrant.consumed_tokens < TokenGrant.tokens,
                or_(TokenGrant.expires_at.is_(None), TokenGrant.expires_at > now),
            )
        )
        .order_by(TokenGrant.created_at, TokenGrant.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )

    charges = []
    need = count
    for grant in result.scalars().all():
        if need == 0:
            break
        taken = min(grant.remaining, need)
        grant.consumed_tokens += taken
        need -= taken
        charges.append({"grant_id": grant.id, "tokens": taken})

    if charges:
        await session.flush()
    return charges


async def select_grant_for_booking(
    session: AsyncSession, wallet: TokenWallet, now: Optional[datetime] = None
) -> Optional[TokenGrant]:
    """
    Партия, к которой привязывается бронь: самая старая действующая
    с неизрасходованным остатком (ее же затем спишет charge_grants),
    иначе самая старая действующая.
    """
    grants = await get_usable_grants(session, wallet.id, now)
    if not grants:
        return None

    for grant in grants:
        if grant.remaining > 0:
            return grant
    return grants[0]


async def create_grant(
    session: AsyncSession,
    wallet: TokenWallet,
    tokens: int,
    source: GrantSource,
    actor_id: Optional[int],
    expires_at: Optional[datetime] = None,
    plan_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> TokenGrant:
    """Создать партию и зачислить токены на кошелек (без commit)"""
    grant = TokenGrant(
        wallet_id=wallet.id,
        user_id=wallet.user_id,
        gym_id=wallet.gym_id,
        plan_id=plan_id,
        tokens=tokens,
        consumed_tokens=0,
        source=source,
        expires_at=expires_at,
        reason=reason,
        created_by=actor_id,
    )
    session.add(grant)
    await session.flush()

    new_balance = await _credit(session, wallet, tokens)

    audit_trail.stage(
        session,
        actor_id=actor_id,
        entity="TokenGrant",
        entity_id=grant.id,
        action="GRANT",
        diff={
            "wallet_id": wallet.id,
            "tokens": tokens,
            "source": source.value,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "plan_id": plan_id,
            "balance": new_balance,
            "reason": reason,
        },
        gym_id=wallet.gym_id,
    )
    return grant


# ===== Ledger operations =====


@db_operation
async def assign_tokens(
    session: AsyncSession, data: AssignTokensRequest, actor: Principal
) -> Tuple[TokenWallet, TokenGrant]:
    """Начислить токены студенту (ADMIN / PROFESSOR)"""
    require_capability(actor, STAFF_ROLES, "assign", "tokens")

    async with TransactionManager(session):
        if not await has_active_membership(session, data.user_id, data.gym_id):
            raise PermissionDeniedError(
                "assign tokens to",
                f"user {data.user_id}",
                f"no active membership in gym {data.gym_id}",
            )

        if data.plan_id is not None:
            plan = await session.get(PackagePlan, data.plan_id)
            if not plan or plan.gym_id != data.gym_id:
                raise NotFoundError("Package plan", str(data.plan_id))

        wallet = await ensure_wallet(session, data.user_id, data.gym_id)
        grant = await create_grant(
            session,
            wallet,
            data.tokens,
            data.source,
            actor.user_id,
            expires_at=data.expires_at,
            plan_id=data.plan_id,
            reason=data.reason,
        )

    logger.info(
        f"Assigned {data.tokens} tokens to user {data.user_id} in gym {data.gym_id}",
        extra={"wallet_id": wallet.id, "grant_id": grant.id, "actor_id": actor.user_id},
    )
    return wallet, grant


@db_operation
async def transfer_tokens(
    session: AsyncSession, data: TransferTokensRequest, actor: Principal
) -> Tuple[TokenWallet, TokenWallet, TokenGrant]:
    """
    Перевод токенов между кошельками одного зала одной транзакцией.

    Получатель получает партию BONUS со сроком TRANSFER_GRANT_VALIDITY_DAYS.
    """
    if actor.user_id != data.from_user_id and actor.role != UserRole.ADMIN:
        raise PermissionDeniedError("transfer tokens from", f"user {data.from_user_id}", "not the owner")

    async with TransactionManager(session):
        # Блокируем кошельки в порядке id, чтобы не было взаимных блокировок
        result = await session.execute(
            select(TokenWallet)
            .where(
                and_(
                    TokenWallet.gym_id == data.gym_id,
                    TokenWallet.user_id.in_([data.from_user_id, data.to_user_id]),
                )
            )
            .order_by(TokenWallet.id)
            .with_for_update()
        )
        wallets = {wallet.user_id: wallet for wallet in result.scalars().all()}

        source = wallets.get(data.from_user_id)
        if source is None:
            raise NotFoundError("Token wallet", f"user {data.from_user_id}, gym {data.gym_id}")
        target = wallets.get(data.to_user_id)
        if target is None:
            raise NotFoundError("Token wallet", f"user {data.to_user_id}, gym {data.gym_id}")

        reason = data.reason or f"Transfer from user {data.from_user_id}"
        await consume_tokens(session, source, data.tokens, reason, actor)

        grant = await create_grant(
            session,
            target,
            data.tokens,
            GrantSource.BONUS,
            actor.user_id,
            expires_at=utc_now() + timedelta(days=TRANSFER_GRANT_VALIDITY_DAYS),
            reason=reason,
        )

    logger.info(
        f"Transferred {data.tokens} tokens: user {data.from_user_id} -> {data.to_user_id}",
        extra={"gym_id": data.gym_id, "grant_id": grant.id},
    )
    return source, target, grant


@db_operation
async def sweep_expired_grants(
    session: AsyncSession,
    now: Optional[datetime] = None,
    actor: Optional[Principal] = None,
) -> SweepResult:
    """
    Списать остатки истекших партий.

    Идемпотентно: обработанная партия получает swept_at и больше не
    выбирается. Списывается неизрасходованный остаток партии
    (tokens - consumed_tokens), но не больше текущего баланса.
    """
    now = now or utc_now()
    sweep = SweepResult()
    wallets_touched = set()

    async with TransactionManager(session):
        result = await session.execute(
            select(TokenGrant)
            .where(
                and_(
                    TokenGrant.expires_at.isnot(None),
                    TokenGrant.expires_at <= now,
                    TokenGrant.swept_at.is_(None),
                )
            )
            .order_by(TokenGrant.wallet_id, TokenGrant.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        grants = list(result.scalars().all())

        for grant in grants:
            wallet = await session.get(TokenWallet, grant.wallet_id, with_for_update=True)
            remaining = max(grant.remaining, 0)

            expired = 0
            while remaining > 0:
                balance = await _reload_balance(session, wallet)
                expired = min(remaining, balance)
                if expired == 0 or await _debit(session, wallet, expired) is not None:
                    break

            grant.swept_at = now
            grant.expired_tokens = expired
            sweep.processed_grants += 1
            sweep.expired_tokens += expired
            if expired:
                wallets_touched.add(wallet.id)

            audit_trail.stage(
                session,
                actor_id=actor.user_id if actor else None,
                entity="TokenGrant",
                entity_id=grant.id,
                action="EXPIRE",
                diff={
                    "wallet_id": wallet.id,
                    "grant_tokens": grant.tokens,
                    "consumed_tokens": grant.consumed_tokens,
                    "expired_tokens": expired,
                    "balance": wallet.balance,
                },
                gym_id=grant.gym_id,
            )

        await session.flush()

    sweep.wallets_affected = len(wallets_touched)
    logger.info(
        f"Token sweep finished: {sweep.processed_grants} grants, {sweep.expired_tokens} tokens expired",
        extra={
            "processed_grants": sweep.processed_grants,
            "expired_tokens": sweep.expired_tokens,
            "wallets_affected": sweep.wallets_affected,
        },
    )
    return sweep
