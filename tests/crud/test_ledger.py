from datetime import timedelta

import pytest

from gymbook.core.database import async_session, utc_now
from gymbook.core.exceptions import (
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from gymbook.core.permissions import Principal, UserRole
from gymbook.students.crud.bookings import cancel_booking, create_booking
from gymbook.students.crud.payments import confirm_purchase, purchase_tokens
from gymbook.students.crud.tokens import (
    assign_tokens,
    consume_tokens,
    get_or_create_wallet,
    get_token_history,
    sweep_expired_grants,
    transfer_tokens,
)
from gymbook.students.models import GrantSource, PaymentStatus
from gymbook.students.schemas.wallets import AssignTokensRequest, TransferTokensRequest


async def test_assign_creates_wallet_and_grant(world, make_student, balance_of):
    student = await make_student(tokens=0, wallet=False)

    async with async_session() as db:
        wallet, grant = await assign_tokens(
            db,
            AssignTokensRequest(user_id=student.user_id, gym_id=world.gym.id, tokens=5),
            world.professor,
        )

    assert wallet.balance == 5
    assert grant.tokens == 5
    assert grant.source == GrantSource.ASSIGNMENT
    assert grant.expires_at is None
    assert await balance_of(student) == 5


async def test_assign_requires_staff(world, make_student):
    student = await make_student(tokens=0)

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await assign_tokens(
                db,
                AssignTokensRequest(user_id=student.user_id, gym_id=world.gym.id, tokens=5),
                student,
            )


async def test_assign_requires_gym_membership(world, make_student):
    outsider = await make_student(tokens=0, membership=False)

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await assign_tokens(
                db,
                AssignTokensRequest(user_id=outsider.user_id, gym_id=world.gym.id, tokens=5),
                world.admin,
            )


async def test_assign_rejects_past_expiry(world, make_student):
    student = await make_student(tokens=0)

    with pytest.raises(ValidationError):
        AssignTokensRequest(
            user_id=student.user_id,
            gym_id=world.gym.id,
            tokens=5,
            expires_at=utc_now() - timedelta(days=1),
        )


async def test_consume_never_goes_negative(world, make_student, balance_of):
    student = await make_student(tokens=2)

    async with async_session() as db:
        wallet = await get_or_create_wallet(db, student.user_id, world.gym.id)
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await consume_tokens(db, wallet, 3, "test", student)
        await db.rollback()

    assert exc_info.value.details["balance"] == 2
    assert exc_info.value.details["required"] == 3
    assert await balance_of(student) == 2


async def test_transfer_moves_tokens_atomically(world, make_student, balance_of):
    sender = await make_student(tokens=10)
    receiver = await make_student(tokens=0)

    async with async_session() as db:
        source, target, grant = await transfer_tokens(
            db,
            TransferTokensRequest(
                from_user_id=sender.user_id,
                to_user_id=receiver.user_id,
                gym_id=world.gym.id,
                tokens=3,
            ),
            sender,
        )

    assert source.balance == 7
    assert target.balance == 3
    assert grant.source == GrantSource.BONUS
    assert grant.expires_at > utc_now() + timedelta(days=29)
    assert await balance_of(sender) == 7
    assert await balance_of(receiver) == 3


async def test_transfer_over_balance_changes_nothing(world, make_student, balance_of):
    sender = await make_student(tokens=2)
    receiver = await make_student(tokens=1)

    async with async_session() as db:
        with pytest.raises(InsufficientBalanceError):
            await transfer_tokens(
                db,
                TransferTokensRequest(
                    from_user_id=sender.user_id,
                    to_user_id=receiver.user_id,
                    gym_id=world.gym.id,
                    tokens=5,
                ),
                sender,
            )

    assert await balance_of(sender) == 2
    assert await balance_of(receiver) == 1


async def test_transfer_permissions_and_missing_wallet(world, make_student):
    sender = await make_student(tokens=5)
    other = await make_student(tokens=5)
    no_wallet = await make_student(tokens=0, wallet=False)

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await transfer_tokens(
                db,
                TransferTokensRequest(
                    from_user_id=sender.user_id,
                    to_user_id=other.user_id,
                    gym_id=world.gym.id,
                    tokens=1,
                ),
                other,
            )

    async with async_session() as db:
        with pytest.raises(NotFoundError):
            await transfer_tokens(
                db,
                TransferTokensRequest(
                    from_user_id=sender.user_id,
                    to_user_id=no_wallet.user_id,
                    gym_id=world.gym.id,
                    tokens=1,
                ),
                world.admin,
            )


async def test_transfer_to_self_is_rejected(world):
    with pytest.raises(ValidationError):
        TransferTokensRequest(from_user_id=1, to_user_id=1, gym_id=world.gym.id, tokens=1)


async def test_sweep_expires_unused_remainder_once(world, make_student, make_session, balance_of):
    student = await make_student(tokens=0)
    expires_at = utc_now() + timedelta(days=1)

    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(
                user_id=student.user_id,
                gym_id=world.gym.id,
                tokens=5,
                expires_at=expires_at,
            ),
            world.admin,
        )
    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(user_id=student.user_id, gym_id=world.gym.id, tokens=3),
            world.admin,
        )

    class_session = await make_session()
    async with async_session() as db:
        result = await create_booking(db, class_session.id, student.user_id, student)
    assert result.kind == "booked"
    assert await balance_of(student) == 7

    later = expires_at + timedelta(hours=1)
    async with async_session() as db:
        first = await sweep_expired_grants(db, now=later)

    # 5 токенов в партии, 1 удерживает бронь
    assert first.processed_grants == 1
    assert first.expired_tokens == 4
    assert first.wallets_affected == 1
    assert await balance_of(student) == 3

    async with async_session() as db:
        second = await sweep_expired_grants(db, now=later + timedelta(days=1))

    assert second.processed_grants == 0
    assert second.expired_tokens == 0
    assert await balance_of(student) == 3


async def test_sweep_counts_transferred_tokens_as_consumed(world, make_student, balance_of):
    sender = await make_student(tokens=0)
    receiver = await make_student(tokens=0)
    expires_at = utc_now() + timedelta(days=1)

    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(
                user_id=sender.user_id, gym_id=world.gym.id, tokens=4, expires_at=expires_at
            ),
            world.admin,
        )
    async with async_session() as db:
        await transfer_tokens(
            db,
            TransferTokensRequest(
                from_user_id=sender.user_id,
                to_user_id=receiver.user_id,
                gym_id=world.gym.id,
                tokens=3,
            ),
            sender,
        )

    async with async_session() as db:
        _, grants = await get_token_history(db, sender.user_id, world.gym.id)
    assert [g.consumed_tokens for g in grants] == [3]

    async with async_session() as db:
        result = await sweep_expired_grants(db, now=expires_at + timedelta(minutes=1))

    assert result.expired_tokens == 1
    assert await balance_of(sender) == 0
    assert await balance_of(receiver) == 3


async def test_transfer_out_of_expiring_grant_keeps_later_grant(world, make_student, balance_of):
    sender = await make_student(tokens=0)
    receiver = await make_student(tokens=0)
    expires_at = utc_now() + timedelta(days=1)

    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(
                user_id=sender.user_id, gym_id=world.gym.id, tokens=5, expires_at=expires_at
            ),
            world.admin,
        )
    async with async_session() as db:
        await transfer_tokens(
            db,
            TransferTokensRequest(
                from_user_id=sender.user_id,
                to_user_id=receiver.user_id,
                gym_id=world.gym.id,
                tokens=5,
            ),
            sender,
        )
    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(user_id=sender.user_id, gym_id=world.gym.id, tokens=5),
            world.admin,
        )
    assert await balance_of(sender) == 5

    async with async_session() as db:
        result = await sweep_expired_grants(db, now=expires_at + timedelta(days=1))

    assert result.processed_grants == 1
    assert result.expired_tokens == 0
    assert await balance_of(sender) == 5
    assert await balance_of(receiver) == 5

    async with async_session() as db:
        _, grants = await get_token_history(db, sender.user_id, world.gym.id)
    swept = [g for g in grants if g.swept_at is not None]
    assert len(swept) == 1
    assert swept[0].consumed_tokens == 5
    assert swept[0].expired_tokens == 0


async def test_refund_releases_grant_consumption(world, make_student, make_session, balance_of):
    student = await make_student(tokens=0)
    expires_at = utc_now() + timedelta(days=10)

    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(
                user_id=student.user_id,
                gym_id=world.gym.id,
                tokens=2,
                plan_id=world.plan.id,
                expires_at=expires_at,
            ),
            world.admin,
        )

    class_session = await make_session(start_at=utc_now() + timedelta(days=3))
    async with async_session() as db:
        result = await create_booking(db, class_session.id, student.user_id, student)
    async with async_session() as db:
        _, grants = await get_token_history(db, student.user_id, world.gym.id)
    assert grants[0].consumed_tokens == 1

    async with async_session() as db:
        _, refunded, _ = await cancel_booking(db, result.booking.id, student, "changed plans")
    assert refunded is True

    async with async_session() as db:
        _, grants = await get_token_history(db, student.user_id, world.gym.id)
    assert grants[0].consumed_tokens == 0

    async with async_session() as db:
        sweep = await sweep_expired_grants(db, now=expires_at + timedelta(minutes=1))
    assert sweep.expired_tokens == 2
    assert await balance_of(student) == 0


async def test_purchase_and_confirm(world, make_student, balance_of):
    student = await make_student(tokens=0)

    async with async_session() as db:
        payment = await purchase_tokens(db, student.user_id, world.plan.id, student)
    assert payment.status == PaymentStatus.PENDING
    assert payment.amount == world.plan.price

    async with async_session() as db:
        payment, wallet, grant = await confirm_purchase(db, payment.id, world.admin, "ext-001")

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.grant_id == grant.id
    assert grant.source == GrantSource.PURCHASE
    assert grant.plan_id == world.plan.id
    assert grant.expires_at > utc_now() + timedelta(days=29)
    assert wallet.balance == world.plan.tokens
    assert await balance_of(student) == world.plan.tokens

    async with async_session() as db:
        with pytest.raises(InvalidStateError):
            await confirm_purchase(db, payment.id, world.admin)
    assert await balance_of(student) == world.plan.tokens


async def test_purchase_for_someone_else_is_forbidden(world, make_student):
    student = await make_student(tokens=0)
    other = await make_student(tokens=0)

    async with async_session() as db:
        with pytest.raises(PermissionDeniedError):
            await purchase_tokens(db, student.user_id, world.plan.id, other)


async def test_token_history_lists_grants_newest_first(world, make_student):
    student = await make_student(tokens=2)
    async with async_session() as db:
        await assign_tokens(
            db,
            AssignTokensRequest(user_id=student.user_id, gym_id=world.gym.id, tokens=4),
            world.admin,
        )

    async with async_session() as db:
        wallet, grants = await get_token_history(db, student.user_id, world.gym.id)

    assert wallet.balance == 6
    assert [g.tokens for g in grants] == [4, 2]

    stranger = Principal(user_id=9999, role=UserRole.STUDENT)
    async with async_session() as db:
        wallet, grants = await get_token_history(db, stranger.user_id, world.gym.id)
    assert wallet is None
    assert grants == []
