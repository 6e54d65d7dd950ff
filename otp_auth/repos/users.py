from __future__ import annotations
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from ..models import User


class EmailTaken(Exception):
    """Insert collided with an existing row for the same email."""


async def get_by_email(db: AsyncSession, email: str) -> Optional[User]:
    # always re-read: the challenge columns are changed by bulk UPDATEs
    res = await db.execute(select(User).where(User.email == email).execution_options(populate_existing=True))
    return res.scalar_one_or_none()


async def insert_user(
    db: AsyncSession,
    *,
    name: str,
    email: str,
    mobile: Optional[str],
    address: Optional[str],
    otp: str,
    otp_expiry: datetime,
) -> User:
    user = User(name=name, email=email, mobile=mobile, address=address, otp=otp, otp_expiry=otp_expiry)
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise EmailTaken(email) from exc
    return user


async def set_challenge(db: AsyncSession, *, email: str, otp: str, otp_expiry: datetime) -> bool:
    # one statement: the pair is overwritten together, never half-set
    res = await db.execute(
        update(User)
        .where(User.email == email)
        .values(otp=otp, otp_expiry=otp_expiry)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def consume_challenge(db: AsyncSession, *, email: str, otp: str, now: datetime) -> bool:
    """
    Compare-and-set clear of the outstanding challenge.

    Only succeeds if the row still holds this exact, unexpired code, so a
    concurrent re-issue or a second consumer of the same code gets False.
    """
    res = await db.execute(
        update(User)
        .where(User.email == email, User.otp == otp, User.otp_expiry > now)
        .values(otp=None, otp_expiry=None)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1
