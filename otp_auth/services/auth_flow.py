from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models import User
from ..observability.metrics import OTP_ISSUED, OTP_REJECTED, OTP_VERIFIED
from ..repos import users as users_repo
from . import otp as otp_core
from .mailer import DeliveryError, Notifier

logger = logging.getLogger(__name__)

S = get_settings()


class AuthFlowError(Exception): ...
class NotFound(AuthFlowError): ...
class AlreadyExists(AuthFlowError): ...
class InvalidOrExpired(AuthFlowError): ...
class StoreError(AuthFlowError): ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _ttl() -> timedelta:
    return timedelta(minutes=S.OTP_TTL_MINUTES)


async def _deliver(notifier: Notifier, email: str, code: str) -> None:
    subject, body = otp_core.render_otp_email(code, _ttl())
    await notifier.send(to=email, subject=subject, body=body)


async def _lookup(db: AsyncSession, email: str) -> User:
    try:
        user = await users_repo.get_by_email(db, email)
    except SQLAlchemyError as exc:
        logger.error("user lookup failed for %s: %s", email, exc)
        raise StoreError(str(exc)) from exc
    if user is None:
        raise NotFound(email)
    return user


async def register(
    db: AsyncSession,
    notifier: Notifier,
    *,
    name: str,
    email: str,
    mobile: Optional[str],
    address: Optional[str],
) -> User:
    """
    Create a user with a challenge already attached and mail them the code.

    Any existing row blocks registration, verified or not. The insert is only
    committed once the email has been handed off.
    """
    try:
        existing = await users_repo.get_by_email(db, email)
    except SQLAlchemyError as exc:
        raise StoreError(str(exc)) from exc
    if existing is not None:
        raise AlreadyExists(email)

    challenge = otp_core.issue(_now_utc(), ttl=_ttl())
    try:
        user = await users_repo.insert_user(
            db,
            name=name,
            email=email,
            mobile=mobile,
            address=address,
            otp=challenge.code,
            otp_expiry=challenge.expiry,
        )
    except users_repo.EmailTaken:
        await db.rollback()
        raise AlreadyExists(email)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("error creating user %s: %s", email, exc)
        raise StoreError(str(exc)) from exc

    try:
        await _deliver(notifier, email, challenge.code)
    except DeliveryError:
        await db.rollback()
        logger.error("otp email to %s failed; signup rolled back", email)
        raise

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("error committing user %s: %s", email, exc)
        raise StoreError(str(exc)) from exc

    OTP_ISSUED.labels(purpose="signup").inc()
    logger.info("user %s registered; otp expires %s", email, challenge.expiry.isoformat())
    return user


async def request_login(db: AsyncSession, notifier: Notifier, *, email: str) -> otp_core.Challenge:
    """Issue a fresh login challenge, replacing whatever was outstanding."""
    await _lookup(db, email)

    challenge = otp_core.issue(_now_utc(), ttl=_ttl())
    try:
        matched = await users_repo.set_challenge(db, email=email, otp=challenge.code, otp_expiry=challenge.expiry)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("error storing login otp for %s: %s", email, exc)
        raise StoreError(str(exc)) from exc
    if not matched:
        await db.rollback()
        raise NotFound(email)

    try:
        await _deliver(notifier, email, challenge.code)
    except DeliveryError:
        # previous challenge (if any) survives the rollback
        await db.rollback()
        logger.error("login otp email to %s failed; challenge not replaced", email)
        raise

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("error committing login otp for %s: %s", email, exc)
        raise StoreError(str(exc)) from exc

    OTP_ISSUED.labels(purpose="login").inc()
    logger.info("login otp issued for %s; expires %s", email, challenge.expiry.isoformat())
    return challenge


async def _confirm(db: AsyncSession, *, email: str, code: str, purpose: str) -> None:
    user = await _lookup(db, email)
    now = _now_utc()

    logger.debug(
        "verifying %s otp for %s: stored expiry=%s now=%s",
        purpose, email, user.otp_expiry.isoformat() if user.otp_expiry else None, now.isoformat(),
    )
    verdict = otp_core.verify(code, user.otp, user.otp_expiry, now)
    if not verdict.accepted:
        OTP_REJECTED.labels(purpose=purpose, reason=verdict.value).inc()
        logger.info("%s otp rejected for %s: %s", purpose, email, verdict.value)
        raise InvalidOrExpired(verdict.value)

    try:
        consumed = await users_repo.consume_challenge(db, email=email, otp=code, now=now)
        if not consumed:
            await db.rollback()
            OTP_REJECTED.labels(purpose=purpose, reason="raced").inc()
            logger.info("%s otp for %s changed before it could be consumed", purpose, email)
            raise InvalidOrExpired("raced")
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("error clearing otp for %s: %s", email, exc)
        raise StoreError(str(exc)) from exc

    OTP_VERIFIED.labels(purpose=purpose).inc()
    logger.info("%s otp verified for %s", purpose, email)


async def confirm_signup(db: AsyncSession, *, email: str, code: str) -> None:
    await _confirm(db, email=email, code=code, purpose="signup")


async def confirm_login(db: AsyncSession, *, email: str, code: str) -> None:
    await _confirm(db, email=email, code=code, purpose="login")
