from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...db import get_db
from ...domain.schemas.auth import EmailIn, MessageOut, SignupIn, VerifyOtpIn
from ...services import auth_flow
from ...services.auth_flow import AlreadyExists, InvalidOrExpired, NotFound, StoreError
from ...services.mailer import DeliveryError, Notifier, get_notifier
from ...services.rate_limit import limit_otp_request, limit_otp_verify

router = APIRouter(tags=["auth"])

USER_NOT_FOUND = "User not found."
INVALID_OTP = "Invalid or expired OTP."


def _upstream_error(message: str, exc: Exception, code: int) -> HTTPException:
    return HTTPException(status_code=code, detail={"message": message, "error": str(exc)})


@router.post("/signup", response_model=MessageOut, dependencies=[Depends(limit_otp_request)])
async def signup(
    payload: SignupIn,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        await auth_flow.register(
            db,
            notifier,
            name=payload.name,
            email=str(payload.email),
            mobile=payload.mobile,
            address=payload.address,
        )
    except AlreadyExists:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists with this email.")
    except StoreError as exc:
        raise _upstream_error("Error creating user", exc, status.HTTP_500_INTERNAL_SERVER_ERROR)
    except DeliveryError as exc:
        raise _upstream_error("Error sending OTP email", exc, status.HTTP_502_BAD_GATEWAY)
    return MessageOut(message="User created. OTP sent to email for verification.")


@router.post("/verify-otp", response_model=MessageOut, dependencies=[Depends(limit_otp_verify)])
async def verify_otp(payload: VerifyOtpIn, db: AsyncSession = Depends(get_db)):
    try:
        await auth_flow.confirm_signup(db, email=str(payload.email), code=payload.otp)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=USER_NOT_FOUND)
    except InvalidOrExpired:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_OTP)
    except StoreError as exc:
        raise _upstream_error("Error verifying OTP", exc, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return MessageOut(message="OTP verified successfully. Signup complete.")


@router.post("/login", response_model=MessageOut, dependencies=[Depends(limit_otp_request)])
async def login(
    payload: EmailIn,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        await auth_flow.request_login(db, notifier, email=str(payload.email))
    except NotFound:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=USER_NOT_FOUND)
    except StoreError as exc:
        raise _upstream_error("Error logging in", exc, status.HTTP_500_INTERNAL_SERVER_ERROR)
    except DeliveryError as exc:
        raise _upstream_error("Error sending OTP email", exc, status.HTTP_502_BAD_GATEWAY)
    return MessageOut(message="OTP sent to email for login verification.")


@router.post("/login-verify", response_model=MessageOut, dependencies=[Depends(limit_otp_verify)])
async def login_verify(payload: VerifyOtpIn, db: AsyncSession = Depends(get_db)):
    try:
        await auth_flow.confirm_login(db, email=str(payload.email), code=payload.otp)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=USER_NOT_FOUND)
    except InvalidOrExpired:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_OTP)
    except StoreError as exc:
        raise _upstream_error("Error verifying OTP", exc, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return MessageOut(message="Login successful!")
