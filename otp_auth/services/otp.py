from __future__ import annotations

import enum
import hmac
import random
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

OTP_TTL = timedelta(minutes=10)
OTP_MIN = 100000
OTP_MAX = 999999

_sysrand = secrets.SystemRandom()


@dataclass(frozen=True)
class Challenge:
    code: str
    expiry: datetime


class Verdict(str, enum.Enum):
    ACCEPT = "accept"
    NO_CHALLENGE = "no_challenge"
    MISMATCH = "mismatch"
    EXPIRED = "expired"

    @property
    def accepted(self) -> bool:
        return self is Verdict.ACCEPT


def as_utc(dt: datetime) -> datetime:
    # naive datetimes are taken to be UTC already
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def issue(now: datetime, *, ttl: timedelta = OTP_TTL, rng: Optional[random.Random] = None) -> Challenge:
    """
    Draw a fresh 6-digit code and its absolute expiry.

    The range starts at 100000, so codes never have a leading zero.
    """
    r = rng or _sysrand
    code = f"{r.randint(OTP_MIN, OTP_MAX)}"
    return Challenge(code=code, expiry=as_utc(now) + ttl)


def verify(
    submitted: str,
    stored_code: Optional[str],
    stored_expiry: Optional[datetime],
    now: datetime,
) -> Verdict:
    """
    Decide whether `submitted` answers the outstanding challenge.

    Expiry is exclusive: a matching code at exactly `stored_expiry` is rejected.
    """
    if stored_code is None or stored_expiry is None:
        return Verdict.NO_CHALLENGE
    if not isinstance(submitted, str) or not hmac.compare_digest(
        submitted.encode("utf-8"), stored_code.encode("utf-8")
    ):
        return Verdict.MISMATCH
    if as_utc(now) >= as_utc(stored_expiry):
        return Verdict.EXPIRED
    return Verdict.ACCEPT


def render_otp_email(code: str, ttl: timedelta = OTP_TTL) -> tuple[str, str]:
    minutes = int(ttl.total_seconds() // 60)
    return "Your OTP Code", f"Your OTP code is {code}. It is valid for {minutes} minutes."
