import os

# IMPORTANT: settings are read once at import; pin the test env first
os.environ.setdefault("ENV", "test")
os.environ.setdefault("EMAIL_BACKEND", "log")
os.environ.setdefault("RL_ENABLED", "false")
os.environ.setdefault("METRICS_ENABLED", "true")

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from otp_auth.main import app  # configures logging before any test runs
from otp_auth.models import Base
from otp_auth.services import auth_flow
from otp_auth.services.mailer import DeliveryError

T0 = datetime(2026, 3, 8, 6, 55, tzinfo=timezone.utc)


@dataclass
class SentMail:
    to: str
    subject: str
    body: str


class RecordingNotifier:
    """Keeps every message instead of delivering it."""

    def __init__(self) -> None:
        self.sent: List[SentMail] = []
        self.fail_with: Optional[str] = None

    async def send(self, *, to: str, subject: str, body: str) -> None:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.append(SentMail(to=to, subject=subject, body=body))

    def last_code(self) -> str:
        # "Your OTP code is 123456. It is valid ..."
        return self.sent[-1].body.split("is ", 1)[1][:6]


@dataclass
class Clock:
    now: datetime = field(default=T0)

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


# Fresh file-backed sqlite per test so concurrent sessions get their own connections.
@pytest_asyncio.fixture
async def session_factory(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}", connect_args={"timeout": 30})
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(eng, expire_on_commit=False, class_=AsyncSession)
    await eng.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock(monkeypatch):
    c = Clock()
    monkeypatch.setattr(auth_flow, "_now_utc", lambda: c.now)
    return c


@pytest_asyncio.fixture
async def client(session_factory, notifier):
    from otp_auth.db import get_db
    from otp_auth.services.mailer import get_notifier

    async def _get_db():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ---------- helpers ----------
async def fetch_user(session_factory, email: str):
    from otp_auth.repos import users as users_repo

    async with session_factory() as s:
        return await users_repo.get_by_email(s, email)


async def mk_user(db, notifier, email: str, name: str = "Ada"):
    return await auth_flow.register(db, notifier, name=name, email=email, mobile="555-0100", address="1 Main St")
