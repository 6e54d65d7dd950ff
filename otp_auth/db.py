import logging, time
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy import text, event
from contextlib import asynccontextmanager
from .config import get_settings
from .models import Base

log = logging.getLogger("otp_auth.sql")
S = get_settings()


def make_engine(url: str) -> AsyncEngine:
    eng = create_async_engine(url, future=True, pool_pre_ping=True)
    _attach_slow_query_log(eng)
    return eng


def _attach_slow_query_log(eng: AsyncEngine) -> None:
    @event.listens_for(eng.sync_engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.perf_counter()

    @event.listens_for(eng.sync_engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        elapsed_ms = int((time.perf_counter() - getattr(context, "_query_start_time", time.perf_counter())) * 1000)
        if elapsed_ms >= S.SLOW_QUERY_MS:
            log.warning("slow_query", extra={"elapsed_ms": elapsed_ms, "sql": statement[:200]})


engine = make_engine(S.DATABASE_URL)

SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_models() -> None:
    # dev/test only; prod schema is owned by alembic
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def lifespan_db():
    try:
        if S.CREATE_TABLES_ON_STARTUP:
            await init_models()
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        yield
    finally:
        await engine.dispose()


async def db_health() -> bool:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


async def get_db() -> AsyncSession:
    async with SessionLocal() as session:
        yield session
