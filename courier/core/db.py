from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from .config import settings
from .base import Base

def build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # busy timeout so concurrent claimers queue on the write lock instead of erroring
        return create_async_engine(url, connect_args={"timeout": 30})
    return create_async_engine(url, pool_pre_ping=True)

def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_sessionmaker(engine)

async def init_models(bind: AsyncEngine | None = None):
    ## In dev-only "create_all" mode create tables directly; otherwise migrations own the schema.
    if settings.DB_MANAGE == "create_all":
        import courier.modules.queue.models  # noqa: F401  register tables
        async with (bind or engine).begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
