from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from payment_service.config import Settings
from payment_service.models import Base

engine = None
AsyncSessionLocal = None


def configure_database(settings: Settings):
    global engine, AsyncSessionLocal
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return AsyncSessionLocal


async def init_db():
    # Local runs and tests only; production schema is owned by the database platform
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    if AsyncSessionLocal is None:
        configure_database(Settings.from_env())
    async with AsyncSessionLocal() as session:
        yield session
