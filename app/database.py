from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from config import DATABASE_URL, DB_ECHO, DB_POOL_RECYCLE_S

# deterministic constraint names on every backend
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def make_session_factory(bind):
    """Session factory bound to any async engine (the configured one, tests, scripts)."""
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


tracker_engine = create_async_engine(
    DATABASE_URL,
    echo=DB_ECHO,
    pool_pre_ping=True,
    pool_recycle=DB_POOL_RECYCLE_S,
)
AsyncSessionLocal = make_session_factory(tracker_engine)
Base = declarative_base(metadata=MetaData(naming_convention=NAMING_CONVENTION))


async def init_models(bind=tracker_engine):
    # import registers the tables on Base.metadata
    import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
