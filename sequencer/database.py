"""Async SQLAlchemy engine & session — supports SQLite and PostgreSQL."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from sequencer.config import get_settings

settings = get_settings()

# SQLite needs connect_args for async; PostgreSQL uses pool_size
if settings.is_sqlite:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
    )

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@event.listens_for(Base, "init", propagate=True)
def _apply_defaults(target, args, kwargs):
    """Apply Column defaults at Python level right after __init__.

    Ids and timestamps are then available before the first flush, which the
    engine relies on when it logs or links rows created in the same unit of work.
    """
    from sqlalchemy import inspect as sa_inspect

    mapper = sa_inspect(type(target), raiseerr=False)
    if mapper is None:
        return
    for col_attr in mapper.column_attrs:
        key = col_attr.key
        if key in kwargs:
            continue
        if getattr(target, key, None) is not None:
            continue
        col = col_attr.columns[0]
        if col.default is None:
            continue
        if col.default.is_callable:
            # ColumnDefault wraps plain callables to accept an execution context
            setattr(target, key, col.default.arg(None))
        elif col.default.is_scalar:
            setattr(target, key, col.default.arg)


async def create_all() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with async_session() as session:
        yield session
