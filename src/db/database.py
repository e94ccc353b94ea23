from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    # SQLite: транзакция сразу берет блокировку записи, как SELECT ... FOR UPDATE
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# Create async engine
def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    _ensure_sqlite_dir(database_url)
    engine = create_async_engine(
        database_url,
        echo=echo,
        future=True,
        poolclass=NullPool,
    )
    if engine.dialect.name == "sqlite":
        _use_immediate_transactions(engine)
    return engine


# Create session factory
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# Initialize database
async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        # Импорт регистрирует модели в метаданных
        import src.models  # noqa: F401
        from src.db.base import Base
        await conn.run_sync(Base.metadata.create_all)
