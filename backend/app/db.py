from loguru import logger
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from backend.app.config import DATA_DIR, DATABASE_URL


class Base(DeclarativeBase):
    pass


engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _set_sqlite_pragmas(dbapi_conn, connection_record):  # noqa: ARG001
    """Apply SQLite PRAGMAs on every new connection from the pool.

    SQLite PRAGMAs like busy_timeout, synchronous and temp_store are
    per-connection: they must be set every time a new connection is opened,
    not just once at startup.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.execute("PRAGMA temp_store = MEMORY")
    cursor.close()


# Register the pragma handler on the underlying sync engine so it fires
# for every new raw DBAPI connection (including pool recycled ones).
event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)


async def init_db() -> None:
    """Create the data directory and tables."""
    import backend.app.models  # noqa: F401  ensure models are registered

    DATA_DIR.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        # WAL mode is database-level (persists across connections), so only
        # needs to be set once.
        await conn.execute(text("PRAGMA journal_mode = WAL"))
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database ready: {}", DATABASE_URL)
