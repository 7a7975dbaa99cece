from pathlib import Path

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from converty.config import get_settings
from converty.utils.logger import get_logger

logger = get_logger("database")

# Base class for models
Base = declarative_base()


def build_engine(database_url: str, debug: bool = False, busy_timeout: float = 30.0) -> AsyncEngine:
    """Create an async engine; SQLite gets WAL journaling and a busy timeout for concurrent workers"""
    is_sqlite = database_url.startswith("sqlite")
    kwargs = {"echo": debug, "future": True, "pool_pre_ping": True}
    if is_sqlite:
        kwargs["connect_args"] = {"timeout": busy_timeout}
        db_path = database_url.split(":///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_recycle"] = 300  # Recycle connections every 5 minutes

    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()

engine = build_engine(settings.database_url, settings.debug, settings.sqlite_busy_timeout_seconds)

AsyncSessionLocal = build_session_factory(engine)


# Dependency for FastAPI routes
async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# Initialize database (create tables)
async def init_db(target: AsyncEngine = None) -> None:
    """Create all database tables and run migrations"""
    # Import models to register them with Base
    from converty.models import conversion_job  # noqa: F401

    target = target or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")

    await run_migrations(target)


def _missing_columns(sync_conn):
    """Return (table, column) pairs present in the models but not in the database"""
    inspector = inspect(sync_conn)
    missing = []
    for table in Base.metadata.sorted_tables:
        if not inspector.has_table(table.name):
            continue
        existing = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name not in existing:
                missing.append((table, column))
    return missing


async def run_migrations(target: AsyncEngine = None) -> None:
    """
    Forward-only schema migration: add any model column missing from an existing table.

    New columns must be nullable or carry a server default so rows written by
    older releases stay valid.
    """
    target = target or engine
    async with target.begin() as conn:
        missing = await conn.run_sync(_missing_columns)
        for table, column in missing:
            column_type = column.type.compile(dialect=conn.dialect)
            ddl = f"ALTER TABLE {table.name} ADD COLUMN {column.name} {column_type}"
            if column.server_default is not None:
                default = column.server_default.arg
                ddl += f" DEFAULT {getattr(default, 'text', default)}"
            await conn.exec_driver_sql(ddl)
            logger.info(f"  Migration: added column {table.name}.{column.name}")

    logger.info("Migrations completed")
