"""
Database initialization and session management for the local content store.

Engines and session factories are created explicitly and handed to the
components that need them; nothing here keeps module-level state.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event, pool, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from wp_migration.client.exceptions import ConfigError, StateError
from wp_migration.migration.models import Base
from wp_migration.utils.logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """
    Enable foreign key constraints for SQLite connections.

    SQLite has foreign keys disabled by default. This event handler
    enables them for each new connection.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
) -> Engine:
    """
    Create a SQLAlchemy engine with appropriate settings.

    Args:
        database_url: Database connection URL (sqlite:///, postgresql://, mysql+pymysql://)
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigError: If database URL is invalid
    """
    if not database_url:
        raise ConfigError("Database URL cannot be empty")

    is_sqlite = database_url.startswith("sqlite")

    try:
        if is_sqlite:
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                # One shared connection, otherwise every checkout sees an empty database
                engine = create_engine(
                    database_url,
                    echo=echo,
                    poolclass=pool.StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                engine = create_engine(
                    database_url,
                    echo=echo,
                    poolclass=pool.NullPool,
                    connect_args={"check_same_thread": False, "timeout": 30},
                )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
            )
    except (SQLAlchemyError, ValueError, ImportError) as e:
        logger.error("database_engine_failed", error=str(e))
        raise ConfigError(f"Failed to create database engine: {e}") from e

    logger.info(
        "database_engine_created",
        database_type="sqlite" if is_sqlite else engine.dialect.name,
    )
    return engine


def init_database(engine: Engine) -> sessionmaker:
    """
    Create all local store tables and return a session factory.

    Idempotent and safe to call multiple times.

    Raises:
        StateError: If the schema cannot be created
    """
    try:
        Base.metadata.create_all(engine)
    except SQLAlchemyError as e:
        logger.error("database_init_failed", error=str(e))
        raise StateError(f"Failed to initialize database: {e}") from e

    logger.info("database_initialized", tables=len(Base.metadata.tables))
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations.

    Commits on success and rolls back on exception. Integrity errors are
    re-raised unchanged so callers can detect unique-constraint conflicts;
    other database errors become StateError.

    Yields:
        SQLAlchemy Session instance
    """
    session = session_factory()

    try:
        yield session
        session.commit()

    except IntegrityError:
        session.rollback()
        raise

    except SQLAlchemyError as e:
        session.rollback()
        logger.error("database_session_rolled_back", error=str(e))
        raise StateError(f"Database operation failed: {e}") from e

    except Exception:
        session.rollback()
        raise

    finally:
        session.close()


def validate_database_connection(engine: Engine) -> bool:
    """
    Validate that a database connection can be established.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("database_connection_invalid", error=str(e))
        return False

    logger.info("database_connection_valid")
    return True
