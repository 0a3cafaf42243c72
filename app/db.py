from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
from sqlalchemy.engine import Engine
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Store calls run in worker threads via asyncio.to_thread
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})

    engine = create_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )
    event.listen(engine, "connect", set_statement_timeout)
    return engine


def set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time so a hung store call cannot pin a cycle forever."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning(f"Could not set statement timeout: {e}")
    finally:
        cursor.close()


engine = build_engine(settings.DATABASE_URL)


def create_db_and_tables(bind: Engine | None = None):
    # Import models so they register on SQLModel.metadata
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
