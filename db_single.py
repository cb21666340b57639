"""
Database management for the library store
"""

from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base
import logging

logger = logging.getLogger(__name__)

# Global engine, session factory and active configuration
ENGINE = None
SessionLocal = None
ACTIVE_CONFIG = None


def _configure_sqlite(engine):
    """Let SQLAlchemy own BEGIN so SAVEPOINTs nest correctly; enforce foreign keys"""
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def init_database(config_obj=None):
    """Initialize database engine and session factory"""
    global ENGINE, SessionLocal, ACTIVE_CONFIG

    config_obj = config_obj or Config()
    database_uri = config_obj.get_database_uri()

    if ENGINE is not None:
        ENGINE.dispose()

    ENGINE = create_engine(
        database_uri,
        **config_obj.get_engine_options(database_uri)
    )

    if ENGINE.dialect.name == 'sqlite':
        _configure_sqlite(ENGINE)

    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
    ACTIVE_CONFIG = config_obj

    logger.info(f"Database initialized: {ENGINE.url.render_as_string(hide_password=True)}")
    return ENGINE, SessionLocal


def get_config():
    """Configuration the store was initialized with"""
    if ACTIVE_CONFIG is None:
        init_database()
    return ACTIVE_CONFIG


def get_session():
    """Get a database session"""
    if SessionLocal is None:
        init_database()
    return SessionLocal()


@contextmanager
def session_scope():
    """Session wrapped in one transaction: commit on success, rollback on error"""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """Create every table registered on Base.metadata"""
    # Register library tables with the metadata
    import library_models  # noqa: F401

    if ENGINE is None:
        init_database()
    try:
        Base.metadata.create_all(ENGINE)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables.keys()))}")
        return True
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        return False


def drop_all_tables():
    """Drop every table (used by tests and the reset command)"""
    import library_models  # noqa: F401

    if ENGINE is None:
        init_database()
    Base.metadata.drop_all(ENGINE)
