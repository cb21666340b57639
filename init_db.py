"""
Database Initialization
Runs on startup to ensure all tables exist and the default administrator is present
"""

from sqlalchemy import inspect
import logging

from db_single import init_database, create_all_tables, get_config, session_scope
import db_single
from models import Base
from user_helpers import ensure_admin

logger = logging.getLogger(__name__)


def get_existing_tables(engine):
    """Get list of existing tables in database"""
    inspector = inspect(engine)
    return set(inspector.get_table_names())


def get_expected_tables():
    """Get list of all expected tables from models"""
    import library_models  # noqa: F401
    return set(Base.metadata.tables.keys())


def seed_admin(cfg=None):
    """Create the default administrator when no user has ADMIN_EMAIL"""
    cfg = cfg or get_config()
    if not cfg.ADMIN_EMAIL or not cfg.ADMIN_PASSWORD:
        logger.warning("ADMIN_EMAIL/ADMIN_PASSWORD not set, skipping administrator seed")
        return False

    with session_scope() as session:
        admin, created = ensure_admin(session, cfg.ADMIN_EMAIL, cfg.ADMIN_PASSWORD, cfg.ADMIN_NAME)
        if created:
            logger.info(f"Default administrator created: {admin.email}")
        else:
            logger.info(f"Administrator already exists: {admin.email}")
    return created


def run_on_startup(config_obj=None):
    """
    Ensure the schema and the default administrator exist.
    Returns True when the database is ready.
    """
    if config_obj is not None or db_single.ENGINE is None:
        init_database(config_obj)

    missing = get_expected_tables() - get_existing_tables(db_single.ENGINE)
    if missing:
        logger.info(f"Creating {len(missing)} missing table(s): {', '.join(sorted(missing))}")

    if not create_all_tables():
        return False

    try:
        seed_admin()
    except Exception:
        logger.exception("Failed to seed the default administrator")
        return False
    return True
