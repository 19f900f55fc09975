"""
Create the identity schema.

Creates missing tables only; existing tables are left as they are. With
--check nothing is created and the exit status says whether the schema is
complete.

Usage:
    DATABASE_URL=postgresql://... python scripts/init_db.py
    DATABASE_URL=postgresql://... python scripts/init_db.py --check
"""

import argparse
import logging
import sys

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from umbrella.database.session import create_db_engine, get_database_url
from umbrella.db_base import Base
from umbrella.models import User  # noqa: F401 - registers the users table
from umbrella.platform.errors import ConfigurationError

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def missing_tables(engine) -> list:
    existing = set(inspect(engine).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in existing)


def init_database(database_url: str, check_only: bool = False) -> bool:
    """
    Create (or with check_only, verify) every model table.

    Returns:
        True when all tables exist afterwards
    """
    engine = create_db_engine(database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        missing = missing_tables(engine)
        if check_only:
            for name in missing:
                logger.warning("Missing table: %s", name)
            return not missing

        if missing:
            logger.info("Creating tables: %s", ", ".join(missing))
            Base.metadata.create_all(bind=engine)
        else:
            logger.info("Schema already up to date")
        return not missing_tables(engine)
    finally:
        engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the identity service schema")
    parser.add_argument("--check", action="store_true", help="verify only, create nothing")
    args = parser.parse_args()

    try:
        ok = init_database(get_database_url(), check_only=args.check)
    except (ConfigurationError, SQLAlchemyError) as e:
        logger.error("Database initialization failed: %s", e)
        return 1
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
