#!/usr/bin/env python3
"""
Database initialization script
Creates all tables and optionally seeds the default trading configuration
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load .env file
from dotenv import load_dotenv
load_dotenv()

from backend.models import Base, engine, SessionLocal, TradingConfig
import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(drop_existing: bool = False, assume_yes: bool = False):
    """
    Initialize database tables

    Args:
        drop_existing: If True, drops all tables first (DANGER: data loss!)
        assume_yes: Skip the interactive confirmation for --drop
    """
    logger.info("🔧 Initializing H2H Edge database...")

    if drop_existing:
        logger.warning("⚠️  Dropping all existing tables!")
        if not assume_yes:
            response = input("Are you sure? This will delete all data. Type 'yes' to confirm: ")
            if response.lower() != 'yes':
                logger.info("Aborted.")
                return False

        Base.metadata.drop_all(bind=engine)
        logger.info("✅ Existing tables dropped")

    Base.metadata.create_all(bind=engine)
    logger.info("✅ Database tables created successfully")

    inspector = inspect(engine)
    logger.info("📋 Tables: %s", ", ".join(sorted(inspector.get_table_names())))
    return True


def seed_trading_config(db=None) -> bool:
    """Insert the ``default`` trading_config row if it does not exist.

    Returns True when a row was created.
    """
    own_session = db is None
    db = db or SessionLocal()
    try:
        if db.query(TradingConfig).filter(TradingConfig.name == "default").first():
            logger.info("Trading config already present")
            return False

        db.add(TradingConfig(
            name="default",
            enabled=os.getenv("AUTO_BET_ENABLED", "false").lower() == "true",
            strong_edge_threshold=float(os.getenv("EDGE_STRONG_THRESHOLD", "5")),
            moderate_edge_threshold=float(os.getenv("EDGE_MODERATE_THRESHOLD", "15")),
            weak_edge_threshold=float(os.getenv("EDGE_WEAK_THRESHOLD", "25")),
        ))
        db.commit()
        logger.info("✅ Default trading config seeded")
        return True

    except SQLAlchemyError as e:
        logger.error("❌ Error seeding trading config: %s", e)
        db.rollback()
        raise

    finally:
        if own_session:
            db.close()


def check_connection():
    """Test database connection"""
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        logger.info("✅ Database connection successful")
        return True
    except SQLAlchemyError as e:
        logger.error("❌ Database connection failed: %s", e)
        return False


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize H2H Edge database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DANGER!)")
    parser.add_argument("--yes", action="store_true", help="Do not ask before dropping")
    parser.add_argument("--seed-config", action="store_true", help="Seed the default trading config")
    parser.add_argument("--check", action="store_true", help="Only check connection")

    args = parser.parse_args()

    if args.check:
        sys.exit(0 if check_connection() else 1)

    if not check_connection():
        logger.error("Cannot initialize database - connection failed")
        sys.exit(1)

    if init_database(drop_existing=args.drop, assume_yes=args.yes) and args.seed_config:
        seed_trading_config()

    logger.info("🎉 Database initialization complete!")
