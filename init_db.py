#!/usr/bin/env python3
"""
Database initialization script for Docker.
Creates tables if they don't exist.
"""

import sys
import logging

from database import engine, Base
import models  # noqa: F401  registers the tables on Base.metadata

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


def init_database():
    """Initialize the database by creating all tables."""
    try:
        logging.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logging.info(f"✅ Database tables created: {', '.join(sorted(Base.metadata.tables))}")
    except Exception as e:
        logging.error(f"❌ Error creating database tables: {e}")
        sys.exit(1)

if __name__ == "__main__":
    init_database()
