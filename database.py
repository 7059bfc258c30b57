"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the Teleconsult billing engine.
"""

import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError

from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_engine(database_url: str, **overrides) -> Engine:
    """Create an engine tuned for the configured backend"""
    if database_url.startswith("sqlite"):
        kwargs = {
            "echo": Config.SQL_ECHO,
            "connect_args": {"check_same_thread": False, "timeout": 30},
        }
        kwargs.update(overrides)
        sqlite_engine = create_engine(database_url, **kwargs)
        _configure_sqlite(sqlite_engine)
        return sqlite_engine

    kwargs = {
        "pool_size": Config.DATABASE_POOL_SIZE,
        "max_overflow": Config.DATABASE_MAX_OVERFLOW,
        "pool_pre_ping": True,    # Validate connections before use
        "pool_recycle": 3600,     # Recycle connections every hour
        "pool_timeout": 30,
        "echo": Config.SQL_ECHO,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "teleconsult_billing",
        },
    }
    kwargs.update(overrides)
    return create_engine(database_url, **kwargs)


def _configure_sqlite(sqlite_engine: Engine) -> None:
    """
    SQLite has no SELECT ... FOR UPDATE. Opening every transaction with
    BEGIN IMMEDIATE takes the database write lock up front, which gives the
    same serialization the row locks give on PostgreSQL.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = build_engine(Config.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def create_tables(bind: Engine = None):
    """Create all tables that don't exist yet"""
    target = bind or engine
    try:
        Base.metadata.create_all(bind=target)
        logger.info("✅ Database tables created/verified")
    except OperationalError as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise


def test_connection() -> bool:
    """Check the database is reachable"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False

