"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the Escrow Room Bot.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with settings appropriate for the backend"""
    kwargs: Dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        # Handlers, the cleanup scheduler and the admin API share connections across threads
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs.update(
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
        )
    return create_engine(database_url, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Returned ORM objects stay readable after commit
        bind=bind,
    )


# Database engine with connection pooling
engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory
SessionLocal = build_session_factory(engine)


@contextmanager
def managed_session(session_factory=None):
    """Sync context manager for database sessions"""
    session: Session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    except Exception:
        # Business-rule rejections: roll back, let the caller report them
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(bind: Engine = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection(bind: Engine = None) -> bool:
    """Test database connection"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
