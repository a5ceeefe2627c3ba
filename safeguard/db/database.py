"""
=============================================================================
DATABASE MODULE
=============================================================================
Single source of truth for database connections. The API, the scheduler jobs
and the SQL-backed crisis store all share this engine and session factory.
=============================================================================
"""

from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from safeguard.core.config import settings

DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine; in-memory SQLite gets one shared connection across threads."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if parsed.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def _ensure_database_exists(url) -> None:
    """Create the MySQL database if it doesn't exist (for local development)."""
    database_name = url.database
    if not database_name or url.get_backend_name() != "mysql":
        return

    server_url = (
        f"{url.drivername}://{url.username}:{(url.password or '')}"
        f"@{url.host}:{url.port}"
    )
    server_engine = create_engine(server_url, isolation_level="AUTOCOMMIT", pool_pre_ping=True)
    try:
        with server_engine.connect() as conn:
            conn.execute(
                text(
                    f"CREATE DATABASE IF NOT EXISTS `{database_name}` "
                    "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
                )
            )
    finally:
        server_engine.dispose()


# =============================================================================
# ENGINE + SESSION FACTORY (single instance for the application)
# =============================================================================
engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def initialize_database(bind: Engine = engine) -> None:
    """Create the database (MySQL dev setups), verify the connection, create tables."""
    from safeguard.db.session import Base
    # registers every table on Base.metadata
    from safeguard.models import (  # noqa: F401
        crisis_detection,
        crisis_event,
        emergency_alert,
        emergency_contact,
        message_delivery,
        panic_session,
    )

    _ensure_database_exists(bind.url)
    with bind.connect() as conn:
        conn.execute(text("SELECT 1"))
    Base.metadata.create_all(bind=bind)
