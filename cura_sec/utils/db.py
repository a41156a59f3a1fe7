"""
SQLAlchemy engine construction shared by the storage adapters
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine, keeping in-memory SQLite usable across threads"""
    # Default to SQLite for development
    database_url = database_url or "sqlite:///cura_sec.db"

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(database_url, pool_pre_ping=True)
