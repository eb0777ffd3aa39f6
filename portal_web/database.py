"""
Storage for credential records and profiles. PORTAL_DATABASE_URL picks the backend;
the default is a portal.db file next to the process.
"""
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from portal_web.config import DATABASE_URL
from portal_web.models import Base


def _make_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url)
    # Store calls run in worker threads, not the thread that opened the connection
    connect_args = {"check_same_thread": False}
    if url.startswith("sqlite:///:memory:"):
        # One shared connection, otherwise each session would see its own empty database
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create the credential and profile tables if missing."""
    Base.metadata.create_all(bind=engine)
