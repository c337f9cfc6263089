"""
Database engine and session factory.

Every model shares ``Base``; every table carries a ``tenant_id`` column and
every store query filters on it.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from feedback_agent.config import settings


def make_engine(url: str):
    """Create an engine, keeping in-memory SQLite on a single shared connection."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


Base = declarative_base()

def init_db(bind) -> None:
    """Create all tables on the given engine."""
    from feedback_agent.models import agent_config, audit, feedback, outputs  # noqa: F401

    Base.metadata.create_all(bind=bind)


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
