"""
Database engine, session factory and FastAPI dependency.

Every ledger, statement and job table hangs off ``Base``. Sessions are
created with autoflush off so handlers control exactly when the ledger
write guard runs.
"""
from typing import Generator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from gigledger.config import get_settings

logger = structlog.get_logger(__name__)

Base = declarative_base()


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Build an engine for the configured database.

    In-memory SQLite shares one connection across threads so the API test
    client and handlers see the same data.
    """
    settings = get_settings()
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = create_db_engine()
SessionLocal = make_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create any missing tables. Production schemas come from alembic."""
    import gigledger.models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("database_initialized", tables=len(Base.metadata.tables), dialect=target.dialect.name)
