"""Engine, session factory and declarative base for the ledger database."""

from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

settings = get_settings()


def engine_options(url: str) -> Dict[str, Any]:
    """Backend-specific ``create_engine`` arguments."""

    if make_url(url).get_backend_name() == "sqlite":
        # request threads, the scheduler and the security gate share one file
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, future=True, **engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; routes commit or roll back explicitly."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables on ``bind`` (the configured engine by default)."""

    from .. import models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=bind or engine)
