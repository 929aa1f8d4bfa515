"""Engine and session factory"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billing.core.config import settings
from billing.models.base import Base

logger = logging.getLogger(__name__)


def engine_options(database_url: str) -> dict:
    """Pool settings for the configured backend"""
    if database_url.startswith("sqlite"):
        # Local runs and tests; row locks degrade to SQLite's database lock
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
    }


engine = create_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create billing tables that do not exist yet"""
    import billing.models  # noqa: F401 - registers every model with Base.metadata
    Base.metadata.create_all(bind=engine)
    logger.info(f"Billing schema ready ({len(Base.metadata.tables)} tables)")
