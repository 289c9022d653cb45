"""
Database engine and session factory for the job store.
"""

from typing import Any, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tenant_scheduler.core.config import settings
from tenant_scheduler.db.base_class import Base


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))
SessionLocal = sessionmaker(
    autoflush=False, expire_on_commit=False, bind=engine
)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create the scheduling tables if they do not exist."""
    # Import models so they are registered on Base.metadata
    from tenant_scheduler.models import scheduling  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
