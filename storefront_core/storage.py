from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from .config import Settings
from .logging import get_logger

# Table classes must be imported before create_all()
from . import models  # noqa: F401

logger = get_logger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


class Database:
    """SQLModel engine and session factory for the storefront tables."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[Engine] = None

    def startup(self) -> None:
        """Create the engine and any missing tables."""
        url = self.settings.database_url
        kwargs = {"echo": self.settings.database_echo}

        if url.startswith("sqlite"):
            # Sessions are used from the request threadpool and the metrics worker
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_sqlite(url):
                kwargs["poolclass"] = StaticPool

        try:
            self.engine = create_engine(url, **kwargs)
            SQLModel.metadata.create_all(self.engine)
            logger.info("Database initialized", url=url)
        except Exception as e:
            logger.error("Database startup failed", url=url, error=str(e))
            raise

    def shutdown(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            logger.info("Database connections closed")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session, rolling back if the caller raises."""
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        with Session(self.engine) as session:
            try:
                yield session
            except Exception:
                session.rollback()
                raise
