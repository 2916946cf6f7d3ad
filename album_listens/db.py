"""Database connection and session management"""
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from album_listens.models.db import Base

logger = logging.getLogger(__name__)

IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

class Database:
    """Database connection and session manager"""

    def __init__(self, url: str):
        """Store the connection URL; nothing connects until init()"""
        self.url = url
        self._engine = None
        self._SessionLocal: Optional[sessionmaker] = None

    def init(self) -> None:
        """
        Initialize database connection and create tables.
        """
        try:
            engine_kwargs = {}
            if self.url in IN_MEMORY_URLS:
                # In-memory SQLite lives inside one connection; share it across sessions
                engine_kwargs = {
                    'connect_args': {'check_same_thread': False},
                    'poolclass': StaticPool
                }
            self._engine = create_engine(self.url, **engine_kwargs)
            Base.metadata.create_all(self._engine)
            self._SessionLocal = sessionmaker(bind=self._engine)
            logger.info("Database initialized successfully")

        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e}")
            raise

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations"""
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_session(self) -> Session:
        """Get a new database session"""
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._SessionLocal()

    def dispose(self) -> None:
        """
        Clean up database connections.
        Should be called during application shutdown.
        """
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None
