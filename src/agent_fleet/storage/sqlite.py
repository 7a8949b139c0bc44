"""Shared SQLAlchemy session handling for SQLite-backed stores."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from agent_fleet.core.models import init_db
from agent_fleet.monitoring.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SQLiteStore:
    """Base class giving subclasses short-lived sessions with lock retries.

    Subclasses wrap each unit of work in a closure taking a ``Session`` and
    hand it to ``_run_read`` or ``_run_write``.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        engine: Optional[Engine] = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.1,
    ):
        self.db_path = str(db_path)
        self.engine = engine or init_db(db_path)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

    def _run_read(self, operation: Callable[[Session], T]) -> T:
        with self.SessionLocal() as session:
            return operation(session)

    def _run_write(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` in a transaction, retrying when SQLite is locked."""
        attempt = 0
        while True:
            session = self.SessionLocal()
            try:
                result = operation(session)
                session.commit()
                return result
            except OperationalError as exc:
                session.rollback()
                attempt += 1
                if "locked" not in str(exc).lower() or attempt >= self.max_retries:
                    raise
                logger.debug("sqlite.locked_retry", db_path=self.db_path, attempt=attempt)
                time.sleep(self.retry_delay_seconds * attempt)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
