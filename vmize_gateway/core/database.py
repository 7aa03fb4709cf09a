"""
Customer directory storage.

SQLModel tables on SQLite by default (``<data_directory>/vmize.db``); any
other SQLAlchemy URL in ``VMIZE_DATABASE_URL`` (PostgreSQL in practice) gets
a small connection pool instead of the SQLite pragmas.

SQLite runs in WAL mode so the request path and the billing job can read
while a counter update commits. Writers that still hit ``database is locked``
go through ``sqlite_retry``.
"""

import logging
import random
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)
LOCK_RETRY_ATTEMPTS = 3
LOCK_BACKOFF_S = (0.1, 0.5)


def _is_lock_contention(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database table is locked" in message


def sqlite_retry(fn: Callable[[], T], attempts: int = LOCK_RETRY_ATTEMPTS) -> T:
    """Call *fn*, retrying while SQLite reports lock contention.

    Each attempt must be a complete unit of work (open its own session and
    commit), since a failed attempt has already rolled back. Any other
    OperationalError, and the final lock error, propagate.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OperationalError as exc:
            if attempt == attempts or not _is_lock_contention(exc):
                raise
            delay = random.uniform(*LOCK_BACKOFF_S) * attempt
            logger.warning(
                "sqlite_locked_retry",
                extra={"attempt": attempt, "max_attempts": attempts, "sleep_s": round(delay, 3)},
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


class Database:
    """Engine and session factory for one gateway process (or worker task)."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: Optional[Engine] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._create_engine()
            # never log credentials embedded in the URL
            logger.info("database_engine_created", extra={"target": self.url.rsplit("@", 1)[-1]})
        return self._engine

    def _create_engine(self) -> Engine:
        if not self.is_sqlite:
            return create_engine(self.url, echo=self.echo, pool_size=5, max_overflow=10, pool_pre_ping=True)

        path = self.url.split(":///", 1)[-1]
        if path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(self.url, echo=self.echo, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _apply_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

        return engine

    def init(self) -> None:
        """Create missing tables. Existing tables are left as they are."""
        from vmize_gateway.models import customer  # noqa: F401  (registers the tables)

        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError:
            logger.exception("database_ping_failed")
            return False

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
