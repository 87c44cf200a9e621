from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_incrementing

from receptionist.models import Base

logger = logging.getLogger(__name__)

_CONNECTION_TIMEOUT_MARKERS = (
    "timeout",
    "timed out",
    "can't reach database",
    "could not connect to server",
    "connection pool",
)


def is_connection_timeout(exc: BaseException) -> bool:
    if isinstance(exc, PoolTimeoutError):
        return True
    if not isinstance(exc, OperationalError):
        return False
    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in _CONNECTION_TIMEOUT_MARKERS)


def _engine_connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


class Database:
    """Engine, session factory and connect-retry policy for one process.

    Built once by ``create_app`` and reached by request handlers through
    ``app.state.database``.
    """

    def __init__(
        self,
        url: str,
        *,
        connect_retry_attempts: int = 3,
        connect_retry_backoff_seconds: float = 2.0,
    ) -> None:
        self.url = url
        self.engine: Engine = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            connect_args=_engine_connect_args(url),
        )
        self._sessionmaker = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
        self._connect_retry_attempts = connect_retry_attempts
        self._connect_retry_backoff_seconds = connect_retry_backoff_seconds

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(is_connection_timeout),
            stop=stop_after_attempt(self._connect_retry_attempts),
            wait=wait_incrementing(
                start=self._connect_retry_backoff_seconds,
                increment=self._connect_retry_backoff_seconds,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _connect(self) -> Session:
        session = self._sessionmaker()
        try:
            session.connection()
        except Exception:
            session.close()
            raise
        return session

    def open_session(self) -> Session:
        return self._retrying()(self._connect)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.open_session()
        try:
            yield session
        finally:
            session.close()

    def ping(self) -> None:
        with self.session_scope() as session:
            session.execute(text("SELECT 1"))


def get_session(request: Request):
    database: Database = request.app.state.database
    session = database.open_session()
    try:
        yield session
    finally:
        session.close()
