from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from receptionist.db import Database, is_connection_timeout


class _FlakySession:
    def __init__(self, failures: list[Exception]) -> None:
        self._failures = failures
        self.closed = False

    def connection(self):
        if self._failures:
            raise self._failures.pop(0)
        return object()

    def close(self) -> None:
        self.closed = True


def _operational_error(message: str) -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception(message))


def test_connection_timeout_classification():
    assert is_connection_timeout(_operational_error("connection timed out"))
    assert is_connection_timeout(_operational_error("Can't reach database server at db:5432"))
    assert not is_connection_timeout(_operational_error("no such table: sessions"))
    assert not is_connection_timeout(ValueError("timeout"))


def test_open_session_retries_connection_timeouts(tmp_path):
    database = Database(
        f"sqlite:///{tmp_path / 'retry.db'}",
        connect_retry_attempts=3,
        connect_retry_backoff_seconds=0,
    )
    failures = [_operational_error("timeout expired"), _operational_error("timeout expired")]
    sessions: list[_FlakySession] = []

    def factory():
        session = _FlakySession(failures)
        sessions.append(session)
        return session

    database._sessionmaker = factory

    session = database.open_session()

    assert session is sessions[-1]
    assert len(sessions) == 3
    assert [item.closed for item in sessions] == [True, True, False]


def test_open_session_gives_up_after_attempts(tmp_path):
    database = Database(
        f"sqlite:///{tmp_path / 'retry.db'}",
        connect_retry_attempts=2,
        connect_retry_backoff_seconds=0,
    )
    failures = [_operational_error("timeout expired") for _ in range(5)]
    database._sessionmaker = lambda: _FlakySession(failures)

    with pytest.raises(OperationalError):
        database.open_session()

    assert len(failures) == 3


def test_other_errors_are_not_retried(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'retry.db'}", connect_retry_backoff_seconds=0)
    failures = [_operational_error("disk I/O error"), _operational_error("timeout expired")]
    database._sessionmaker = lambda: _FlakySession(failures)

    with pytest.raises(OperationalError, match="disk I/O error"):
        database.open_session()

    assert len(failures) == 1


def test_session_scope_round_trip(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'ok.db'}")
    database.init_db()

    database.ping()
    database.dispose()


def test_health_endpoints(api_client):
    assert api_client.get("/health").json() == {"ok": True}
    assert api_client.get("/health/db").json() == {"db": "ok"}
