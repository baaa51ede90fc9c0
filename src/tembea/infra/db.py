"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- txn(): Context manager for short, safe transactions
- fetchall(): Query helper
- json_param(): Wrap a dict for a JSONB parameter
- is_uuid(): Check an identifier before it reaches a uuid column
"""

import os
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import Json

DEFAULT_CONNECT_TIMEOUT = 5


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    DB_CONNECT_TIMEOUT (seconds) bounds how long a request waits for the
    store before the caller sees a psycopg2.OperationalError.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    timeout = int(os.environ.get("DB_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT))
    return psycopg2.connect(dsn, connect_timeout=timeout)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Example:
        with txn() as cur:
            cur.execute("UPDATE bookings SET status = %s WHERE id = %s", ("cancelled", bid))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def fetchall(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
) -> list[tuple[Any, ...]]:
    """Execute query and fetch all rows."""
    cur.execute(query, params)
    return cur.fetchall()


def json_param(value: Any) -> Json:
    """Adapt a Python value for a JSONB column."""
    return Json(value)


def is_uuid(value: str | None) -> bool:
    """True if value parses as a UUID (uuid columns reject anything else)."""
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
