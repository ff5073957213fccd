"""Database connection registry shared by the billing persistence layer."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Tuple

from .app.billing.exceptions import ConfigurationError

_get_conn: Optional[Callable[[], Any]] = None


def configure(*, get_conn: Callable[[], Any]) -> None:
    """Register the connection factory used when a repository owns its transactions."""

    global _get_conn

    _get_conn = get_conn


def reset() -> None:
    global _get_conn

    _get_conn = None


def get_conn() -> Any:
    if _get_conn is None:
        raise ConfigurationError("Billing database connection factory has not been configured")
    return _get_conn()


@contextmanager
def managed_connection(conn: Optional[Any] = None) -> Iterator[Tuple[Any, bool]]:
    """Yield ``(connection, managed)``.

    A caller supplied connection is used as-is and its transaction is left to
    the caller. Otherwise a fresh connection is opened, committed on success,
    rolled back on error and always closed.
    """

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()
