import sqlite3
from contextlib import contextmanager
from typing import Iterator

from ...domain.errors import StoreUnavailableError


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """
    Open a connection whose transaction commits on success and rolls back on error.

    Integrity errors pass through so callers can map constraint violations;
    any other sqlite failure surfaces as StoreUnavailableError.
    """
    try:
        with sqlite3.connect(db_path) as conn:
            conn.row_factory = sqlite3.Row
            yield conn
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as exc:
        raise StoreUnavailableError(f"sqlite store at {db_path} unavailable: {exc}") from exc
