import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .exceptions import DependencyError
from .logging import get_plain_logger

logger = get_plain_logger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / "database"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """
    Fixed-width UTC ISO string, so timestamps compare correctly as TEXT
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def connect(db_path: str, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """
    Short-lived connection: commit on success, rollback on error, always close.

    SQLite operational failures (locked database, unreadable file) surface
    as DependencyError; integrity errors pass through to the caller.
    """
    try:
        conn = sqlite3.connect(db_path, timeout=timeout)
    except sqlite3.OperationalError as e:
        raise DependencyError(str(e), dependency="sqlite") from e

    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except sqlite3.OperationalError as e:
        conn.rollback()
        raise DependencyError(str(e), dependency="sqlite") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema(db_path: str, script_name: str, timeout: float = 5.0):
    """
    Run one of the bundled schema scripts (idempotent CREATE ... IF NOT EXISTS)

    Note: In production, would use a migration tool (Alembic)
    for versioned schema changes.
    """
    sql = (SCHEMA_DIR / script_name).read_text(encoding="utf-8")
    with connect(db_path, timeout) as conn:
        conn.executescript(sql)
    logger.info(f"Schema {script_name} initialized at {db_path}")
