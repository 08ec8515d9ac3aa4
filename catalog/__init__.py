"""SQLite connection layer for the photo catalog.

Every caller gets its own short-lived connection: the sync pass writes through
`session()` while API handlers read through `session(read_only=True)`. The
database runs in WAL mode so a reader never sees a half-written pass and never
blocks on the writer.
"""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
import sqlite3
from typing import Iterator, Optional, Union

_DB_FILE: Optional[Path] = None
_SCHEMA_SQL = Path(__file__).resolve().with_name("schema.sql")


def configure(db_file: Union[str, Path]) -> Path:
    """Point the catalog at a database file, creating its directory."""
    target = Path(db_file).expanduser()
    if not target.is_absolute():
        target = target.resolve()
    target.parent.mkdir(parents=True, exist_ok=True)
    global _DB_FILE
    _DB_FILE = target
    return target


def initialize(db_file: Union[str, Path]) -> Path:
    """configure() + ensure_schema() in one call, used at startup."""
    target = configure(db_file)
    ensure_schema()
    return target


def path() -> Path:
    if _DB_FILE is None:
        raise RuntimeError("Catalog database not configured")
    return _DB_FILE


def connect(*, read_only: bool = False) -> sqlite3.Connection:
    db_file = path()
    if read_only:
        conn = sqlite3.connect(f"file:{db_file}?mode=ro", uri=True, check_same_thread=False)
    else:
        conn = sqlite3.connect(db_file, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    if not read_only:
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute("PRAGMA synchronous = NORMAL;")
        except sqlite3.OperationalError:
            pass
    return conn


@contextmanager
def session(*, read_only: bool = False) -> Iterator[sqlite3.Connection]:
    """Yield a connection; write sessions commit on success and roll back on error."""
    conn = connect(read_only=read_only)
    try:
        yield conn
        if not read_only:
            conn.commit()
    except Exception:
        if not read_only:
            conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema() -> None:
    """Create the catalog table and indexes if missing. Idempotent."""
    with session() as conn:
        conn.executescript(_SCHEMA_SQL.read_text())


__all__ = [
    "configure",
    "initialize",
    "path",
    "connect",
    "session",
    "ensure_schema",
]
