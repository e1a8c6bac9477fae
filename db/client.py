"""SQLite connection helper for the native backend.

Every file-backed connection enables WAL mode, and every connection enables
foreign keys so SubTask rows cascade with their Task.
"""

import sqlite3
from pathlib import Path

MEMORY_PATH = ":memory:"


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """Create a new SQLite connection with WAL mode and foreign keys enabled."""
    if str(db_path) == MEMORY_PATH:
        conn = sqlite3.connect(MEMORY_PATH)
    else:
        db_path = Path(db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path))
        conn.execute("PRAGMA journal_mode=WAL")

    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def native_available() -> bool:
    """Capability probe: can an embedded SQLite engine be opened here?"""
    try:
        conn = sqlite3.connect(MEMORY_PATH)
        try:
            conn.execute("SELECT sqlite_version()").fetchone()
        finally:
            conn.close()
    except sqlite3.Error:
        return False
    return True
