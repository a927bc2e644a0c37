# Core Module: SQLite connection helper for the ledger store
#
# The account store opens its database through `connect()` so every
# connection gets the same settings:
#
#   - WAL journal on file databases (node readers do not block the writer)
#   - busy_timeout so a second process waits instead of failing
#   - foreign_keys on
#
# db_path=None gives a private in-memory database for tests and dry runs.

import sqlite3
from pathlib import Path
from typing import Optional, Union

MEMORY = ":memory:"


def connect(
    db_path: Optional[Union[str, Path]],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a ledger database connection.

    Args:
        db_path: Database file (parent directories are created), or None
            for in-memory.
        row_factory: Return rows as sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect(); the node shares one
            connection across worker threads and passes False.

    Returns:
        Configured sqlite3.Connection.
    """
    if db_path is None:
        target = MEMORY
    else:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        target = str(db_path)
    conn = sqlite3.connect(target, check_same_thread=check_same_thread)
    if target != MEMORY:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
