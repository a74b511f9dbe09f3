"""
SQLite connection helpers.

Every store owns one connection opened in autocommit mode; multi-statement
writes go through `immediate_transaction`, which takes the database write
lock up front (BEGIN IMMEDIATE) so that concurrent writers on the same file
serialize instead of failing on lock upgrade.
"""

import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator


def open_connection(db_path: str = ":memory:") -> sqlite3.Connection:
    conn = sqlite3.connect(
        db_path, check_same_thread=False, isolation_level=None, timeout=30.0
    )
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def immediate_transaction(
    conn: sqlite3.Connection, lock: threading.Lock
) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on error."""
    with lock:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
