"""SQLite helpers shared by the stoke managers.

Connections run in autocommit mode; every write goes through `savepoint`,
which nests, so a caller can hold an outer savepoint open across several
manager calls and roll all of them back together.
"""

import itertools
import sqlite3
from contextlib import contextmanager

_savepoint_ids = itertools.count(1)


def connect(db_path: str = ":memory:") -> sqlite3.Connection:
    db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA journal_mode=WAL")
    return db


@contextmanager
def savepoint(db: sqlite3.Connection, lock):
    """Run the block inside a SAVEPOINT. Released on success, rolled back on any error."""
    with lock:
        name = f"sp_{next(_savepoint_ids)}"
        db.execute(f"SAVEPOINT {name}")
        try:
            yield db
        except BaseException:
            db.execute(f"ROLLBACK TO {name}")
            db.execute(f"RELEASE {name}")
            raise
        db.execute(f"RELEASE {name}")
