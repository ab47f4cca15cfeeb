"""Creator registry for the stoke platform.

SQLite-backed map of registered performers (Zharriors). Registration is
one-shot: an active creator cannot register again.
"""

import logging
import threading
import time
from dataclasses import dataclass

from protocol import AlreadyRegistered, InvalidInput, NotRegistered
from server.db import connect, savepoint

logger = logging.getLogger(__name__)


@dataclass
class Creator:
    identity: str
    name: str
    metadata_ref: str
    active: bool
    completed_challenges: int
    registered_at: float

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "name": self.name,
            "metadata_ref": self.metadata_ref,
            "active": self.active,
            "completed_challenges": self.completed_challenges,
            "registered_at": self.registered_at,
        }


class CreatorRegistry:
    """SQLite-backed creator registry."""

    def __init__(self, db_path: str = ":memory:", clock=None):
        self.db = connect(db_path)
        self._lock = threading.RLock()
        self._clock = clock or time.time
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS creators (
                identity TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                metadata_ref TEXT NOT NULL DEFAULT '',
                active INTEGER NOT NULL DEFAULT 1,
                completed_challenges INTEGER NOT NULL DEFAULT 0,
                registered_at REAL NOT NULL
            )
        """)

    def transaction(self):
        return savepoint(self.db, self._lock)

    def register(self, identity: str, name: str, metadata_ref: str = "") -> Creator:
        """Activate `identity` as a creator with zero completions."""
        if not identity:
            raise InvalidInput("identity cannot be empty")
        if not name or not name.strip():
            raise InvalidInput("name cannot be empty")
        with self.transaction():
            if self.is_active(identity):
                raise AlreadyRegistered(f"{identity} is already registered")
            self.db.execute(
                "INSERT INTO creators (identity, name, metadata_ref, active, completed_challenges, registered_at) "
                "VALUES (?, ?, ?, 1, 0, ?) "
                "ON CONFLICT(identity) DO UPDATE SET name = excluded.name, "
                "metadata_ref = excluded.metadata_ref, active = 1, registered_at = excluded.registered_at",
                (identity, name, metadata_ref or "", self._clock()),
            )
        logger.info("creator registered: %s (%s)", identity, name)
        return self.get(identity)

    def is_active(self, identity: str) -> bool:
        with self._lock:
            row = self.db.execute(
                "SELECT active FROM creators WHERE identity = ?", (identity,),
            ).fetchone()
        return bool(row and row["active"])

    def get(self, identity: str) -> Creator | None:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM creators WHERE identity = ?", (identity,),
            ).fetchone()
        if not row:
            return None
        return Creator(
            identity=row["identity"],
            name=row["name"],
            metadata_ref=row["metadata_ref"],
            active=bool(row["active"]),
            completed_challenges=row["completed_challenges"],
            registered_at=row["registered_at"],
        )

    def record_completion(self, identity: str) -> int:
        """Bump the completed-challenge counter. Returns the new count."""
        with self.transaction():
            cursor = self.db.execute(
                "UPDATE creators SET completed_challenges = completed_challenges + 1 WHERE identity = ?",
                (identity,),
            )
            if cursor.rowcount == 0:
                raise NotRegistered(f"{identity} is not a registered creator")
            return self.get(identity).completed_challenges

    def close(self):
        self.db.close()
