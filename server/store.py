"""Challenge storage for the stoke platform.

SQLite-backed challenge table, per-challenge staker table (one ordered row
per staker holding stake + dispute flag), per-user challenge index and an
append-only event log. Status writes are checked against STATE_TRANSITIONS.
"""

import json
import threading
from dataclasses import dataclass

from protocol import (
    ChallengeNotFound, ChallengeStatus, DisputePhase, InvalidStatus,
    STATE_TRANSITIONS,
)
from server.db import connect, savepoint


@dataclass
class Staker:
    staker: str
    seq: int
    stake: int
    disputed: bool = False
    refunded: int = 0

    def to_dict(self) -> dict:
        return {
            "staker": self.staker,
            "seq": self.seq,
            "stake": str(self.stake),
            "disputed": self.disputed,
            "refunded": str(self.refunded),
        }


@dataclass
class Challenge:
    id: int
    zharrior: str
    igniter: str
    description: str
    created_at: int
    expiration_time: int
    creator_reward_bps: int
    dispute_window: int
    treasury: int = 0
    total_disputed: int = 0
    proof_ref: str = ""
    proof_submitted_at: int | None = None
    claimed_at: int | None = None
    contest_deadline: int | None = None
    contest_reason: str = ""
    oracle_reason: str = ""
    status: ChallengeStatus = ChallengeStatus.ACTIVE
    dispute_phase: DisputePhase = DisputePhase.NO_DISPUTE
    settlement: dict | None = None
    updated_at: int = 0

    @property
    def dispute_window_end(self) -> int | None:
        if self.proof_submitted_at is None:
            return None
        return self.proof_submitted_at + self.dispute_window

    def is_expired(self, now: int) -> bool:
        return now >= self.expiration_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "zharrior": self.zharrior,
            "igniter": self.igniter,
            "description": self.description,
            "created_at": self.created_at,
            "expiration_time": self.expiration_time,
            "creator_reward_bps": self.creator_reward_bps,
            "dispute_window": self.dispute_window,
            "treasury": str(self.treasury),
            "total_disputed": str(self.total_disputed),
            "proof_ref": self.proof_ref,
            "proof_submitted_at": self.proof_submitted_at,
            "claimed_at": self.claimed_at,
            "contest_deadline": self.contest_deadline,
            "contest_reason": self.contest_reason,
            "oracle_reason": self.oracle_reason,
            "status": self.status.value,
            "dispute_phase": self.dispute_phase.value,
            "settlement": self.settlement,
            "updated_at": self.updated_at,
        }


# Columns the engine may write through ChallengeStore.update()
_MUTABLE_COLUMNS = {
    "treasury", "total_disputed", "proof_ref", "proof_submitted_at",
    "claimed_at", "contest_deadline", "contest_reason", "oracle_reason",
    "dispute_phase", "settlement",
}


class ChallengeStore:
    """SQLite-backed challenge storage with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = connect(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS challenges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                zharrior TEXT NOT NULL,
                igniter TEXT NOT NULL,
                description TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                expiration_time INTEGER NOT NULL,
                creator_reward_bps INTEGER NOT NULL,
                dispute_window INTEGER NOT NULL,
                treasury TEXT NOT NULL DEFAULT '0',
                total_disputed TEXT NOT NULL DEFAULT '0',
                proof_ref TEXT NOT NULL DEFAULT '',
                proof_submitted_at INTEGER,
                claimed_at INTEGER,
                contest_deadline INTEGER,
                contest_reason TEXT NOT NULL DEFAULT '',
                oracle_reason TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'active',
                dispute_phase TEXT NOT NULL DEFAULT 'no_dispute',
                settlement TEXT,
                updated_at INTEGER NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS stakers (
                challenge_id INTEGER NOT NULL,
                staker TEXT NOT NULL,
                seq INTEGER NOT NULL,
                stake TEXT NOT NULL DEFAULT '0',
                disputed INTEGER NOT NULL DEFAULT 0,
                refunded TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (challenge_id, staker)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS user_challenges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user TEXT NOT NULL,
                challenge_id INTEGER NOT NULL,
                UNIQUE (user, challenge_id)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                challenge_id INTEGER,
                kind TEXT NOT NULL,
                data TEXT NOT NULL DEFAULT '{}',
                timestamp INTEGER NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_status ON challenges(status)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_stakers_seq ON stakers(challenge_id, seq)")

    def transaction(self):
        return savepoint(self.db, self._lock)

    # --- Challenges ---

    def create(self, zharrior: str, igniter: str, description: str, created_at: int,
               expiration_time: int, creator_reward_bps: int, dispute_window: int) -> int:
        """Store a new Active challenge and index it for both parties. Returns its id."""
        with self.transaction():
            cursor = self.db.execute(
                "INSERT INTO challenges (zharrior, igniter, description, created_at, expiration_time, "
                "creator_reward_bps, dispute_window, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (zharrior, igniter, description, created_at, expiration_time,
                 creator_reward_bps, dispute_window, created_at),
            )
            challenge_id = cursor.lastrowid
            for user in (igniter, zharrior):
                self.db.execute(
                    "INSERT OR IGNORE INTO user_challenges (user, challenge_id) VALUES (?, ?)",
                    (user, challenge_id),
                )
            return challenge_id

    def get(self, challenge_id: int) -> Challenge | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM challenges WHERE id = ?", (challenge_id,)).fetchone()
        if not row:
            return None
        return self._row_to_challenge(row)

    def require(self, challenge_id: int) -> Challenge:
        challenge = self.get(challenge_id)
        if challenge is None:
            raise ChallengeNotFound(f"challenge {challenge_id} does not exist")
        return challenge

    def list_by_status(self, status: ChallengeStatus, limit: int = 50) -> list[Challenge]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM challenges WHERE status = ? ORDER BY id DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        return [self._row_to_challenge(r) for r in rows]

    def update(self, challenge_id: int, now: int, **fields) -> None:
        """Write mutable challenge fields. Status goes through set_status()."""
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"not a mutable challenge field: {', '.join(sorted(unknown))}")
        values = {}
        for key, value in fields.items():
            if key in ("treasury", "total_disputed"):
                value = str(value)
            elif key == "dispute_phase":
                value = value.value
            elif key == "settlement":
                value = json.dumps(value) if value is not None else None
            values[key] = value
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self.transaction():
            cursor = self.db.execute(
                f"UPDATE challenges SET {assignments}, updated_at = ? WHERE id = ?",
                (*values.values(), now, challenge_id),
            )
            if cursor.rowcount == 0:
                raise ChallengeNotFound(f"challenge {challenge_id} does not exist")

    def set_status(self, challenge_id: int, status: ChallengeStatus, now: int) -> None:
        """Move a challenge to `status`, enforcing the transition table."""
        with self.transaction():
            current = self.require(challenge_id).status
            if status not in STATE_TRANSITIONS.get(current, set()):
                raise InvalidStatus(f"invalid state transition: {current.value} -> {status.value}")
            self.db.execute(
                "UPDATE challenges SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status.value, now, challenge_id, current.value),
            )

    # --- Stakers ---

    def add_stake(self, challenge_id: int, staker: str, amount: int) -> Staker:
        """Credit `amount` to staker and to the challenge treasury.

        First-time stakers get the next seq; later deposits accumulate.
        """
        with self.transaction():
            entry = self.get_staker(challenge_id, staker)
            if entry is None:
                row = self.db.execute(
                    "SELECT COALESCE(MAX(seq), 0) AS last FROM stakers WHERE challenge_id = ?",
                    (challenge_id,),
                ).fetchone()
                self.db.execute(
                    "INSERT INTO stakers (challenge_id, staker, seq, stake) VALUES (?, ?, ?, ?)",
                    (challenge_id, staker, row["last"] + 1, str(amount)),
                )
            else:
                self.db.execute(
                    "UPDATE stakers SET stake = ? WHERE challenge_id = ? AND staker = ?",
                    (str(entry.stake + amount), challenge_id, staker),
                )
            challenge = self.require(challenge_id)
            self.db.execute(
                "UPDATE challenges SET treasury = ? WHERE id = ?",
                (str(challenge.treasury + amount), challenge_id),
            )
            return self.get_staker(challenge_id, staker)

    def get_staker(self, challenge_id: int, staker: str) -> Staker | None:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM stakers WHERE challenge_id = ? AND staker = ?",
                (challenge_id, staker),
            ).fetchone()
        return self._row_to_staker(row) if row else None

    def list_stakers(self, challenge_id: int) -> list[Staker]:
        """Stakers in first-stake order."""
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM stakers WHERE challenge_id = ? ORDER BY seq",
                (challenge_id,),
            ).fetchall()
        return [self._row_to_staker(r) for r in rows]

    def mark_disputed(self, challenge_id: int, staker: str) -> None:
        with self.transaction():
            self.db.execute(
                "UPDATE stakers SET disputed = 1 WHERE challenge_id = ? AND staker = ?",
                (challenge_id, staker),
            )

    def zero_stake(self, challenge_id: int, staker: str) -> int:
        """Zero a staker's balance, debit the treasury, return what was held."""
        with self.transaction():
            entry = self.get_staker(challenge_id, staker)
            if entry is None or entry.stake == 0:
                return 0
            self.db.execute(
                "UPDATE stakers SET stake = '0', refunded = ? WHERE challenge_id = ? AND staker = ?",
                (str(entry.refunded + entry.stake), challenge_id, staker),
            )
            challenge = self.require(challenge_id)
            self.db.execute(
                "UPDATE challenges SET treasury = ? WHERE id = ?",
                (str(challenge.treasury - entry.stake), challenge_id),
            )
            return entry.stake

    # --- User index ---

    def list_user_challenges(self, user: str) -> list[int]:
        """Challenge ids the user created or performs, in creation order."""
        with self._lock:
            rows = self.db.execute(
                "SELECT challenge_id FROM user_challenges WHERE user = ? ORDER BY id",
                (user,),
            ).fetchall()
        return [r["challenge_id"] for r in rows]

    # --- Events ---

    def append_event(self, kind: str, data: dict, timestamp: int,
                     challenge_id: int | None = None) -> dict:
        with self.transaction():
            cursor = self.db.execute(
                "INSERT INTO events (challenge_id, kind, data, timestamp) VALUES (?, ?, ?, ?)",
                (challenge_id, kind, json.dumps(data), timestamp),
            )
            return {
                "seq": cursor.lastrowid,
                "challenge_id": challenge_id,
                "kind": kind,
                "data": data,
                "timestamp": timestamp,
            }

    def list_events(self, since: int = 0, challenge_id: int | None = None, limit: int = 100) -> list[dict]:
        query = "SELECT * FROM events WHERE seq > ?"
        params: list = [since]
        if challenge_id is not None:
            query += " AND challenge_id = ?"
            params.append(challenge_id)
        query += " ORDER BY seq LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.db.execute(query, params).fetchall()
        return [
            {
                "seq": r["seq"],
                "challenge_id": r["challenge_id"],
                "kind": r["kind"],
                "data": json.loads(r["data"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    # --- Helpers ---

    def _row_to_challenge(self, row) -> Challenge:
        return Challenge(
            id=row["id"],
            zharrior=row["zharrior"],
            igniter=row["igniter"],
            description=row["description"],
            created_at=row["created_at"],
            expiration_time=row["expiration_time"],
            creator_reward_bps=row["creator_reward_bps"],
            dispute_window=row["dispute_window"],
            treasury=int(row["treasury"]),
            total_disputed=int(row["total_disputed"]),
            proof_ref=row["proof_ref"],
            proof_submitted_at=row["proof_submitted_at"],
            claimed_at=row["claimed_at"],
            contest_deadline=row["contest_deadline"],
            contest_reason=row["contest_reason"],
            oracle_reason=row["oracle_reason"],
            status=ChallengeStatus(row["status"]),
            dispute_phase=DisputePhase(row["dispute_phase"]),
            settlement=json.loads(row["settlement"]) if row["settlement"] else None,
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_staker(row) -> Staker:
        return Staker(
            staker=row["staker"],
            seq=row["seq"],
            stake=int(row["stake"]),
            disputed=bool(row["disputed"]),
            refunded=int(row["refunded"]),
        )

    def close(self):
        self.db.close()
