"""Reputation token for the stoke platform.

SQLite-backed, non-transferable balance per identity. Only the configured
minter (the engine's own address) may mint; nothing can move a balance once
minted.
"""

import logging
import threading
from dataclasses import dataclass

from protocol import InvalidAmount, Unauthorized
from server.db import connect, savepoint

logger = logging.getLogger(__name__)


@dataclass
class ReputationStats:
    """Reputation held by one identity."""
    balance: int = 0
    mints: int = 0

    def to_dict(self) -> dict:
        return {"balance": str(self.balance), "mints": self.mints}


class ReputationMinter:
    """Restricted-mint, non-transferable reputation ledger."""

    symbol = "EMBR"

    def __init__(self, minter: str, db_path: str = ":memory:"):
        self.minter = minter
        self.db = connect(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS reputation (
                address TEXT PRIMARY KEY,
                balance TEXT NOT NULL DEFAULT '0',
                mints INTEGER NOT NULL DEFAULT 0
            )
        """)

    def transaction(self):
        return savepoint(self.db, self._lock)

    def mint(self, caller: str, to: str, amount: int) -> None:
        """Mint amount to `to`. Only the configured minter may call this."""
        if caller != self.minter:
            raise Unauthorized(f"{caller} is not the reputation minter")
        if amount <= 0:
            raise InvalidAmount(f"mint amount must be positive, got {amount}")
        with self.transaction():
            stats = self.query(to)
            stats.balance += amount
            stats.mints += 1
            self.db.execute(
                "INSERT INTO reputation (address, balance, mints) VALUES (?, ?, ?) "
                "ON CONFLICT(address) DO UPDATE SET balance = excluded.balance, mints = excluded.mints",
                (to, str(stats.balance), stats.mints),
            )
        logger.debug("minted %d %s to %s", amount, self.symbol, to)

    def transfer(self, sender: str, to: str, amount: int) -> None:
        raise Unauthorized(f"{self.symbol} is non-transferable")

    def query(self, address: str) -> ReputationStats:
        with self._lock:
            row = self.db.execute(
                "SELECT balance, mints FROM reputation WHERE address = ?", (address,),
            ).fetchone()
        if not row:
            return ReputationStats()
        return ReputationStats(balance=int(row["balance"]), mints=row["mints"])

    def balance_of(self, address: str) -> int:
        return self.query(address).balance

    def total_supply(self) -> int:
        with self._lock:
            rows = self.db.execute("SELECT balance FROM reputation").fetchall()
        return sum(int(r["balance"]) for r in rows)

    def close(self):
        self.db.close()
