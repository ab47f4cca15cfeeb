"""Settlement ledger backends for the stoke engine.

The settlement asset is a plain transferable balance ledger with
allowance-based withdrawal. The engine only needs two moves from it:

  - pull:  transfer_from(engine, staker, engine, amount) after the staker approved
  - push:  transfer(engine, recipient, amount)

Both report failure by returning False or raising; the engine never retries.

Backends:
  - StubLedger: every move succeeds, moves are logged for assertions
  - SimLedger: SQLite balances + allowances, enforces both, supports
    savepoint transactions so the engine can roll a whole operation back
"""

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import nullcontext
from decimal import Decimal

from protocol import DEFAULT_TOKEN_DECIMALS, DEFAULT_TOKEN_SYMBOL
from server.db import connect, savepoint

logger = logging.getLogger(__name__)


def to_base_units(amount: str | Decimal | int, decimals: int = DEFAULT_TOKEN_DECIMALS) -> int:
    """Convert a whole-token amount ("12.5") to integer base units."""
    result = Decimal(str(amount)) * (10 ** decimals)
    return int(result.to_integral_value())


def from_base_units(units: int | str, decimals: int = DEFAULT_TOKEN_DECIMALS) -> Decimal:
    """Convert integer base units to a whole-token Decimal."""
    return Decimal(str(units)) / (10 ** decimals)


class SettlementLedger(ABC):
    """Abstract settlement asset."""

    symbol: str = DEFAULT_TOKEN_SYMBOL
    decimals: int = DEFAULT_TOKEN_DECIMALS

    @abstractmethod
    def transfer(self, sender: str, to: str, amount: int) -> bool:
        """Move amount from sender to to. False if it could not be done."""
        ...

    @abstractmethod
    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        """Move amount out of owner's balance using spender's allowance."""
        ...

    @abstractmethod
    def balance_of(self, address: str) -> int:
        ...

    def transaction(self):
        """Context in which every move is rolled back if the block raises.

        Backends without rollback support return a no-op context.
        """
        return nullcontext()


class StubLedger(SettlementLedger):
    """No-op ledger for testing. Every move succeeds and is logged."""

    def __init__(self, symbol: str = DEFAULT_TOKEN_SYMBOL, decimals: int = DEFAULT_TOKEN_DECIMALS):
        self.symbol = symbol
        self.decimals = decimals
        self.transfers: list[dict] = []  # log of moves for test assertions

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        self.transfers.append({"from": sender, "to": to, "amount": amount, "via": "transfer"})
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        self.transfers.append({"from": owner, "to": to, "amount": amount, "via": spender})
        return True

    def balance_of(self, address: str) -> int:
        received = sum(t["amount"] for t in self.transfers if t["to"] == address)
        sent = sum(t["amount"] for t in self.transfers if t["from"] == address)
        return received - sent


class SimLedger(SettlementLedger):
    """Simulated settlement asset for development and integration testing.

    Tracks real balances and allowances in SQLite. Enforces:
    - No negative amounts
    - Insufficient balance / allowance -> False (no partial move)
    - Full transaction log, one hash per move

    Usage:
        sim = SimLedger()
        sim.mint("stk_alice", to_base_units("100"))
        sim.approve("stk_alice", "stoke_engine", to_base_units("10"))
        sim.transfer_from("stoke_engine", "stk_alice", "stoke_engine", to_base_units("10"))
    """

    def __init__(self, db_path: str = ":memory:", symbol: str = DEFAULT_TOKEN_SYMBOL,
                 decimals: int = DEFAULT_TOKEN_DECIMALS):
        self.symbol = symbol
        self.decimals = decimals
        self.db = connect(db_path)
        self._lock = threading.RLock()
        self._tx_counter = 0
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                balance TEXT NOT NULL DEFAULT '0'
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS allowances (
                owner TEXT NOT NULL,
                spender TEXT NOT NULL,
                amount TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (owner, spender)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount TEXT NOT NULL,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)

    def transaction(self):
        return savepoint(self.db, self._lock)

    def _get_balance(self, address: str) -> int:
        row = self.db.execute(
            "SELECT balance FROM balances WHERE address = ?", (address,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def _set_balance(self, address: str, amount: int):
        self.db.execute(
            "INSERT INTO balances (address, balance) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance = excluded.balance",
            (address, str(amount)),
        )

    def _get_allowance(self, owner: str, spender: str) -> int:
        row = self.db.execute(
            "SELECT amount FROM allowances WHERE owner = ? AND spender = ?",
            (owner, spender),
        ).fetchone()
        return int(row["amount"]) if row else 0

    def _set_allowance(self, owner: str, spender: str, amount: int):
        self.db.execute(
            "INSERT INTO allowances (owner, spender, amount) VALUES (?, ?, ?) "
            "ON CONFLICT(owner, spender) DO UPDATE SET amount = excluded.amount",
            (owner, spender, str(amount)),
        )

    def _record_tx(self, from_acc: str, to_acc: str, amount: int, tx_type: str) -> str:
        self._tx_counter += 1
        tx_hash = hashlib.blake2b(
            f"{self._tx_counter}:{time.time_ns()}:{from_acc}:{to_acc}:{amount}".encode(),
            digest_size=32,
        ).hexdigest()
        self.db.execute(
            "INSERT INTO transactions (hash, from_account, to_account, amount, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, str(amount), tx_type, time.time()),
        )
        return tx_hash

    def _move(self, sender: str, to: str, amount: int, tx_type: str) -> bool:
        balance = self._get_balance(sender)
        if balance < amount:
            logger.warning("%s: insufficient balance for %s (have %d, need %d)",
                           self.symbol, sender, balance, amount)
            return False
        self._set_balance(sender, balance - amount)
        self._set_balance(to, self._get_balance(to) + amount)
        self._record_tx(sender, to, amount, tx_type)
        return True

    # --- SettlementLedger interface ---

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        if amount < 0:
            raise ValueError(f"negative transfer amount: {amount}")
        with self.transaction():
            return self._move(sender, to, amount, "transfer")

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        if amount < 0:
            raise ValueError(f"negative transfer amount: {amount}")
        with self.transaction():
            allowed = self._get_allowance(owner, spender)
            if allowed < amount:
                logger.warning("%s: allowance %s -> %s too low (have %d, need %d)",
                               self.symbol, owner, spender, allowed, amount)
                return False
            if not self._move(owner, to, amount, "transfer_from"):
                return False
            self._set_allowance(owner, spender, allowed - amount)
            return True

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._get_balance(address)

    # --- SimLedger-only methods (faucet and approvals over /ledger) ---

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        if amount < 0:
            raise ValueError(f"negative allowance: {amount}")
        with self.transaction():
            self._set_allowance(owner, spender, amount)
            return True

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._get_allowance(owner, spender)

    def mint(self, address: str, amount: int):
        """Credit an account out of thin air (simulates an external deposit)."""
        if amount <= 0:
            raise ValueError(f"mint amount must be positive: {amount}")
        with self.transaction():
            self._set_balance(address, self._get_balance(address) + amount)
            self._record_tx("faucet", address, amount, "mint")

    def get_transactions(self, address: str = "") -> list[dict]:
        """Get transaction log, optionally filtered by participant."""
        with self._lock:
            if address:
                rows = self.db.execute(
                    "SELECT * FROM transactions WHERE from_account = ? OR to_account = ? ORDER BY id",
                    (address, address),
                ).fetchall()
            else:
                rows = self.db.execute("SELECT * FROM transactions ORDER BY id").fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self.db.close()
