"""Administrative controls for the stoke engine.

A single owner can rotate the oracle and treasury sink, pause and unpause
the engine, and move stray balances of any registered asset. Settings are
persisted so a restart keeps the pause flag and rotated addresses.
"""

import logging
import threading

from protocol import InvalidInput, Paused, Unauthorized
from server.db import connect, savepoint

logger = logging.getLogger(__name__)


class AdminControls:
    """Owner-gated settings: oracle, treasury sink, pause flag, recoverable assets."""

    def __init__(self, owner: str, oracle: str, treasury: str, db_path: str = ":memory:"):
        if not owner:
            raise InvalidInput("owner address is required")
        self.db = connect(db_path)
        self._lock = threading.RLock()
        self._assets: dict = {}
        self._init_db({"owner": owner, "oracle": oracle, "treasury": treasury, "paused": "0"})

    def _init_db(self, defaults: dict):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        for key, value in defaults.items():
            self.db.execute(
                "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)", (key, value or ""),
            )

    def transaction(self):
        return savepoint(self.db, self._lock)

    def _get(self, key: str) -> str:
        with self._lock:
            row = self.db.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else ""

    def _set(self, key: str, value: str) -> str:
        """Write a setting, returning the previous value."""
        with self.transaction():
            old = self._get(key)
            self.db.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            return old

    @property
    def owner(self) -> str:
        return self._get("owner")

    @property
    def oracle(self) -> str:
        return self._get("oracle")

    @property
    def treasury(self) -> str:
        return self._get("treasury")

    @property
    def paused(self) -> bool:
        return self._get("paused") == "1"

    # --- Capability checks ---

    def require_owner(self, caller: str):
        if caller != self.owner:
            raise Unauthorized(f"{caller} is not the owner")

    def is_oracle(self, caller: str) -> bool:
        return bool(self.oracle) and caller == self.oracle

    def require_not_paused(self):
        if self.paused:
            raise Paused("engine is paused")

    # --- Setters ---

    def set_oracle(self, caller: str, address: str) -> str:
        """Rotate the oracle. Returns the previous oracle address."""
        self.require_owner(caller)
        if not address:
            raise InvalidInput("oracle address cannot be empty")
        old = self._set("oracle", address)
        logger.info("oracle rotated: %s -> %s", old or "-", address)
        return old

    def set_treasury(self, caller: str, address: str) -> str:
        """Rotate the treasury sink. Returns the previous address."""
        self.require_owner(caller)
        if not address:
            raise InvalidInput("treasury address cannot be empty")
        old = self._set("treasury", address)
        logger.info("treasury sink rotated: %s -> %s", old or "-", address)
        return old

    def set_paused(self, caller: str, paused: bool) -> bool:
        """Set the pause flag. Returns True if it changed."""
        self.require_owner(caller)
        if self.paused == paused:
            return False
        self._set("paused", "1" if paused else "0")
        logger.warning("engine %s by %s", "paused" if paused else "unpaused", caller)
        return True

    # --- Recoverable assets ---

    def register_asset(self, asset) -> None:
        """Make a ledger recoverable under its symbol."""
        self._assets[asset.symbol] = asset

    def asset(self, symbol: str):
        try:
            return self._assets[symbol]
        except KeyError:
            raise InvalidInput(f"unknown asset: {symbol}") from None

    def assets(self) -> list[str]:
        return sorted(self._assets)

    def close(self):
        self.db.close()
