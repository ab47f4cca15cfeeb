import sys
import os
import json

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from crypto import (
    generate_ed25519_keypair, identity_to_pubkey, pubkey_to_identity, sign_request_ed25519,
)
from server.admin import AdminControls
from server.engine import ChallengeEngine
from server.ledger import SimLedger, to_base_units
from server.registry import CreatorRegistry
from server.reputation import ReputationMinter
from server.store import ChallengeStore


T0 = 1_700_000_000
HOUR = 3600
DAY = 24 * HOUR

ENGINE = "stoke_engine"
OWNER = "stk_owner"
ORACLE = "stk_oracle"
TREASURY = "stk_treasury"


class FakeClock:
    """Controllable clock for window arithmetic."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


def make_engine(clock=None, ledger=None, claim_grace=0, treasury=TREASURY, owner=OWNER, oracle=ORACLE):
    """Engine over in-memory components. Returns the engine."""
    clock = clock or FakeClock()
    return ChallengeEngine(
        registry=CreatorRegistry(":memory:", clock=clock),
        ledger=ledger if ledger is not None else SimLedger(":memory:"),
        minter=ReputationMinter(minter=ENGINE),
        admin=AdminControls(owner=owner, oracle=oracle, treasury=treasury),
        store=ChallengeStore(":memory:"),
        address=ENGINE,
        clock=clock,
        claim_grace=claim_grace,
    )


def units(whole) -> int:
    return to_base_units(whole)


def fund(engine, who: str, whole="1000"):
    """Mint settlement tokens to `who` and approve the engine for all of it."""
    amount = units(whole)
    engine.ledger.mint(who, amount)
    engine.ledger.approve(who, engine.address, amount)
    return amount


# Monotonic counter to ensure unique signatures across rapid test calls
_nonce_counter = 0

# Pre-generated test keypairs
_IGNITER_PRIV, _IGNITER_PUB = generate_ed25519_keypair()
_ZHARRIOR_PRIV, _ZHARRIOR_PUB = generate_ed25519_keypair()
_STAKER_PRIV, _STAKER_PUB = generate_ed25519_keypair()
_OWNER_PRIV, _OWNER_PUB = generate_ed25519_keypair()
_ORACLE_PRIV, _ORACLE_PUB = generate_ed25519_keypair()

IGNITER_ID = pubkey_to_identity(_IGNITER_PUB)
ZHARRIOR_ID = pubkey_to_identity(_ZHARRIOR_PUB)
STAKER_ID = pubkey_to_identity(_STAKER_PUB)
OWNER_ID = pubkey_to_identity(_OWNER_PUB)
ORACLE_ID = pubkey_to_identity(_ORACLE_PUB)

IGNITER_PRIV = _IGNITER_PRIV
ZHARRIOR_PRIV = _ZHARRIOR_PRIV
STAKER_PRIV = _STAKER_PRIV
OWNER_PRIV = _OWNER_PRIV
ORACLE_PRIV = _ORACLE_PRIV


def signed_post(client, path, data, identity, privkey_bytes):
    """Make an Ed25519-signed POST request for tests.

    Embeds a nonce in the body so repeated identical calls still get
    distinct signatures (prevents replay guard false positives).
    """
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "_nonce": _nonce_counter})
    pub_hex = identity_to_pubkey(identity).hex()
    auth_headers = sign_request_ed25519(privkey_bytes, pub_hex, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })


def signed_headers(identity, privkey_bytes, method, path, body=""):
    """Generate Ed25519 auth headers for a request."""
    pub_hex = identity_to_pubkey(identity).hex()
    return sign_request_ed25519(privkey_bytes, pub_hex, method, path, body)
