"""Identity and request signing for stoke.

Every participant is an Ed25519 key. Its public half, hex encoded behind
the `stk_` prefix, is the participant's identity everywhere in the engine:
stakers, performers, the oracle, the owner and the engine account itself.

Mutating HTTP requests carry three headers:

  X-Stoke-Timestamp  unix seconds at signing time
  X-Stoke-Signature  hex Ed25519 signature over request_payload(...)
  X-Stoke-Pubkey     hex public key of the signer

Dependencies: os, threading, cryptography
"""

import os
import threading
import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from protocol import IDENTITY_PREFIX

KEY_SIZE = 32
REQUEST_MAX_AGE = 300  # seconds a signed request stays valid
MAX_CLOCK_SKEW = 30  # seconds a client clock may run ahead

_RAW = (serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def _public_bytes(privkey: Ed25519PrivateKey) -> bytes:
    return privkey.public_key().public_bytes(*_RAW)


# --- Keys ---

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """New (private, public) pair, 32 raw bytes each."""
    privkey = Ed25519PrivateKey.generate()
    raw_private = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    return raw_private, _public_bytes(privkey)


def load_ed25519_key(path: str) -> bytes:
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != KEY_SIZE:
        raise ValueError(f"{path}: expected a {KEY_SIZE}-byte Ed25519 key, got {len(data)} bytes")
    return data


def save_ed25519_key(path: str, key: bytes) -> None:
    """Write a raw private key readable by the owner only (0600)."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    return _public_bytes(Ed25519PrivateKey.from_private_bytes(privkey_bytes))


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Hex signature (128 chars) of data."""
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data).hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(bytes.fromhex(sig_hex), data)
    except (InvalidSignature, ValueError):
        return False
    return True


# --- Identities ---

def pubkey_to_identity(pubkey_bytes: bytes) -> str:
    """stk_<64 hex>"""
    return f"{IDENTITY_PREFIX}{pubkey_bytes.hex()}"


def identity_to_pubkey(identity: str) -> bytes:
    if not identity.startswith(IDENTITY_PREFIX):
        raise ValueError(f"Invalid identity: {identity}")
    key_hex = identity[len(IDENTITY_PREFIX):]
    if len(key_hex) != 2 * KEY_SIZE:
        raise ValueError(f"Invalid identity length: {identity}")
    return bytes.fromhex(key_hex)


def identity_from_privkey(privkey_bytes: bytes) -> str:
    return pubkey_to_identity(ed25519_privkey_to_pubkey(privkey_bytes))


# --- Signed requests ---

def request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    """Bytes covered by a request signature: METHOD\\nPATH\\nTIMESTAMP\\nBODY"""
    return "\n".join((method.upper(), path, timestamp, body)).encode("utf-8")


def sign_request_ed25519(
    privkey_bytes: bytes,
    pubkey_hex: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Auth headers for one request."""
    ts = str(int(_time.time() if timestamp is None else timestamp))
    return {
        "X-Stoke-Timestamp": ts,
        "X-Stoke-Signature": ed25519_sign(privkey_bytes, request_payload(method, path, ts, body)),
        "X-Stoke-Pubkey": pubkey_hex,
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Check freshness, key shape and signature. Returns (ok, error_message)."""
    try:
        age = _time.time() - int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"
    if age < -MAX_CLOCK_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey_bytes) != KEY_SIZE:
        return False, "invalid pubkey length"

    if not ed25519_verify(pubkey_bytes, request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"
    return True, ""


class ReplayGuard:
    """Remembers signatures for `ttl` seconds and refuses to see one twice.

    Requests older than REQUEST_MAX_AGE are refused anyway, so remembering a
    signature for that long is enough.
    """

    def __init__(self, ttl: int = REQUEST_MAX_AGE, clock=None, prune_at: int = 10_000):
        self.ttl = ttl
        self._clock = clock or _time.time
        self._prune_at = prune_at
        self._expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def check_and_record(self, sig_hex: str) -> bool:
        """True the first time a signature is seen inside its ttl, False after."""
        now = self._clock()
        with self._lock:
            if len(self._expiry) >= self._prune_at:
                self._expiry = {sig: exp for sig, exp in self._expiry.items() if exp > now}
            expires = self._expiry.get(sig_hex)
            if expires is not None and now < expires:
                return False
            self._expiry[sig_hex] = now + self.ttl
            return True

    def __len__(self) -> int:
        return len(self._expiry)
