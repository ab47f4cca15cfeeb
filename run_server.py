#!/usr/bin/env python3
"""Stoke platform server.

Owner, oracle and treasury sink come from STOKE_* env vars (never in code).
The server key (STOKE_SERVER_KEY) is the engine's identity: stakes are
pulled into and paid out of that account.
"""

import logging
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from crypto import generate_ed25519_keypair, identity_from_privkey, load_ed25519_key, save_ed25519_key
from protocol import DEFAULT_CLAIM_GRACE, ORACLE_ADDRESS, OWNER_ADDRESS, TREASURY_ADDRESS
from server.app import build_engine, create_app

DB_PATH = os.environ.get("STOKE_DB", "/var/lib/stoke/stoke.db")
PORT = int(os.environ.get("STOKE_PORT", "8000"))
KEY_PATH = os.environ.get("STOKE_SERVER_KEY", os.path.join(os.path.dirname(DB_PATH), "server.key"))
LOG_LEVEL = os.environ.get("STOKE_LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("stoke")

if not OWNER_ADDRESS:
    print("STOKE_OWNER env var required", file=sys.stderr)
    sys.exit(1)

os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

if os.path.exists(KEY_PATH):
    server_privkey = load_ed25519_key(KEY_PATH)
else:
    server_privkey, _ = generate_ed25519_keypair()
    save_ed25519_key(KEY_PATH, server_privkey)
    logger.info("generated server key at %s", KEY_PATH)

engine_id = identity_from_privkey(server_privkey)
engine = build_engine(
    db_path=DB_PATH,
    address=engine_id,
    owner=OWNER_ADDRESS,
    oracle=ORACLE_ADDRESS,
    treasury=TREASURY_ADDRESS,
    claim_grace=DEFAULT_CLAIM_GRACE,
)
app = create_app(engine=engine, server_privkey=server_privkey)

logger.info("engine account %s", engine_id)
logger.info("oracle %s, treasury sink %s", ORACLE_ADDRESS or "(unset)", TREASURY_ADDRESS or "(engine)")
logger.info("listening on :%d", PORT)

uvicorn.run(app, host="0.0.0.0", port=PORT, log_level=LOG_LEVEL.lower())
