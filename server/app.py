"""HTTP API for the stoke platform (FastAPI).

Endpoints for the challenge lifecycle: register creators, post challenges,
stake, submit proof, dispute, contest, oracle validation, claim and refund,
plus read-only queries, the event log, owner administration and the
settlement ledger routes (approve the engine, owner faucet) that fund stakes.

Ed25519 authentication: every mutating request must be signed. The caller's
identity is derived from the signing key (stk_<pubkey hex>), so nobody can
act on behalf of another participant.

Amounts travel as decimal strings of integer base units.
"""

import os
import sys
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import logging
import threading

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import BaseModel

from crypto import (
    verify_request_ed25519, generate_ed25519_keypair, load_ed25519_key,
    save_ed25519_key, ed25519_privkey_to_pubkey, pubkey_to_identity, ReplayGuard,
)
from protocol import (
    BPS, CONTEST_WINDOW, DEFAULT_CLAIM_GRACE, DEFI_SHARE_BPS, ERROR_STATUS,
    IGNITER_SHARE_BPS, MAX_CREATOR_REWARD_BPS, MIN_CHALLENGE_HORIZON,
    ORACLE_ADDRESS, OWNER_ADDRESS, PROTOCOL_VERSION, QUORUM_BPS, TREASURY_ADDRESS,
    ZHARRIOR_SHARE_BPS, ChallengeError, ChallengeNotFound, InvalidAmount, InvalidInput,
)
from server.admin import AdminControls
from server.engine import ChallengeEngine
from server.ledger import SimLedger
from server.payout import igniter_cap
from server.registry import CreatorRegistry
from server.reputation import ReputationMinter
from server.store import ChallengeStore

logger = logging.getLogger(__name__)


# --- Request models ---

class RegisterCreatorRequest(BaseModel):
    name: str
    metadata_ref: str = ""

class CreateChallengeRequest(BaseModel):
    performer: str
    description: str
    expiration_time: int
    creator_reward_bps: int
    dispute_window: int

class StakeRequest(BaseModel):
    amount: str | int  # base units

class ProofRequest(BaseModel):
    proof_ref: str

class ContestRequest(BaseModel):
    reason: str

class ValidateRequest(BaseModel):
    approved: bool
    reason: str = ""

class AddressRequest(BaseModel):
    address: str

class RecoverRequest(BaseModel):
    symbol: str
    to: str
    amount: str | int

class ApproveRequest(BaseModel):
    amount: str | int  # allowance granted to the engine account

class MintRequest(BaseModel):
    to: str
    amount: str | int


def _parse_amount(raw) -> int:
    if isinstance(raw, bool):
        raise InvalidAmount(f"invalid amount: {raw!r}")
    try:
        return int(str(raw).strip())
    except ValueError:
        raise InvalidAmount(f"invalid amount: {raw!r}") from None


async def _caller(request: Request) -> str:
    """Authenticate a signed request and return the caller's identity.

    Requires X-Stoke-Timestamp, X-Stoke-Signature and X-Stoke-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get("X-Stoke-Timestamp", "")
    signature = request.headers.get("X-Stoke-Signature", "")
    pubkey_hex = request.headers.get("X-Stoke-Pubkey", "")

    if not timestamp or not signature or not pubkey_hex:
        raise HTTPException(401, "Signed request required (X-Stoke-Timestamp + X-Stoke-Signature + X-Stoke-Pubkey headers)")

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    return pubkey_to_identity(bytes.fromhex(pubkey_hex))


# --- SSE event bus ---

SSE_KEEPALIVE = 15.0
MAX_SSE_SUBSCRIBERS = 1000


class EventBus:
    """Fan committed engine events out to SSE subscribers.

    The engine publishes from whichever thread ran the operation. Each
    subscriber owns an asyncio.Queue on its own event loop and is fed via
    call_soon_threadsafe, so waiting for events never blocks a loop.
    """

    def __init__(self, max_subscribers: int = MAX_SSE_SUBSCRIBERS, queue_size: int = 256):
        self.max_subscribers = max_subscribers
        self.queue_size = queue_size
        self._subscribers: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    def subscribe(self) -> asyncio.Queue:
        """Register a queue on the running loop. 503 once the bus is full."""
        q = asyncio.Queue(maxsize=self.queue_size)
        loop = asyncio.get_running_loop()
        with self._lock:
            if len(self._subscribers) >= self.max_subscribers:
                raise HTTPException(503, "Too many SSE subscribers")
            self._subscribers[q] = loop
        return q

    def unsubscribe(self, q: asyncio.Queue):
        with self._lock:
            self._subscribers.pop(q, None)

    def publish(self, event: dict):
        with self._lock:
            targets = list(self._subscribers.items())
        for q, loop in targets:
            try:
                loop.call_soon_threadsafe(self._offer, q, event)
            except RuntimeError:
                # subscriber's loop already closed
                self.unsubscribe(q)

    def _offer(self, q: asyncio.Queue, event: dict):
        try:
            q.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("dropping SSE subscriber that fell %d events behind", self.queue_size)
            self.unsubscribe(q)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    async def stream(self, q: asyncio.Queue, kind: str = "", challenge_id: int | None = None,
                     keepalive: float = SSE_KEEPALIVE):
        """Yield SSE frames for events matching the filters, keepalives in between."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if kind and event["kind"] != kind:
                    continue
                if challenge_id is not None and event["challenge_id"] != challenge_id:
                    continue
                yield f"data: {json_mod.dumps(event)}\n\n"
        finally:
            self.unsubscribe(q)


def _clamp_limit(limit: int, cap: int = 200) -> int:
    """Page size within [1, cap]. SQLite reads a negative LIMIT as unbounded."""
    return max(1, min(limit, cap))


def build_engine(db_path: str = ":memory:", address: str = "stoke_engine", owner: str = "",
                 oracle: str = "", treasury: str = "", clock=None,
                 claim_grace: int = DEFAULT_CLAIM_GRACE, ledger=None) -> ChallengeEngine:
    """Wire an engine over SQLite. Each component gets its own database file.

    `ledger` plugs in an external settlement asset; without one a SimLedger
    is kept next to the other databases and funded through /ledger routes.
    """
    def _path(suffix: str) -> str:
        if db_path == ":memory:" or not suffix:
            return db_path
        base, ext = os.path.splitext(db_path)
        return f"{base}_{suffix}{ext or '.db'}"

    return ChallengeEngine(
        registry=CreatorRegistry(_path("registry"), clock=clock),
        ledger=ledger if ledger is not None else SimLedger(_path("ledger")),
        minter=ReputationMinter(minter=address, db_path=_path("reputation")),
        admin=AdminControls(owner=owner or address, oracle=oracle, treasury=treasury,
                            db_path=_path("admin")),
        store=ChallengeStore(_path("")),
        address=address,
        clock=clock,
        claim_grace=claim_grace,
    )


# --- App factory ---

def create_app(
    engine: ChallengeEngine | None = None,
    server_privkey: bytes | None = None,
) -> FastAPI:
    """Create FastAPI app with an injected engine.

    If server_privkey is not provided, checks STOKE_SERVER_KEY env var
    (path to key file) or auto-generates one. Without an engine, an
    in-memory one is built whose account is the server identity.
    """

    app = FastAPI(title="Stoke Platform", version="1.0")

    if server_privkey:
        _server_privkey = server_privkey
    else:
        key_path = os.environ.get("STOKE_SERVER_KEY", "")
        if key_path and os.path.exists(key_path):
            _server_privkey = load_ed25519_key(key_path)
        else:
            _server_privkey, _ = generate_ed25519_keypair()
            if key_path:
                save_ed25519_key(key_path, _server_privkey)

    _server_pubkey = ed25519_privkey_to_pubkey(_server_privkey)
    _server_id = pubkey_to_identity(_server_pubkey)

    _engine = engine or build_engine(
        address=_server_id, owner=OWNER_ADDRESS, oracle=ORACLE_ADDRESS, treasury=TREASURY_ADDRESS,
    )

    _bus = EventBus()
    _engine.subscribe(_bus.publish)

    app.state.event_bus = _bus
    app.state.replay_guard = ReplayGuard()
    app.state.engine = _engine
    app.state.server_privkey = _server_privkey
    app.state.server_pubkey = _server_pubkey
    app.state.server_id = _server_id

    @app.exception_handler(ChallengeError)
    async def challenge_error_handler(request: Request, exc: ChallengeError):
        if isinstance(exc, ChallengeNotFound):
            status = 404
        else:
            status = ERROR_STATUS.get(exc.category, 400)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/server_pubkey")
    async def get_server_pubkey():
        return {"pubkey": _server_pubkey.hex(), "identity": _server_id, "engine": _engine.address}

    # --- Creators ---

    @app.post("/creators")
    async def register_creator(req: RegisterCreatorRequest, request: Request):
        """Register the caller as a performer."""
        caller = await _caller(request)
        creator = _engine.register_creator(caller, req.name, req.metadata_ref)
        return creator.to_dict()

    @app.get("/creators/{identity}")
    async def get_creator(identity: str):
        creator = _engine.registry.get(identity)
        if creator is None:
            raise HTTPException(404, "Creator not found")
        return creator.to_dict()

    # --- Challenge lifecycle ---

    @app.post("/challenges")
    async def create_challenge(req: CreateChallengeRequest, request: Request):
        """Post a challenge. The caller becomes the igniter."""
        caller = await _caller(request)
        challenge_id = _engine.create_challenge(
            caller, req.performer, req.description,
            req.expiration_time, req.creator_reward_bps, req.dispute_window,
        )
        return {"challenge_id": challenge_id, "status": "active"}

    @app.get("/challenges")
    async def list_challenges(status: str = "active", limit: int = 50):
        limit = _clamp_limit(limit)
        return {"challenges": [c.to_dict() for c in _engine.list_challenges(status, limit)]}

    @app.get("/challenges/{challenge_id}")
    async def get_challenge(challenge_id: int):
        challenge = _engine.get_challenge(challenge_id)
        data = challenge.to_dict()
        data["resolution"] = _engine.resolve(challenge).value
        return data

    @app.post("/challenges/{challenge_id}/stake")
    async def stake(challenge_id: int, req: StakeRequest, request: Request):
        """Deposit stake. The caller must have approved the engine account first."""
        caller = await _caller(request)
        total = _engine.deposit_stake(caller, challenge_id, _parse_amount(req.amount))
        return {"staker": caller, "stake": str(total)}

    @app.post("/challenges/{challenge_id}/proof")
    async def submit_proof(challenge_id: int, req: ProofRequest, request: Request):
        caller = await _caller(request)
        challenge = _engine.submit_proof(caller, challenge_id, req.proof_ref)
        return {"status": challenge.status.value, "dispute_window_end": challenge.dispute_window_end}

    @app.post("/challenges/{challenge_id}/dispute")
    async def dispute_proof(challenge_id: int, request: Request):
        caller = await _caller(request)
        return _engine.dispute_proof(caller, challenge_id)

    @app.post("/challenges/{challenge_id}/contest")
    async def contest_disputes(challenge_id: int, req: ContestRequest, request: Request):
        caller = await _caller(request)
        challenge = _engine.contest_disputes(caller, challenge_id, req.reason)
        return {"status": challenge.status.value, "dispute_phase": challenge.dispute_phase.value}

    @app.post("/challenges/{challenge_id}/validate")
    async def validate_challenge(challenge_id: int, req: ValidateRequest, request: Request):
        """Oracle ruling on a contested challenge."""
        caller = await _caller(request)
        return _engine.validate_challenge(caller, challenge_id, req.approved, req.reason)

    @app.post("/challenges/{challenge_id}/claim")
    async def claim_reward(challenge_id: int, request: Request):
        caller = await _caller(request)
        return _engine.claim_reward(caller, challenge_id)

    @app.post("/challenges/{challenge_id}/refund")
    async def claim_refund(challenge_id: int, request: Request):
        caller = await _caller(request)
        amount = _engine.claim_refund(caller, challenge_id)
        return {"staker": caller, "refunded": str(amount)}

    # --- Read-only queries ---

    @app.get("/challenges/{challenge_id}/stakers")
    async def get_stakers(challenge_id: int):
        return {"stakers": [{"staker": s, "stake": str(amt)} for s, amt in _engine.get_stakers(challenge_id)]}

    @app.get("/challenges/{challenge_id}/disputers")
    async def get_disputers(challenge_id: int):
        return {"disputers": [{"staker": s, "stake": str(amt)} for s, amt in _engine.get_disputers(challenge_id)]}

    @app.get("/challenges/{challenge_id}/dispute_status")
    async def dispute_status(challenge_id: int):
        return _engine.get_dispute_status(challenge_id)

    @app.get("/challenges/{challenge_id}/can_contest")
    async def can_contest(challenge_id: int):
        return {"can_contest": _engine.can_contest(challenge_id)}

    @app.get("/challenges/{challenge_id}/can_dispute/{user}")
    async def can_dispute(challenge_id: int, user: str):
        return {"can_dispute": _engine.can_dispute(user, challenge_id)}

    @app.get("/users/{user}/challenges")
    async def user_challenges(user: str):
        return {"challenges": _engine.get_user_challenges(user)}

    @app.get("/reputation/{address}")
    async def get_reputation(address: str):
        """Soulbound reputation balance plus completed challenges for performers."""
        stats = _engine.minter.query(address).to_dict()
        creator = _engine.registry.get(address)
        stats["completed_challenges"] = creator.completed_challenges if creator else 0
        return {"address": address, "symbol": _engine.minter.symbol, **stats}

    # --- Settlement ledger ---

    def _ledger_op(name: str):
        op = getattr(_engine.ledger, name, None)
        if op is None:
            raise InvalidInput(f"{_engine.ledger.symbol} ledger does not support {name} over this API")
        return op

    @app.get("/ledger/{address}")
    async def ledger_account(address: str):
        """Settlement balance, plus the allowance granted to the engine where the ledger tracks one."""
        ledger = _engine.ledger
        data = {"address": address, "symbol": ledger.symbol, "balance": str(ledger.balance_of(address))}
        if hasattr(ledger, "allowance"):
            data["engine_allowance"] = str(ledger.allowance(address, _engine.address))
        return data

    @app.post("/ledger/approve")
    async def ledger_approve(req: ApproveRequest, request: Request):
        """Let the engine pull up to `amount` of the caller's balance as stake."""
        caller = await _caller(request)
        amount = _parse_amount(req.amount)
        if amount < 0:
            raise InvalidAmount(f"allowance cannot be negative, got {amount}")
        _ledger_op("approve")(caller, _engine.address, amount)
        return {"owner": caller, "spender": _engine.address, "allowance": str(amount)}

    @app.post("/ledger/mint")
    async def ledger_mint(req: MintRequest, request: Request):
        """Owner-only faucet for simulated settlement tokens."""
        caller = await _caller(request)
        _engine.admin.require_owner(caller)
        amount = _parse_amount(req.amount)
        if amount <= 0:
            raise InvalidAmount(f"mint amount must be positive, got {amount}")
        if not req.to:
            raise InvalidInput("destination cannot be empty")
        _ledger_op("mint")(req.to, amount)
        logger.info("faucet: %d %s to %s", amount, _engine.ledger.symbol, req.to)
        return {"to": req.to, "amount": str(amount),
                "balance": str(_engine.ledger.balance_of(req.to))}

    @app.get("/events")
    async def get_events(since: int = 0, challenge_id: int | None = None, limit: int = 100):
        limit = _clamp_limit(limit)
        return {"events": _engine.get_events(since=since, challenge_id=challenge_id, limit=limit)}

    @app.get("/events/stream")
    async def stream_events(kind: str = "", challenge_id: int | None = None):
        """SSE stream of committed engine events.

        Usage:
            curl -N http://localhost:8000/events/stream?kind=reward_claimed

        Events:
            data: {"seq": 7, "kind": "stake_deposited", "challenge_id": 1, "data": {...}, ...}
        """
        q = _bus.subscribe()
        return StreamingResponse(
            _bus.stream(q, kind=kind, challenge_id=challenge_id),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # --- Administration ---

    @app.post("/admin/oracle")
    async def set_oracle(req: AddressRequest, request: Request):
        caller = await _caller(request)
        old = _engine.set_oracle(caller, req.address)
        return {"old": old, "new": req.address}

    @app.post("/admin/treasury")
    async def set_treasury(req: AddressRequest, request: Request):
        caller = await _caller(request)
        old = _engine.set_treasury(caller, req.address)
        return {"old": old, "new": req.address}

    @app.post("/admin/pause")
    async def pause(request: Request):
        caller = await _caller(request)
        _engine.pause(caller)
        return {"paused": True}

    @app.post("/admin/unpause")
    async def unpause(request: Request):
        caller = await _caller(request)
        _engine.unpause(caller)
        return {"paused": False}

    @app.post("/admin/recover")
    async def recover_asset(req: RecoverRequest, request: Request):
        caller = await _caller(request)
        amount = _parse_amount(req.amount)
        _engine.recover_asset(caller, req.symbol, req.to, amount)
        return {"symbol": req.symbol, "to": req.to, "amount": str(amount)}

    @app.get("/platform_info")
    async def platform_info():
        """Advertised protocol parameters and current administration."""
        admin = _engine.admin
        return {
            "protocol_version": PROTOCOL_VERSION,
            "token": _engine.ledger.symbol,
            "decimals": _engine.ledger.decimals,
            "engine": _engine.address,
            "owner": admin.owner,
            "oracle": admin.oracle,
            "treasury": admin.treasury,
            "paused": admin.paused,
            "assets": admin.assets(),
            "shares_bps": {
                "zharrior": ZHARRIOR_SHARE_BPS,
                "igniter": IGNITER_SHARE_BPS,
                "defi": DEFI_SHARE_BPS,
                "total": BPS,
            },
            "igniter_cap": str(igniter_cap(_engine.ledger.decimals)),
            "quorum_bps": QUORUM_BPS,
            "max_creator_reward_bps": MAX_CREATOR_REWARD_BPS,
            "min_challenge_horizon": MIN_CHALLENGE_HORIZON,
            "contest_window": CONTEST_WINDOW,
            "claim_grace": _engine.claim_grace,
        }

    return app
