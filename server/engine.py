"""Challenge engine for the stoke platform.

Owns the challenge lifecycle:

  Active -> ProofSubmitted -> {Completed, Expired, Failed, ValidationByOracle}
  ValidationByOracle -> {Completed, Failed}
  Active -> Expired

Every mutating operation runs inside `_atomic()`: one operation at a time,
no re-entry, and store + ledger + minter + registry + admin settings commit
together or roll back together. State is written before funds move, so a
collaborator calling back into the engine mid-transfer is refused and would
see the settled state anyway.

Stakers back the performer with deposits. After proof, stakers have
`dispute_window` seconds to dispute. Once disputing stake reaches half of the
pooled treasury the performer has CONTEST_WINDOW seconds to escalate to the
oracle; if they don't, the challenge fails and stakers take their deposits
back. Without quorum anyone may trigger the reward claim once the dispute
window closes.
"""

import logging
import threading
import time
from contextlib import ExitStack, contextmanager

from protocol import (
    CONTEST_WINDOW, DEFAULT_CLAIM_GRACE, MAX_CREATOR_REWARD_BPS, MIN_CHALLENGE_HORIZON,
    AlreadyClaimed, AlreadyDisputed, AwaitingOracle, ChallengeError, ChallengeExpired,
    ChallengeStatus, ContestWindowClosed, ContestWindowOpen, DisputePhase,
    DisputeWindowClosed, DisputeWindowOpen, ExpirationTooSoon, InvalidAmount,
    InvalidInput, InvalidStatus, MintFailed, NoFunds, NoQuorum, NoStake,
    NotOracle, NotPerformer, NotRefundable, NotRegistered, NothingToRefund,
    Reentrancy, RefundTransferFailed, Resolution, RewardTooHigh, TransferFailed,
)
from server.payout import completion_split, dispute_bps, quorum_reached
from server.store import Challenge, ChallengeStore

logger = logging.getLogger(__name__)

ENGINE_ADDRESS = "stoke_engine"


def _require_text(value: str, field: str):
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field} cannot be empty")


def _require_amount(amount: int):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"amount must be a positive integer, got {amount!r}")


class ChallengeEngine:
    """Challenge table, state machine, dispute quorum and settlement."""

    def __init__(self, registry, ledger, minter, admin, store: ChallengeStore | None = None,
                 address: str = ENGINE_ADDRESS, clock=None, claim_grace: int = DEFAULT_CLAIM_GRACE):
        self.registry = registry
        self.ledger = ledger
        self.minter = minter
        self.admin = admin
        self.store = store or ChallengeStore()
        self.address = address
        self.claim_grace = claim_grace
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._in_flight = False
        self._pending_events: list[dict] = []
        self._listeners: list = []
        self.admin.register_asset(ledger)

    # --- Plumbing ---

    def now(self) -> int:
        return int(self._clock())

    @contextmanager
    def _atomic(self):
        """Serialize, forbid re-entry, commit everything or nothing."""
        with self._lock:
            if self._in_flight:
                raise Reentrancy("engine operation already in progress")
            self._in_flight = True
            self._pending_events = []
            try:
                with ExitStack() as stack:
                    for part in (self.ledger, self.minter, self.registry, self.admin, self.store):
                        stack.enter_context(part.transaction())
                    yield
            except Exception:
                self._pending_events = []
                raise
            finally:
                self._in_flight = False
            events, self._pending_events = self._pending_events, []
        for event in events:
            self._publish(event)

    def subscribe(self, callback) -> None:
        """Register callback(event_dict), called after each committed event."""
        self._listeners.append(callback)

    def _publish(self, event: dict):
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("event listener failed for %s", event["kind"])

    def _emit(self, kind: str, challenge_id: int | None = None, **data) -> None:
        event = self.store.append_event(kind, data, self.now(), challenge_id=challenge_id)
        self._pending_events.append(event)

    def _pull(self, owner: str, amount: int):
        """Pull a staker's deposit into the engine account through their allowance."""
        try:
            ok = self.ledger.transfer_from(self.address, owner, self.address, amount)
        except ChallengeError:
            raise
        except Exception as e:
            logger.warning("pull of %d from %s raised: %s", amount, owner, e)
            raise TransferFailed(f"ledger error pulling from {owner}: {e}") from e
        if not ok:
            raise TransferFailed(f"ledger refused to pull {amount} from {owner}")

    def _push(self, to: str, amount: int, error=TransferFailed):
        if amount == 0:
            return
        try:
            ok = self.ledger.transfer(self.address, to, amount)
        except ChallengeError:
            raise
        except Exception as e:
            logger.warning("push of %d to %s raised: %s", amount, to, e)
            raise error(f"ledger error paying {to}: {e}") from e
        if not ok:
            raise error(f"ledger refused to pay {amount} to {to}")

    def _mint(self, to: str, amount: int):
        if amount == 0:
            return
        try:
            self.minter.mint(self.address, to, amount)
        except Exception as e:
            logger.warning("reputation mint of %d to %s failed: %s", amount, to, e)
            raise MintFailed(f"reputation mint to {to} failed: {e}") from e

    # --- Resolution ---

    def resolve(self, challenge: Challenge, now: int | None = None) -> Resolution:
        """Classify what a challenge allows right now.

        The single place where status, dispute phase and clock are combined;
        claim_reward, claim_refund and the read queries all go through it.
        """
        now = self.now() if now is None else now
        status = challenge.status
        if status == ChallengeStatus.ACTIVE:
            return Resolution.EXPIRED if challenge.is_expired(now) else Resolution.OPEN
        if status == ChallengeStatus.VALIDATION_BY_ORACLE:
            return Resolution.AWAITING_ORACLE
        if status == ChallengeStatus.EXPIRED:
            return Resolution.EXPIRED
        if status != ChallengeStatus.PROOF_SUBMITTED:
            return Resolution.SETTLED
        if now < challenge.dispute_window_end:
            return Resolution.DISPUTE_WINDOW_OPEN
        if challenge.dispute_phase == DisputePhase.PENDING_CONTEST:
            if now <= challenge.contest_deadline:
                return Resolution.CONTEST_WINDOW_OPEN
            return Resolution.FAILED_UNCONTESTED
        return Resolution.CLAIMABLE

    # --- Creators ---

    def register_creator(self, identity: str, name: str, metadata_ref: str = ""):
        """Register a performer."""
        with self._atomic():
            self.admin.require_not_paused()
            creator = self.registry.register(identity, name, metadata_ref)
            self._emit("creator_registered", identity=identity, name=name)
        return creator

    # --- Creation ---

    def create_challenge(self, caller: str, performer: str, description: str,
                         expiration_time: int, creator_reward_bps: int, dispute_window: int) -> int:
        """Post a challenge for a registered performer. Returns the new challenge id."""
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            _require_text(caller, "caller")
            if not self.registry.is_active(performer):
                raise NotRegistered(f"{performer} is not a registered creator")
            _require_text(description, "description")
            if expiration_time <= now + MIN_CHALLENGE_HORIZON:
                raise ExpirationTooSoon(
                    f"expiration must be later than now + {MIN_CHALLENGE_HORIZON}s"
                )
            if creator_reward_bps > MAX_CREATOR_REWARD_BPS:
                raise RewardTooHigh(f"creator reward {creator_reward_bps} bps exceeds {MAX_CREATOR_REWARD_BPS}")
            if creator_reward_bps < 0:
                raise InvalidInput("creator reward cannot be negative")
            if dispute_window <= 0:
                raise InvalidInput("dispute window must be positive")

            challenge_id = self.store.create(
                zharrior=performer, igniter=caller, description=description,
                created_at=now, expiration_time=expiration_time,
                creator_reward_bps=creator_reward_bps, dispute_window=dispute_window,
            )
            self._emit("challenge_created", challenge_id, igniter=caller, zharrior=performer,
                       expiration_time=expiration_time)
        logger.info("challenge %d created by %s for %s", challenge_id, caller, performer)
        return challenge_id

    # --- Staking ---

    def deposit_stake(self, caller: str, challenge_id: int, amount: int) -> int:
        """Stake `amount` behind a challenge. Returns the caller's cumulative stake."""
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            challenge = self.store.require(challenge_id)
            if challenge.status != ChallengeStatus.ACTIVE:
                raise InvalidStatus(f"challenge {challenge_id} is {challenge.status.value}, not active")
            if challenge.is_expired(now):
                raise ChallengeExpired(f"challenge {challenge_id} expired at {challenge.expiration_time}")
            _require_amount(amount)

            # Funds first: nothing is credited unless the pull went through
            self._pull(caller, amount)
            entry = self.store.add_stake(challenge_id, caller, amount)
            self._emit("stake_deposited", challenge_id, staker=caller, amount=str(amount),
                       total_stake=str(entry.stake))
        logger.info("challenge %d: %s staked %d (total %d)", challenge_id, caller, amount, entry.stake)
        return entry.stake

    # --- Proof & dispute ---

    def submit_proof(self, caller: str, challenge_id: int, proof_ref: str) -> Challenge:
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            challenge = self.store.require(challenge_id)
            if caller != challenge.zharrior:
                raise NotPerformer(f"only the performer can submit proof for challenge {challenge_id}")
            if challenge.status != ChallengeStatus.ACTIVE:
                raise InvalidStatus(f"challenge {challenge_id} is {challenge.status.value}, not active")
            if challenge.is_expired(now):
                raise ChallengeExpired(f"challenge {challenge_id} expired at {challenge.expiration_time}")
            _require_text(proof_ref, "proof reference")

            self.store.update(challenge_id, now, proof_ref=proof_ref, proof_submitted_at=now)
            self.store.set_status(challenge_id, ChallengeStatus.PROOF_SUBMITTED, now)
            self._emit("proof_submitted", challenge_id, proof_ref=proof_ref,
                       dispute_window_end=now + challenge.dispute_window)
        logger.info("challenge %d: proof submitted", challenge_id)
        return self.store.get(challenge_id)

    def dispute_proof(self, caller: str, challenge_id: int) -> dict:
        """Dispute a submitted proof with the caller's whole stake. Returns dispute status."""
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            challenge = self.store.require(challenge_id)
            if challenge.status != ChallengeStatus.PROOF_SUBMITTED:
                raise InvalidStatus(f"challenge {challenge_id} has no proof under dispute")
            if now >= challenge.dispute_window_end:
                raise DisputeWindowClosed(f"dispute window closed at {challenge.dispute_window_end}")
            entry = self.store.get_staker(challenge_id, caller)
            if entry is None or entry.stake <= 0:
                raise NoStake(f"{caller} has no stake in challenge {challenge_id}")
            if entry.disputed:
                raise AlreadyDisputed(f"{caller} already disputed challenge {challenge_id}")

            total = challenge.total_disputed + entry.stake
            updates = {"total_disputed": total}
            self.store.mark_disputed(challenge_id, caller)
            self._emit("proof_disputed", challenge_id, staker=caller, weight=str(entry.stake),
                       total_disputed=str(total))

            reached = quorum_reached(total, challenge.treasury)
            logger.debug("challenge %d: disputed %d of %d (quorum %s)",
                         challenge_id, total, challenge.treasury, reached)
            # First crossing only: the contest deadline never moves afterwards
            if reached and challenge.dispute_phase == DisputePhase.NO_DISPUTE:
                deadline = now + CONTEST_WINDOW
                updates["dispute_phase"] = DisputePhase.PENDING_CONTEST
                updates["contest_deadline"] = deadline
                self._emit("quorum_reached", challenge_id, total_disputed=str(total),
                           treasury=str(challenge.treasury), contest_deadline=deadline)
                logger.info("challenge %d: dispute quorum reached, contest deadline %d",
                            challenge_id, deadline)
            self.store.update(challenge_id, now, **updates)
        return self.get_dispute_status(challenge_id)

    def contest_disputes(self, caller: str, challenge_id: int, reason: str) -> Challenge:
        """Performer escalates a disputed proof to the oracle."""
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            challenge = self.store.require(challenge_id)
            if caller != challenge.zharrior:
                raise NotPerformer(f"only the performer can contest disputes on challenge {challenge_id}")
            if challenge.status != ChallengeStatus.PROOF_SUBMITTED:
                raise InvalidStatus(f"challenge {challenge_id} is {challenge.status.value}, not proof_submitted")
            if challenge.dispute_phase != DisputePhase.PENDING_CONTEST:
                raise NoQuorum(f"disputes on challenge {challenge_id} have not reached quorum")
            if now > challenge.contest_deadline:
                raise ContestWindowClosed(f"contest deadline passed at {challenge.contest_deadline}")
            _require_text(reason, "reason")

            self.store.update(challenge_id, now, contest_reason=reason,
                              dispute_phase=DisputePhase.CONTESTED)
            self.store.set_status(challenge_id, ChallengeStatus.VALIDATION_BY_ORACLE, now)
            self._emit("disputes_contested", challenge_id, reason=reason)
        logger.info("challenge %d: performer contested, awaiting oracle", challenge_id)
        return self.store.get(challenge_id)

    # --- Oracle ---

    def validate_challenge(self, caller: str, challenge_id: int, approved: bool, reason: str = "") -> dict:
        """Oracle's final decision on a contested challenge. Returns the settlement outcome."""
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            if not self.admin.is_oracle(caller):
                raise NotOracle(f"{caller} is not the oracle")
            challenge = self.store.require(challenge_id)
            if challenge.status != ChallengeStatus.VALIDATION_BY_ORACLE:
                raise InvalidStatus(f"challenge {challenge_id} is not awaiting the oracle")

            self.store.update(challenge_id, now, oracle_reason=reason or "")
            self._emit("challenge_validated", challenge_id, approved=bool(approved), reason=reason or "")
            if approved:
                outcome = self._settle_completion(challenge, now)
            else:
                outcome = self._settle_failure(challenge, now, cause="oracle_rejected")
        logger.info("challenge %d: oracle %s", challenge_id, "approved" if approved else "rejected")
        return outcome

    # --- Claiming ---

    def claim_reward(self, caller: str, challenge_id: int) -> dict:
        """Settle a proof whose dispute window has closed. Returns the settlement outcome.

        Without quorum this pays out; with an uncontested quorum whose contest
        deadline passed this fails the challenge instead (no error).
        """
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            challenge = self.store.require(challenge_id)
            if challenge.status == ChallengeStatus.COMPLETED or challenge.claimed_at is not None:
                raise AlreadyClaimed(f"challenge {challenge_id} was already claimed")
            if challenge.status == ChallengeStatus.VALIDATION_BY_ORACLE:
                raise AwaitingOracle(f"challenge {challenge_id} is awaiting the oracle")
            if challenge.status != ChallengeStatus.PROOF_SUBMITTED:
                raise InvalidStatus(f"challenge {challenge_id} is {challenge.status.value}, nothing to claim")

            resolution = self.resolve(challenge, now)
            if resolution == Resolution.DISPUTE_WINDOW_OPEN:
                raise DisputeWindowOpen(f"dispute window open until {challenge.dispute_window_end}")
            if resolution == Resolution.CONTEST_WINDOW_OPEN:
                raise ContestWindowOpen(f"performer may contest until {challenge.contest_deadline}")
            if resolution == Resolution.FAILED_UNCONTESTED:
                outcome = self._settle_failure(challenge, now, cause="uncontested_disputes")
            else:
                outcome = self._settle_completion(challenge, now)
            outcome["claimed_by"] = caller
        return outcome

    def claim_refund(self, caller: str, challenge_id: int) -> int:
        """Return the caller's whole stake from a Failed or Expired challenge.

        Lapsed challenges are moved to Expired/Failed first; that move only
        sticks if the refund itself succeeds.
        """
        with self._atomic():
            self.admin.require_not_paused()
            now = self.now()
            challenge = self.store.require(challenge_id)
            resolution = self.resolve(challenge, now)

            if challenge.status == ChallengeStatus.ACTIVE and resolution == Resolution.EXPIRED:
                self._expire(challenge, now, cause="deadline_passed")
            elif resolution == Resolution.FAILED_UNCONTESTED:
                self._settle_failure(challenge, now, cause="uncontested_disputes")
            elif (resolution == Resolution.CLAIMABLE
                  and now >= challenge.dispute_window_end + self.claim_grace):
                self._expire(challenge, now, cause="reward_unclaimed")

            challenge = self.store.require(challenge_id)
            if challenge.status not in (ChallengeStatus.FAILED, ChallengeStatus.EXPIRED):
                raise NotRefundable(f"challenge {challenge_id} is {challenge.status.value}, not refundable")
            entry = self.store.get_staker(challenge_id, caller)
            if entry is None or entry.stake <= 0:
                raise NothingToRefund(f"{caller} has nothing to refund on challenge {challenge_id}")

            amount = self.store.zero_stake(challenge_id, caller)
            self._push(caller, amount, error=RefundTransferFailed)
            self._emit("refund_claimed", challenge_id, staker=caller, amount=str(amount))
        logger.info("challenge %d: refunded %d to %s", challenge_id, amount, caller)
        return amount

    # --- Settlement ---

    def _settle_completion(self, challenge: Challenge, now: int) -> dict:
        """Pay performer, igniter and treasury sink; mint reputation; bump performer's count."""
        if challenge.treasury <= 0:
            raise NoFunds(f"challenge {challenge.id} has no funds to settle")
        split = completion_split(challenge.treasury, self.ledger.decimals)
        sink = self.admin.treasury or self.address
        stakers = self.store.list_stakers(challenge.id)

        # State first, then funds
        self.store.set_status(challenge.id, ChallengeStatus.COMPLETED, now)
        self.store.update(challenge.id, now, claimed_at=now, treasury=0, settlement=split.to_dict())

        self._push(challenge.zharrior, split.zharrior)
        self._push(challenge.igniter, split.igniter)
        self._push(sink, split.defi)

        self._mint(challenge.zharrior, split.zharrior)
        self._mint(sink, split.defi)
        for entry in stakers:
            if entry.stake > 0:
                self._mint(entry.staker, entry.stake)

        completed = self.registry.record_completion(challenge.zharrior)
        self._emit("reward_claimed", challenge.id, **split.to_dict())
        logger.info("challenge %d completed: zharrior=%d igniter=%d defi=%d (performer total %d)",
                    challenge.id, split.zharrior, split.igniter, split.defi, completed)
        return {"challenge_id": challenge.id, "status": ChallengeStatus.COMPLETED.value, **split.to_dict()}

    def _settle_failure(self, challenge: Challenge, now: int, cause: str) -> dict:
        """Mark Failed. Stakers reclaim individually through claim_refund."""
        self.store.set_status(challenge.id, ChallengeStatus.FAILED, now)
        self._emit("challenge_failed", challenge.id, cause=cause)
        logger.info("challenge %d failed (%s)", challenge.id, cause)
        return {"challenge_id": challenge.id, "status": ChallengeStatus.FAILED.value, "cause": cause}

    def _expire(self, challenge: Challenge, now: int, cause: str):
        self.store.set_status(challenge.id, ChallengeStatus.EXPIRED, now)
        self._emit("challenge_expired", challenge.id, cause=cause)
        logger.info("challenge %d expired (%s)", challenge.id, cause)

    # --- Admin ---

    def pause(self, caller: str) -> bool:
        with self._atomic():
            changed = self.admin.set_paused(caller, True)
            if changed:
                self._emit("paused", by=caller)
        return changed

    def unpause(self, caller: str) -> bool:
        with self._atomic():
            changed = self.admin.set_paused(caller, False)
            if changed:
                self._emit("unpaused", by=caller)
        return changed

    def set_oracle(self, caller: str, address: str) -> str:
        with self._atomic():
            old = self.admin.set_oracle(caller, address)
            self._emit("oracle_updated", old=old, new=address)
        return old

    def set_treasury(self, caller: str, address: str) -> str:
        with self._atomic():
            old = self.admin.set_treasury(caller, address)
            self._emit("treasury_updated", old=old, new=address)
        return old

    def recover_asset(self, caller: str, symbol: str, to: str, amount: int) -> None:
        """Owner moves `amount` of any registered asset out of the engine account."""
        with self._atomic():
            self.admin.require_owner(caller)
            _require_text(to, "destination")
            _require_amount(amount)
            asset = self.admin.asset(symbol)
            try:
                ok = asset.transfer(self.address, to, amount)
            except Exception as e:
                raise TransferFailed(f"{symbol} recovery to {to} failed: {e}") from e
            if not ok:
                raise TransferFailed(f"{symbol} refused recovery of {amount} to {to}")
            self._emit("asset_recovered", asset=symbol, to=to, amount=str(amount))
        logger.warning("recovered %d %s to %s", amount, symbol, to)

    # --- Read-only queries ---

    def get_challenge(self, challenge_id: int) -> Challenge:
        return self.store.require(challenge_id)

    def list_challenges(self, status: str = "active", limit: int = 50) -> list[Challenge]:
        try:
            wanted = ChallengeStatus(status)
        except ValueError:
            raise InvalidInput(f"unknown status: {status}") from None
        return self.store.list_by_status(wanted, limit)

    def get_stakers(self, challenge_id: int) -> list[tuple[str, int]]:
        """(staker, stake) pairs in first-stake order."""
        self.store.require(challenge_id)
        return [(s.staker, s.stake) for s in self.store.list_stakers(challenge_id)]

    def get_disputers(self, challenge_id: int) -> list[tuple[str, int]]:
        """(staker, stake) pairs of stakers that disputed, in first-stake order."""
        self.store.require(challenge_id)
        return [(s.staker, s.stake) for s in self.store.list_stakers(challenge_id) if s.disputed]

    def get_dispute_status(self, challenge_id: int) -> dict:
        challenge = self.store.require(challenge_id)
        now = self.now()
        window_end = challenge.dispute_window_end
        remaining = max(0, window_end - now) if window_end is not None else 0
        return {
            "challenge_id": challenge_id,
            "total_disputed": str(challenge.total_disputed),
            "treasury": str(challenge.treasury),
            "dispute_bps": dispute_bps(challenge.total_disputed, challenge.treasury),
            "quorum_reached": challenge.dispute_phase != DisputePhase.NO_DISPUTE,
            "dispute_window_remaining": remaining,
            "contest_deadline": challenge.contest_deadline,
            "dispute_phase": challenge.dispute_phase.value,
            "resolution": self.resolve(challenge, now).value,
        }

    def can_contest(self, challenge_id: int) -> bool:
        challenge = self.store.require(challenge_id)
        return (challenge.status == ChallengeStatus.PROOF_SUBMITTED
                and challenge.dispute_phase == DisputePhase.PENDING_CONTEST
                and self.now() <= challenge.contest_deadline)

    def can_dispute(self, user: str, challenge_id: int) -> bool:
        challenge = self.store.require(challenge_id)
        if challenge.status != ChallengeStatus.PROOF_SUBMITTED:
            return False
        if self.now() >= challenge.dispute_window_end:
            return False
        entry = self.store.get_staker(challenge_id, user)
        return entry is not None and entry.stake > 0 and not entry.disputed

    def get_user_challenges(self, user: str) -> list[int]:
        return self.store.list_user_challenges(user)

    def get_events(self, since: int = 0, challenge_id: int | None = None, limit: int = 100) -> list[dict]:
        return self.store.list_events(since=since, challenge_id=challenge_id, limit=limit)
