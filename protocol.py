"""Shared constants and interfaces for the stoke challenge protocol.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

# Basis points: every ratio in settlement and quorum math is expressed in bps
BPS = 10_000
QUORUM_BPS = 5_000  # disputing stake >= 50% of pooled treasury
ZHARRIOR_SHARE_BPS = 7_000
DEFI_SHARE_BPS = 500
IGNITER_SHARE_BPS = 2_000
IGNITER_CAP_UNITS = 2_500  # whole token units, scaled by ledger decimals
MAX_CREATOR_REWARD_BPS = 9_000

MIN_CHALLENGE_HORIZON = 36 * 3600  # expiration must be past now + 36h
CONTEST_WINDOW = 2 * 24 * 3600  # performer has 2 days to escalate after quorum

DEFAULT_TOKEN_DECIMALS = int(os.environ.get("STOKE_TOKEN_DECIMALS", "6"))
DEFAULT_TOKEN_SYMBOL = "USDS"

# Seconds a performer keeps exclusive claim after the dispute window closes
# before stakers may expire an undisputed proof. 0 = no exclusivity.
DEFAULT_CLAIM_GRACE = int(os.environ.get("STOKE_CLAIM_GRACE", "0"))

# Identity prefix for Ed25519-derived participant ids: stk_<64 hex>
IDENTITY_PREFIX = "stk_"

# Well-known identities, overridable per deployment
OWNER_ADDRESS = os.environ.get("STOKE_OWNER", "")
ORACLE_ADDRESS = os.environ.get("STOKE_ORACLE", "")
TREASURY_ADDRESS = os.environ.get("STOKE_TREASURY", "")


# --- State Machine ---

class ChallengeStatus(Enum):
    ACTIVE = "active"
    PROOF_SUBMITTED = "proof_submitted"
    VALIDATION_BY_ORACLE = "validation_by_oracle"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATES = {ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED, ChallengeStatus.FAILED}

# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    ChallengeStatus.ACTIVE: {ChallengeStatus.PROOF_SUBMITTED, ChallengeStatus.EXPIRED},
    ChallengeStatus.PROOF_SUBMITTED: {
        ChallengeStatus.VALIDATION_BY_ORACLE,
        ChallengeStatus.COMPLETED,
        ChallengeStatus.EXPIRED,
        ChallengeStatus.FAILED,
    },
    ChallengeStatus.VALIDATION_BY_ORACLE: {ChallengeStatus.COMPLETED, ChallengeStatus.FAILED},
    ChallengeStatus.COMPLETED: set(),
    ChallengeStatus.EXPIRED: set(),
    ChallengeStatus.FAILED: set(),
}


class DisputePhase(Enum):
    """Sub-state of a submitted proof. Only moves forward."""
    NO_DISPUTE = "no_dispute"
    PENDING_CONTEST = "disputed_pending_contest"  # quorum reached, contest deadline set
    CONTESTED = "contested"  # performer escalated to the oracle


class Resolution(Enum):
    """What a challenge currently allows, computed from status + phase + clock."""
    OPEN = "open"  # active, accepting stakes and proof
    DISPUTE_WINDOW_OPEN = "dispute_window_open"
    CONTEST_WINDOW_OPEN = "contest_window_open"
    AWAITING_ORACLE = "awaiting_oracle"
    CLAIMABLE = "claimable"  # no quorum, window closed: completion
    FAILED_UNCONTESTED = "failed_uncontested"  # quorum, deadline passed, never contested
    EXPIRED = "expired"
    SETTLED = "settled"


# --- Event Types ---

EVENT_TYPES = {
    "creator_registered", "challenge_created", "stake_deposited",
    "proof_submitted", "proof_disputed", "quorum_reached",
    "disputes_contested", "challenge_validated", "reward_claimed",
    "challenge_failed", "challenge_expired", "refund_claimed",
    "oracle_updated", "treasury_updated", "paused", "unpaused",
    "asset_recovered",
}


# --- Errors ---

class ChallengeError(Exception):
    """Base for every error an engine operation can raise.

    `code` is stable and safe to show to API clients.
    """
    code = "challenge_error"
    category = "challenge_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "category": self.category, "detail": self.message}


class InputValidation(ChallengeError):
    category = "input_validation"


class StateConflict(ChallengeError):
    category = "state_conflict"


class AuthorizationFailure(ChallengeError):
    category = "authorization_failure"


class TemporalViolation(ChallengeError):
    category = "temporal_violation"


class ExternalCallFailure(ChallengeError):
    category = "external_call_failure"


class Paused(ChallengeError):
    code = "paused"
    category = "paused"


class InvalidInput(InputValidation):
    code = "invalid_input"


class InvalidAmount(InputValidation):
    code = "invalid_amount"


class NotRegistered(InputValidation):
    code = "not_registered"


class ExpirationTooSoon(InputValidation):
    code = "expiration_too_soon"


class RewardTooHigh(InputValidation):
    code = "reward_too_high"


class ChallengeNotFound(StateConflict):
    code = "challenge_not_found"


class AlreadyRegistered(StateConflict):
    code = "already_registered"


class InvalidStatus(StateConflict):
    code = "invalid_status"


class AlreadyDisputed(StateConflict):
    code = "already_disputed"


class NoStake(StateConflict):
    code = "no_stake"


class NoQuorum(StateConflict):
    code = "no_quorum"


class AwaitingOracle(StateConflict):
    code = "awaiting_oracle"


class AlreadyClaimed(StateConflict):
    code = "already_claimed"


class NotRefundable(StateConflict):
    code = "not_refundable"


class NothingToRefund(StateConflict):
    code = "nothing_to_refund"


class NoFunds(StateConflict):
    code = "no_funds"


class Reentrancy(StateConflict):
    code = "reentrancy"


class NotPerformer(AuthorizationFailure):
    code = "not_performer"


class NotOracle(AuthorizationFailure):
    code = "not_oracle"


class Unauthorized(AuthorizationFailure):
    code = "unauthorized"


class ChallengeExpired(TemporalViolation):
    code = "challenge_expired"


class DisputeWindowClosed(TemporalViolation):
    code = "dispute_window_closed"


class DisputeWindowOpen(TemporalViolation):
    code = "dispute_window_open"


class ContestWindowClosed(TemporalViolation):
    code = "contest_window_closed"


class ContestWindowOpen(TemporalViolation):
    code = "contest_window_open"


class TransferFailed(ExternalCallFailure):
    code = "transfer_failed"


class RefundTransferFailed(ExternalCallFailure):
    code = "refund_transfer_failed"


class MintFailed(ExternalCallFailure):
    code = "mint_failed"


# Category -> HTTP status for the API layer
ERROR_STATUS = {
    "input_validation": 400,
    "authorization_failure": 403,
    "state_conflict": 409,
    "temporal_violation": 409,
    "external_call_failure": 502,
    "paused": 503,
}
