"""Tests for server/engine.py -- challenge lifecycle, disputes, settlement."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import unittest
from protocol import (
    AlreadyClaimed, AlreadyDisputed, AlreadyRegistered, AuthorizationFailure,
    AwaitingOracle, ChallengeExpired, ChallengeNotFound, ChallengeStatus,
    ContestWindowClosed, ContestWindowOpen, DisputePhase, DisputeWindowClosed,
    DisputeWindowOpen, ExpirationTooSoon, InputValidation, InvalidAmount,
    InvalidInput, InvalidStatus, MintFailed, NoFunds, NoQuorum, NoStake,
    NotOracle, NotPerformer, NotRefundable, NotRegistered, NothingToRefund,
    Paused, Reentrancy, RefundTransferFailed, Resolution, RewardTooHigh,
    StateConflict, TemporalViolation, TransferFailed, Unauthorized,
)
from server.ledger import SimLedger
from server.reputation import ReputationMinter
from conftest import (
    DAY, HOUR, ENGINE, OWNER, ORACLE, TREASURY, T0,
    FakeClock, make_engine, fund, units,
)


IGNITER = "stk_igniter"
ZHARRIOR = "stk_zharrior"
ALICE = "stk_alice"
BOB = "stk_bob"
CAROL = "stk_carol"


class FlakyLedger(SimLedger):
    """SimLedger that refuses pushes to one recipient."""

    def __init__(self):
        super().__init__(":memory:")
        self.refuse_to = None

    def transfer(self, sender, to, amount):
        if to == self.refuse_to:
            return False
        return super().transfer(sender, to, amount)


class RaisingLedger(SimLedger):
    def transfer(self, sender, to, amount):
        raise ConnectionError("ledger unreachable")


class EngineTestCase(unittest.TestCase):
    """Shared fixture: registered performer, funded stakers, one challenge."""

    claim_grace = 0

    def make_ledger(self):
        return None

    def setUp(self):
        self.clock = FakeClock()
        self.engine = make_engine(clock=self.clock, ledger=self.make_ledger(),
                                  claim_grace=self.claim_grace)
        self.engine.register_creator(ZHARRIOR, "Zed")
        for who in (ALICE, BOB, CAROL):
            fund(self.engine, who, "100000")

    def create(self, expiration=None, window=DAY, reward_bps=1000):
        return self.engine.create_challenge(
            IGNITER, ZHARRIOR, "run 100km this week",
            expiration or T0 + 3 * DAY, reward_bps, window,
        )

    def stake(self, cid, who, whole):
        return self.engine.deposit_stake(who, cid, units(whole))

    def prove(self, cid):
        return self.engine.submit_proof(ZHARRIOR, cid, "ipfs://proof")

    def balance(self, who):
        return self.engine.ledger.balance_of(who)

    def status(self, cid):
        return self.engine.get_challenge(cid).status


# --- Creators ---

class TestRegisterCreator(EngineTestCase):
    def test_registered(self):
        self.assertTrue(self.engine.registry.is_active(ZHARRIOR))
        kinds = [e["kind"] for e in self.engine.get_events()]
        self.assertIn("creator_registered", kinds)

    def test_register_twice(self):
        with self.assertRaises(AlreadyRegistered):
            self.engine.register_creator(ZHARRIOR, "Zed again")

    def test_register_while_paused(self):
        self.engine.pause(OWNER)
        with self.assertRaises(Paused):
            self.engine.register_creator(BOB, "Bob")
        self.assertFalse(self.engine.registry.is_active(BOB))
        self.engine.unpause(OWNER)
        self.assertTrue(self.engine.register_creator(BOB, "Bob").active)


# --- Creation ---

class TestCreateChallenge(EngineTestCase):
    def test_create(self):
        cid = self.create()
        c = self.engine.get_challenge(cid)
        self.assertEqual(c.status, ChallengeStatus.ACTIVE)
        self.assertEqual(c.treasury, 0)
        self.assertEqual(c.igniter, IGNITER)
        self.assertEqual(c.zharrior, ZHARRIOR)
        self.assertEqual(c.dispute_phase, DisputePhase.NO_DISPUTE)

    def test_ids_increase(self):
        first = self.create()
        second = self.create()
        self.assertEqual(second, first + 1)

    def test_indexed_for_both_parties(self):
        first = self.create()
        second = self.create()
        self.assertEqual(self.engine.get_user_challenges(IGNITER), [first, second])
        self.assertEqual(self.engine.get_user_challenges(ZHARRIOR), [first, second])
        self.assertEqual(self.engine.get_user_challenges(ALICE), [])

    def test_unregistered_performer(self):
        with self.assertRaises(NotRegistered):
            self.engine.create_challenge(IGNITER, BOB, "x", T0 + 3 * DAY, 0, DAY)

    def test_empty_description(self):
        with self.assertRaises(InvalidInput):
            self.engine.create_challenge(IGNITER, ZHARRIOR, "   ", T0 + 3 * DAY, 0, DAY)

    def test_expiration_exactly_at_horizon(self):
        with self.assertRaises(ExpirationTooSoon):
            self.create(expiration=T0 + 36 * HOUR)

    def test_expiration_just_past_horizon(self):
        cid = self.create(expiration=T0 + 36 * HOUR + 1)
        self.assertEqual(self.status(cid), ChallengeStatus.ACTIVE)

    def test_reward_cap(self):
        self.create(reward_bps=9000)
        with self.assertRaises(RewardTooHigh):
            self.create(reward_bps=9001)

    def test_zero_dispute_window(self):
        with self.assertRaises(InvalidInput):
            self.create(window=0)

    def test_error_categories(self):
        with self.assertRaises(InputValidation):
            self.create(reward_bps=9001)
        with self.assertRaises(InputValidation):
            self.create(expiration=T0)


# --- Staking ---

class TestDepositStake(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.cid = self.create()

    def test_stake_pulls_funds(self):
        total = self.stake(self.cid, ALICE, "100")
        self.assertEqual(total, units("100"))
        self.assertEqual(self.balance(ENGINE), units("100"))
        self.assertEqual(self.balance(ALICE), units("99900"))
        self.assertEqual(self.engine.get_challenge(self.cid).treasury, units("100"))

    def test_stakes_accumulate_in_first_stake_order(self):
        self.stake(self.cid, BOB, "10")
        self.stake(self.cid, ALICE, "20")
        self.stake(self.cid, BOB, "5")
        self.assertEqual(self.engine.get_stakers(self.cid), [(BOB, units("15")), (ALICE, units("20"))])

    def test_treasury_equals_sum_of_stakes(self):
        for who, amount in ((ALICE, "7"), (BOB, "13"), (ALICE, "1"), (CAROL, "100")):
            self.stake(self.cid, who, amount)
        stakes = sum(s for _, s in self.engine.get_stakers(self.cid))
        self.assertEqual(self.engine.get_challenge(self.cid).treasury, stakes)

    def test_zero_stake(self):
        with self.assertRaises(InvalidAmount):
            self.engine.deposit_stake(ALICE, self.cid, 0)

    def test_negative_stake(self):
        with self.assertRaises(InvalidAmount):
            self.engine.deposit_stake(ALICE, self.cid, -5)

    def test_stake_after_expiration(self):
        self.clock.now = T0 + 3 * DAY
        with self.assertRaises(ChallengeExpired):
            self.stake(self.cid, ALICE, "1")

    def test_stake_unknown_challenge(self):
        with self.assertRaises(ChallengeNotFound):
            self.stake(999, ALICE, "1")

    def test_stake_after_proof(self):
        self.prove(self.cid)
        with self.assertRaises(InvalidStatus):
            self.stake(self.cid, ALICE, "1")

    def test_pull_refused_leaves_nothing(self):
        with self.assertRaises(TransferFailed):
            self.engine.deposit_stake("stk_broke", self.cid, units("1"))
        self.assertEqual(self.engine.get_stakers(self.cid), [])
        self.assertEqual(self.engine.get_challenge(self.cid).treasury, 0)
        kinds = [e["kind"] for e in self.engine.get_events(challenge_id=self.cid)]
        self.assertNotIn("stake_deposited", kinds)

    def test_allowance_consumed(self):
        self.engine.ledger.approve(ALICE, ENGINE, units("10"))
        self.stake(self.cid, ALICE, "10")
        with self.assertRaises(TransferFailed):
            self.stake(self.cid, ALICE, "1")


# --- Proof ---

class TestSubmitProof(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.cid = self.create()
        self.stake(self.cid, ALICE, "100")

    def test_submit(self):
        self.clock.advance(HOUR)
        c = self.prove(self.cid)
        self.assertEqual(c.status, ChallengeStatus.PROOF_SUBMITTED)
        self.assertEqual(c.proof_submitted_at, T0 + HOUR)
        self.assertEqual(c.dispute_window_end, T0 + HOUR + DAY)

    def test_not_performer(self):
        with self.assertRaises(NotPerformer):
            self.engine.submit_proof(IGNITER, self.cid, "ipfs://proof")

    def test_twice(self):
        self.prove(self.cid)
        with self.assertRaises(InvalidStatus):
            self.prove(self.cid)

    def test_after_expiration(self):
        self.clock.now = T0 + 3 * DAY
        with self.assertRaises(ChallengeExpired):
            self.prove(self.cid)

    def test_empty_proof(self):
        with self.assertRaises(InvalidInput):
            self.engine.submit_proof(ZHARRIOR, self.cid, "")


# --- Disputes ---

class TestDisputeProof(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.cid = self.create()
        self.stake(self.cid, ALICE, "600")
        self.stake(self.cid, BOB, "300")
        self.stake(self.cid, CAROL, "100")

    def test_dispute_before_proof(self):
        with self.assertRaises(InvalidStatus):
            self.engine.dispute_proof(ALICE, self.cid)

    def test_non_staker(self):
        self.prove(self.cid)
        with self.assertRaises(NoStake):
            self.engine.dispute_proof("stk_nobody", self.cid)

    def test_below_quorum(self):
        self.prove(self.cid)
        status = self.engine.dispute_proof(BOB, self.cid)
        self.assertFalse(status["quorum_reached"])
        self.assertEqual(status["dispute_bps"], 3000)
        self.assertEqual(status["dispute_phase"], "no_dispute")
        self.assertIsNone(status["contest_deadline"])

    def test_below_quorum_after_two_disputes(self):
        self.prove(self.cid)
        self.engine.dispute_proof(BOB, self.cid)
        self.clock.advance(HOUR)
        self.engine.dispute_proof(CAROL, self.cid)
        status = self.engine.get_dispute_status(self.cid)
        self.assertFalse(status["quorum_reached"])
        self.assertEqual(status["dispute_bps"], 4000)

    def test_quorum_at_exactly_half(self):
        cid = self.create()
        self.stake(cid, ALICE, "50")
        self.stake(cid, BOB, "50")
        self.prove(cid)
        status = self.engine.dispute_proof(BOB, cid)
        self.assertTrue(status["quorum_reached"])
        self.assertEqual(status["dispute_bps"], 5000)
        self.assertEqual(status["dispute_phase"], "disputed_pending_contest")

    def test_quorum_sets_deadline_once(self):
        self.prove(self.cid)
        self.clock.advance(HOUR)
        status = self.engine.dispute_proof(ALICE, self.cid)
        self.assertTrue(status["quorum_reached"])
        deadline = status["contest_deadline"]
        self.assertEqual(deadline, T0 + HOUR + 2 * DAY)

        self.clock.advance(HOUR)
        self.engine.dispute_proof(BOB, self.cid)
        status = self.engine.get_dispute_status(self.cid)
        self.assertEqual(status["contest_deadline"], deadline)
        self.assertEqual(status["total_disputed"], str(units("900")))
        kinds = [e["kind"] for e in self.engine.get_events(challenge_id=self.cid)]
        self.assertEqual(kinds.count("quorum_reached"), 1)

    def test_already_disputed(self):
        self.prove(self.cid)
        self.engine.dispute_proof(BOB, self.cid)
        with self.assertRaises(AlreadyDisputed):
            self.engine.dispute_proof(BOB, self.cid)

    def test_window_closed(self):
        self.prove(self.cid)
        self.clock.advance(DAY)
        with self.assertRaises(DisputeWindowClosed):
            self.engine.dispute_proof(ALICE, self.cid)

    def test_last_second_of_window(self):
        self.prove(self.cid)
        self.clock.advance(DAY - 1)
        status = self.engine.dispute_proof(BOB, self.cid)
        self.assertEqual(status["total_disputed"], str(units("300")))

    def test_disputers_listed(self):
        self.prove(self.cid)
        self.engine.dispute_proof(CAROL, self.cid)
        self.engine.dispute_proof(ALICE, self.cid)
        self.assertEqual(self.engine.get_disputers(self.cid),
                         [(ALICE, units("600")), (CAROL, units("100"))])

    def test_can_dispute(self):
        self.assertFalse(self.engine.can_dispute(ALICE, self.cid))
        self.prove(self.cid)
        self.assertTrue(self.engine.can_dispute(ALICE, self.cid))
        self.assertFalse(self.engine.can_dispute("stk_nobody", self.cid))
        self.engine.dispute_proof(ALICE, self.cid)
        self.assertFalse(self.engine.can_dispute(ALICE, self.cid))
        self.clock.advance(DAY)
        self.assertFalse(self.engine.can_dispute(BOB, self.cid))


# --- Contest & oracle ---

class TestContestAndOracle(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.cid = self.create()
        self.stake(self.cid, ALICE, "600")
        self.stake(self.cid, BOB, "400")
        self.prove(self.cid)

    def test_contest_without_quorum(self):
        with self.assertRaises(NoQuorum):
            self.engine.contest_disputes(ZHARRIOR, self.cid, "I did it")

    def test_contest_not_performer(self):
        self.engine.dispute_proof(ALICE, self.cid)
        with self.assertRaises(NotPerformer):
            self.engine.contest_disputes(ALICE, self.cid, "nope")

    def test_contest_empty_reason(self):
        self.engine.dispute_proof(ALICE, self.cid)
        with self.assertRaises(InvalidInput):
            self.engine.contest_disputes(ZHARRIOR, self.cid, "")

    def test_contest_on_deadline(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.clock.advance(2 * DAY)
        self.assertTrue(self.engine.can_contest(self.cid))
        c = self.engine.contest_disputes(ZHARRIOR, self.cid, "GPS logs attached")
        self.assertEqual(c.status, ChallengeStatus.VALIDATION_BY_ORACLE)
        self.assertEqual(c.dispute_phase, DisputePhase.CONTESTED)
        self.assertEqual(c.contest_reason, "GPS logs attached")

    def test_contest_after_deadline(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.clock.advance(2 * DAY + 1)
        self.assertFalse(self.engine.can_contest(self.cid))
        with self.assertRaises(ContestWindowClosed):
            self.engine.contest_disputes(ZHARRIOR, self.cid, "late")

    def test_contest_twice(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.engine.contest_disputes(ZHARRIOR, self.cid, "first")
        with self.assertRaises(InvalidStatus):
            self.engine.contest_disputes(ZHARRIOR, self.cid, "second")

    def test_validate_not_oracle(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.engine.contest_disputes(ZHARRIOR, self.cid, "proof")
        with self.assertRaises(NotOracle):
            self.engine.validate_challenge(OWNER, self.cid, True)

    def test_validate_not_awaiting(self):
        with self.assertRaises(InvalidStatus):
            self.engine.validate_challenge(ORACLE, self.cid, True)

    def test_oracle_rejects(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.engine.contest_disputes(ZHARRIOR, self.cid, "proof")
        outcome = self.engine.validate_challenge(ORACLE, self.cid, False, "video is fake")
        self.assertEqual(outcome["status"], "failed")
        c = self.engine.get_challenge(self.cid)
        self.assertEqual(c.status, ChallengeStatus.FAILED)
        self.assertEqual(c.oracle_reason, "video is fake")

        self.assertEqual(self.engine.claim_refund(ALICE, self.cid), units("600"))
        self.assertEqual(self.engine.claim_refund(BOB, self.cid), units("400"))
        self.assertEqual(self.balance(ENGINE), 0)

    def test_claim_while_awaiting_oracle(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.engine.contest_disputes(ZHARRIOR, self.cid, "proof")
        self.clock.advance(10 * DAY)
        with self.assertRaises(AwaitingOracle):
            self.engine.claim_reward(ZHARRIOR, self.cid)
        with self.assertRaises(NotRefundable):
            self.engine.claim_refund(ALICE, self.cid)

    def test_rotated_oracle(self):
        self.engine.dispute_proof(ALICE, self.cid)
        self.engine.contest_disputes(ZHARRIOR, self.cid, "proof")
        self.engine.set_oracle(OWNER, "stk_new_oracle")
        with self.assertRaises(NotOracle):
            self.engine.validate_challenge(ORACLE, self.cid, True)
        self.engine.validate_challenge("stk_new_oracle", self.cid, True)
        self.assertEqual(self.status(self.cid), ChallengeStatus.COMPLETED)


# --- Claiming ---

class TestClaimReward(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.cid = self.create()
        self.stake(self.cid, ALICE, "100")

    def test_claim_while_active(self):
        with self.assertRaises(InvalidStatus):
            self.engine.claim_reward(ZHARRIOR, self.cid)

    def test_claim_inside_window(self):
        self.prove(self.cid)
        self.clock.advance(DAY - 1)
        with self.assertRaises(DisputeWindowOpen):
            self.engine.claim_reward(ZHARRIOR, self.cid)

    def test_claim_at_window_end(self):
        self.prove(self.cid)
        self.clock.advance(DAY)
        outcome = self.engine.claim_reward(ZHARRIOR, self.cid)
        self.assertEqual(outcome["status"], "completed")

    def test_anyone_may_trigger(self):
        self.prove(self.cid)
        self.clock.advance(DAY)
        outcome = self.engine.claim_reward(BOB, self.cid)
        self.assertEqual(outcome["claimed_by"], BOB)
        self.assertEqual(self.balance(ZHARRIOR), units("75"))

    def test_second_claim(self):
        self.prove(self.cid)
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, self.cid)
        with self.assertRaises(AlreadyClaimed):
            self.engine.claim_reward(ZHARRIOR, self.cid)
        with self.assertRaises(StateConflict):
            self.engine.claim_reward(ZHARRIOR, self.cid)

    def test_no_funds(self):
        cid = self.create()
        self.prove(cid)
        self.clock.advance(DAY)
        with self.assertRaises(NoFunds):
            self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.status(cid), ChallengeStatus.PROOF_SUBMITTED)

    def test_contest_window_open(self):
        self.prove(self.cid)
        self.engine.dispute_proof(ALICE, self.cid)
        self.clock.advance(DAY)
        with self.assertRaises(ContestWindowOpen):
            self.engine.claim_reward(ZHARRIOR, self.cid)

    def test_uncontested_quorum_fails_without_error(self):
        self.prove(self.cid)
        self.engine.dispute_proof(ALICE, self.cid)
        self.clock.advance(2 * DAY + 1)
        outcome = self.engine.claim_reward(ZHARRIOR, self.cid)
        self.assertEqual(outcome["status"], "failed")
        self.assertEqual(outcome["cause"], "uncontested_disputes")
        self.assertEqual(self.status(self.cid), ChallengeStatus.FAILED)
        self.assertEqual(self.balance(ZHARRIOR), 0)
        with self.assertRaises(InvalidStatus):
            self.engine.claim_reward(ZHARRIOR, self.cid)

    def test_completion_mints_reputation(self):
        self.stake(self.cid, BOB, "50")
        self.prove(self.cid)
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, self.cid)
        minter = self.engine.minter
        self.assertEqual(minter.balance_of(ZHARRIOR), units("112.5"))
        self.assertEqual(minter.balance_of(TREASURY), units("7.5"))
        self.assertEqual(minter.balance_of(ALICE), units("100"))
        self.assertEqual(minter.balance_of(BOB), units("50"))
        self.assertEqual(minter.balance_of(IGNITER), 0)
        self.assertEqual(self.engine.registry.get(ZHARRIOR).completed_challenges, 1)

    def test_settlement_recorded(self):
        self.prove(self.cid)
        self.clock.advance(DAY + 5)
        self.engine.claim_reward(ZHARRIOR, self.cid)
        c = self.engine.get_challenge(self.cid)
        self.assertEqual(c.treasury, 0)
        self.assertEqual(c.claimed_at, T0 + DAY + 5)
        self.assertEqual(c.settlement["zharrior_share"], str(units("75")))
        self.assertEqual(self.engine.resolve(c), Resolution.SETTLED)


class TestClaimRefund(EngineTestCase):
    def setUp(self):
        super().setUp()
        self.cid = self.create()
        self.stake(self.cid, ALICE, "100")
        self.stake(self.cid, BOB, "40")

    def test_active_not_refundable(self):
        with self.assertRaises(NotRefundable):
            self.engine.claim_refund(ALICE, self.cid)

    def test_refund_after_expiration(self):
        self.clock.now = T0 + 3 * DAY
        self.assertEqual(self.engine.claim_refund(ALICE, self.cid), units("100"))
        self.assertEqual(self.status(self.cid), ChallengeStatus.EXPIRED)
        self.assertEqual(self.balance(ALICE), units("100000"))
        self.assertEqual(self.engine.get_challenge(self.cid).treasury, units("40"))

    def test_refund_twice(self):
        self.clock.now = T0 + 3 * DAY
        self.engine.claim_refund(ALICE, self.cid)
        with self.assertRaises(NothingToRefund):
            self.engine.claim_refund(ALICE, self.cid)

    def test_nothing_to_refund_keeps_status(self):
        self.clock.now = T0 + 3 * DAY
        with self.assertRaises(NothingToRefund):
            self.engine.claim_refund("stk_nobody", self.cid)
        self.assertEqual(self.status(self.cid), ChallengeStatus.ACTIVE)

    def test_undisputed_proof_expires_after_window(self):
        self.prove(self.cid)
        self.clock.advance(DAY)
        self.assertEqual(self.engine.claim_refund(BOB, self.cid), units("40"))
        self.assertEqual(self.status(self.cid), ChallengeStatus.EXPIRED)
        with self.assertRaises(InvalidStatus):
            self.engine.claim_reward(ZHARRIOR, self.cid)

    def test_refund_inside_dispute_window(self):
        self.prove(self.cid)
        with self.assertRaises(NotRefundable):
            self.engine.claim_refund(ALICE, self.cid)

    def test_refund_after_completion(self):
        self.prove(self.cid)
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, self.cid)
        with self.assertRaises(NotRefundable):
            self.engine.claim_refund(ALICE, self.cid)

    def test_refund_of_disputed_stake(self):
        self.prove(self.cid)
        self.engine.dispute_proof(ALICE, self.cid)
        self.clock.advance(2 * DAY + 1)
        self.assertEqual(self.engine.claim_refund(ALICE, self.cid), units("100"))
        self.assertEqual(self.status(self.cid), ChallengeStatus.FAILED)


class TestClaimGrace(EngineTestCase):
    claim_grace = HOUR

    def test_performer_keeps_exclusive_claim(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY + HOUR - 1)
        with self.assertRaises(NotRefundable):
            self.engine.claim_refund(ALICE, cid)
        self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.status(cid), ChallengeStatus.COMPLETED)

    def test_refund_once_grace_lapses(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY + HOUR)
        self.assertEqual(self.engine.claim_refund(ALICE, cid), units("100"))
        self.assertEqual(self.status(cid), ChallengeStatus.EXPIRED)


# --- Scenarios ---

class TestScenarios(EngineTestCase):
    def test_a_undisputed_completion(self):
        cid = self.create()
        self.stake(cid, ALICE, "10000")
        self.prove(cid)
        self.clock.advance(DAY)
        outcome = self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(outcome["zharrior_share"], str(units("7500")))
        self.assertEqual(outcome["igniter_share"], str(units("2000")))
        self.assertEqual(outcome["defi_share"], str(units("500")))
        self.assertEqual(self.balance(ZHARRIOR), units("7500"))
        self.assertEqual(self.balance(IGNITER), units("2000"))
        self.assertEqual(self.balance(TREASURY), units("500"))
        self.assertEqual(self.balance(ENGINE), 0)

    def test_a_igniter_cap(self):
        cid = self.create()
        self.stake(cid, ALICE, "20000")
        self.prove(cid)
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.balance(IGNITER), units("2500"))
        self.assertEqual(self.balance(TREASURY), units("1000"))
        self.assertEqual(self.balance(ZHARRIOR), units("16500"))

    def test_b_uncontested_quorum_refunds(self):
        cid = self.create()
        self.stake(cid, ALICE, "600")
        self.stake(cid, BOB, "400")
        self.prove(cid)
        self.engine.dispute_proof(ALICE, cid)
        self.clock.advance(2 * DAY + 1)

        refunded = self.engine.claim_refund(ALICE, cid)
        self.assertEqual(refunded, units("600"))
        self.assertEqual(self.status(cid), ChallengeStatus.FAILED)
        refunded += self.engine.claim_refund(BOB, cid)
        self.assertEqual(refunded, units("1000"))
        self.assertEqual(self.balance(ALICE), units("100000"))
        self.assertEqual(self.balance(BOB), units("100000"))
        self.assertEqual(self.balance(ENGINE), 0)

    def test_c_contested_and_approved(self):
        cid = self.create()
        self.stake(cid, ALICE, "6000")
        self.stake(cid, BOB, "4000")
        self.prove(cid)
        self.engine.dispute_proof(ALICE, cid)
        self.clock.advance(DAY)
        self.engine.contest_disputes(ZHARRIOR, cid, "finish line photo")
        outcome = self.engine.validate_challenge(ORACLE, cid, True, "photo checks out")
        self.assertEqual(outcome["status"], "completed")
        self.assertEqual(self.balance(ZHARRIOR), units("7500"))
        self.assertEqual(self.balance(IGNITER), units("2000"))
        self.assertEqual(self.balance(TREASURY), units("500"))
        self.assertEqual(self.engine.minter.balance_of(ALICE), units("6000"))

    def test_d_late_and_zero_stakes(self):
        cid = self.create()
        with self.assertRaises(InputValidation):
            self.engine.deposit_stake(ALICE, cid, 0)
        self.clock.now = T0 + 3 * DAY + 1
        with self.assertRaises(TemporalViolation):
            self.stake(cid, ALICE, "1")


class TestConservation(EngineTestCase):
    def test_split_sums_to_treasury(self):
        fund(self.engine, ALICE, "200000")
        for whole in ("0.000001", "0.000019", "1", "333.333333", "12499.999999", "12500", "99999"):
            cid = self.create()
            self.stake(cid, ALICE, whole)
            self.prove(cid)
            self.clock.advance(DAY)
            outcome = self.engine.claim_reward(ZHARRIOR, cid)
            total = sum(int(outcome[k]) for k in ("zharrior_share", "igniter_share", "defi_share"))
            self.assertEqual(total, units(whole), whole)
            self.clock.now = T0

    def test_ledger_totals_unchanged(self):
        before = sum(self.balance(w) for w in (ALICE, BOB, CAROL))
        cid = self.create()
        self.stake(cid, ALICE, "123.456789")
        self.stake(cid, BOB, "0.000001")
        self.stake(cid, CAROL, "77")
        self.prove(cid)
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, cid)
        after = sum(self.balance(w) for w in (ALICE, BOB, CAROL, ZHARRIOR, IGNITER, TREASURY, ENGINE))
        self.assertEqual(before, after)
        self.assertEqual(self.balance(ENGINE), 0)

    def test_refunds_equal_treasury_at_failure(self):
        cid = self.create()
        stakes = {ALICE: "10.5", BOB: "3", CAROL: "0.25"}
        for who, whole in stakes.items():
            self.stake(cid, who, whole)
        treasury = self.engine.get_challenge(cid).treasury
        self.clock.now = T0 + 3 * DAY
        refunded = sum(self.engine.claim_refund(who, cid) for who in stakes)
        self.assertEqual(refunded, treasury)
        self.assertEqual(self.engine.get_challenge(cid).treasury, 0)


# --- Atomicity ---

class TestRollback(EngineTestCase):
    def make_ledger(self):
        return FlakyLedger()

    def test_failed_push_rolls_back_completion(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY)
        self.engine.ledger.refuse_to = IGNITER
        with self.assertRaises(TransferFailed):
            self.engine.claim_reward(ZHARRIOR, cid)

        c = self.engine.get_challenge(cid)
        self.assertEqual(c.status, ChallengeStatus.PROOF_SUBMITTED)
        self.assertIsNone(c.claimed_at)
        self.assertEqual(c.treasury, units("100"))
        self.assertEqual(self.balance(ZHARRIOR), 0)
        self.assertEqual(self.balance(ENGINE), units("100"))
        self.assertEqual(self.engine.minter.total_supply(), 0)
        self.assertEqual(self.engine.registry.get(ZHARRIOR).completed_challenges, 0)
        kinds = [e["kind"] for e in self.engine.get_events(challenge_id=cid)]
        self.assertNotIn("reward_claimed", kinds)

        self.engine.ledger.refuse_to = None
        self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.balance(ZHARRIOR), units("75"))

    def test_failed_refund_rolls_back_expiry(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.clock.now = T0 + 3 * DAY
        self.engine.ledger.refuse_to = ALICE
        with self.assertRaises(RefundTransferFailed):
            self.engine.claim_refund(ALICE, cid)
        self.assertEqual(self.status(cid), ChallengeStatus.ACTIVE)
        self.assertEqual(self.engine.get_stakers(cid), [(ALICE, units("100"))])

        self.engine.ledger.refuse_to = None
        self.assertEqual(self.engine.claim_refund(ALICE, cid), units("100"))

    def test_mint_failure_rolls_back(self):
        self.engine.minter = ReputationMinter(minter="stk_someone_else")
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY)
        with self.assertRaises(MintFailed):
            self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.status(cid), ChallengeStatus.PROOF_SUBMITTED)
        self.assertEqual(self.balance(ZHARRIOR), 0)
        self.assertEqual(self.balance(ENGINE), units("100"))

    def test_events_published_only_on_commit(self):
        seen = []
        self.engine.subscribe(seen.append)
        cid = self.create()
        with self.assertRaises(InvalidAmount):
            self.engine.deposit_stake(ALICE, cid, 0)
        self.stake(cid, ALICE, "1")
        self.assertEqual([e["kind"] for e in seen], ["challenge_created", "stake_deposited"])


class TestRaisingLedger(EngineTestCase):
    def make_ledger(self):
        return RaisingLedger(":memory:")

    def test_exception_becomes_transfer_failed(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY)
        with self.assertRaises(TransferFailed):
            self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.status(cid), ChallengeStatus.PROOF_SUBMITTED)


class ReentrantLedger(SimLedger):
    """Calls back into the engine from inside a push."""

    def __init__(self):
        super().__init__(":memory:")
        self.engine = None
        self.target = None
        self.errors = []

    def transfer(self, sender, to, amount):
        if self.engine is not None and not self.errors:
            try:
                self.engine.claim_reward(to, self.target)
            except Reentrancy as e:
                self.errors.append(e)
        return super().transfer(sender, to, amount)


class TestReentrancy(EngineTestCase):
    def make_ledger(self):
        return ReentrantLedger()

    def test_reentrant_claim_refused(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY)
        self.engine.ledger.engine = self.engine
        self.engine.ledger.target = cid
        self.engine.claim_reward(ZHARRIOR, cid)

        self.assertEqual(len(self.engine.ledger.errors), 1)
        self.assertEqual(self.balance(ZHARRIOR), units("75"))
        kinds = [e["kind"] for e in self.engine.get_events(challenge_id=cid)]
        self.assertEqual(kinds.count("reward_claimed"), 1)


# --- Administration ---

class TestAdmin(EngineTestCase):
    def test_pause_blocks_operations(self):
        cid = self.create()
        self.engine.pause(OWNER)
        with self.assertRaises(Paused):
            self.create()
        with self.assertRaises(Paused):
            self.stake(cid, ALICE, "1")
        self.engine.unpause(OWNER)
        self.stake(cid, ALICE, "1")

    def test_pause_checked_before_validation(self):
        self.engine.pause(OWNER)
        with self.assertRaises(Paused):
            self.engine.deposit_stake(ALICE, 999, 0)

    def test_pause_requires_owner(self):
        with self.assertRaises(Unauthorized):
            self.engine.pause(ALICE)
        self.assertFalse(self.engine.admin.paused)

    def test_pause_idempotent(self):
        self.assertTrue(self.engine.pause(OWNER))
        self.assertFalse(self.engine.pause(OWNER))
        kinds = [e["kind"] for e in self.engine.get_events()]
        self.assertEqual(kinds.count("paused"), 1)

    def test_admin_works_while_paused(self):
        self.engine.pause(OWNER)
        old = self.engine.set_treasury(OWNER, "stk_new_treasury")
        self.assertEqual(old, TREASURY)
        self.assertEqual(self.engine.admin.treasury, "stk_new_treasury")

    def test_set_oracle_event(self):
        self.engine.set_oracle(OWNER, "stk_new_oracle")
        event = self.engine.get_events()[-1]
        self.assertEqual(event["kind"], "oracle_updated")
        self.assertEqual(event["data"], {"old": ORACLE, "new": "stk_new_oracle"})

    def test_set_oracle_requires_owner(self):
        with self.assertRaises(AuthorizationFailure):
            self.engine.set_oracle(ORACLE, "stk_me")

    def test_treasury_rotation_redirects_defi_share(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.engine.set_treasury(OWNER, "stk_new_treasury")
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.balance("stk_new_treasury"), units("5"))
        self.assertEqual(self.balance(TREASURY), 0)

    def test_recover_asset(self):
        self.engine.ledger.mint(ENGINE, units("3"))
        self.engine.recover_asset(OWNER, "USDS", OWNER, units("3"))
        self.assertEqual(self.balance(OWNER), units("3"))
        self.assertEqual(self.balance(ENGINE), 0)

    def test_recover_requires_owner(self):
        self.engine.ledger.mint(ENGINE, units("3"))
        with self.assertRaises(Unauthorized):
            self.engine.recover_asset(ALICE, "USDS", ALICE, units("3"))

    def test_recover_unknown_asset(self):
        with self.assertRaises(InvalidInput):
            self.engine.recover_asset(OWNER, "DOGE", OWNER, 1)

    def test_recover_more_than_held(self):
        with self.assertRaises(TransferFailed):
            self.engine.recover_asset(OWNER, "USDS", OWNER, units("1"))


class TestNoTreasurySink(EngineTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.engine = make_engine(clock=self.clock, treasury="")
        self.engine.register_creator(ZHARRIOR, "Zed")
        fund(self.engine, ALICE, "1000")

    def test_defi_share_stays_in_engine(self):
        cid = self.create()
        self.stake(cid, ALICE, "100")
        self.prove(cid)
        self.clock.advance(DAY)
        self.engine.claim_reward(ZHARRIOR, cid)
        self.assertEqual(self.balance(ENGINE), units("5"))


# --- Read-only queries ---

class TestQueries(EngineTestCase):
    def test_dispute_status_before_proof(self):
        cid = self.create()
        status = self.engine.get_dispute_status(cid)
        self.assertEqual(status["dispute_window_remaining"], 0)
        self.assertEqual(status["dispute_bps"], 0)
        self.assertEqual(status["resolution"], "open")

    def test_dispute_window_remaining(self):
        cid = self.create()
        self.stake(cid, ALICE, "10")
        self.prove(cid)
        self.clock.advance(HOUR)
        status = self.engine.get_dispute_status(cid)
        self.assertEqual(status["dispute_window_remaining"], DAY - HOUR)
        self.assertEqual(status["resolution"], "dispute_window_open")

    def test_resolution_progression(self):
        cid = self.create()
        self.stake(cid, ALICE, "10")
        self.prove(cid)
        self.engine.dispute_proof(ALICE, cid)
        c = self.engine.get_challenge(cid)
        self.assertEqual(self.engine.resolve(c), Resolution.DISPUTE_WINDOW_OPEN)
        self.clock.advance(DAY)
        self.assertEqual(self.engine.resolve(c), Resolution.CONTEST_WINDOW_OPEN)
        self.clock.advance(DAY + 1)
        self.assertEqual(self.engine.resolve(c), Resolution.FAILED_UNCONTESTED)

    def test_unknown_challenge(self):
        for call in (self.engine.get_challenge, self.engine.get_stakers,
                     self.engine.get_dispute_status, self.engine.can_contest):
            with self.assertRaises(ChallengeNotFound):
                call(42)

    def test_list_challenges(self):
        first = self.create()
        self.create()
        self.prove(first)
        active = self.engine.list_challenges("active")
        self.assertEqual(len(active), 1)
        with self.assertRaises(InvalidInput):
            self.engine.list_challenges("bogus")

    def test_events_filtered(self):
        first = self.create()
        second = self.create()
        self.stake(second, ALICE, "1")
        events = self.engine.get_events(challenge_id=second)
        self.assertEqual([e["kind"] for e in events], ["challenge_created", "stake_deposited"])
        since = events[0]["seq"]
        self.assertEqual(len(self.engine.get_events(since=since, challenge_id=second)), 1)
        self.assertEqual(self.engine.get_events(challenge_id=first)[0]["data"]["igniter"], IGNITER)


if __name__ == "__main__":
    unittest.main()
