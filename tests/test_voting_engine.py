"""
Voting Engine Test Suite

Coverage:
  - treasury rounds: open / close / reopen
  - quadratic staking under both cost bases, exact unstake refunds
  - proposal cancellation
  - round closure through the funding policy
  - rejections leave every ledger unchanged
  - concurrent callers against the credit cap
  - read accessors hand out views and copies, never live state
"""

import threading

import pytest

from qvledger.exceptions import (
    AlreadyOpenError,
    CapExceededError,
    CreditsLockedError,
    FundingRequiredError,
    GovernanceError,
    InsufficientFreeBalanceError,
    InsufficientVotesError,
    LockedCreditsExceededError,
    NotAParticipantError,
    NotOwnerError,
    NotProposerError,
    ProposalClosedError,
    UnknownProposalError,
    VotingClosedError,
    ZeroAmountError,
)
from qvledger.config import LedgerConfig
from qvledger.credits import LedgerView
from qvledger.governance import (
    FundingDecision,
    FundingPolicy,
    FundingState,
    RankedBudgetPolicy,
    StakeCostBasis,
    StakeReceipt,
    VotingEngine,
)
from qvledger.units import parse_currency


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

OWNER = "owner"
ALICE = "alice"
BOB = "bob"
CAROL = "carol"

PRICE = parse_currency("0.1")
ONE = parse_currency("1")


def snapshot(engine: VotingEngine) -> dict:
    """Everything a rejected operation must leave untouched."""
    d = engine.to_dict()
    for rnd in d["rounds"]:
        rnd.pop("openedAt")
        rnd.pop("closedAt")
    for p in d["proposals"]["proposals"].values():
        p.pop("createdAt")
    balances = {
        i: (engine.balance_of(i), engine.free_balance(i), engine.locked_balance(i))
        for i in (ALICE, BOB, CAROL) if engine.is_participant(i)
    }
    return {"engine": d, "balances": balances}


def with_proposal(engine, budget=parse_currency("0.2"), proposer=ALICE):
    return engine.create_proposal(proposer, "Fund Me", "Give me currency", budget)


# ══════════════════════════════════════════════════════════════════════
#  CONSTRUCTION / ACCESSORS
# ══════════════════════════════════════════════════════════════════════


class TestEngineAccessors:

    def test_initial_state(self, engine):
        assert engine.owner == OWNER
        assert engine.credit_price == PRICE
        assert engine.max_credits == 1000
        assert engine.total_supply == 0
        assert engine.participant_count == 0
        assert not engine.is_voting_open
        assert engine.voting_budget == 0
        assert engine.treasury_balance == 0
        assert engine.cost_basis == StakeCostBasis.PER_CALL
        assert isinstance(engine.funding_policy, RankedBudgetPolicy)

    def test_owner_required(self):
        with pytest.raises(GovernanceError, match="owner"):
            VotingEngine("", PRICE, 10)

    def test_from_config(self):
        cfg = LedgerConfig.from_dict({
            "ledger": {"credit_price": "0.5", "max_credits": 42, "owner": "treasurer"},
            "voting": {"stake_cost_basis": "cumulative"},
        })
        engine = VotingEngine.from_config(cfg)
        assert engine.owner == "treasurer"
        assert engine.credit_price == parse_currency("0.5")
        assert engine.max_credits == 42
        assert engine.cost_basis == StakeCostBasis.CUMULATIVE

    def test_ledger_handle(self, engine):
        engine.register(ALICE, ONE)
        assert engine.ledger.balance_of(ALICE) == 10
        assert engine.ledger.total_supply == engine.total_supply

    def test_unregistered_lookup(self, engine):
        assert engine.get_participant(ALICE) is None
        with pytest.raises(NotAParticipantError):
            engine.free_balance(ALICE)

    def test_repr(self, engine):
        assert "open=False" in repr(engine)


class TestReadOnlyAccess:

    def test_ledger_handle_is_read_only(self, engine):
        engine.register(ALICE, ONE)
        view = engine.ledger
        assert isinstance(view, LedgerView)
        for name in ("mint", "burn", "transfer_to_custody", "transfer_from_custody"):
            assert not hasattr(view, name)
        with pytest.raises(AttributeError):
            view._total_supply = 0
        assert view.spendable_of(ALICE) == 10
        assert view.custody_of(ALICE) == 0

    def test_ledger_view_tracks_engine(self, engine):
        view = engine.ledger
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)
        assert view.total_supply == 10
        assert view.custody_of(ALICE) == 4
        assert view.balance_of(ALICE) == 10

    def test_returned_proposal_is_detached(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)

        detached = engine.get_proposal(p.id)
        detached.add_votes(ALICE, 50)
        detached.votes_for[BOB] = 7
        detached.transition_to(FundingState.CANCELLED, "edited outside the engine")

        live = engine.get_proposal(p.id)
        assert live.total_votes == 2
        assert live.funding_state == FundingState.PENDING
        assert engine.votes_of(ALICE, p.id) == 2
        engine.check_invariants()

    def test_created_and_listed_proposals_are_detached(self, engine):
        engine.register(ALICE, ONE)
        created = with_proposal(engine)
        created.add_votes(ALICE, 3)
        engine.list_pending_funding()[0].add_votes(ALICE, 3)
        assert engine.get_proposal(created.id).total_votes == 0
        engine.check_invariants()

    def test_funding_policy_sees_copies(self):

        class Meddler(FundingPolicy):
            name = "meddler"

            def decide(self, pending, budget):
                for p in pending:
                    p.votes_for.clear()
                    p.requested_budget = 0
                return FundingDecision(rejected=[p.id for p in pending])

        engine = VotingEngine(OWNER, PRICE, 100, funding_policy=Meddler())
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)
        engine.open_voting(OWNER, ONE)
        engine.close_voting(OWNER)
        after = engine.get_proposal(p.id)
        assert after.funding_state == FundingState.REJECTED
        assert after.total_votes == 2
        assert after.requested_budget == parse_currency("0.2")
        engine.check_invariants()

    def test_returned_participant_is_detached(self, engine):
        engine.register(ALICE, ONE)
        engine.get_participant(ALICE).locked_balance = 9
        assert engine.locked_balance(ALICE) == 0
        assert engine.get_participant(ALICE).locked_balance == 0
        engine.check_invariants()


# ══════════════════════════════════════════════════════════════════════
#  PARTICIPANTS (through the engine)
# ══════════════════════════════════════════════════════════════════════


class TestEngineParticipants:

    def test_register_then_deregister_refunds_exactly(self, engine):
        receipt = engine.register(ALICE, ONE)
        assert receipt.credits_minted == 10
        assert receipt.refund == 0
        redemption = engine.deregister(ALICE)
        assert redemption.proceeds == ONE
        assert not engine.is_participant(ALICE)
        assert engine.total_supply == 0

    def test_register_past_cap(self):
        engine = VotingEngine(OWNER, PRICE, 5)
        with pytest.raises(CapExceededError):
            engine.register(ALICE, ONE)
        assert engine.total_supply == 0
        assert engine.participant_count == 0

    def test_participant_count(self, engine):
        engine.register(ALICE, ONE)
        engine.register(BOB, ONE)
        assert engine.participant_count == 2

    def test_buy_and_sell(self, engine):
        engine.register(ALICE, ONE)
        engine.buy_more(ALICE, parse_currency("0.5"))
        assert engine.balance_of(ALICE) == 15
        receipt = engine.sell(ALICE, 5)
        assert receipt.proceeds == parse_currency("0.5")
        assert engine.balance_of(ALICE) == 10

    def test_cannot_sell_locked_credits(self, engine):
        engine.register(ALICE, parse_currency("0.5"))
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)
        assert engine.free_balance(ALICE) == 1
        with pytest.raises(LockedCreditsExceededError):
            engine.sell(ALICE, 2)

    def test_cannot_deregister_while_staked(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 1)
        with pytest.raises(CreditsLockedError):
            engine.deregister(ALICE)
        engine.unstake(ALICE, p.id, 1)
        assert engine.deregister(ALICE).proceeds == ONE


# ══════════════════════════════════════════════════════════════════════
#  TREASURY
# ══════════════════════════════════════════════════════════════════════


class TestOpenVoting:

    def test_open_voting(self, engine):
        rnd = engine.open_voting(OWNER, ONE)
        assert rnd.number == 1
        assert engine.is_voting_open
        assert engine.voting_budget == ONE
        assert engine.treasury_balance == ONE

    def test_only_owner(self, engine):
        with pytest.raises(NotOwnerError):
            engine.open_voting(ALICE, ONE)
        assert not engine.is_voting_open

    def test_funding_required(self, engine):
        with pytest.raises(FundingRequiredError, match="Initial funding required"):
            engine.open_voting(OWNER, 0)

    def test_open_twice_keeps_first_budget(self, engine):
        engine.open_voting(OWNER, ONE)
        with pytest.raises(AlreadyOpenError, match="Voting already open"):
            engine.open_voting(OWNER, 2 * ONE)
        assert engine.voting_budget == ONE
        assert engine.treasury_balance == ONE


class TestCloseVoting:

    def test_close_requires_owner(self, engine):
        engine.open_voting(OWNER, ONE)
        with pytest.raises(NotOwnerError):
            engine.close_voting(ALICE)
        assert engine.is_voting_open

    def test_close_without_round(self, engine):
        with pytest.raises(VotingClosedError):
            engine.close_voting(OWNER)

    def test_close_funds_by_votes(self, engine):
        engine.register(ALICE, ONE)
        engine.register(BOB, ONE)
        p1 = engine.create_proposal(ALICE, "A", "", parse_currency("0.6"))
        p2 = engine.create_proposal(BOB, "B", "", parse_currency("0.5"))
        signal = engine.create_proposal(BOB, "S", "", 0)
        engine.open_voting(OWNER, ONE)
        engine.stake(ALICE, p2.id, 2)
        engine.stake(BOB, p1.id, 1)
        engine.stake(BOB, signal.id, 1)

        outcome = engine.close_voting(OWNER)
        assert outcome.funded == [p2.id]
        assert outcome.rejected == [p1.id]
        assert outcome.spent == parse_currency("0.5")
        assert outcome.leftover == parse_currency("0.5")
        assert outcome.policy == "ranked_budget"

        assert engine.get_proposal(p2.id).funding_state == FundingState.FUNDED
        assert engine.get_proposal(p1.id).funding_state == FundingState.REJECTED
        assert engine.get_proposal(signal.id).funding_state == FundingState.NON_FUNDING
        assert [p.id for p in engine.list_funded()] == [p2.id]
        assert engine.list_pending_funding() == []
        assert not engine.is_voting_open
        assert engine.voting_budget == 0
        assert engine.committed_funds == parse_currency("0.5")
        assert engine.treasury_balance == parse_currency("0.5")

    def test_votes_can_be_withdrawn_after_close(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.open_voting(OWNER, ONE)
        engine.stake(ALICE, p.id, 3)
        engine.close_voting(OWNER)
        receipt = engine.unstake(ALICE, p.id, 3)
        assert receipt.credits == 9
        assert engine.locked_balance(ALICE) == 0

    def test_reopen_after_close(self, engine):
        engine.open_voting(OWNER, ONE)
        engine.close_voting(OWNER)
        rnd = engine.open_voting(OWNER, parse_currency("0.3"))
        assert rnd.number == 2
        assert engine.voting_budget == parse_currency("0.3")
        assert engine.treasury_balance == parse_currency("1.3")
        assert len(engine.rounds) == 2
        assert engine.rounds[0].outcome is not None

    def test_custom_policy(self):
        class RejectAll(FundingPolicy):
            name = "reject_all"

            def decide(self, pending, budget):
                return FundingDecision(funded=[], rejected=[p.id for p in pending])

        engine = VotingEngine(OWNER, PRICE, 100, funding_policy=RejectAll())
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.open_voting(OWNER, ONE)
        outcome = engine.close_voting(OWNER)
        assert outcome.rejected == [p.id]
        assert outcome.policy == "reject_all"
        assert engine.treasury_balance == ONE

    def test_overspending_policy_is_refused(self):
        class FundAll(FundingPolicy):
            name = "fund_all"

            def decide(self, pending, budget):
                return FundingDecision(funded=[p.id for p in pending])

        engine = VotingEngine(OWNER, PRICE, 100, funding_policy=FundAll())
        engine.register(ALICE, ONE)
        p = engine.create_proposal(ALICE, "Big", "", 2 * ONE)
        engine.open_voting(OWNER, ONE)
        with pytest.raises(GovernanceError, match="overspent"):
            engine.close_voting(OWNER)
        assert engine.is_voting_open
        assert engine.get_proposal(p.id).funding_state == FundingState.PENDING

    def test_incomplete_policy_is_refused(self):
        class ForgetAll(FundingPolicy):
            name = "forget_all"

            def decide(self, pending, budget):
                return FundingDecision()

        engine = VotingEngine(OWNER, PRICE, 100, funding_policy=ForgetAll())
        engine.register(ALICE, ONE)
        with_proposal(engine)
        engine.open_voting(OWNER, ONE)
        with pytest.raises(GovernanceError, match="exactly once"):
            engine.close_voting(OWNER)


# ══════════════════════════════════════════════════════════════════════
#  PROPOSALS
# ══════════════════════════════════════════════════════════════════════


class TestEngineProposals:

    def test_create_requires_participant(self, engine):
        with pytest.raises(NotAParticipantError):
            with_proposal(engine)

    def test_pending_listing(self, engine):
        engine.register(ALICE, ONE)
        fund = with_proposal(engine)
        engine.create_proposal(ALICE, "Signal", "Just signaling", 0)
        assert [p.id for p in engine.list_pending_funding()] == [fund.id]
        assert len(engine.list_signaling()) == 1

    def test_proposal_info(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        info = engine.proposal_info(p.id)
        assert info["title"] == "Fund Me"
        assert info["fundingState"] == "PENDING"
        with pytest.raises(UnknownProposalError):
            engine.proposal_info(99)


class TestCancelProposal:

    def test_cancel_returns_all_votes(self, engine):
        engine.register(ALICE, ONE)
        engine.register(BOB, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)
        engine.stake(BOB, p.id, 3)
        engine.stake(BOB, p.id, 1)

        receipts = engine.cancel_proposal(ALICE, p.id)
        assert {r.identity: r.credits for r in receipts} == {ALICE: 4, BOB: 10}
        assert engine.locked_balance(ALICE) == 0
        assert engine.locked_balance(BOB) == 0
        assert engine.get_proposal(p.id).funding_state == FundingState.CANCELLED
        assert engine.get_proposal(p.id).total_votes == 0
        assert engine.list_pending_funding() == []
        engine.check_invariants()

    def test_only_proposer_can_cancel(self, engine):
        engine.register(ALICE, ONE)
        engine.register(BOB, ONE)
        p = with_proposal(engine)
        with pytest.raises(NotProposerError):
            engine.cancel_proposal(BOB, p.id)

    def test_signaling_cannot_be_cancelled(self, engine):
        engine.register(ALICE, ONE)
        p = engine.create_proposal(ALICE, "Signal", "", 0)
        with pytest.raises(ProposalClosedError, match="NON_FUNDING"):
            engine.cancel_proposal(ALICE, p.id)

    def test_closed_proposal_cannot_be_cancelled(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.open_voting(OWNER, ONE)
        engine.close_voting(OWNER)
        with pytest.raises(ProposalClosedError, match="FUNDED"):
            engine.cancel_proposal(ALICE, p.id)

    def test_no_stake_on_cancelled(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.cancel_proposal(ALICE, p.id)
        with pytest.raises(ProposalClosedError):
            engine.stake(ALICE, p.id, 1)


# ══════════════════════════════════════════════════════════════════════
#  STAKING
# ══════════════════════════════════════════════════════════════════════


class TestStakePerCall:

    def test_stake_locks_square(self, engine):
        engine.register(ALICE, parse_currency("0.5"))
        p = with_proposal(engine)
        receipt = engine.stake(ALICE, p.id, 2)
        assert isinstance(receipt, StakeReceipt)
        assert receipt.credits == 4
        assert receipt.proposal_total_votes == 2
        assert receipt.locked_balance == 4
        assert receipt.free_balance == 1
        assert engine.balance_of(ALICE) == 5
        assert engine.votes_of(ALICE, p.id) == 2
        assert engine.total_supply == 5

    def test_second_stake_prices_its_own_votes(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)
        assert engine.stake_cost(ALICE, p.id, 1) == 1
        receipt = engine.stake(ALICE, p.id, 1)
        assert receipt.credits == 1
        assert engine.locked_balance(ALICE) == 5
        assert engine.votes_of(ALICE, p.id) == 3

    def test_stake_on_signaling_proposal(self, engine):
        engine.register(ALICE, ONE)
        p = engine.create_proposal(ALICE, "Signal", "", 0)
        engine.stake(ALICE, p.id, 3)
        assert engine.get_proposal(p.id).total_votes == 3

    def test_stake_without_open_round(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        assert not engine.is_voting_open
        assert engine.stake(ALICE, p.id, 1).credits == 1

    def test_insufficient_free_balance(self, engine):
        engine.register(ALICE, parse_currency("0.5"))
        p = with_proposal(engine)
        before = snapshot(engine)
        with pytest.raises(InsufficientFreeBalanceError, match="cost 9 credits"):
            engine.stake(ALICE, p.id, 3)
        assert snapshot(engine) == before

    def test_zero_votes(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        with pytest.raises(ZeroAmountError):
            engine.stake(ALICE, p.id, 0)

    def test_unknown_proposal(self, engine):
        engine.register(ALICE, ONE)
        with pytest.raises(UnknownProposalError):
            engine.stake(ALICE, 42, 1)

    def test_non_participant(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        with pytest.raises(NotAParticipantError):
            engine.stake(BOB, p.id, 1)


class TestUnstake:

    def test_round_trip_restores_state(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        before = snapshot(engine)
        engine.stake(ALICE, p.id, 3)
        engine.unstake(ALICE, p.id, 3)
        assert snapshot(engine) == before

    def test_partial_unstake_newest_lot_first(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 2)    # lot of 2 → 4 credits
        engine.stake(ALICE, p.id, 1)    # lot of 1 → 1 credit
        assert engine.unstake(ALICE, p.id, 1).credits == 1
        assert engine.unstake(ALICE, p.id, 1).credits == 3
        assert engine.unstake(ALICE, p.id, 1).credits == 1
        assert engine.locked_balance(ALICE) == 0
        engine.check_invariants()

    def test_unstake_more_than_held(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 1)
        before = snapshot(engine)
        with pytest.raises(InsufficientVotesError):
            engine.unstake(ALICE, p.id, 2)
        assert snapshot(engine) == before

    def test_unstake_zero(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        with pytest.raises(ZeroAmountError):
            engine.unstake(ALICE, p.id, 0)


class TestStakeCumulative:

    def test_cumulative_pricing(self, cumulative_engine):
        engine = cumulative_engine
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        assert engine.stake(ALICE, p.id, 2).credits == 4
        assert engine.stake_cost(ALICE, p.id, 1) == 5
        assert engine.stake(ALICE, p.id, 1).credits == 5
        assert engine.locked_balance(ALICE) == 9

    def test_cumulative_unstake_mirrors_stake(self, cumulative_engine):
        engine = cumulative_engine
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        engine.stake(ALICE, p.id, 3)
        assert engine.unstake(ALICE, p.id, 1).credits == 5
        assert engine.unstake(ALICE, p.id, 2).credits == 4
        assert engine.locked_balance(ALICE) == 0
        engine.check_invariants()

    def test_stake_costs_are_per_proposal(self, cumulative_engine):
        engine = cumulative_engine
        engine.register(ALICE, ONE)
        p1 = with_proposal(engine)
        p2 = with_proposal(engine)
        engine.stake(ALICE, p1.id, 2)
        assert engine.stake_cost(ALICE, p2.id, 2) == 4


# ══════════════════════════════════════════════════════════════════════
#  CONCURRENCY
# ══════════════════════════════════════════════════════════════════════


class TestConcurrency:

    def test_concurrent_registrations_respect_cap(self):
        engine = VotingEngine(OWNER, PRICE, 50)
        results = []
        results_lock = threading.Lock()

        def worker(identity):
            try:
                engine.register(identity, ONE)
                outcome = "ok"
            except CapExceededError:
                outcome = "cap"
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(f"user{i}",)) for i in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 5
        assert results.count("cap") == 7
        assert engine.total_supply == 50
        engine.check_invariants()

    def test_concurrent_stakes_never_overlock(self, engine):
        engine.register(ALICE, ONE)
        p = with_proposal(engine)
        errors = []

        def worker():
            try:
                engine.stake(ALICE, p.id, 2)
            except InsufficientFreeBalanceError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 10 credits buy at most two 2-vote lots
        assert engine.locked_balance(ALICE) == 8
        assert len(errors) == 3
        engine.check_invariants()


# ══════════════════════════════════════════════════════════════════════
#  END-TO-END
# ══════════════════════════════════════════════════════════════════════


class TestEndToEnd:

    def test_full_round(self, engine):
        engine.open_voting(OWNER, ONE)
        engine.register(ALICE, parse_currency("1.05"))
        engine.register(BOB, parse_currency("0.5"))
        fund = engine.create_proposal(ALICE, "Fund Me", "Give me currency", parse_currency("0.2"))
        engine.create_proposal(BOB, "Signal", "No funding", 0)
        assert len(engine.list_pending_funding()) == 1

        engine.stake(BOB, fund.id, 2)
        with pytest.raises(LockedCreditsExceededError):
            engine.sell(BOB, 2)

        outcome = engine.close_voting(OWNER)
        assert outcome.funded == [fund.id]

        engine.unstake(BOB, fund.id, 2)
        assert engine.deregister(BOB).proceeds == parse_currency("0.5")
        assert engine.participant_count == 1
        engine.check_invariants()

        d = engine.to_dict()
        assert d["costBasis"] == "per_call"
        assert d["fundingPolicy"] == "ranked_budget"
        assert d["rounds"][0]["outcome"]["funded"] == [fund.id]
