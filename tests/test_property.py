"""
Property-based tests for the QV ledger using Hypothesis.

Checks the conservation laws under generated inputs and under random
interleavings of register / buy / sell / stake / unstake / cancel.
"""

from hypothesis import given, settings, strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, precondition, rule

import pytest

from qvledger.credits import CreditLedger
from qvledger.exceptions import (
    CapExceededError,
    InsufficientBalanceError,
    LockedCreditsExceededError,
    QVLedgerError,
)
from qvledger.governance import StakeCostBasis, VotingEngine
from qvledger.units import parse_currency


OWNER = "owner"
PRICE = parse_currency("0.1")
IDENTITIES = ["alice", "bob", "carol"]

payments = st.integers(min_value=PRICE, max_value=50 * PRICE)
bases = st.sampled_from(list(StakeCostBasis))


class TestConservationProperties:
    """Arithmetic laws of the ledger."""

    @given(paid=payments, cap=st.integers(min_value=0, max_value=100))
    def test_register_mints_quotient_and_refunds_remainder(self, paid, cap):
        engine = VotingEngine(OWNER, PRICE, cap)
        before = engine.total_supply
        try:
            receipt = engine.register("alice", paid)
        except CapExceededError:
            assert paid // PRICE > cap
            assert engine.total_supply == before
            return
        assert receipt.credits_minted == paid // PRICE
        assert receipt.refund == paid % PRICE
        assert engine.total_supply == before + receipt.credits_minted
        engine.check_invariants()

    @given(ops=st.lists(
        st.tuples(
            st.sampled_from(["mint", "burn"]),
            st.sampled_from(IDENTITIES),
            st.integers(min_value=0, max_value=40),
        ),
        max_size=40,
    ))
    def test_supply_matches_balances(self, ops):
        ledger = CreditLedger(100)
        for kind, holder, amount in ops:
            try:
                getattr(ledger, kind)(holder, amount)
            except (CapExceededError, InsufficientBalanceError):
                pass
            assert ledger.total_supply == sum(ledger.balance_of(h) for h in IDENTITIES)
            assert ledger.total_supply <= ledger.max_credits

    @given(
        basis=bases,
        prior=st.lists(st.integers(min_value=1, max_value=3), max_size=3),
        votes=st.integers(min_value=1, max_value=4),
    )
    def test_stake_unstake_round_trip(self, basis, prior, votes):
        engine = VotingEngine(OWNER, PRICE, 1000, cost_basis=basis)
        engine.register("alice", 30 * parse_currency("1"))
        pid = engine.create_proposal("alice", "P", "", PRICE).id
        for v in prior:
            engine.stake("alice", pid, v)

        free = engine.free_balance("alice")
        locked = engine.locked_balance("alice")
        tally = engine.get_proposal(pid).total_votes

        staked = engine.stake("alice", pid, votes)
        released = engine.unstake("alice", pid, votes)

        assert released.credits == staked.credits
        assert engine.free_balance("alice") == free
        assert engine.locked_balance("alice") == locked
        assert engine.get_proposal(pid).total_votes == tally
        engine.check_invariants()

    @given(
        credits=st.integers(min_value=1, max_value=50),
        votes=st.integers(min_value=0, max_value=7),
        extra=st.integers(min_value=1, max_value=20),
    )
    def test_sell_never_exceeds_free_balance(self, credits, votes, extra):
        engine = VotingEngine(OWNER, PRICE, 1000)
        engine.register("alice", credits * PRICE)
        pid = engine.create_proposal("alice", "P", "", 0).id
        if votes and votes * votes <= credits:
            engine.stake("alice", pid, votes)

        free = engine.free_balance("alice")
        with pytest.raises(LockedCreditsExceededError):
            engine.sell("alice", free + extra)
        assert engine.free_balance("alice") == free


# ══════════════════════════════════════════════════════════════════════
#  STATEFUL
# ══════════════════════════════════════════════════════════════════════


class LedgerStateMachine(RuleBasedStateMachine):
    """Random interleavings must never break an accounting invariant."""

    def __init__(self):
        super().__init__()
        self.engine = VotingEngine(OWNER, PRICE, 200, cost_basis=StakeCostBasis.PER_CALL)
        self.engine.open_voting(OWNER, parse_currency("5"))
        self.proposals = []

    def _attempt(self, operation, *args):
        """Run an operation; a rejection must leave the ledger untouched."""
        before = (self.engine.total_supply, self.engine.to_dict()["proposals"]["pendingFunding"])
        try:
            operation(*args)
        except QVLedgerError:
            after = (self.engine.total_supply, self.engine.to_dict()["proposals"]["pendingFunding"])
            assert after == before

    @rule(who=st.sampled_from(IDENTITIES), paid=payments)
    def register(self, who, paid):
        self._attempt(self.engine.register, who, paid)

    @rule(who=st.sampled_from(IDENTITIES))
    def deregister(self, who):
        self._attempt(self.engine.deregister, who)

    @rule(who=st.sampled_from(IDENTITIES), paid=payments)
    def buy_more(self, who, paid):
        self._attempt(self.engine.buy_more, who, paid)

    @rule(who=st.sampled_from(IDENTITIES), amount=st.integers(min_value=0, max_value=30))
    def sell(self, who, amount):
        self._attempt(self.engine.sell, who, amount)

    @rule(who=st.sampled_from(IDENTITIES), budget=st.integers(min_value=0, max_value=3))
    def create_proposal(self, who, budget):
        try:
            proposal = self.engine.create_proposal(who, "P", "", budget * PRICE)
        except QVLedgerError:
            return
        self.proposals.append(proposal.id)

    @precondition(lambda self: self.proposals)
    @rule(who=st.sampled_from(IDENTITIES), index=st.integers(min_value=0),
          votes=st.integers(min_value=0, max_value=5))
    def stake(self, who, index, votes):
        pid = self.proposals[index % len(self.proposals)]
        self._attempt(self.engine.stake, who, pid, votes)

    @precondition(lambda self: self.proposals)
    @rule(who=st.sampled_from(IDENTITIES), index=st.integers(min_value=0),
          votes=st.integers(min_value=0, max_value=5))
    def unstake(self, who, index, votes):
        pid = self.proposals[index % len(self.proposals)]
        self._attempt(self.engine.unstake, who, pid, votes)

    @precondition(lambda self: self.proposals)
    @rule(who=st.sampled_from(IDENTITIES), index=st.integers(min_value=0))
    def cancel(self, who, index):
        pid = self.proposals[index % len(self.proposals)]
        self._attempt(self.engine.cancel_proposal, who, pid)

    @invariant()
    def accounting_is_consistent(self):
        self.engine.check_invariants()

    @invariant()
    def locked_never_exceeds_balance(self):
        for who in IDENTITIES:
            if self.engine.is_participant(who):
                assert 0 <= self.engine.locked_balance(who) <= self.engine.balance_of(who)


TestLedgerStateMachine = LedgerStateMachine.TestCase
TestLedgerStateMachine.settings = settings(max_examples=50, stateful_step_count=30)
