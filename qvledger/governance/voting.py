"""
Quadratic Voting Engine

Implements:
  - Treasury: the owner opens a round with a currency budget
  - Staking: participants lock v² credits to buy v votes on a proposal
  - Unstaking: the exact inverse, returning the credits a stake locked
  - Round closure through a swappable FundingPolicy
  - Proposal cancellation by its proposer (all votes returned)

The engine is the only writer of the credit ledger, the participant
registry and the proposal registry. Every public operation runs under a
single re-entrant lock and validates completely before it mutates, so an
operation either applies all of its effects or none of them.
"""

import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Hashable, List, Optional

from ..logger import get_logger
from ..credits.ledger import CreditLedger, LedgerView
from ..exceptions import (
    AlreadyOpenError,
    FundingRequiredError,
    GovernanceError,
    InsufficientFreeBalanceError,
    InsufficientVotesError,
    NotOwnerError,
    NotProposerError,
    ProposalClosedError,
    VotingClosedError,
    ZeroAmountError,
)
from ..participants.registry import (
    CreditPurchase,
    CreditRedemption,
    Participant,
    ParticipantRegistry,
)
from ..units import require_amount
from .funding import FundingPolicy, RankedBudgetPolicy, RoundOutcome
from .proposals import FundingState, Proposal, ProposalRegistry

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  COST MODEL
# ══════════════════════════════════════════════════════════════════════

class StakeCostBasis(str, Enum):
    """How repeated stakes on one proposal are priced."""
    PER_CALL = "per_call"         # each call costs votes²
    CUMULATIVE = "cumulative"     # (prior + votes)² − prior²


def quadratic_cost(votes: int) -> int:
    """Credits needed to hold *votes* votes in a single lot."""
    return votes * votes


def _release(lots: List[int], votes: int) -> tuple:
    """
    Withdraw *votes* from stake lots, newest first.

    Every lot of L votes locks exactly L² credits, so taking t votes from
    it frees L² − (L − t)². Returns (credits_freed, remaining_lots).
    """
    remaining_lots = list(lots)
    freed = 0
    while votes:
        lot = remaining_lots.pop()
        take = min(lot, votes)
        freed += quadratic_cost(lot) - quadratic_cost(lot - take)
        if lot > take:
            remaining_lots.append(lot - take)
        votes -= take
    return freed, remaining_lots


# ══════════════════════════════════════════════════════════════════════
#  ROUND / RECEIPTS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class VotingRound:
    """A funding round opened by the owner."""
    number: int
    budget: int
    is_open: bool = True
    opened_at: float = field(default_factory=time.time)
    closed_at: Optional[float] = None
    outcome: Optional[RoundOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.number,
            "budget": self.budget,
            "isOpen": self.is_open,
            "openedAt": self.opened_at,
            "closedAt": self.closed_at,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }


@dataclass(frozen=True)
class StakeReceipt:
    """Result of a stake or unstake call."""
    kind: str               # "stake" / "unstake"
    identity: Hashable
    proposal_id: int
    votes: int
    credits: int            # locked by a stake, released by an unstake
    proposal_total_votes: int
    free_balance: int
    locked_balance: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "identity": str(self.identity),
            "proposalId": self.proposal_id,
            "votes": self.votes,
            "credits": self.credits,
            "proposalTotalVotes": self.proposal_total_votes,
            "freeBalance": self.free_balance,
            "lockedBalance": self.locked_balance,
        }


# ══════════════════════════════════════════════════════════════════════
#  VOTING ENGINE
# ══════════════════════════════════════════════════════════════════════

class VotingEngine:
    """
    Quadratic voting-and-funding ledger.

    Responsibilities:
        - Participant lifecycle (register / deregister / buy / sell)
        - Proposal creation and listings
        - Treasury rounds (open / close)
        - Quadratic staking and unstaking
    """

    def __init__(
        self,
        owner: Hashable,
        credit_price: int,
        max_credits: int,
        *,
        cost_basis: StakeCostBasis = StakeCostBasis.PER_CALL,
        funding_policy: Optional[FundingPolicy] = None,
        symbol: str = "QVC",
    ):
        """
        Args:
            owner:          Identity allowed to open and close rounds
            credit_price:   Currency base units per credit
            max_credits:    Hard cap on credit supply
            cost_basis:     Pricing of repeated stakes on one proposal
            funding_policy: Round-closure policy (RankedBudgetPolicy by default)
        """
        if owner is None or owner == "":
            raise GovernanceError("An owner identity is required")

        self._owner = owner
        self._cost_basis = StakeCostBasis(cost_basis)
        self._funding_policy = funding_policy or RankedBudgetPolicy()
        self._lock = threading.RLock()

        self._ledger = CreditLedger(max_credits, symbol=symbol)
        self._participants = ParticipantRegistry(self._ledger, credit_price)
        self._proposals = ProposalRegistry(is_participant=self._participants.is_participant)

        # proposal_id → identity → stake lots (votes per lot)
        self._lots: Dict[int, Dict[Hashable, List[int]]] = {}

        self._rounds: List[VotingRound] = []
        self._treasury = 0      # currency received through open_voting
        self._committed = 0     # treasury currency earmarked for funded proposals

        logger.info(
            f"Voting engine ready: owner={owner}, price={credit_price}, "
            f"cap={max_credits} credits, basis={self._cost_basis.value}"
        )

    @classmethod
    def from_config(cls, config, funding_policy: Optional[FundingPolicy] = None) -> "VotingEngine":
        """Build an engine from a validated LedgerConfig."""
        config.validate()
        return cls(
            owner=config.ledger.owner,
            credit_price=config.ledger.credit_price,
            max_credits=config.ledger.max_credits,
            cost_basis=StakeCostBasis(config.voting.stake_cost_basis),
            funding_policy=funding_policy,
        )

    # ── Read accessors ────────────────────────────────────────────────

    @property
    def owner(self) -> Hashable:
        return self._owner

    @property
    def cost_basis(self) -> StakeCostBasis:
        return self._cost_basis

    @property
    def funding_policy(self) -> FundingPolicy:
        return self._funding_policy

    @property
    def ledger(self) -> LedgerView:
        """Read-only view of the credit ledger."""
        return LedgerView(self._ledger)

    @property
    def credit_price(self) -> int:
        return self._participants.credit_price

    @property
    def max_credits(self) -> int:
        return self._ledger.max_credits

    @property
    def total_supply(self) -> int:
        with self._lock:
            return self._ledger.total_supply

    @property
    def participant_count(self) -> int:
        with self._lock:
            return self._participants.count

    @property
    def current_round(self) -> Optional[VotingRound]:
        with self._lock:
            if self._rounds and self._rounds[-1].is_open:
                return self._rounds[-1]
            return None

    @property
    def rounds(self) -> List[VotingRound]:
        with self._lock:
            return list(self._rounds)

    @property
    def is_voting_open(self) -> bool:
        return self.current_round is not None

    @property
    def voting_budget(self) -> int:
        """Budget of the open round (0 when no round is open)."""
        rnd = self.current_round
        return rnd.budget if rnd else 0

    @property
    def treasury_balance(self) -> int:
        """Treasury currency not yet earmarked for funded proposals."""
        with self._lock:
            return self._treasury - self._committed

    @property
    def committed_funds(self) -> int:
        with self._lock:
            return self._committed

    def get_participant(self, identity: Hashable) -> Optional[Participant]:
        with self._lock:
            participant = self._participants.get(identity)
            return replace(participant) if participant is not None else None

    def is_participant(self, identity: Hashable) -> bool:
        with self._lock:
            return self._participants.is_participant(identity)

    def balance_of(self, identity: Hashable) -> int:
        with self._lock:
            return self._ledger.balance_of(identity)

    def free_balance(self, identity: Hashable) -> int:
        with self._lock:
            return self._participants.free_balance(identity)

    def locked_balance(self, identity: Hashable) -> int:
        with self._lock:
            return self._participants.locked_balance(identity)

    def votes_of(self, identity: Hashable, proposal_id: int) -> int:
        with self._lock:
            return self._proposals.require(proposal_id).votes_of(identity)

    # ── Participants ──────────────────────────────────────────────────

    def register(self, identity: Hashable, paid: int) -> CreditPurchase:
        with self._lock:
            return self._participants.register(identity, paid)

    def deregister(self, identity: Hashable) -> CreditRedemption:
        with self._lock:
            return self._participants.deregister(identity)

    def buy_more(self, identity: Hashable, paid: int) -> CreditPurchase:
        with self._lock:
            return self._participants.buy_more(identity, paid)

    def sell(self, identity: Hashable, amount: int) -> CreditRedemption:
        with self._lock:
            return self._participants.sell(identity, amount)

    # ── Treasury ──────────────────────────────────────────────────────

    def _require_owner(self, caller: Hashable) -> None:
        if caller != self._owner:
            raise NotOwnerError(f"{caller} is not the owner")

    def open_voting(self, caller: Hashable, amount: int) -> VotingRound:
        """
        Open a round with *amount* currency as its budget.

        Raises NotOwnerError, FundingRequiredError, AlreadyOpenError.
        """
        with self._lock:
            self._require_owner(caller)
            require_amount(amount, "funding")
            if amount == 0:
                raise FundingRequiredError("Initial funding required")
            if self._rounds and self._rounds[-1].is_open:
                raise AlreadyOpenError("Voting already open")

            rnd = VotingRound(number=len(self._rounds) + 1, budget=amount)
            self._rounds.append(rnd)
            self._treasury += amount

            logger.info(f"Round {rnd.number} opened with budget={amount}")
            return rnd

    def close_voting(self, caller: Hashable) -> RoundOutcome:
        """
        Close the open round, funding proposals chosen by the funding policy.

        Raises NotOwnerError, VotingClosedError.
        """
        with self._lock:
            self._require_owner(caller)
            rnd = self.current_round
            if rnd is None:
                raise VotingClosedError("No voting round is open")

            pending = [p.snapshot() for p in self._proposals.list_pending_funding()]
            decision = self._funding_policy.decide(pending, rnd.budget)
            spent = self._check_decision(pending, decision, rnd.budget)

            for pid in decision.funded:
                self._proposals.require(pid).transition_to(
                    FundingState.FUNDED, f"Funded by round {rnd.number}"
                )
            for pid in decision.rejected:
                self._proposals.require(pid).transition_to(
                    FundingState.REJECTED, f"Not funded by round {rnd.number}"
                )

            outcome = RoundOutcome(
                round_number=rnd.number,
                budget=rnd.budget,
                funded=list(decision.funded),
                rejected=list(decision.rejected),
                spent=spent,
                policy=self._funding_policy.name,
            )
            self._committed += spent
            rnd.is_open = False
            rnd.closed_at = time.time()
            rnd.outcome = outcome

            logger.info(
                f"Round {rnd.number} closed: funded={outcome.funded}, "
                f"rejected={outcome.rejected}, leftover={outcome.leftover}"
            )
            return outcome

    @staticmethod
    def _check_decision(pending: List[Proposal], decision, budget: int) -> int:
        """Validate a policy decision before applying any of it."""
        expected = sorted(p.id for p in pending)
        decided = sorted(list(decision.funded) + list(decision.rejected))
        if decided != expected:
            raise GovernanceError(
                f"Funding policy must decide every pending proposal exactly once "
                f"(pending={expected}, decided={decided})"
            )
        by_id = {p.id: p for p in pending}
        spent = sum(by_id[pid].requested_budget for pid in decision.funded)
        if spent > budget:
            raise GovernanceError(f"Funding policy overspent: {spent} > budget {budget}")
        return spent

    # ── Proposals ─────────────────────────────────────────────────────

    def create_proposal(
        self,
        caller: Hashable,
        title: str,
        description: str,
        requested_budget: int,
        target_action: Any = None,
    ) -> Proposal:
        with self._lock:
            proposal = self._proposals.create(
                caller, title, description, requested_budget, target_action
            )
            self._lots[proposal.id] = {}
            return proposal.snapshot()

    def get_proposal(self, proposal_id: int) -> Proposal:
        with self._lock:
            return self._proposals.require(proposal_id).snapshot()

    def list_pending_funding(self) -> List[Proposal]:
        with self._lock:
            return [p.snapshot() for p in self._proposals.list_pending_funding()]

    def list_signaling(self) -> List[Proposal]:
        with self._lock:
            return [p.snapshot() for p in self._proposals.list_signaling()]

    def list_funded(self) -> List[Proposal]:
        with self._lock:
            return [p.snapshot() for p in self._proposals.list_funded()]

    def proposal_info(self, proposal_id: int) -> Dict[str, Any]:
        with self._lock:
            return self._proposals.require(proposal_id).to_dict()

    def cancel_proposal(self, caller: Hashable, proposal_id: int) -> List[StakeReceipt]:
        """
        Cancel a PENDING funding proposal, returning every voter's locked
        credits. Only the proposer may cancel.
        """
        with self._lock:
            self._participants.require(caller)
            proposal = self._proposals.require(proposal_id)
            if caller != proposal.proposer:
                raise NotProposerError(
                    f"Only {proposal.proposer} may cancel proposal #{proposal_id}"
                )
            if proposal.funding_state != FundingState.PENDING:
                raise ProposalClosedError(
                    f"Proposal #{proposal_id} is {proposal.funding_state.name} "
                    f"and cannot be cancelled"
                )

            receipts = [
                self._withdraw(voter, proposal, proposal.votes_of(voter))
                for voter in list(proposal.votes_for)
            ]
            proposal.transition_to(FundingState.CANCELLED, f"Cancelled by {caller}")
            return receipts

    # ── Staking ───────────────────────────────────────────────────────

    def stake_cost(self, identity: Hashable, proposal_id: int, votes: int) -> int:
        """Credits a stake of *votes* would lock right now."""
        with self._lock:
            self._proposals.require(proposal_id)
            require_amount(votes, "votes")
            lots = self._lots.get(proposal_id, {}).get(identity, [])
            return self._cost(lots, votes)

    def _cost(self, lots: List[int], votes: int) -> int:
        if self._cost_basis == StakeCostBasis.CUMULATIVE:
            prior = sum(lots)
            return quadratic_cost(prior + votes) - quadratic_cost(prior)
        return quadratic_cost(votes)

    def stake(self, identity: Hashable, proposal_id: int, votes: int) -> StakeReceipt:
        """
        Buy *votes* votes on a proposal by locking their quadratic cost.

        Raises NotAParticipantError, UnknownProposalError, ZeroAmountError,
        ProposalClosedError, InsufficientFreeBalanceError.
        """
        with self._lock:
            participant = self._participants.require(identity)
            proposal = self._proposals.require(proposal_id)
            require_amount(votes, "votes")
            if votes == 0:
                raise ZeroAmountError("Cannot stake zero votes")
            if not proposal.accepts_votes:
                raise ProposalClosedError(
                    f"Proposal #{proposal_id} is {proposal.funding_state.name}"
                )

            by_voter = self._lots.setdefault(proposal_id, {})
            lots = by_voter.get(identity, [])
            cost = self._cost(lots, votes)
            free = self._ledger.balance_of(identity) - participant.locked_balance
            if cost > free:
                raise InsufficientFreeBalanceError(
                    f"{votes} votes cost {cost} credits; {identity} has {free} free"
                )

            self._participants.lock(identity, cost)
            proposal.add_votes(identity, votes)
            if self._cost_basis == StakeCostBasis.CUMULATIVE:
                by_voter[identity] = [sum(lots) + votes]
            else:
                by_voter[identity] = lots + [votes]

            logger.info(
                f"Stake identity={identity} → Proposal #{proposal_id}: "
                f"{votes} votes for {cost} credits"
            )
            return self._receipt("stake", identity, proposal, votes, cost)

    def unstake(self, identity: Hashable, proposal_id: int, votes: int) -> StakeReceipt:
        """
        Withdraw *votes* votes from a proposal, unlocking the credits
        those votes locked.

        Raises NotAParticipantError, UnknownProposalError, ZeroAmountError,
        InsufficientVotesError.
        """
        with self._lock:
            self._participants.require(identity)
            proposal = self._proposals.require(proposal_id)
            require_amount(votes, "votes")
            if votes == 0:
                raise ZeroAmountError("Cannot unstake zero votes")
            held = proposal.votes_of(identity)
            if votes > held:
                raise InsufficientVotesError(
                    f"{identity} holds {held} votes on proposal #{proposal_id}, "
                    f"cannot withdraw {votes}"
                )
            return self._withdraw(identity, proposal, votes)

    def _withdraw(self, identity: Hashable, proposal: Proposal, votes: int) -> StakeReceipt:
        by_voter = self._lots[proposal.id]
        freed, remaining = _release(by_voter.get(identity, []), votes)

        self._participants.unlock(identity, freed)
        proposal.remove_votes(identity, votes)
        if remaining:
            by_voter[identity] = remaining
        else:
            by_voter.pop(identity, None)

        logger.info(
            f"Unstake identity={identity} <-- Proposal #{proposal.id}: "
            f"{votes} votes, {freed} credits released"
        )
        return self._receipt("unstake", identity, proposal, votes, freed)

    def _receipt(self, kind: str, identity: Hashable, proposal: Proposal,
                 votes: int, credits: int) -> StakeReceipt:
        return StakeReceipt(
            kind=kind,
            identity=identity,
            proposal_id=proposal.id,
            votes=votes,
            credits=credits,
            proposal_total_votes=proposal.total_votes,
            free_balance=self._participants.free_balance(identity),
            locked_balance=self._participants.locked_balance(identity),
        )

    # ── Integrity ─────────────────────────────────────────────────────

    def check_invariants(self) -> None:
        """Raise AssertionError if any accounting invariant is broken."""
        with self._lock:
            self._ledger.check_invariants()
            self._participants.check_invariants()

            locked_by_lots: Dict[Hashable, int] = {}
            for proposal in self._proposals:
                by_voter = self._lots.get(proposal.id, {})
                for voter, lots in by_voter.items():
                    assert sum(lots) == proposal.votes_of(voter), (
                        f"proposal #{proposal.id}: lots {lots} != votes "
                        f"{proposal.votes_of(voter)} for {voter}"
                    )
                    locked_by_lots[voter] = locked_by_lots.get(voter, 0) + sum(
                        quadratic_cost(lot) for lot in lots
                    )
                assert set(by_voter) == set(proposal.votes_for)

            for identity in self._participants.identities():
                assert locked_by_lots.get(identity, 0) == self._participants.locked_balance(identity), (
                    f"{identity}: staked lots lock {locked_by_lots.get(identity, 0)} credits, "
                    f"registry says {self._participants.locked_balance(identity)}"
                )

            assert 0 <= self._committed <= self._treasury

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            rnd = self.current_round
            return {
                "owner": str(self._owner),
                "creditPrice": self.credit_price,
                "maxCredits": self.max_credits,
                "totalSupply": self._ledger.total_supply,
                "participantCount": self._participants.count,
                "costBasis": self._cost_basis.value,
                "fundingPolicy": self._funding_policy.name,
                "isVotingOpen": rnd is not None,
                "votingBudget": rnd.budget if rnd else 0,
                "treasuryBalance": self._treasury - self._committed,
                "committedFunds": self._committed,
                "rounds": [r.to_dict() for r in self._rounds],
                "proposals": self._proposals.to_dict(),
            }

    def __repr__(self) -> str:
        return (
            f"<VotingEngine participants={self._participants.count} "
            f"proposals={len(self._proposals)} open={self.is_voting_open}>"
        )
