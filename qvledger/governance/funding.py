"""
Round-closure funding policies.

A FundingPolicy decides, when a voting round closes, which PENDING funding
proposals are funded from the round budget. The voting engine applies the
decision; policies only read proposals and never mutate them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from .proposals import Proposal


@dataclass(frozen=True)
class FundingDecision:
    """Which proposal ids to fund and which to reject."""
    funded: List[int] = field(default_factory=list)
    rejected: List[int] = field(default_factory=list)


class FundingPolicy(ABC):
    """Strategy interface for closing a round."""

    name = "abstract"

    @abstractmethod
    def decide(self, pending: Sequence[Proposal], budget: int) -> FundingDecision:
        """
        Args:
            pending: PENDING funding proposals in creation order
            budget:  Currency base units available to the round

        Returns:
            A decision covering every proposal in *pending* exactly once.
            Funded budgets must sum to at most *budget*.
        """


class RankedBudgetPolicy(FundingPolicy):
    """
    Fund proposals in order of total votes (ties: lower id first) while
    the cumulative requested budget fits; reject the rest.

    With fund_unvoted=False, proposals without a single vote are rejected.
    """

    name = "ranked_budget"

    def __init__(self, fund_unvoted: bool = True):
        self.fund_unvoted = fund_unvoted

    def decide(self, pending: Sequence[Proposal], budget: int) -> FundingDecision:
        ranked = sorted(pending, key=lambda p: (-p.total_votes, p.id))
        funded: List[int] = []
        rejected: List[int] = []
        spent = 0
        for proposal in ranked:
            eligible = self.fund_unvoted or proposal.total_votes > 0
            if eligible and spent + proposal.requested_budget <= budget:
                funded.append(proposal.id)
                spent += proposal.requested_budget
            else:
                rejected.append(proposal.id)
        return FundingDecision(funded=funded, rejected=rejected)


@dataclass(frozen=True)
class RoundOutcome:
    """Result of closing a voting round."""
    round_number: int
    budget: int
    funded: List[int]
    rejected: List[int]
    spent: int
    policy: str

    @property
    def leftover(self) -> int:
        return self.budget - self.spent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round_number,
            "budget": self.budget,
            "funded": list(self.funded),
            "rejected": list(self.rejected),
            "spent": self.spent,
            "leftover": self.leftover,
            "policy": self.policy,
        }
