"""
Quadratic-voting governance.

Provides:
  - FundingState / Proposal / ProposalRegistry     (proposals.py)
  - FundingPolicy / RankedBudgetPolicy / RoundOutcome (funding.py)
  - VotingEngine / StakeCostBasis / StakeReceipt   (voting.py)
"""

from .proposals import (
    FundingState,
    Proposal,
    ProposalLifecycleError,
    ProposalRegistry,
)
from .funding import (
    FundingDecision,
    FundingPolicy,
    RankedBudgetPolicy,
    RoundOutcome,
)
from .voting import (
    StakeCostBasis,
    StakeReceipt,
    VotingEngine,
    VotingRound,
    quadratic_cost,
)

__all__ = [
    # Proposals
    "FundingState",
    "Proposal",
    "ProposalLifecycleError",
    "ProposalRegistry",
    # Funding
    "FundingDecision",
    "FundingPolicy",
    "RankedBudgetPolicy",
    "RoundOutcome",
    # Voting
    "StakeCostBasis",
    "StakeReceipt",
    "VotingEngine",
    "VotingRound",
    "quadratic_cost",
]
