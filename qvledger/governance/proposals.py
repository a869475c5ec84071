"""
Proposals

Defines funding states and the Proposal dataclass, plus the registry that
assigns ids and answers "which proposals await funding".

A proposal with requested_budget > 0 is a funding proposal and starts
PENDING; requested_budget == 0 marks a signaling proposal, which sits in
NON_FUNDING for its whole life and is never considered for funding.
"""

import copy
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional

from ..logger import get_logger
from ..exceptions import (
    GovernanceError,
    InsufficientVotesError,
    NotAParticipantError,
    UnknownProposalError,
)
from ..units import require_amount

logger = get_logger(__name__)


class ProposalLifecycleError(GovernanceError):
    """Raised on illegal funding-state transitions."""


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class FundingState(IntEnum):
    """Funding lifecycle of a proposal."""
    PENDING = 0         # Funding proposal awaiting round closure
    FUNDED = 1          # Selected by round closure
    REJECTED = 2        # Not selected by round closure
    NON_FUNDING = 3     # Signaling proposal, never funded
    CANCELLED = 4       # Withdrawn by its proposer while PENDING


_VALID_TRANSITIONS: Dict[FundingState, set] = {
    FundingState.PENDING:     {FundingState.FUNDED, FundingState.REJECTED,
                               FundingState.CANCELLED},
    FundingState.NON_FUNDING: set(),
    # Terminal states
    FundingState.FUNDED:      set(),
    FundingState.REJECTED:    set(),
    FundingState.CANCELLED:   set(),
}


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Proposal:
    """
    A proposal registered by a participant.

    Fields:
        id:                Monotonic identifier, never reused
        title:             Short title
        description:       Free text
        requested_budget:  Currency base units requested (0 = signaling)
        target_action:     Opaque handle of the action to run if funded
        proposer:          Identity that created the proposal
        votes_for:         Identity → votes bought on this proposal
        funding_state:     Current FundingState
    """
    id: int
    title: str
    description: str
    requested_budget: int
    target_action: Any
    proposer: Hashable
    votes_for: Dict[Hashable, int] = field(default_factory=dict)
    funding_state: FundingState = FundingState.NON_FUNDING
    created_at: float = field(default_factory=time.time)
    _history: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        require_amount(self.requested_budget, "requested_budget")
        self.funding_state = (
            FundingState.PENDING if self.requested_budget > 0 else FundingState.NON_FUNDING
        )
        self._history.append({
            "from": "INIT",
            "to": self.funding_state.name,
            "reason": "created",
            "timestamp": self.created_at,
        })

    # ── Properties ────────────────────────────────────────────────────

    @property
    def is_signaling(self) -> bool:
        return self.requested_budget == 0

    @property
    def total_votes(self) -> int:
        return sum(self.votes_for.values())

    @property
    def accepts_votes(self) -> bool:
        return self.funding_state in (FundingState.PENDING, FundingState.NON_FUNDING)

    @property
    def is_pending_funding(self) -> bool:
        return self.requested_budget > 0 and self.funding_state == FundingState.PENDING

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def votes_of(self, identity: Hashable) -> int:
        return self.votes_for.get(identity, 0)

    # ── Votes ─────────────────────────────────────────────────────────

    def add_votes(self, identity: Hashable, count: int) -> None:
        self.votes_for[identity] = self.votes_for.get(identity, 0) + count

    def remove_votes(self, identity: Hashable, count: int) -> None:
        held = self.votes_for.get(identity, 0)
        if count > held:
            raise InsufficientVotesError(
                f"{identity} holds {held} votes on proposal #{self.id}, cannot withdraw {count}"
            )
        if held == count:
            del self.votes_for[identity]
        else:
            self.votes_for[identity] = held - count

    # ── State transitions ─────────────────────────────────────────────

    def transition_to(self, new_state: FundingState, reason: str = ""):
        """
        Move to *new_state*.

        Raises ProposalLifecycleError on invalid transitions.
        """
        allowed = _VALID_TRANSITIONS.get(self.funding_state, set())
        if new_state not in allowed:
            raise ProposalLifecycleError(
                f"Cannot transition proposal #{self.id} from "
                f"{self.funding_state.name} → {new_state.name}"
            )
        old = self.funding_state
        self._history.append({
            "from": old.name,
            "to": new_state.name,
            "reason": reason,
            "timestamp": time.time(),
        })
        self.funding_state = new_state
        logger.info(f"Proposal #{self.id} ({self.title}): {old.name} → {new_state.name} | {reason}")

    # ── Serialization ─────────────────────────────────────────────────

    def snapshot(self) -> "Proposal":
        """Detached copy; changes to it never reach the registry."""
        clone = copy.copy(self)
        clone.votes_for = dict(self.votes_for)
        clone._history = list(self._history)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "requestedBudget": self.requested_budget,
            "targetAction": repr(self.target_action),
            "proposer": str(self.proposer),
            "fundingState": self.funding_state.name,
            "totalVotes": self.total_votes,
            "voters": len(self.votes_for),
            "createdAt": self.created_at,
        }

    def __repr__(self) -> str:
        return (
            f"<Proposal #{self.id} '{self.title}' "
            f"budget={self.requested_budget} state={self.funding_state.name}>"
        )


# ══════════════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════════════

class ProposalRegistry:
    """
    Stores proposals in creation order and assigns sequential ids from 1.

    *is_participant* is a Callable(identity) → bool used to gate creation.
    """

    def __init__(self, is_participant: Optional[Callable[[Hashable], bool]] = None):
        self._is_participant = is_participant
        self._proposals: Dict[int, Proposal] = {}
        self._next_id = 1

    def create(
        self,
        identity: Hashable,
        title: str,
        description: str,
        requested_budget: int,
        target_action: Any = None,
    ) -> Proposal:
        """
        Register a new proposal.

        Raises NotAParticipantError if *identity* is not registered.
        """
        if self._is_participant is not None and not self._is_participant(identity):
            raise NotAParticipantError(f"{identity} is not a participant")

        proposal = Proposal(
            id=self._next_id,
            title=title,
            description=description,
            requested_budget=requested_budget,
            target_action=target_action,
            proposer=identity,
        )
        self._proposals[proposal.id] = proposal
        self._next_id += 1

        kind = "signaling" if proposal.is_signaling else f"budget={requested_budget}"
        logger.info(f"Proposal #{proposal.id} created by identity={identity} ({kind})")
        return proposal

    # ── Lookup ────────────────────────────────────────────────────────

    def get(self, proposal_id: int) -> Optional[Proposal]:
        return self._proposals.get(proposal_id)

    def require(self, proposal_id: int) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise UnknownProposalError(f"Unknown proposal #{proposal_id}")
        return proposal

    def __iter__(self) -> Iterator[Proposal]:
        return iter(list(self._proposals.values()))

    def __len__(self) -> int:
        return len(self._proposals)

    # ── Listings ──────────────────────────────────────────────────────

    def list_pending_funding(self) -> List[Proposal]:
        """Funding proposals still PENDING, in creation order."""
        return [p for p in self._proposals.values() if p.is_pending_funding]

    def list_signaling(self) -> List[Proposal]:
        return [
            p for p in self._proposals.values()
            if p.funding_state == FundingState.NON_FUNDING
        ]

    def list_funded(self) -> List[Proposal]:
        return [
            p for p in self._proposals.values()
            if p.funding_state == FundingState.FUNDED
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalCount": len(self._proposals),
            "pendingFunding": [p.id for p in self.list_pending_funding()],
            "proposals": {pid: p.to_dict() for pid, p in self._proposals.items()},
        }

    def __repr__(self) -> str:
        return f"<ProposalRegistry proposals={len(self._proposals)}>"
