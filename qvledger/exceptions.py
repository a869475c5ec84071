"""
QV Ledger Exceptions

Every rejection raised by the ledger is a subclass of QVLedgerError.
Rejections are synchronous and leave all state unchanged.
"""


class QVLedgerError(Exception):
    """Base exception for the QV ledger."""
    pass


class InvalidAmountError(QVLedgerError, ValueError):
    """Amount is negative, fractional beyond base units, or not an integer."""
    pass


class ConfigurationError(QVLedgerError):
    """Configuration error."""
    pass


# ── Credit ledger ─────────────────────────────────────────────────────

class LedgerError(QVLedgerError):
    """Base credit-ledger error."""
    pass


class CapExceededError(LedgerError):
    """Minting would push total supply past the credit cap."""
    pass


class InsufficientBalanceError(LedgerError):
    """Holder balance is too low for a burn or custody transfer."""
    pass


# ── Participants ──────────────────────────────────────────────────────

class ParticipantError(QVLedgerError):
    """Base participant-registry error."""
    pass


class NotAParticipantError(ParticipantError):
    """Caller is not registered."""
    pass


class AlreadyRegisteredError(ParticipantError):
    """Caller is already registered."""
    pass


class InsufficientPaymentError(ParticipantError):
    """Payment does not cover a single credit."""
    pass


class ZeroAmountError(ParticipantError):
    """Amount of credits must be positive."""
    pass


class LockedCreditsExceededError(ParticipantError):
    """Requested credits exceed the free (unlocked) balance."""
    pass


class CreditsLockedError(ParticipantError):
    """Participant still has credits staked on proposals."""
    pass


class ReservedIdentityError(ParticipantError):
    """Identity is reserved by the ledger and cannot register."""
    pass


# ── Governance ────────────────────────────────────────────────────────

class GovernanceError(QVLedgerError):
    """Base governance error."""
    pass


class NotOwnerError(GovernanceError):
    """Caller is not the configured owner."""
    pass


class AlreadyOpenError(GovernanceError):
    """A voting round is already open."""
    pass


class FundingRequiredError(GovernanceError):
    """Opening a round requires a positive budget."""
    pass


class VotingClosedError(GovernanceError):
    """No voting round is open."""
    pass


class UnknownProposalError(GovernanceError):
    """Proposal id does not exist."""
    pass


class ProposalClosedError(GovernanceError):
    """Proposal no longer accepts votes."""
    pass


class NotProposerError(GovernanceError):
    """Only the proposer may perform this action."""
    pass


class InsufficientFreeBalanceError(GovernanceError):
    """Quadratic stake cost exceeds the participant's free balance."""
    pass


class InsufficientVotesError(GovernanceError):
    """Unstake requested more votes than the participant holds."""
    pass
