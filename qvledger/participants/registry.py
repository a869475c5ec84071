"""
Participant Registry

Tracks which identities are registered, the free/locked split of their
credits, and the currency they deposited. Credits are issued at a fixed
price, so every deposit is an exact multiple of the price and every
refund is lossless.

Currency never moves here: operations return receipts stating how much
the caller is owed, and the surrounding settlement layer pays it out.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional

from ..logger import get_logger
from ..constants import CUSTODY_ACCOUNT
from ..credits.ledger import CreditLedger
from ..exceptions import (
    AlreadyRegisteredError,
    CreditsLockedError,
    InvalidAmountError,
    LockedCreditsExceededError,
    InsufficientPaymentError,
    NotAParticipantError,
    ReservedIdentityError,
    ZeroAmountError,
)
from ..units import require_amount

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  PARTICIPANT
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Participant:
    """
    A registered identity.

    Fields:
        identity:            Opaque account key
        deposited_currency:  Base units paid for currently-held credits
        locked_balance:      Credits staked on proposals
        registered_at:       Timestamp of registration
    """
    identity: Hashable
    deposited_currency: int = 0
    locked_balance: int = 0
    registered_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": str(self.identity),
            "depositedCurrency": self.deposited_currency,
            "lockedBalance": self.locked_balance,
            "registeredAt": self.registered_at,
        }


# ══════════════════════════════════════════════════════════════════════
#  RECEIPTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CreditPurchase:
    """Credits minted for a payment (register / buy_more)."""
    identity: Hashable
    paid: int
    credits_minted: int
    refund: int             # remainder owed back to the caller

    @property
    def accepted(self) -> int:
        return self.paid - self.refund

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": str(self.identity),
            "paid": self.paid,
            "creditsMinted": self.credits_minted,
            "refund": self.refund,
        }


@dataclass(frozen=True)
class CreditRedemption:
    """Credits burned for currency (sell / deregister)."""
    identity: Hashable
    credits_burned: int
    proceeds: int           # currency owed to the caller

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": str(self.identity),
            "creditsBurned": self.credits_burned,
            "proceeds": self.proceeds,
        }


# ══════════════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════════════

class ParticipantRegistry:
    """
    Participant lifecycle and free/locked credit accounting.

    Invariants, for every registered identity p:
        ledger.balance_of(p) * credit_price == p.deposited_currency
        0 <= p.locked_balance == ledger.custody_of(p) <= ledger.balance_of(p)
    """

    def __init__(self, ledger: CreditLedger, credit_price: int):
        """
        Args:
            ledger:       Credit ledger that issues and burns credits
            credit_price: Base units of currency per credit (> 0)
        """
        require_amount(credit_price, "credit_price")
        if credit_price == 0:
            raise InvalidAmountError("credit_price must be positive")
        self._ledger = ledger
        self._credit_price = credit_price
        self._participants: Dict[Hashable, Participant] = {}

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def credit_price(self) -> int:
        return self._credit_price

    @property
    def count(self) -> int:
        return len(self._participants)

    def get(self, identity: Hashable) -> Optional[Participant]:
        """The participant record, or None if *identity* is unregistered."""
        return self._participants.get(identity)

    def require(self, identity: Hashable) -> Participant:
        participant = self._participants.get(identity)
        if participant is None:
            raise NotAParticipantError(f"{identity} is not a participant")
        return participant

    def is_participant(self, identity: Hashable) -> bool:
        return identity in self._participants

    def identities(self) -> List[Hashable]:
        return list(self._participants)

    def balance(self, identity: Hashable) -> int:
        self.require(identity)
        return self._ledger.balance_of(identity)

    def free_balance(self, identity: Hashable) -> int:
        participant = self.require(identity)
        return self._ledger.balance_of(identity) - participant.locked_balance

    def locked_balance(self, identity: Hashable) -> int:
        return self.require(identity).locked_balance

    # ── Registration ──────────────────────────────────────────────────

    def _quote(self, paid: int) -> tuple:
        """Split a payment into (credits, remainder)."""
        return divmod(paid, self._credit_price)

    def register(self, identity: Hashable, paid: int) -> CreditPurchase:
        """
        Register *identity*, buying as many credits as *paid* covers.

        Raises:
            AlreadyRegisteredError:  identity already registered
            ReservedIdentityError:   identity is the custody account
            InsufficientPaymentError: payment below one credit
            CapExceededError:        minting would breach the cap
        """
        require_amount(paid, "payment")
        if identity == CUSTODY_ACCOUNT:
            raise ReservedIdentityError(f"{identity} is reserved for custody")
        if identity in self._participants:
            raise AlreadyRegisteredError(f"{identity} is already registered")

        credits, remainder = self._quote(paid)
        if credits < 1:
            raise InsufficientPaymentError(
                f"Payment {paid} is below the price of one credit ({self._credit_price})"
            )

        # Mint first: it is the only step that can fail.
        self._ledger.mint(identity, credits)
        self._participants[identity] = Participant(
            identity=identity,
            deposited_currency=credits * self._credit_price,
        )

        logger.info(
            f"Registered identity={identity}: {credits} credits, refund={remainder}"
        )
        return CreditPurchase(identity, paid, credits, remainder)

    def deregister(self, identity: Hashable) -> CreditRedemption:
        """
        Remove *identity*, burning its credits and refunding its deposit.

        Raises CreditsLockedError while any credits remain staked.
        """
        participant = self.require(identity)
        if participant.locked_balance > 0:
            raise CreditsLockedError(
                f"{identity} has {participant.locked_balance} locked credits; "
                f"withdraw all votes first"
            )

        credits = self._ledger.balance_of(identity)
        refund = participant.deposited_currency
        if credits:
            self._ledger.burn(identity, credits)
        del self._participants[identity]

        logger.info(f"Deregistered identity={identity}: burned {credits} credits, refund={refund}")
        return CreditRedemption(identity, credits, refund)

    # ── Trading ───────────────────────────────────────────────────────

    def buy_more(self, identity: Hashable, paid: int) -> CreditPurchase:
        """
        Buy additional credits at the fixed price.

        Raises NotAParticipantError, InsufficientPaymentError, CapExceededError.
        """
        participant = self.require(identity)
        require_amount(paid, "payment")
        if paid < self._credit_price:
            raise InsufficientPaymentError(
                f"Payment {paid} is below the price of one credit ({self._credit_price})"
            )

        credits, remainder = self._quote(paid)
        self._ledger.mint(identity, credits)
        participant.deposited_currency += credits * self._credit_price

        logger.info(f"Purchase identity={identity}: {credits} credits, refund={remainder}")
        return CreditPurchase(identity, paid, credits, remainder)

    def sell(self, identity: Hashable, amount: int) -> CreditRedemption:
        """
        Sell *amount* free credits back at the fixed price.

        Raises NotAParticipantError, ZeroAmountError, LockedCreditsExceededError.
        """
        participant = self.require(identity)
        require_amount(amount, "sell amount")
        if amount == 0:
            raise ZeroAmountError("Cannot sell zero credits")

        free = self._ledger.balance_of(identity) - participant.locked_balance
        if amount > free:
            raise LockedCreditsExceededError(
                f"Cannot sell {amount} credits: only {free} free "
                f"({participant.locked_balance} locked)"
            )

        proceeds = amount * self._credit_price
        self._ledger.burn(identity, amount)
        participant.deposited_currency -= proceeds

        logger.info(f"Sale identity={identity}: {amount} credits, proceeds={proceeds}")
        return CreditRedemption(identity, amount, proceeds)

    # ── Locking (driven by the voting engine) ─────────────────────────

    def lock(self, identity: Hashable, amount: int) -> None:
        """Move *amount* free credits into staking custody."""
        participant = self.require(identity)
        free = self._ledger.balance_of(identity) - participant.locked_balance
        if amount > free:
            raise LockedCreditsExceededError(
                f"Cannot lock {amount} credits: only {free} free"
            )
        self._ledger.transfer_to_custody(identity, amount)
        participant.locked_balance += amount

    def unlock(self, identity: Hashable, amount: int) -> None:
        """Release *amount* credits from staking custody."""
        participant = self.require(identity)
        if amount > participant.locked_balance:
            raise LockedCreditsExceededError(
                f"Cannot unlock {amount} credits: only {participant.locked_balance} locked"
            )
        self._ledger.transfer_from_custody(identity, amount)
        participant.locked_balance -= amount

    # ── Integrity ─────────────────────────────────────────────────────

    def check_invariants(self) -> None:
        for identity, p in self._participants.items():
            balance = self._ledger.balance_of(identity)
            assert p.deposited_currency == balance * self._credit_price, (
                f"{identity}: deposit {p.deposited_currency} != "
                f"{balance} credits * {self._credit_price}"
            )
            assert 0 <= p.locked_balance <= balance, (
                f"{identity}: locked {p.locked_balance} outside [0, {balance}]"
            )
            assert p.locked_balance == self._ledger.custody_of(identity), (
                f"{identity}: locked {p.locked_balance} != custody "
                f"{self._ledger.custody_of(identity)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participantCount": self.count,
            "creditPrice": self._credit_price,
            "participants": {
                str(i): {
                    **p.to_dict(),
                    "balance": self._ledger.balance_of(i),
                }
                for i, p in self._participants.items()
            },
        }

    def __repr__(self) -> str:
        return f"<ParticipantRegistry participants={self.count}>"
