"""
Credit Ledger

Capped fungible-credit store with an ERC-20 style read interface:
  - mint / burn against a hard supply cap fixed at construction
  - custody transfers that move credits into (and back out of) staking
    custody without changing who owns them
  - exact integer arithmetic only

Credits held in custody still count toward their owner's balance_of();
only spendable_of() drops. Burns draw on spendable credits only.
"""

from dataclasses import dataclass, field
import time
from typing import Any, Dict, Hashable

from ..logger import get_logger
from ..constants import CUSTODY_ACCOUNT
from ..exceptions import (
    CapExceededError,
    InsufficientBalanceError,
    LedgerError,
)
from ..units import require_amount

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  RECEIPTS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CreditMovement:
    """Result of a single ledger mutation."""
    kind: str               # mint / burn / lock / unlock
    holder: Hashable
    amount: int
    total_supply: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "holder": str(self.holder),
            "amount": self.amount,
            "totalSupply": self.total_supply,
            "timestamp": self.timestamp,
        }


# ══════════════════════════════════════════════════════════════════════
#  CREDIT LEDGER
# ══════════════════════════════════════════════════════════════════════

class CreditLedger:
    """
    Capped credit ledger.

    Invariants:
        total_supply == Σ balance_of(*)
        total_supply <= max_credits
        0 <= custody_of(h) <= balance_of(h)
    """

    def __init__(self, max_credits: int, symbol: str = "QVC"):
        """
        Args:
            max_credits: Immutable cap on total supply
            symbol: Short ticker used in logs
        """
        require_amount(max_credits, "max_credits")
        if not symbol:
            raise LedgerError("Ledger symbol cannot be empty")

        self.symbol = symbol
        self._max_credits = max_credits
        self._total_supply = 0

        # Spendable credits and credits held in staking custody, per holder
        self._balances: Dict[Hashable, int] = {}
        self._custody: Dict[Hashable, int] = {}

        logger.info(f"Credit ledger created: {symbol}, cap={max_credits} credits")

    # ── Read-only views ───────────────────────────────────────────────

    @property
    def max_credits(self) -> int:
        return self._max_credits

    @property
    def total_supply(self) -> int:
        return self._total_supply

    @property
    def custody_total(self) -> int:
        """Credits currently held by the custody account."""
        return sum(self._custody.values())

    def balance_of(self, holder: Hashable) -> int:
        """Credits owned by *holder*, including those in custody."""
        return self._balances.get(holder, 0) + self._custody.get(holder, 0)

    def spendable_of(self, holder: Hashable) -> int:
        return self._balances.get(holder, 0)

    def custody_of(self, holder: Hashable) -> int:
        return self._custody.get(holder, 0)

    def holders(self) -> int:
        return len(set(self._balances) | set(self._custody))

    # ── Mint / burn ───────────────────────────────────────────────────

    def can_mint(self, amount: int) -> bool:
        return self._total_supply + amount <= self._max_credits

    def mint(self, holder: Hashable, amount: int) -> CreditMovement:
        """
        Create *amount* new credits for *holder*.

        Raises CapExceededError if the cap would be breached.
        """
        require_amount(amount, "mint amount")
        if holder == CUSTODY_ACCOUNT:
            raise LedgerError("Cannot mint to the custody account")
        if not self.can_mint(amount):
            raise CapExceededError(
                f"Minting {amount} would exceed credit cap "
                f"({self._total_supply} + {amount} > {self._max_credits})"
            )

        self._total_supply += amount
        self._balances[holder] = self._balances.get(holder, 0) + amount

        logger.debug(f"Mint: {amount} {self.symbol} → {holder}")
        return CreditMovement("mint", holder, amount, self._total_supply)

    def burn(self, holder: Hashable, amount: int) -> CreditMovement:
        """
        Destroy *amount* of *holder*'s spendable credits.

        Raises InsufficientBalanceError if spendable balance is too low.
        """
        require_amount(amount, "burn amount")
        bal = self._balances.get(holder, 0)
        if bal < amount:
            raise InsufficientBalanceError(
                f"{holder} balance {bal} < burn amount {amount}"
            )

        self._set_balance(holder, bal - amount)
        self._total_supply -= amount

        logger.debug(f"Burn: {holder} burned {amount} {self.symbol}")
        return CreditMovement("burn", holder, amount, self._total_supply)

    # ── Custody ───────────────────────────────────────────────────────

    def transfer_to_custody(self, holder: Hashable, amount: int) -> CreditMovement:
        """Move spendable credits into staking custody."""
        require_amount(amount, "custody amount")
        bal = self._balances.get(holder, 0)
        if bal < amount:
            raise InsufficientBalanceError(
                f"{holder} balance {bal} < custody amount {amount}"
            )

        self._set_balance(holder, bal - amount)
        self._custody[holder] = self._custody.get(holder, 0) + amount

        logger.debug(f"Lock: {holder} → {CUSTODY_ACCOUNT} {amount} {self.symbol}")
        return CreditMovement("lock", holder, amount, self._total_supply)

    def transfer_from_custody(self, holder: Hashable, amount: int) -> CreditMovement:
        """Return credits from staking custody to the holder's spendable balance."""
        require_amount(amount, "custody amount")
        held = self._custody.get(holder, 0)
        if held < amount:
            raise InsufficientBalanceError(
                f"Custody holds {held} for {holder} < release amount {amount}"
            )

        if held == amount:
            del self._custody[holder]
        else:
            self._custody[holder] = held - amount
        self._balances[holder] = self._balances.get(holder, 0) + amount

        logger.debug(f"Unlock: {CUSTODY_ACCOUNT} → {holder} {amount} {self.symbol}")
        return CreditMovement("unlock", holder, amount, self._total_supply)

    def _set_balance(self, holder: Hashable, value: int) -> None:
        if value:
            self._balances[holder] = value
        else:
            self._balances.pop(holder, None)

    # ── Integrity ─────────────────────────────────────────────────────

    def check_invariants(self) -> None:
        """Raise AssertionError if supply bookkeeping is inconsistent."""
        owned = sum(self._balances.values()) + sum(self._custody.values())
        assert owned == self._total_supply, (
            f"total supply {self._total_supply} != sum of balances {owned}"
        )
        assert self._total_supply <= self._max_credits, (
            f"total supply {self._total_supply} exceeds cap {self._max_credits}"
        )
        assert all(v > 0 for v in self._balances.values())
        assert all(v > 0 for v in self._custody.values())

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "totalSupply": self._total_supply,
            "maxCredits": self._max_credits,
            "custodyTotal": self.custody_total,
            "holders": self.holders(),
        }

    def __repr__(self) -> str:
        return f"<CreditLedger {self.symbol} supply={self._total_supply}/{self._max_credits}>"


# ══════════════════════════════════════════════════════════════════════
#  READ-ONLY VIEW
# ══════════════════════════════════════════════════════════════════════

class LedgerView:
    """Read-only handle on a CreditLedger; exposes no mutating methods."""

    __slots__ = ("_ledger",)

    def __init__(self, ledger: CreditLedger):
        self._ledger = ledger

    @property
    def symbol(self) -> str:
        return self._ledger.symbol

    @property
    def max_credits(self) -> int:
        return self._ledger.max_credits

    @property
    def total_supply(self) -> int:
        return self._ledger.total_supply

    @property
    def custody_total(self) -> int:
        return self._ledger.custody_total

    def balance_of(self, holder: Hashable) -> int:
        return self._ledger.balance_of(holder)

    def spendable_of(self, holder: Hashable) -> int:
        return self._ledger.spendable_of(holder)

    def custody_of(self, holder: Hashable) -> int:
        return self._ledger.custody_of(holder)

    def holders(self) -> int:
        return self._ledger.holders()

    def to_dict(self) -> Dict[str, Any]:
        return self._ledger.to_dict()

    def __repr__(self) -> str:
        return f"<LedgerView {self.symbol} supply={self.total_supply}/{self.max_credits}>"
