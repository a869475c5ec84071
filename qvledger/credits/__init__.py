"""
Voting credits.

Provides:
  - CreditLedger    : capped fungible-credit store with staking custody
  - CreditMovement  : receipt returned by every ledger mutation
  - LedgerView      : read-only handle on a CreditLedger
"""

from .ledger import CreditLedger, CreditMovement, LedgerView

__all__ = [
    "CreditLedger",
    "CreditMovement",
    "LedgerView",
]
