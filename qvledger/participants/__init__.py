"""
Participants.

Provides:
  - Participant          : per-identity deposit and locked-credit record
  - ParticipantRegistry  : registration, buy/sell, lock/unlock
  - CreditPurchase / CreditRedemption : settlement receipts
"""

from .registry import (
    CreditPurchase,
    CreditRedemption,
    Participant,
    ParticipantRegistry,
)

__all__ = [
    "CreditPurchase",
    "CreditRedemption",
    "Participant",
    "ParticipantRegistry",
]
