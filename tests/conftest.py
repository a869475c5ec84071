"""Shared fixtures for the QV ledger test suite."""

import os
import sys

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# QVL_* variables from the shell would leak into config defaults
for _key in [k for k in os.environ if k.startswith("QVL_")]:
    del os.environ[_key]

from qvledger.governance import StakeCostBasis, VotingEngine
from qvledger.units import parse_currency


OWNER = "owner"
ALICE = "alice"
BOB = "bob"
CAROL = "carol"

PRICE = parse_currency("0.1")
ONE = parse_currency("1")


@pytest.fixture
def engine() -> VotingEngine:
    """Fresh engine: price 0.1, cap 1000 credits, per-call staking."""
    return VotingEngine(OWNER, PRICE, 1000)


@pytest.fixture
def cumulative_engine() -> VotingEngine:
    return VotingEngine(OWNER, PRICE, 1000, cost_basis=StakeCostBasis.CUMULATIVE)
