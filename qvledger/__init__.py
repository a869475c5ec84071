"""
QV Ledger Package

Quadratic voting-and-funding ledger: fixed-price voting credits,
quadratic staking on proposals, and budget rounds.

Core imports are lazily loaded so that importing a submodule does not
pull in the whole engine:

    from qvledger.governance import VotingEngine
    from qvledger.units import parse_currency
    from qvledger.exceptions import CapExceededError
"""

__version__ = "1.0.0"


def __getattr__(name):
    """Lazy access to the most used entry points."""
    if name == 'VotingEngine':
        from .governance.voting import VotingEngine
        return VotingEngine
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'QVLedgerError':
        from .exceptions import QVLedgerError
        return QVLedgerError
    raise AttributeError(f"module 'qvledger' has no attribute {name!r}")

__all__ = ['VotingEngine', 'load_config', 'QVLedgerError']
