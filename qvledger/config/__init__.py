"""
QV Ledger Configuration

Loads qvledger.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    LedgerConfig,
    LedgerSectionConfig,
    LoggingSectionConfig,
    VotingSectionConfig,
    load_config,
)

__all__ = [
    "LedgerConfig",
    "LedgerSectionConfig",
    "LoggingSectionConfig",
    "VotingSectionConfig",
    "load_config",
]
