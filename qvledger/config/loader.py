"""
QV Ledger TOML Configuration Loader

Loads all sections of qvledger.toml with environment variable overrides.
Each section is a dataclass with from_dict / apply_env.

Environment variable mapping:
    [ledger] credit_price      → QVL_CREDIT_PRICE
    [ledger] max_credits       → QVL_MAX_CREDITS
    [ledger] owner             → QVL_OWNER
    [voting] stake_cost_basis  → QVL_STAKE_COST_BASIS
    [logging] level            → QVL_LOG_LEVEL

Defaults for the [ledger] and [voting] sections come from constants.py,
which itself reads the project's .env file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    QVL_CREDIT_PRICE,
    QVL_MAX_CREDITS,
    QVL_OWNER,
    QVL_STAKE_COST_BASIS,
    STAKE_COST_BASES,
)
from ..exceptions import ConfigurationError, InvalidAmountError
from ..units import format_currency, parse_currency

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_price(value: Any) -> int:
    """Prices are written as decimal currency strings ("0.1")."""
    try:
        return parse_currency(value)
    except InvalidAmountError as e:
        raise ConfigurationError(f"Invalid credit_price {value!r}: {e}") from e


def _parse_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------


@dataclass
class LedgerSectionConfig:
    """[ledger] section. credit_price is held in currency base units."""
    credit_price: int = field(default_factory=lambda: _parse_price(QVL_CREDIT_PRICE))
    max_credits: int = field(default_factory=lambda: _parse_int(QVL_MAX_CREDITS, "max_credits"))
    owner: str = field(default_factory=lambda: str(QVL_OWNER))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerSectionConfig":
        cfg = cls()
        if "credit_price" in data:
            cfg.credit_price = _parse_price(data["credit_price"])
        if "max_credits" in data:
            cfg.max_credits = _parse_int(data["max_credits"], "max_credits")
        if "owner" in data:
            cfg.owner = str(data["owner"])
        return cfg

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("QVL_CREDIT_PRICE"):
            self.credit_price = _parse_price(v)
        if v := os.environ.get("QVL_MAX_CREDITS"):
            self.max_credits = _parse_int(v, "max_credits")
        if v := os.environ.get("QVL_OWNER"):
            self.owner = v


@dataclass
class VotingSectionConfig:
    """[voting] section."""
    stake_cost_basis: str = field(default_factory=lambda: str(QVL_STAKE_COST_BASIS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VotingSectionConfig":
        cfg = cls()
        if "stake_cost_basis" in data:
            cfg.stake_cost_basis = str(data["stake_cost_basis"])
        return cfg

    def apply_env(self) -> None:
        if v := os.environ.get("QVL_STAKE_COST_BASIS"):
            self.stake_cost_basis = v


@dataclass
class LoggingSectionConfig:
    """[logging] section."""
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingSectionConfig":
        return cls(level=str(data.get("level", "INFO")).upper())

    def apply_env(self) -> None:
        if v := os.environ.get("QVL_LOG_LEVEL"):
            self.level = v.upper()


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


@dataclass
class LedgerConfig:
    """Top-level configuration: one attribute per TOML section."""
    ledger: LedgerSectionConfig = field(default_factory=LedgerSectionConfig)
    voting: VotingSectionConfig = field(default_factory=VotingSectionConfig)
    logging: LoggingSectionConfig = field(default_factory=LoggingSectionConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(
            ledger=LedgerSectionConfig.from_dict(data.get("ledger", {})),
            voting=VotingSectionConfig.from_dict(data.get("voting", {})),
            logging=LoggingSectionConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "LedgerConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults (with env overrides)
        are used instead.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfigurationError(f"Malformed config file {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.ledger.apply_env()
        self.voting.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.ledger.credit_price <= 0:
            raise ConfigurationError("credit_price must be > 0")
        if self.ledger.max_credits < 0:
            raise ConfigurationError("max_credits must be >= 0")
        if not self.ledger.owner:
            raise ConfigurationError("owner is required")
        if self.voting.stake_cost_basis not in STAKE_COST_BASES:
            raise ConfigurationError(
                f"Invalid stake_cost_basis: {self.voting.stake_cost_basis} "
                f"(expected one of {', '.join(STAKE_COST_BASES)})"
            )
        if self.logging.level not in _LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "ledger": {
                "credit_price": format_currency(self.ledger.credit_price),
                "max_credits": self.ledger.max_credits,
                "owner": self.ledger.owner,
            },
            "voting": {
                "stake_cost_basis": self.voting.stake_cost_basis,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> LedgerConfig:
    """
    Load ledger configuration.

    Resolution order:
        1. Explicit *path* argument
        2. QVL_CONFIG env var
        3. ./qvledger.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("QVL_CONFIG", "qvledger.toml")

    cfg = LedgerConfig.from_file(path)
    cfg.validate()
    return cfg
