#!/usr/bin/env python3
"""
QV Ledger CLI

Command-line interface for inspecting configuration and replaying
operation scripts against a fresh voting engine.

Usage:
    qvledger info [--config FILE]
    qvledger replay <script.json> [--config FILE] [--keep-going] [--json]

A replay script is a JSON list of operations, for example:

    [
      {"op": "open_voting", "caller": "owner", "amount": "1"},
      {"op": "register", "caller": "alice", "amount": "1.05"},
      {"op": "create_proposal", "caller": "alice", "title": "Fund Me",
       "description": "Give me currency", "budget": "0.2"},
      {"op": "stake", "caller": "alice", "proposal": 1, "votes": 2}
    ]

Currency amounts are decimal strings; credits, votes and proposal ids are
whole numbers (JSON integers or digit strings).
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import click

from qvledger import __version__
from qvledger.config import LedgerConfig, load_config
from qvledger.exceptions import InvalidAmountError, QVLedgerError
from qvledger.governance.voting import VotingEngine
from qvledger.logger import configure_logging
from qvledger.units import format_currency, parse_currency


def _load(config_path: Optional[str]) -> LedgerConfig:
    try:
        return load_config(config_path)
    except QVLedgerError as e:
        raise click.ClickException(str(e))


def _require(step: Dict[str, Any], key: str) -> Any:
    if key not in step:
        raise click.ClickException(f"Operation {step.get('op')!r} is missing {key!r}")
    return step[key]


def _count(step: Dict[str, Any], key: str) -> int:
    """Whole-number field (votes, credits, proposal id): an int or a digit string."""
    value = _require(step, key)
    if isinstance(value, bool):
        raise InvalidAmountError(f"{key} must be a whole number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    raise InvalidAmountError(f"{key} must be a whole number, got {value!r}")


# Each handler maps a script step onto one engine operation.
_OPERATIONS: Dict[str, Callable[[VotingEngine, Dict[str, Any]], Any]] = {
    "register": lambda e, s: e.register(
        _require(s, "caller"), parse_currency(_require(s, "amount"))),
    "deregister": lambda e, s: e.deregister(_require(s, "caller")),
    "buy_more": lambda e, s: e.buy_more(
        _require(s, "caller"), parse_currency(_require(s, "amount"))),
    "sell": lambda e, s: e.sell(_require(s, "caller"), _count(s, "credits")),
    "open_voting": lambda e, s: e.open_voting(
        _require(s, "caller"), parse_currency(_require(s, "amount"))),
    "close_voting": lambda e, s: e.close_voting(_require(s, "caller")),
    "create_proposal": lambda e, s: e.create_proposal(
        _require(s, "caller"),
        _require(s, "title"),
        s.get("description", ""),
        parse_currency(s.get("budget", "0")),
        s.get("target"),
    ),
    "cancel_proposal": lambda e, s: e.cancel_proposal(
        _require(s, "caller"), _count(s, "proposal")),
    "stake": lambda e, s: e.stake(
        _require(s, "caller"), _count(s, "proposal"), _count(s, "votes")),
    "unstake": lambda e, s: e.unstake(
        _require(s, "caller"), _count(s, "proposal"), _count(s, "votes")),
}


def _as_dict(result: Any) -> Any:
    if isinstance(result, list):
        return [_as_dict(r) for r in result]
    if hasattr(result, "to_dict"):
        return result.to_dict()
    return result


def _summary(engine: VotingEngine) -> Dict[str, Any]:
    return {
        "creditPrice": format_currency(engine.credit_price),
        "maxCredits": engine.max_credits,
        "totalSupply": engine.total_supply,
        "participantCount": engine.participant_count,
        "isVotingOpen": engine.is_voting_open,
        "votingBudget": format_currency(engine.voting_budget),
        "treasuryBalance": format_currency(engine.treasury_balance),
        "pendingFunding": [p.id for p in engine.list_pending_funding()],
        "funded": [p.id for p in engine.list_funded()],
    }


@click.group()
@click.version_option(version=__version__, prog_name="qvledger")
def cli():
    """QV Ledger Command Line Interface

    Quadratic voting-and-funding ledger tools.
    """
    pass


@cli.command("info")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to qvledger.toml")
def info_cmd(config_path: Optional[str]):
    """Show the effective configuration.

    Examples:

        qvledger info

        qvledger info --config ./qvledger.toml
    """
    cfg = _load(config_path)
    for section, values in cfg.to_dict().items():
        click.echo(click.style(f"[{section}]", fg="cyan", bold=True))
        for key, value in values.items():
            click.echo(f"  {key:<18} {value}")


@cli.command("replay")
@click.argument("script", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to qvledger.toml")
@click.option("--keep-going", is_flag=True, help="Continue after a rejected operation")
@click.option("--json", "as_json", is_flag=True, help="Print a JSON report instead of text")
def replay_cmd(script: str, config_path: Optional[str], keep_going: bool, as_json: bool):
    """Replay a JSON operation script against a fresh engine.

    Exits with status 1 if any step was rejected, with or without
    --keep-going.

    Examples:

        qvledger replay scenario.json

        qvledger replay scenario.json --keep-going --json
    """
    cfg = _load(config_path)
    # A JSON report owns the terminal
    configure_logging(cfg.logging.level, console_output=not as_json)

    try:
        steps = json.loads(Path(script).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid script {script}: {e}")
    if not isinstance(steps, list):
        raise click.ClickException("A replay script must be a JSON list of operations")

    engine = VotingEngine.from_config(cfg)
    results: List[Dict[str, Any]] = []
    failed = False

    for index, step in enumerate(steps, 1):
        op = step.get("op") if isinstance(step, dict) else None
        handler = _OPERATIONS.get(op)
        if handler is None:
            raise click.ClickException(f"Step {index}: unknown operation {op!r}")

        try:
            result = handler(engine, step)
        except QVLedgerError as e:
            failed = True
            results.append({"step": index, "op": op, "ok": False,
                            "error": type(e).__name__, "message": str(e)})
            if not as_json:
                click.echo(click.style(f"✗ {index:>3} {op}: {type(e).__name__}: {e}", fg="red"))
            if not keep_going:
                break
            continue

        results.append({"step": index, "op": op, "ok": True, "result": _as_dict(result)})
        if not as_json:
            click.echo(click.style(f"✓ {index:>3} {op}", fg="green") + f" {_as_dict(result)}")

    summary = _summary(engine)
    if as_json:
        click.echo(json.dumps({"steps": results, "state": summary}, indent=2, default=str))
    else:
        click.echo()
        click.echo(click.style("Final state:", bold=True))
        for key, value in summary.items():
            click.echo(f"  {key:<18} {value}")

    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
