"""
automine command line.

    automine start <sol> <tiles> <strategy>   start a session (optimal/conservative/random/degen)
    automine deploy <sol> <tile_ids>          start a session on explicit tiles, e.g. 0,6,12,18,24
    automine stop                             stop the active session
    automine status                           current session
    automine balance                          wallet balances
    automine history [limit]                  prior sessions (default 50)
    automine round                            live round snapshot
    automine pnl                              wins / losses / net P&L of the current session
    automine apr                              staking APR (public endpoint)
    automine auth-check                       verify the credential and show its auth style
    automine run [flags]                      run the mining controller until signalled

Exit codes: 0 success, 1 HTTP or other error, 2 authentication failure, 3 invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from automine import __version__
from automine.config.config import Settings
from automine.config.session_config import STRATEGIES, SessionConfig
from automine.config.session_profile import resolve_session_config
from automine.core.errors import AuthExpired, AutomineError, ConfigInvalid
from automine.core.json_utils import dumps
from automine.infra.http_client import RefinoreClient
from automine.infra.logging_cfg import build_logger
from automine.main import build_client, serve
from automine.state.ledger import Ledger

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AUTH = 2
EXIT_CONFIG = 3

ClientFactory = Callable[[Settings], RefinoreClient]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="automine", description="refinORE autonomous ORE mining controller")
    parser.add_argument("--version", action="version", version=f"automine {__version__}")
    parser.add_argument("--json", action="store_true", help="Print raw JSON instead of tables")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("start", help="Start a mining session with a named strategy")
    p.add_argument("sol", help="SOL per round (0.001-1.0)")
    p.add_argument("tiles", type=int, help="Number of tiles (1-25)")
    p.add_argument("strategy", help=f"One of {', '.join(STRATEGIES)}; unknown names mean optimal")

    p = sub.add_parser("deploy", help="Start a mining session on explicit tiles")
    p.add_argument("sol", help="SOL per round (0.001-1.0)")
    p.add_argument("tile_ids", help="Comma-separated tile ids, e.g. 0,6,12,18,24")

    sub.add_parser("stop", help="Stop the active session")
    sub.add_parser("status", help="Show the current session")
    sub.add_parser("balance", help="Show wallet balances")
    p = sub.add_parser("history", help="Show prior sessions")
    p.add_argument("limit", nargs="?", type=int, default=50)
    sub.add_parser("round", help="Show the live round")
    sub.add_parser("pnl", help="Session P&L rebuilt from per-round results")
    sub.add_parser("apr", help="Show the staking APR")
    sub.add_parser("auth-check", help="Verify the configured credential")

    p = sub.add_parser("run", help="Run the mining controller until SIGINT/SIGTERM")
    p.add_argument("--sol", dest="sol_per_round", help="SOL per round")
    p.add_argument("--tiles", dest="num_tiles", type=int, help="Number of tiles")
    p.add_argument("--strategy", help="Named strategy (sets tile selection and risk)")
    p.add_argument("--risk", dest="risk_tolerance", choices=["low", "medium", "high"])
    p.add_argument("--token", dest="mining_token", help="Mining token (SOL, USDC, ORE, stORE, SKR)")
    p.add_argument("--tile-selection", dest="tile_selection", help="optimal | random | explicit:0,6,12")
    p.add_argument("--ev-threshold", dest="ev_threshold")
    p.add_argument("--motherlode-only", dest="motherlode_only", action="store_true", default=None)
    p.add_argument("--stop-loss", dest="stop_loss_sol")
    p.add_argument("--max-loss-streak", dest="max_loss_streak", type=int)
    p.add_argument("--no-auto-restart", dest="auto_restart", action="store_false", default=None)
    p.add_argument("--profile", help="YAML session profile (default REFINORE_SESSION_PROFILE)")
    return parser


def run_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """SessionConfig fields given on the `run` command line."""
    out: Dict[str, Any] = {}
    if args.strategy:
        mode, risk, forced_tiles = STRATEGIES.get(args.strategy.lower(), STRATEGIES["optimal"])
        out["tile_selection"] = mode.value
        out["risk_tolerance"] = risk.value
        if forced_tiles:
            out["num_tiles"] = forced_tiles
    for name in ("sol_per_round", "num_tiles", "risk_tolerance", "mining_token", "tile_selection",
                 "ev_threshold", "motherlode_only", "stop_loss_sol", "max_loss_streak", "auto_restart"):
        value = getattr(args, name, None)
        if value is not None:
            out[name] = value
    return out


def parse_tile_ids(raw: str) -> List[int]:
    try:
        return [int(x.strip()) for x in raw.split(",") if x.strip()]
    except ValueError as exc:
        raise ConfigInvalid([f"tile ids must be comma-separated integers, got {raw!r}"]) from exc


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _table(title: str, rows: Dict[str, Any]) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    for key, value in rows.items():
        table.add_row(escape(str(key)), "-" if value is None else escape(str(value)))
    return table


def _print(console: Console, as_json: bool, title: str, payload: Any) -> None:
    if as_json:
        console.print_json(dumps(payload))
    elif isinstance(payload, dict):
        console.print(_table(title, payload))
    elif isinstance(payload, list):
        table = Table(title=title)
        columns: List[str] = []
        for item in payload:
            for key in item:
                if key not in columns:
                    columns.append(key)
        for col in columns:
            table.add_column(escape(col))
        for item in payload:
            table.add_row(*("-" if item.get(col) is None else escape(str(item.get(col))) for col in columns))
        console.print(table)
    else:
        console.print(payload)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def dispatch(args: argparse.Namespace, client: RefinoreClient, console: Console) -> int:
    cmd = args.command
    out = lambda title, payload: _print(console, args.json, title, payload)  # noqa: E731

    if cmd == "start":
        cfg = SessionConfig.from_strategy(args.strategy, args.sol, args.tiles).validate()
        handle = await client.start(cfg)
        out("Session started", {"session_id": handle.session_id, "status": handle.status, **cfg.to_dict()})
    elif cmd == "deploy":
        cfg = SessionConfig.explicit_tiles(args.sol, parse_tile_ids(args.tile_ids)).validate()
        handle = await client.start_explicit(cfg)
        out("Session started", {"session_id": handle.session_id, "status": handle.status, **cfg.to_dict()})
    elif cmd == "stop":
        summary = await client.stop()
        out("Session stopped", {
            "already_stopped": summary.already_stopped,
            "rounds": summary.rounds,
            "sol_deployed": summary.sol_deployed,
            "sol_earned": summary.sol_earned,
            "ore_earned": summary.ore_earned,
        })
    elif cmd == "status":
        snap = await client.current_session()
        if snap is None:
            out("Session", {"active": False})
        else:
            out("Session", snap.to_dict())
    elif cmd == "balance":
        balances = await client.balances()
        out("Balances", {token: amount for token, amount in balances.amounts.items()})
    elif cmd == "history":
        out(f"History (last {args.limit})", await client.history(args.limit))
    elif cmd == "round":
        snap = await client.current_round()
        data = snap.to_dict()
        data.pop("tiles", None)
        out(f"Round {snap.round_number}", data)
    elif cmd == "pnl":
        ledger = Ledger.from_results(r for r in await client.session_rounds() if r.sol_deployed > 0)
        snap = ledger.snapshot()
        out("Session P&L", {
            "rounds": snap.entries,
            "wins": snap.win_count,
            "losses": snap.loss_count,
            "win_rate": f"{snap.win_rate:.1%}",
            "sol_deployed": snap.sol_deployed,
            "sol_earned": snap.sol_earned,
            "net_pnl_sol": snap.net_pnl_sol,
            "ore_earned": snap.ore_earned,
            "loss_streak": snap.loss_streak,
            "max_drawdown_sol": snap.max_drawdown_sol,
        })
    elif cmd == "apr":
        out("Staking APR", await client.staking_apr())
    elif cmd == "auth-check":
        balances = await client.balances()
        out("Credential OK", {"auth_style": client.auth_style, "tokens": ", ".join(balances.amounts) or "-"})
    else:
        raise ValueError(f"unknown command {cmd!r}")
    return EXIT_OK


async def _run_command(args: argparse.Namespace, settings: Settings, client_factory: ClientFactory,
                       console: Console) -> int:
    if args.command == "run":
        cfg = resolve_session_config(run_overrides(args), profile_path=args.profile or settings.session_profile)
        cfg.validate()
        return await serve(settings, cfg)
    client = client_factory(settings)
    try:
        return await dispatch(args, client, console)
    finally:
        await client.close()


def main(argv: Optional[Sequence[str]] = None, client_factory: Optional[ClientFactory] = None,
         console: Optional[Console] = None) -> int:
    args = build_parser().parse_args(argv)
    console = console or Console()
    err = Console(stderr=True)
    try:
        settings = Settings.load()
    except ValueError as exc:
        err.print(f"[red]configuration error:[/red] {escape(str(exc))}")
        return EXIT_CONFIG
    build_logger(
        "automine",
        level=settings.log_level if args.command == "run" else "WARNING",
        file_path=settings.log_file if args.command == "run" else None,
        secret=settings.api_key,
    )
    try:
        settings.credentials()
    except ValueError as exc:
        err.print(f"[red]{escape(str(exc))}[/red]")
        return EXIT_AUTH

    try:
        return asyncio.run(_run_command(args, settings, client_factory or build_client, console))
    except ConfigInvalid as exc:
        err.print("[red]invalid session configuration:[/red]")
        for problem in exc.problems:
            err.print(f"  - {escape(problem)}")
        return EXIT_CONFIG
    except ValueError as exc:
        err.print(f"[red]invalid argument:[/red] {escape(str(exc))}")
        return EXIT_CONFIG
    except AuthExpired as exc:
        err.print(f"[red]authentication failed:[/red] {escape(str(exc))}")
        return EXIT_AUTH
    except AutomineError as exc:
        err.print(f"[red]{exc.kind}:[/red] {escape(str(exc))}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        err.print("stopped by user")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
