"""
strata.__main__ -- CLI entry point.

Usage:
    strata init [--data-dir DIR]
    strata consolidate ORG [ORG ...] [--platform P] [--dry-run] [--llm]
    strata audit ORG [--action TYPE] [--since ISO] [--limit N]
    strata budget ORG
    strata stats [--data-dir DIR]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from strata.core.config import Config
from strata.core.types import parse_iso


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="strata",
        description="strata -- adaptive memory and AI governance for social publishing",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--data-dir",
        default="./strata_data",
        help="Data directory (default: ./strata_data)",
    )
    common.add_argument("--config", default=None, help="Path to strata.yaml config")

    sub = parser.add_subparsers(dest="command")

    # -- init --------------------------------------------------------------
    sub.add_parser("init", parents=[common], help="Create a data directory and database")

    # -- consolidate -------------------------------------------------------
    cons_p = sub.add_parser(
        "consolidate", parents=[common], help="Run pattern detection and consolidation"
    )
    cons_p.add_argument("orgs", nargs="+", help="Organization ids")
    cons_p.add_argument("--platform", default=None, help="Restrict frequency mining to a platform")
    cons_p.add_argument("--dry-run", action="store_true", help="Detect and validate only")
    cons_p.add_argument("--llm", action="store_true", help="Include model-assisted detection")

    # -- audit -------------------------------------------------------------
    audit_p = sub.add_parser("audit", parents=[common], help="Show the consolidation audit trail")
    audit_p.add_argument("org", help="Organization id")
    audit_p.add_argument("--action", default=None, help="Filter by action type")
    audit_p.add_argument("--since", default=None, help="ISO-8601 lower bound")
    audit_p.add_argument("--limit", type=int, default=50, help="Max rows (default: 50)")

    # -- budget ------------------------------------------------------------
    budget_p = sub.add_parser("budget", parents=[common], help="Show AI spend against caps")
    budget_p.add_argument("org", help="Organization id")

    # -- stats -------------------------------------------------------------
    sub.add_parser("stats", parents=[common], help="Show row counts per table")

    args = parser.parse_args(argv)

    # -- Logging -----------------------------------------------------------
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return 0

    # -- Dispatch ----------------------------------------------------------
    handlers = {
        "init": _cmd_init,
        "consolidate": _cmd_consolidate,
        "audit": _cmd_audit,
        "budget": _cmd_budget,
        "stats": _cmd_stats,
    }
    return handlers[args.command](args)


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------


def _load_config(args: argparse.Namespace) -> Config:
    if args.config:
        config = Config.from_yaml(args.config)
    else:
        config = Config.from_data_dir(args.data_dir)
    return Config.from_env(config)


def _open(args: argparse.Namespace):
    from strata.system import MemorySystem

    return MemorySystem(config=_load_config(args))


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_init(args: argparse.Namespace) -> int:
    """Create the data directory, lock directory and schema."""
    with _open(args) as memory:
        data_dir = Path(memory.config.data_dir)
        print(f"Initialized strata data directory at {data_dir}")
        print(f"  database: {memory.config.db_path}")
        print(f"  locks:    {memory.config.lock_dir}")
    return 0


def _cmd_consolidate(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        results = memory.run_consolidation(
            args.orgs, platform=args.platform, dry_run=args.dry_run, use_llm=args.llm
        )
    failed = False
    out = {}
    for org, result in results.items():
        if result.ok:
            out[org] = result.value.to_dict()
        else:
            failed = True
            out[org] = {"error": result.to_dict()}
    _print(out)
    return 1 if failed else 0


def _cmd_audit(args: argparse.Namespace) -> int:
    since = None
    if args.since:
        since = parse_iso(args.since)
        if since is None:
            print(f"Invalid --since timestamp: {args.since}", file=sys.stderr)
            return 2
    with _open(args) as memory:
        result = memory.audit_trail(args.org, action_type=args.action, since=since, limit=args.limit)
    if not result.ok:
        _print({"error": result.to_dict()})
        return 1
    _print([entry.to_dict() for entry in result.value])
    return 0


def _cmd_budget(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        result = memory.budget_status(args.org)
    if not result.ok:
        _print({"error": result.to_dict()})
        return 1
    _print(result.value)
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        _print(memory.stats())
    return 0


if __name__ == "__main__":
    sys.exit(main())
