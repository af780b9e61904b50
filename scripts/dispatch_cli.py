#!/usr/bin/env python3
"""
Operational commands for the dispatch kernel.

Reads the active configuration (dispatch_config/sets/default.yaml unless
--config is given) and runs one command against its database.

Usage:
  python3 scripts/dispatch_cli.py init-db
  python3 scripts/dispatch_cli.py verify-ledger
  python3 scripts/dispatch_cli.py sweep-overdue [--actor scheduler]
  python3 scripts/dispatch_cli.py stock-levels [--low-only]

Exit status is 0 on success, 1 when the ledger check finds mismatches or
the command fails.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _orchestrator(args: argparse.Namespace, *, create_schema: bool = False):
    from dispatch_config import get_active_config
    from dispatch_kernel.logging_config import configure_logging
    from dispatch_services import build_dispatch_orchestrator

    settings = get_active_config(args.config)
    configure_logging(level=settings.logging.level)
    return build_dispatch_orchestrator(settings, create_schema=create_schema)


def cmd_init_db(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args, create_schema=True)
    orchestrator.close()
    print("Tables created.")
    return 0


def cmd_verify_ledger(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    try:
        problems = orchestrator.verify_ledger()
    finally:
        orchestrator.close()

    if not problems:
        print("Ledger consistent: every snapshot matches its history.")
        return 0
    print(f"{len(problems)} inconsistent record(s):")
    for result in problems:
        print(f"  {result.entity_type} {result.entity_id}")
        print(f"    cached:   {result.cached}")
        print(f"    replayed: {result.replayed}")
        for problem in result.problems:
            print(f"    - {problem}")
    return 1


def cmd_sweep_overdue(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    try:
        overdue = orchestrator.sweep_overdue(actor=args.actor)
    finally:
        orchestrator.close()

    print(f"{len(overdue)} overdue task(s)")
    for task in overdue:
        due = task.due_date.isoformat() if task.due_date else "-"
        print(f"  [{task.priority:>3}] {task.title:<40} {task.status.value:<12} due {due}  {task.assignee_id or '-'}")
    return 0


def cmd_stock_levels(args: argparse.Namespace) -> int:
    orchestrator = _orchestrator(args)
    try:
        levels = orchestrator.list_stock_levels(low_only=args.low_only)
    finally:
        orchestrator.close()

    print(f"{'PRODUCT':<20} {'ON HAND':>8} {'RESERVED':>9} {'AVAILABLE':>10} {'REORDER':>8}")
    for level in levels:
        flag = "  LOW" if level.is_low else ""
        print(
            f"{level.product_id:<20} {level.on_hand:>8} {level.reserved:>9} "
            f"{level.available:>10} {level.reorder_point:>8}{flag}"
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Dispatch kernel operations")
    parser.add_argument("--config", type=Path, default=None, help="Configuration YAML (default: dispatch_config/sets/default.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create missing tables").set_defaults(func=cmd_init_db)
    sub.add_parser("verify-ledger", help="Replay every history and stock ledger").set_defaults(func=cmd_verify_ledger)

    sweep = sub.add_parser("sweep-overdue", help="Emit TaskOverdue for open tasks past due")
    sweep.add_argument("--actor", default="scheduler")
    sweep.set_defaults(func=cmd_sweep_overdue)

    stock = sub.add_parser("stock-levels", help="Show stock positions")
    stock.add_argument("--low-only", action="store_true")
    stock.set_defaults(func=cmd_stock_levels)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
