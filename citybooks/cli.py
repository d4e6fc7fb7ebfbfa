"""Command-line access to the dashboard views."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Sequence

from .config import AppConfig, load_config
from .dashboard import DashboardService, open_dashboard
from .models import DetailSearchResult, MergedResult, ShardError
from .registry import ALL_SCOPE, UnknownShard
from .shaping import ShapedDocument

LOG = logging.getLogger(__name__)

LISTINGS = {
    "invoices": "list_invoices",
    "sales": "list_sales",
    "employees": "list_employees",
    "purchases": "list_purchases",
    "journal": "list_journal_entries",
    "adjustments": "list_inventory_adjustments",
}

DETAILS = {
    "invoice": "invoice_detail",
    "purchase": "purchase_detail",
    "journal-entry": "journal_entry_detail",
    "adjustment": "inventory_adjustment_detail",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="citybooks", description="Query every city database at once.")
    parser.add_argument("--city", default=ALL_SCOPE, help="City code, or ALL (default)")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("cities", help="List configured cities")
    for name in LISTINGS:
        commands.add_parser(name, help=f"List {name}")
    for name in DETAILS:
        detail = commands.add_parser(name, help=f"Show one {name}")
        detail.add_argument("id")
    payroll = commands.add_parser("payroll", help="Show an employee's payroll")
    payroll.add_argument("id")
    payroll.add_argument("--year", default=ALL_SCOPE)
    payroll.add_argument("--month", default=ALL_SCOPE)
    log = commands.add_parser("log", help="Latest transactions from every city")
    log.add_argument("--limit", type=int, default=50)
    return parser


async def run_command(service: DashboardService, args: argparse.Namespace) -> Any:
    """Dispatch parsed arguments to the matching dashboard method."""

    if args.command == "cities":
        return service.cities()
    if args.command == "log":
        return await service.general_log(args.limit)
    if args.command == "payroll":
        return await service.employee_payroll(args.id, args.city, year=args.year, month=args.month)
    if args.command in LISTINGS:
        return await getattr(service, LISTINGS[args.command])(args.city)
    return await getattr(service, DETAILS[args.command])(args.id, args.city)


def to_jsonable(result: Any) -> Any:
    if isinstance(result, MergedResult):
        return [dict(row) for row in result]
    if isinstance(result, DetailSearchResult):
        if not result.found:
            return None
        entity = result.entity
        if isinstance(entity, ShapedDocument):
            entity = entity.to_dict()
        return {"shard_code": result.shard_code, "entity": entity}
    return result


async def _main(config: AppConfig, args: argparse.Namespace) -> Any:
    async with open_dashboard(config) as service:
        return await run_command(service, args)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        result = asyncio.run(_main(config, args))
    except UnknownShard as exc:
        LOG.error("%s", exc)
        return 2
    except ShardError as exc:
        LOG.error("%s", exc)
        return 1
    payload = to_jsonable(result)
    if payload is None:
        LOG.warning("Not found")
        return 1
    json.dump(payload, sys.stdout, default=str, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0


__all__ = ["build_parser", "main", "run_command", "to_jsonable"]
