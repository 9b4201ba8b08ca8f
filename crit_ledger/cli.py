#!/usr/bin/env python3
"""
cli.py - Offline inspection of the stored critical history

Reads configuration from the environment (and .env) and works directly on
the configured key/value store; no live tree is needed.

Usage:
    crit-ledger stats                          # totals and per-partition counts
    crit-ledger history --partition 123 --critical
    crit-ledger settings show
    crit-ledger settings set crit_chance 15
    crit-ledger trim                           # re-apply history caps
    crit-ledger cleanup --days 7               # drop entries older than N days
    crit-ledger stats --json                   # machine readable
"""

import argparse
import json
import sys
import time
from datetime import datetime

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from crit_ledger.core.config import Settings, get_config
from crit_ledger.core.error_handler import ErrorHandler
from crit_ledger.core.event_emitter import EventEmitter
from crit_ledger.history.store import HISTORY_KEY, DurableHistoryStore
from crit_ledger.observer.scheduler import ManualScheduler
from crit_ledger.persistence.kv_store import StoreUnavailableError, get_kv_store

console = Console()


def _parse_value(raw: str):
    """Setting values arrive as strings; accept JSON literals where they parse."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _open_store(config, kv_store):
    store = DurableHistoryStore(
        kv_store,
        ManualScheduler(wall_start_ms=int(time.time() * 1000)),
        config,
        ErrorHandler(console=console, debug_mode=config.DEBUG),
        EventEmitter(),
    )
    store.load()
    if store.load_failed:
        raise StoreUnavailableError(config.NAMESPACE, HISTORY_KEY, "history could not be read")
    return store


def cmd_stats(args, config, kv_store) -> int:
    stats = _open_store(config, kv_store).stats()
    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    table = Table(title=f"Critical history ({kv_store.get_name()})")
    table.add_column("Partition")
    table.add_column("Critical", justify="right")
    for partition_id, count in sorted(stats["critical_by_partition"].items(),
                                      key=lambda item: -item[1]):
        table.add_row(str(partition_id), str(count))
    console.print(table)
    console.print(f"[bold]{stats['total']}[/bold] entries, "
                  f"[red]{stats['critical']}[/red] critical ({stats['crit_rate']}%) "
                  f"across {stats['partitions']} partitions")
    return 0


def cmd_history(args, config, kv_store) -> int:
    store = _open_store(config, kv_store)
    entries = store.critical_entries(args.partition) if args.critical else store.query(args.partition)
    entries = sorted(entries, key=lambda e: e.timestamp, reverse=True)[:args.limit]

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0

    table = Table(title="History")
    table.add_column("Id")
    table.add_column("Partition")
    table.add_column("When")
    table.add_column("Crit")
    table.add_column("Author")
    table.add_column("Preview", overflow="ellipsis", max_width=50)
    for entry in entries:
        when = datetime.fromtimestamp(entry.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
        table.add_row(
            entry.identity.value,
            str(entry.partition_id),
            when,
            "[red]yes[/red]" if entry.is_critical else "no",
            entry.author_name or "",
            (entry.body_preview or "").replace("\n", " "),
        )
    console.print(table)
    return 0


def cmd_settings(args, config, kv_store) -> int:
    settings = Settings.load(kv_store, config.NAMESPACE)

    if args.action == "set":
        try:
            settings.update(**{args.name: _parse_value(args.value)})
        except AttributeError as e:
            console.print(f"[red]{e}[/red]")
            return 2
        if not settings.save(kv_store, config.NAMESPACE):
            console.print("[red]Settings could not be written[/red]")
            return 1

    if args.json:
        print(json.dumps(settings.to_dict(), indent=2))
        return 0

    table = Table(title="Settings")
    table.add_column("Name")
    table.add_column("Value")
    for name, value in vars(settings).items():
        table.add_row(name, repr(value))
    console.print(table)
    return 0


def cmd_trim(args, config, kv_store) -> int:
    store = _open_store(config, kv_store)
    removed = store.trim()
    store.flush()
    console.print(f"Trimmed [bold]{removed}[/bold] entries")
    return 0


def cmd_cleanup(args, config, kv_store) -> int:
    store = _open_store(config, kv_store)
    days = args.days
    if days is None:
        days = Settings.load(kv_store, config.NAMESPACE).history_retention_days
    removed = store.cleanup_older_than(days)
    store.flush()
    console.print(f"Removed [bold]{removed}[/bold] entries older than {days} days")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crit-ledger", description="Inspect and maintain critical history")
    parser.add_argument("--env", type=str, default=None, help="Config environment (development|production|test)")
    parser.add_argument("--json", action="store_true", help="Output as JSON")

    # Lets --json follow the subcommand too; SUPPRESS keeps a top-level --json intact.
    output = argparse.ArgumentParser(add_help=False)
    output.add_argument("--json", action="store_true", default=argparse.SUPPRESS, help="Output as JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="History totals", parents=[output])

    history = sub.add_parser("history", help="List stored entries", parents=[output])
    history.add_argument("--partition", type=str, default=None)
    history.add_argument("--critical", action="store_true", help="Only critical entries")
    history.add_argument("--limit", type=int, default=50)

    settings = sub.add_parser("settings", help="Show or change settings", parents=[output])
    settings_sub = settings.add_subparsers(dest="action", required=True)
    settings_sub.add_parser("show", parents=[output])
    setter = settings_sub.add_parser("set", parents=[output])
    setter.add_argument("name")
    setter.add_argument("value")

    sub.add_parser("trim", help="Re-apply history caps", parents=[output])

    cleanup = sub.add_parser("cleanup", help="Drop entries older than the retention window", parents=[output])
    cleanup.add_argument("--days", type=float, default=None)

    return parser


COMMANDS = {
    "stats": cmd_stats,
    "history": cmd_history,
    "settings": cmd_settings,
    "trim": cmd_trim,
    "cleanup": cmd_cleanup,
}


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    config = get_config(args.env)

    issues = config.validate_config()
    for issue in issues:
        console.print(f"[yellow]Config: {issue}[/yellow]")

    kv_store = get_kv_store(config)
    try:
        return COMMANDS[args.command](args, config, kv_store)
    except StoreUnavailableError as e:
        console.print(f"[red]Store unavailable: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
