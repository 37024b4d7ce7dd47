import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path

from shoplytics.adapters.sqlite.migrator import SQLiteMigrator
from shoplytics.adapters.sqlite_db import SQLiteAnalyticsStore
from shoplytics.app_shell.seed import seed_demo_events
from shoplytics.components.analytics import (
    DEFINITIONS,
    build_retention_config,
    create_retention_pruner,
    ledger_rollups,
    missing_contributions,
    run_query_summary,
)
from shoplytics.rules.loader import load_rules
from shoplytics.rules.models import Rules

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cli")

DATA_DIR = os.environ.get("SHOPLYTICS_DATA_DIR", "./data")
DB_PATH = f"{DATA_DIR}/shoplytics.db"
RULES_PATH = os.environ.get("SHOPLYTICS_RULES_PATH", "rules.yaml")
MIGRATIONS_DIR = "migrations"


def get_rules() -> Rules:
    if not Path(RULES_PATH).exists():
        logger.error("Rules file %s not found.", RULES_PATH)
        sys.exit(1)
    return load_rules(Path(RULES_PATH))


def get_store(rules: Rules) -> SQLiteAnalyticsStore:
    return SQLiteAnalyticsStore(DB_PATH, busy_timeout_ms=rules.analytics.storage.busy_timeout_ms)


def handle_migrate(args: argparse.Namespace) -> None:
    Path(DATA_DIR).mkdir(parents=True, exist_ok=True)
    applied = SQLiteMigrator(DB_PATH, MIGRATIONS_DIR).run_migrations()
    print(f"Applied {len(applied)} migrations.")


def handle_prune(rules: Rules, args: argparse.Namespace) -> None:
    pruner = create_retention_pruner(
        get_store(rules), config=build_retention_config(rules.analytics)
    )
    if args.drain:
        result, errors = pruner.drain(args.days, args.batch_size)
    else:
        result, errors = pruner.prune_older_than(args.days, args.batch_size)

    if errors:
        for e in errors:
            logger.error("%s: %s", e.code, e.message)
        sys.exit(2)
    assert result is not None
    print(json.dumps({"deleted": result.deleted, "has_more": result.has_more}))


def handle_summary(rules: Rules, args: argparse.Namespace) -> None:
    out = run_query_summary(store=get_store(rules), rules=rules.analytics)
    print(json.dumps(asdict(out), indent=2))


def handle_seed(rules: Rules, args: argparse.Namespace) -> None:
    written = seed_demo_events(get_store(rules), args.visits, datetime.now(UTC), days=args.days)
    print(f"Seeded {written} events.")


def handle_verify(rules: Rules, args: argparse.Namespace) -> None:
    """Check every bucket against the recorded contributions of the stored events."""
    store = get_store(rules)
    with store.reader() as session:
        events = session.scan_events(0, 2**62)
        expected = ledger_rollups(session, events)
        missing = missing_contributions(session, events)
        actual = {
            (b.definition, b.key): b
            for definition in DEFINITIONS
            for b in session.scan_buckets(definition.name)
        }

    mismatches = 0
    for key in expected.keys() | actual.keys():
        want = expected.get(key)
        got = actual.get(key)
        want_acc = want.accumulator if want else 0.0
        want_count = want.count if want else 0
        got_acc = got.accumulator if got else 0.0
        got_count = got.count if got else 0
        if want_count != got_count or abs(want_acc - got_acc) > 1e-6:
            mismatches += 1
            logger.warning(
                "Mismatch %s: expected %.2f/%d, stored %.2f/%d",
                key, want_acc, want_count, got_acc, got_count,
            )
    for definition, event_id in missing:
        logger.warning("Event %s has no %s contribution", event_id, definition)

    print(
        f"Checked {len(expected)} buckets over {len(events)} events; "
        f"{mismatches} mismatches, {len(missing)} missing contributions."
    )
    if mismatches or missing:
        sys.exit(3)


def main() -> None:
    parser = argparse.ArgumentParser(description="Shoplytics CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate
    subparsers.add_parser("migrate", help="Apply pending database migrations")

    # prune
    prune_parser = subparsers.add_parser("prune", help="Delete events past retention")
    prune_parser.add_argument("--days", type=int, default=None, help="Retention window in days")
    prune_parser.add_argument("--batch-size", type=int, default=None, help="Events per batch")
    prune_parser.add_argument(
        "--drain", action="store_true", help="Repeat batches until the backlog is empty"
    )

    # summary
    subparsers.add_parser("summary", help="Print the dashboard summary as JSON")

    # seed
    seed_parser = subparsers.add_parser("seed", help="Ingest demo storefront traffic")
    seed_parser.add_argument("--visits", type=int, default=200, help="Number of shopper sessions")
    seed_parser.add_argument("--days", type=int, default=30, help="Spread over this many days")

    # verify
    subparsers.add_parser("verify", help="Check rollups against the contribution ledger")

    args = parser.parse_args()

    if args.command == "migrate":
        handle_migrate(args)
        return

    rules = get_rules()

    if args.command == "prune":
        handle_prune(rules, args)
    elif args.command == "summary":
        handle_summary(rules, args)
    elif args.command == "seed":
        handle_seed(rules, args)
    elif args.command == "verify":
        handle_verify(rules, args)


if __name__ == "__main__":
    main()
