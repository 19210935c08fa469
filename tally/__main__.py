"""
tally.__main__ — Maintenance CLI for ``python -m tally``
========================================================

Wiring:
1. Load .env (``DATABASE_URL``).
2. Load config.yaml (soft settings).
3. Build the configured document store.
4. Run one maintenance command and print its summary.

Commands::

    python -m tally validate [--sample N]      # report drifted counters
    python -m tally reconcile [USER ...]       # fix given users, or all drifted
    python -m tally catalog                    # dedupe + seed quest catalogue
    python -m tally leaderboard DIMENSION [--limit N]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from tally.config import load_config
from tally.engine.ranking import Dimension
from tally.services.leaderboard_service import LeaderboardRanker
from tally.services.quest_service import QuestProgressEngine
from tally.services.reconciliation_service import ConsistencyReconciler
from tally.store import create_store

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tally")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m tally", description="Tally maintenance commands"
    )
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="report users whose counters drifted")
    validate.add_argument("--sample", type=int, default=100)

    reconcile = sub.add_parser("reconcile", help="recompute counters from events")
    reconcile.add_argument("users", nargs="*", help="user ids (default: every drifted user)")
    reconcile.add_argument("--sample", type=int, default=100)

    sub.add_parser("catalog", help="remove duplicate quests and insert missing defaults")

    board = sub.add_parser("leaderboard", help="print a leaderboard")
    board.add_argument("dimension", choices=[d.value for d in Dimension])
    board.add_argument("--limit", type=int, default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one maintenance command.  Returns the process exit code."""
    args = _parser().parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("%s", exc)
        return 1
    logger.info("Config loaded — Platform: %s", cfg.platform_name)

    # 3. Store.
    store = create_store(cfg)

    # 4. Command.
    if args.command == "validate":
        found = ConsistencyReconciler(store, cfg).validate(args.sample)
        for inc in found:
            print(inc.as_dict())
        return 1 if found else 0

    if args.command == "reconcile":
        reconciler = ConsistencyReconciler(store, cfg)
        if args.users:
            result = asyncio.run(reconciler.batch_reconcile(args.users))
        else:
            result = asyncio.run(reconciler.fix_all_inconsistencies(args.sample))["result"]
        print(result.summary)
        return 1 if result.failed_user_ids else 0

    if args.command == "catalog":
        print(QuestProgressEngine(store, cfg).ensure_quest_catalog_integrity())
        return 0

    ranker = LeaderboardRanker(store, cfg)
    for entry in ranker.rank(args.dimension, args.limit):
        print(f"{entry.rank:>4}  {entry.display_name:<24} {entry.score:>10.2f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
