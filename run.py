#!/usr/bin/env python3
"""Run the Vouchboard indexer.

Usage:
    python run.py <command> [options]

Examples:
    python run.py init-db                        # Create tables
    python run.py index mitchellh/ghostty        # Index one repository
    python run.py reindex --limit 10             # Reindex the 10 stalest repositories
    python run.py rebuild-leaderboard            # Recompute the leaderboard from entries
    python run.py verify-chain mitchellh/ghostty # Check a repository's audit chain
    python run.py scheduler                      # Reindex periodically until interrupted
"""

import argparse
import asyncio
import json
import sys

from vouchboard.database import close_db, create_schema, get_db_session, init_db
from vouchboard.exceptions import IndexerError
from vouchboard.logging_config import configure_logging


def _print_json(payload) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, default=str))


async def _init_db(args) -> int:
    await init_db()
    await create_schema()
    return 0


async def _index(args) -> int:
    from vouchboard.services.indexer_service import index_repository

    result = await index_repository(args.repo, trusted=True)
    _print_json(result)
    return 0 if result.status == "indexed" else 1


async def _reindex(args) -> int:
    from vouchboard.services.indexer_service import reindex_tracked_repos

    summary = await reindex_tracked_repos(limit=args.limit)
    _print_json(summary)
    return 0 if summary.failed == 0 else 1


async def _rebuild_leaderboard(args) -> int:
    from vouchboard.services.leaderboard_service import rebuild_leaderboard

    async with get_db_session() as db:
        rows = await rebuild_leaderboard(db)
        await db.commit()
    _print_json({"rows": rows})
    return 0


async def _verify_chain(args) -> int:
    from vouchboard.services.query_service import verify_repository_chain

    async with get_db_session() as db:
        verification = await verify_repository_chain(db, args.repo)
    if verification is None:
        print(f"Error: repository {args.repo} has not been indexed.", file=sys.stderr)
        return 1
    _print_json(verification)
    return 0 if verification.valid else 1


async def _scheduler(args) -> int:
    from vouchboard.services.scheduler_service import scheduler_loop

    stop_event = asyncio.Event()
    try:
        await scheduler_loop(stop_event, interval_seconds=args.interval)
    except asyncio.CancelledError:
        stop_event.set()
    return 0


COMMANDS = {
    "init-db": _init_db,
    "index": _index,
    "reindex": _reindex,
    "rebuild-leaderboard": _rebuild_leaderboard,
    "verify-chain": _verify_chain,
    "scheduler": _scheduler,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the Vouchboard indexer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py init-db                        Create tables
  python run.py index owner/repo               Index one repository now
  python run.py reindex --limit 10             Reindex the stalest repositories
  python run.py verify-chain owner/repo        Recompute and check audit hashes
  python run.py scheduler --interval 600       Reindex every 10 minutes
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default=None,
        help="Logging level (default: from VOUCHBOARD_LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("init-db", help="Create database tables")

    index_parser = subparsers.add_parser("index", help="Index one repository")
    index_parser.add_argument("repo", help="owner/repo or GitHub URL")

    reindex_parser = subparsers.add_parser("reindex", help="Reindex tracked repositories")
    reindex_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Repositories to reindex (default: VOUCHBOARD_REINDEX_BATCH_SIZE)",
    )

    subparsers.add_parser("rebuild-leaderboard", help="Recompute the leaderboard from entries")

    verify_parser = subparsers.add_parser("verify-chain", help="Verify a repository's audit chain")
    verify_parser.add_argument("repo", help="owner/repo or GitHub URL")

    scheduler_parser = subparsers.add_parser("scheduler", help="Reindex periodically")
    scheduler_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between cycles (default: VOUCHBOARD_REINDEX_INTERVAL_SECONDS)",
    )
    return parser


async def _run(args) -> int:
    try:
        return await COMMANDS[args.command](args)
    finally:
        await close_db()


def main():
    args = build_parser().parse_args()

    configure_logging(level=args.log_level)

    try:
        sys.exit(asyncio.run(_run(args)))
    except IndexerError as e:
        print(f"Error ({e.code}): {e}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
