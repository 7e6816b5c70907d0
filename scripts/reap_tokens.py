#!/usr/bin/env python3
"""
Token Reaper Script

Runs one housekeeping pass outside the API process: marks active tokens past
their expiry as expired and prunes old daily offer counters.

Useful from cron when the in-process reaper is disabled (REAPER_ENABLED=false).
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.db.session import close_engines, get_write_session  # noqa: E402
from app.exceptions import DatabaseError  # noqa: E402
from app.models.domain import ReaperReport  # noqa: E402
from app.observability import get_logger, setup_logging  # noqa: E402
from app.services.token_reaper import TokenReaper  # noqa: E402

logger = get_logger("scripts.reap_tokens")


async def reap(retention_days: int | None, dry_run: bool) -> ReaperReport:
    """Run a single pass and release database connections."""
    try:
        async with get_write_session() as session:
            reaper = TokenReaper(session, retention_days=retention_days)
            return await reaper.run_once(dry_run=dry_run)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Expire stale redemption tokens and prune old offer counters",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One pass with configured retention (for cron jobs)
  python3 reap_tokens.py

  # Keep two weeks of counters
  python3 reap_tokens.py --retention-days 14

  # Show what would change without committing
  python3 reap_tokens.py --dry-run
        """,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        help="Days of daily counters to keep (default: COUNTER_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Roll back instead of committing"
    )

    args = parser.parse_args()

    if args.retention_days is not None and args.retention_days < 0:
        parser.error("--retention-days cannot be negative")

    setup_logging()

    try:
        report = asyncio.run(reap(args.retention_days, args.dry_run))
    except DatabaseError as e:
        logger.error("reap_tokens_failed", error=e.message)
        sys.exit(1)

    prefix = "[dry run] " if args.dry_run else ""
    print(
        f"{prefix}expired {report.expired_tokens} tokens, "
        f"pruned {report.pruned_counters} counters"
    )
    sys.exit(0)


if __name__ == "__main__":
    main()
