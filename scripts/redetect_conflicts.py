#!/usr/bin/env python3
"""CLI script to re-run conflict detection over existing deals.

Usage:
    uv run python scripts/redetect_conflicts.py
    uv run python scripts/redetect_conflicts.py --deal-id 2f6c...  --notify
    uv run python scripts/redetect_conflicts.py --dry-run

Connects directly to the database using DATABASE_URL from environment or .env
file. Walks non-terminal deals in submission order and runs the detection pass
for each. Open conflicts are never duplicated, so re-running is safe; use it
after changing rule windows or thresholds.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.dealreg
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def redetect(deal_id: str | None, notify: bool, dry_run: bool) -> int:
    """Run detection for one deal or every non-terminal deal. Returns exit code."""
    from src.dealreg.api.middleware.logging import configure_structlog
    from src.dealreg.config import get_settings
    from src.dealreg.core.database import close_db, get_session
    from src.dealreg.core.redis import close_redis, get_redis_pool
    from src.dealreg.deals.detection import ConflictDetectionEngine
    from src.dealreg.deals.errors import DealRegistrationError
    from src.dealreg.deals.notifications import ConflictNotifier
    from src.dealreg.deals.repository import ConflictRepository, DealRepository
    from src.dealreg.deals.retry import RetryPolicy
    from src.dealreg.deals.rules import RuleConfig
    from src.dealreg.deals.schemas import NON_TERMINAL_STATUSES

    configure_structlog()
    settings = get_settings()
    retry_policy = RetryPolicy.from_settings(settings)
    config = RuleConfig.from_settings(settings)

    deals = DealRepository(
        session_factory=get_session, timeout=settings.DB_OPERATION_TIMEOUT_SECONDS
    )
    conflicts = ConflictRepository(
        session_factory=get_session,
        timeout=settings.DB_OPERATION_TIMEOUT_SECONDS,
        retry_policy=retry_policy,
    )
    notifier = None
    if notify:
        from src.dealreg.events.bus import EventBus

        notifier = ConflictNotifier(
            bus=EventBus(get_redis_pool()),
            stream=settings.CONFLICT_EVENTS_STREAM,
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
    engine = ConflictDetectionEngine(
        deal_repository=deals,
        conflict_repository=conflicts,
        config=config,
        retry_policy=retry_policy,
        notifier=notifier,
        prefilter_by_territory=settings.CONFLICT_PREFILTER_BY_TERRITORY,
    )

    exit_code = 0
    try:
        if deal_id:
            deal = await deals.get_deal(deal_id)
            if deal is None:
                print(f"Deal not found: {deal_id}")
                return 1
            targets = [deal]
        else:
            targets = await deals.list_deals(NON_TERMINAL_STATUSES)

        print(f"Re-running detection for {len(targets)} deal(s)")
        for deal in targets:
            try:
                if dry_run:
                    staged = await engine.preview(deal.id)
                else:
                    result = await engine.redetect(deal.id)
            except DealRegistrationError as exc:
                print(f"  {deal.id}: FAILED ({exc})")
                exit_code = 1
                continue

            if dry_run:
                print(f"  {deal.id}: {len(staged)} match(es)")
                for match in staged:
                    print(
                        f"    - {match.conflict_type.value}/{match.severity.value} "
                        f"vs {match.competing_deal_id}: {match.reason}"
                    )
                continue

            created = sum(1 for c in result.conflicts if c.created)
            print(
                f"  {deal.id}: {len(result.conflicts)} conflict(s), {created} new, "
                f"{len(result.failed)} failed, status={result.deal_status.value}"
            )
            if result.failed:
                exit_code = 1
    finally:
        if notifier is not None:
            await notifier.drain()
        await close_redis()
        await close_db()

    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-run conflict detection over existing deals")
    parser.add_argument("--deal-id", default=None, help="Only re-check this deal")
    parser.add_argument(
        "--notify",
        action="store_true",
        help="Publish conflict.created events for newly created conflicts",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print rule matches without writing conflicts or changing deal status",
    )
    args = parser.parse_args()

    if args.dry_run and args.notify:
        parser.error("--dry-run and --notify cannot be combined")

    sys.exit(asyncio.run(redetect(args.deal_id, args.notify, args.dry_run)))


if __name__ == "__main__":
    main()
