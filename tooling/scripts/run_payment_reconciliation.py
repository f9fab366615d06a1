"""Replay recent paid Stripe checkouts through the ledgers once.

Intended usage: schedule via cron, or run manually after a webhook outage to
recover payments whose live notification never arrived. Safe to repeat: every
replay goes through the same idempotent ledger operations as the webhook.

Example:
    python tooling/scripts/run_payment_reconciliation.py --window-days 30 --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute the payment reconciliation sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded in the run record to describe the invocation source.",
    )
    parser.add_argument(
        "--window-days",
        type=int,
        default=None,
        help="Override the number of trailing days of checkout history to replay.",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Override the number of events fetched per Stripe page.",
    )
    return parser.parse_args()


async def _run(trigger: str, window_days: int | None, page_size: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from apiary_api.core.settings import settings  # type: ignore import-position
    from apiary_api.db.session import async_session  # type: ignore import-position
    from apiary_api.workers import PaymentReconciliationSweeper  # type: ignore import-position

    sweeper = PaymentReconciliationSweeper(
        async_session,  # type: ignore[arg-type]
        window_days=window_days or settings.reconciliation_window_days,
        page_size=page_size or settings.reconciliation_page_size,
    )
    report = await sweeper.run_once(triggered_by=trigger)
    for event_id, outcome in report.outcomes:
        if outcome.outcome in {"processed", "error"}:
            logger.info(
                "Reconciliation event",
                event_id=event_id,
                outcome=outcome.outcome,
                entity_type=outcome.entity_type,
                entity_id=outcome.entity_id,
                detail=outcome.detail,
            )
    return {"total": report.total, **report.counts}


def main() -> int:
    args = parse_args()
    if args.window_days is not None and args.window_days <= 0:
        logger.error("Window days must be positive", window_days=args.window_days)
        return 1

    summary = asyncio.run(_run(args.trigger, args.window_days, args.page_size))
    logger.success(
        "Payment reconciliation run completed",
        trigger=args.trigger,
        **summary,
    )
    return 1 if summary.get("error", 0) else 0


if __name__ == "__main__":
    sys.exit(main())
