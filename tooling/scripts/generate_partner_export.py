"""Generate, send or activate a partner export batch.

Intended usage: manual runs by staff outside the scheduled export dates, or
to activate a batch once the partner confirmed its import.

Examples::
    python tooling/scripts/generate_partner_export.py --year 2026 --send
    python tooling/scripts/generate_partner_export.py --activate 6c1f0b7e-...
    python tooling/scripts/generate_partner_export.py --summary --year 2026
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import sys
from pathlib import Path
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Partner export batch operations")
    parser.add_argument("--year", type=int, default=dt.date.today().year, help="Campaign year to export.")
    parser.add_argument(
        "--export-date",
        type=dt.date.fromisoformat,
        default=None,
        help="Date printed in the file header (YYYY-MM-DD, defaults to today).",
    )
    parser.add_argument("--send", action="store_true", help="Deliver the generated batch to the partner.")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--activate", type=UUID, default=None, help="Activate the items of an existing batch.")
    action.add_argument("--summary", action="store_true", help="Print paid/exported counts and exit.")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from apiary_api.core.settings import settings  # type: ignore import-position
    from apiary_api.db.session import async_session  # type: ignore import-position
    from apiary_api.domain.errors import NothingToExport  # type: ignore import-position
    from apiary_api.services.documents import CertificateIssuer, S3ObjectStore  # type: ignore import-position
    from apiary_api.services.exports import ExportBatcher, ExportSchedule  # type: ignore import-position
    from apiary_api.services.notifications import EmailNotifier  # type: ignore import-position
    from apiary_api.services.subscriptions import SubscriptionLedger  # type: ignore import-position

    async with async_session() as session:
        batcher = ExportBatcher(
            session,
            store=S3ObjectStore(settings=settings),
            notifier=EmailNotifier.from_settings(),
            subscriptions=SubscriptionLedger(session, certificates=CertificateIssuer.from_settings()),
        )
        if args.summary:
            summary = await batcher.summary(args.year)
            next_date = ExportSchedule.from_settings().next_export_date(dt.date.today())
            return {
                "year": summary.year,
                "pending_subscriptions": summary.pending_subscriptions,
                "pending_modifications": summary.pending_modifications,
                "batches": summary.batches,
                "next_export_date": next_date.isoformat() if next_date else None,
            }
        if args.activate is not None:
            report = await batcher.activate(args.activate)
            for failure in report.errors:
                logger.warning("Activation item failed", **failure)
            return {
                "batch_id": str(report.batch_id),
                "activated": len(report.activated),
                "modifications_validated": len(report.modifications_validated),
                "errors": len(report.errors),
            }

        try:
            batch = await batcher.generate(args.year, export_date=args.export_date)
        except NothingToExport as exc:
            logger.info("Nothing to export", year=args.year, detail=str(exc))
            return {"batch_id": None, "items": 0}
        batch_id = batch.id
        if args.send:
            batch = await batcher.send(batch_id)
        return {
            "batch_id": str(batch_id),
            "items": batch.item_count,
            "total_amount": str(batch.total_amount),
            "status": batch.status.value,
            "file_locator": batch.file_locator,
        }


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args))
    logger.success("Partner export command completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
