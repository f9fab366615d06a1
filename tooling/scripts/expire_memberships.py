"""Expire every open or active membership of a past year.

Intended usage: yearly job at the start of a new campaign.

Example::
    python tooling/scripts/expire_memberships.py --year 2025
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire memberships of a finished year")
    parser.add_argument(
        "--year",
        type=int,
        default=dt.date.today().year - 1,
        help="Membership year to close (defaults to the previous year).",
    )
    return parser.parse_args()


async def _run(year: int) -> int:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from apiary_api.db.session import async_session  # type: ignore import-position
    from apiary_api.services.memberships import MembershipLedger  # type: ignore import-position
    from apiary_api.services.notifications import EmailNotifier  # type: ignore import-position

    async with async_session() as session:
        ledger = MembershipLedger(session, notifier=EmailNotifier.from_settings())
        return await ledger.expire_year(year)


def main() -> int:
    args = parse_args()
    if args.year >= dt.date.today().year:
        logger.error("Only past years can be expired", year=args.year)
        return 1

    expired = asyncio.run(_run(args.year))
    logger.success("Membership expiry completed", year=args.year, expired=expired)
    return 0


if __name__ == "__main__":
    sys.exit(main())
