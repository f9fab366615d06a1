"""Create or promote the free companion memberships missing for a year.

Intended usage: run manually after a cascade failure was logged, or when the
free-companion flag was set on primaries after they were already paid.

Example::
    python tooling/scripts/backfill_companion_memberships.py --year 2026
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import sys
from collections import Counter
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill companion memberships")
    parser.add_argument(
        "--year",
        type=int,
        default=dt.date.today().year,
        help="Membership year to repair.",
    )
    return parser.parse_args()


async def _run(year: int) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from apiary_api.db.session import async_session  # type: ignore import-position
    from apiary_api.services.documents import CertificateIssuer  # type: ignore import-position
    from apiary_api.services.memberships import CompanionMembershipResolver  # type: ignore import-position

    async with async_session() as session:
        resolver = CompanionMembershipResolver(session, certificates=CertificateIssuer.from_settings())
        outcomes = await resolver.backfill(year)

    for outcome in outcomes:
        if outcome.action in {"blocked", "error"}:
            logger.warning(
                "Companion not ensured",
                primary_id=str(outcome.primary_id),
                action=outcome.action,
                detail=outcome.detail,
            )
    return dict(Counter(outcome.action for outcome in outcomes))


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.year))
    logger.success("Companion membership backfill completed", year=args.year, **summary)
    return 1 if summary.get("error", 0) else 0


if __name__ == "__main__":
    sys.exit(main())
