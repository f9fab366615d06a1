"""CSV layout of the partner export file."""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from io import StringIO
from typing import Any, Sequence
from uuid import UUID

from apiary_api.models.export_batch import ExportItemKindEnum
from apiary_api.models.subscription import Subscription
from apiary_api.services.tariffs.calculator import INSURANCE_TIER, LEGAL_ASSISTANCE, PUBLICATION

PAYMENT_METHOD_LABEL = "Virement"

COLUMNS: tuple[str, ...] = (
    "surname",
    "given_name",
    "street",
    "reserved",
    "complement",
    "postal_code",
    "city",
    "country",
    "email",
    "phone",
    "mobile",
    "tax_id",
    "hive_count",
    "membership_fee",
    "publication_paper",
    "publication_digital",
    "publication_paper_digital",
    "insurance_tier1",
    "insurance_tier2",
    "insurance_tier3",
    "legal_assistance",
)

# Flag columns summed in the header region, in file order.
TOTAL_COLUMNS: tuple[str, ...] = COLUMNS[13:]

_PUBLICATION_COLUMNS = {
    "paper": "publication_paper",
    "digital": "publication_digital",
    "paper_digital": "publication_paper_digital",
}
_TIER_COLUMNS = {
    "tier1": "insurance_tier1",
    "tier2": "insurance_tier2",
    "tier3": "insurance_tier3",
}


@dataclass(slots=True)
class ExportItem:
    """A paid subscription or modification awaiting submission to the partner."""

    kind: ExportItemKindEnum
    subscription: Subscription
    amount: Decimal
    paid_at: datetime | None = None
    modification_position: int | None = None

    @property
    def subscription_id(self) -> UUID:
        return self.subscription.id

    @property
    def item_key(self) -> str:
        if self.kind == ExportItemKindEnum.MODIFICATION:
            return f"mod:{self.subscription.id}:{self.modification_position}"
        return f"sub:{self.subscription.id}"


def build_row(item: ExportItem) -> dict[str, Any]:
    """One file row. Modifications carry the subscription's current options."""

    subscription = item.subscription
    info = subscription.personal_info_json or {}
    address = info.get("address") or {}
    options = subscription.options_json or {}

    row: dict[str, Any] = {column: "" for column in COLUMNS}
    row.update(
        {
            "surname": info.get("surname") or "",
            "given_name": info.get("given_name") or "",
            "street": str(address.get("street") or "").strip(),
            "complement": str(address.get("complement") or "").strip(),
            "postal_code": str(address.get("postal_code") or "").strip(),
            "city": str(address.get("city") or "").strip(),
            "country": str(address.get("country") or "France").strip(),
            "email": info.get("email") or "",
            "phone": info.get("phone") or "",
            "mobile": info.get("mobile") or "",
            "tax_id": info.get("tax_id") or "",
            "hive_count": subscription.hive_count or "",
            "membership_fee": 1,
        }
    )
    publication_column = _PUBLICATION_COLUMNS.get(str(options.get(PUBLICATION) or "none"))
    if publication_column:
        row[publication_column] = 1
    tier_column = _TIER_COLUMNS.get(str(options.get(INSURANCE_TIER) or "none"))
    if tier_column:
        row[tier_column] = 1
    if options.get(LEGAL_ASSISTANCE):
        row["legal_assistance"] = 1
    return row


def render_csv(items: Sequence[ExportItem], *, export_date: date, is_first_of_year: bool) -> bytes:
    """Render the header region followed by one row per item."""

    rows = [build_row(item) for item in items]
    totals = {column: sum(1 for row in rows if row[column] == 1) for column in TOTAL_COLUMNS}

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Export date", export_date.strftime("%d/%m/%Y")])
    writer.writerow(["Payment method", PAYMENT_METHOD_LABEL])
    writer.writerow(["First export of year", 1 if is_first_of_year else 0])
    for column in TOTAL_COLUMNS:
        writer.writerow([f"Total {column}", totals[column]])
    writer.writerow([])
    writer.writerow(list(COLUMNS))
    for row in rows:
        writer.writerow([row[column] for column in COLUMNS])
    return output.getvalue().encode("utf-8")


def export_file_name(year: int, export_date: date) -> str:
    return f"partner_export_{year}_{export_date.isoformat()}.csv"


__all__ = [
    "COLUMNS",
    "ExportItem",
    "PAYMENT_METHOD_LABEL",
    "TOTAL_COLUMNS",
    "build_row",
    "export_file_name",
    "render_csv",
]
