"""Result objects returned by ledger commands."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(slots=True)
class PaymentApplication:
    """Outcome of applying a payment to a ledger entity.

    ``applied`` is False when the payment had already been recorded, which
    callers report as an idempotent success.
    """

    entity_type: str
    entity_id: UUID
    applied: bool
    status: str
    modification_index: int | None = None
    detail: str | None = None


__all__ = ["PaymentApplication"]
