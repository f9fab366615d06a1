"""Error taxonomy shared by the ledgers, the gateway adapter and the export batcher."""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence


class LedgerError(RuntimeError):
    """Base exception for membership and subscription ledger failures."""

    retryable: bool = False


class EntityNotFound(LedgerError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class DuplicateEntity(LedgerError):
    """Raised when a uniqueness key is already taken."""


class DuplicateMembership(DuplicateEntity):
    """Raised when a membership already exists for (owner, organization, year)."""

    def __init__(self, owner_id: str, organization: str, year: int) -> None:
        super().__init__(f"Membership already exists for {owner_id} in {organization} for {year}")
        self.owner_id = owner_id
        self.organization = organization
        self.year = year


class DuplicateSubscription(DuplicateEntity):
    """Raised when a subscription already exists for (owner, service kind, year)."""

    def __init__(self, owner_id: str, service_kind: str, year: int) -> None:
        super().__init__(f"Subscription {service_kind} already exists for {owner_id} in {year}")
        self.owner_id = owner_id
        self.service_kind = service_kind
        self.year = year


class InvalidTransition(LedgerError):
    """Raised when a status change is not allowed from the current state."""

    def __init__(self, entity: str, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition {entity} from {current} to {requested}")
        self.entity = entity
        self.current = current
        self.requested = requested


class InvalidSignature(LedgerError):
    """Raised when a webhook payload fails signature verification."""


class TariffError(LedgerError):
    """Raised when the rate sheet has no price for the requested combination."""


class BelowMinimumChargeable(LedgerError):
    """Raised when an amount is positive but under the gateway floor."""

    def __init__(self, amount: Decimal, minimum: Decimal) -> None:
        super().__init__(f"Amount {amount} is below the minimum chargeable amount of {minimum}")
        self.amount = amount
        self.minimum = minimum


class UpgradeOnlyViolation(LedgerError):
    """Raised when a modification would downgrade or repeat an option."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("; ".join(errors) or "Modification rejected")
        self.errors = list(errors)


class NothingToExport(LedgerError):
    """Raised when an export is requested with no pending items."""


class AlreadySent(LedgerError):
    """Raised when an export batch was already delivered to the partner."""


class DownstreamSideEffectFailed(LedgerError):
    """Raised when a collaborator (notifier, renderer, store) failed on a synchronous path."""

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class UpstreamTimeout(LedgerError):
    """Raised when the gateway or notifier did not answer in time. Safe to retry."""

    retryable = True

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


__all__ = [
    "AlreadySent",
    "BelowMinimumChargeable",
    "DownstreamSideEffectFailed",
    "DuplicateEntity",
    "DuplicateMembership",
    "DuplicateSubscription",
    "EntityNotFound",
    "InvalidSignature",
    "InvalidTransition",
    "LedgerError",
    "NothingToExport",
    "TariffError",
    "UpgradeOnlyViolation",
    "UpstreamTimeout",
]
