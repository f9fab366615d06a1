"""SQLAlchemy models package."""

from .export_batch import (  # noqa: F401
    ExportBatch,
    ExportBatchItem,
    ExportBatchStatusEnum,
    ExportItemKindEnum,
)
from .membership import Membership, MembershipCategoryEnum, MembershipStatusEnum  # noqa: F401
from .payment import Organization, PaymentSourceEnum, PaymentStatusEnum  # noqa: F401
from .processor_event import ProcessorEvent  # noqa: F401
from .reconciliation import PaymentReconciliationRun  # noqa: F401
from .subscription import (  # noqa: F401
    DepositStatusEnum,
    ServiceKindEnum,
    Subscription,
    SubscriptionModification,
    SubscriptionStatusEnum,
)

__all__ = [
    "DepositStatusEnum",
    "ExportBatch",
    "ExportBatchItem",
    "ExportBatchStatusEnum",
    "ExportItemKindEnum",
    "Membership",
    "MembershipCategoryEnum",
    "MembershipStatusEnum",
    "Organization",
    "PaymentReconciliationRun",
    "PaymentSourceEnum",
    "PaymentStatusEnum",
    "ProcessorEvent",
    "ServiceKindEnum",
    "Subscription",
    "SubscriptionModification",
    "SubscriptionStatusEnum",
]
