"""Background workers supporting async processing."""

from .partner_export import PartnerExportWorker
from .payment_reconciliation import PaymentReconciliationSweeper, ReconciliationReport

__all__ = ["PartnerExportWorker", "PaymentReconciliationSweeper", "ReconciliationReport"]
