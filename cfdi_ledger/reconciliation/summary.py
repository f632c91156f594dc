"""Receivable / payable totals over the invoice ledger."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..models import InvoiceType, utcnow
from ..repositories.base import BankTransactionRepository, InvoiceRepository


@dataclass
class InvoiceSummary:
    """Summary statistics of the invoice ledger."""
    # Counts
    total_invoices: int = 0
    paid_invoices: int = 0
    pending_invoices: int = 0
    unreconciled_transactions: int = 0

    # Amounts
    receivable_amount: Decimal = Decimal("0")
    payable_amount: Decimal = Decimal("0")
    invoiced_this_month: Decimal = Decimal("0")

    @property
    def paid_rate(self) -> float:
        """Percentage of invoices marked paid."""
        if self.total_invoices == 0:
            return 0.0
        return (self.paid_invoices / self.total_invoices) * 100

    def to_dict(self) -> dict:
        return {
            "total_invoices": self.total_invoices,
            "paid_invoices": self.paid_invoices,
            "pending_invoices": self.pending_invoices,
            "unreconciled_transactions": self.unreconciled_transactions,
            "receivable_amount": str(self.receivable_amount),
            "payable_amount": str(self.payable_amount),
            "invoiced_this_month": str(self.invoiced_this_month),
            "paid_rate": round(self.paid_rate, 2),
        }


async def summarize_invoices(
    invoices: InvoiceRepository,
    transactions: Optional[BankTransactionRepository] = None,
    now: Optional[datetime] = None,
) -> InvoiceSummary:
    """
    Compute ledger totals.

    Receivable is unpaid ``ingreso`` invoices, payable is unpaid ``egreso``
    invoices; both use the full invoice total.
    """
    now = now or utcnow()
    month_start = datetime(now.year, now.month, 1)
    summary = InvoiceSummary()

    for invoice in await invoices.list():
        summary.total_invoices += 1
        if invoice.paid:
            summary.paid_invoices += 1
        else:
            summary.pending_invoices += 1
            if invoice.tipo == InvoiceType.INGRESO:
                summary.receivable_amount += invoice.total_amount
            else:
                summary.payable_amount += invoice.total_amount

        if invoice.issued_at and invoice.issued_at >= month_start:
            summary.invoiced_this_month += invoice.total_amount

    if transactions is not None:
        summary.unreconciled_transactions = len(await transactions.list(reconciled=False))

    return summary
