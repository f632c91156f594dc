"""
Repository contracts for invoices, bank transactions and payment batches.

The relational store behind these protocols is the serialization point for
concurrent reconciliation: ``mark_reconciled`` must be a conditional update
on ``reconciled = false`` and raise ConflictError when it matches no row.
"""

from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..models import (
    BankTransaction,
    BatchStatus,
    Invoice,
    InvoicePayment,
    InvoiceType,
    PaymentBatch,
    PaymentBatchItem,
)


class InvoiceRepository(Protocol):
    async def insert(self, invoice: Invoice) -> Invoice:
        ...

    async def update(self, invoice_id: str, changes: Dict[str, Any]) -> Invoice:
        """Apply field changes; raises NotFoundError for unknown ids."""
        ...

    async def get(self, invoice_id: str) -> Invoice:
        ...

    async def find(self, invoice_id: str) -> Optional[Invoice]:
        ...

    async def list(
        self,
        paid: Optional[bool] = None,
        tipo: Optional[InvoiceType] = None,
    ) -> List[Invoice]:
        ...

    async def set_paid(self, invoice_ids: Iterable[str], paid: bool) -> int:
        """Bulk update of the paid flag; returns the number of rows touched."""
        ...

    async def add_payment(self, payment: InvoicePayment) -> InvoicePayment:
        ...

    async def list_payments(self, invoice_id: str) -> List[InvoicePayment]:
        ...


class BankTransactionRepository(Protocol):
    async def insert(self, transaction: BankTransaction) -> BankTransaction:
        ...

    async def get(self, transaction_id: str) -> BankTransaction:
        ...

    async def list(
        self,
        reconciled: Optional[bool] = None,
        bank_account_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[BankTransaction]:
        ...

    async def mark_reconciled(self, transaction_id: str, invoice_id: str) -> BankTransaction:
        """Set reconciled/reconciled_with only if currently unreconciled."""
        ...

    async def clear_reconciliation(self, transaction_id: str) -> BankTransaction:
        ...


class PaymentBatchRepository(Protocol):
    async def insert_batch(self, batch: PaymentBatch) -> PaymentBatch:
        ...

    async def get_batch(self, batch_id: str) -> PaymentBatch:
        ...

    async def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        search: Optional[str] = None,
    ) -> List[PaymentBatch]:
        ...

    async def update_batch(self, batch_id: str, changes: Dict[str, Any]) -> PaymentBatch:
        ...

    async def insert_item(self, item: PaymentBatchItem) -> PaymentBatchItem:
        ...

    async def get_item(self, item_id: str) -> PaymentBatchItem:
        ...

    async def delete_item(self, item_id: str) -> None:
        ...

    async def list_items(self, batch_id: str) -> List[PaymentBatchItem]:
        ...
