"""
In-memory repositories.

Used for embedding the engine without a database and in tests. Rows are
copied in and out so callers never hold a live reference to stored state.
"""

import asyncio
from dataclasses import fields, replace
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import ConflictError, NotFoundError, RepositoryError
from ..models import (
    BankTransaction,
    BatchStatus,
    Invoice,
    InvoicePayment,
    InvoiceType,
    PaymentBatch,
    PaymentBatchItem,
    utcnow,
)


def _apply(row, changes: Dict[str, Any]):
    allowed = {f.name for f in fields(row)} - {"id", "created_at", "updated_at"}
    unknown = set(changes) - allowed
    if unknown:
        raise RepositoryError(
            f"Unknown or read-only fields: {sorted(unknown)}",
            details={"fields": sorted(unknown)},
        )
    return replace(row, **changes, updated_at=utcnow())


class InMemoryInvoiceRepository:
    def __init__(self):
        self._invoices: Dict[str, Invoice] = {}
        self._payments: Dict[str, List[InvoicePayment]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            if invoice.id in self._invoices:
                raise ConflictError(
                    f"Invoice already exists: {invoice.id}",
                    details={"id": invoice.id},
                )
            if invoice.uuid_cfdi and any(
                inv.uuid_cfdi == invoice.uuid_cfdi for inv in self._invoices.values()
            ):
                raise ConflictError(
                    f"CFDI already registered: {invoice.uuid_cfdi}",
                    details={"uuid_cfdi": invoice.uuid_cfdi},
                )
            self._invoices[invoice.id] = replace(invoice)
            return replace(invoice)

    async def update(self, invoice_id: str, changes: Dict[str, Any]) -> Invoice:
        async with self._lock:
            current = self._invoices.get(invoice_id)
            if current is None:
                raise NotFoundError("Invoice", invoice_id)
            updated = _apply(current, changes)
            self._invoices[invoice_id] = updated
            return replace(updated)

    async def get(self, invoice_id: str) -> Invoice:
        invoice = await self.find(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def find(self, invoice_id: str) -> Optional[Invoice]:
        invoice = self._invoices.get(invoice_id)
        return replace(invoice) if invoice else None

    async def list(
        self,
        paid: Optional[bool] = None,
        tipo: Optional[InvoiceType] = None,
    ) -> List[Invoice]:
        invoices = [
            replace(inv) for inv in self._invoices.values()
            if (paid is None or inv.paid == paid) and (tipo is None or inv.tipo == tipo)
        ]
        return sorted(
            invoices,
            key=lambda inv: inv.issued_at or inv.created_at,
            reverse=True,
        )

    async def set_paid(self, invoice_ids: Iterable[str], paid: bool) -> int:
        async with self._lock:
            touched = 0
            for invoice_id in set(invoice_ids):
                current = self._invoices.get(invoice_id)
                if current is None:
                    continue
                self._invoices[invoice_id] = replace(
                    current, paid=paid, updated_at=utcnow()
                )
                touched += 1
            return touched

    async def add_payment(self, payment: InvoicePayment) -> InvoicePayment:
        async with self._lock:
            if payment.invoice_id not in self._invoices:
                raise NotFoundError("Invoice", payment.invoice_id)
            self._payments.setdefault(payment.invoice_id, []).append(replace(payment))
            return replace(payment)

    async def list_payments(self, invoice_id: str) -> List[InvoicePayment]:
        return [replace(p) for p in self._payments.get(invoice_id, [])]


class InMemoryBankTransactionRepository:
    def __init__(self):
        self._transactions: Dict[str, BankTransaction] = {}
        self._lock = asyncio.Lock()

    async def insert(self, transaction: BankTransaction) -> BankTransaction:
        async with self._lock:
            if transaction.id in self._transactions:
                raise ConflictError(
                    f"Transaction already exists: {transaction.id}",
                    details={"id": transaction.id},
                )
            self._transactions[transaction.id] = replace(transaction)
            return replace(transaction)

    async def get(self, transaction_id: str) -> BankTransaction:
        txn = self._transactions.get(transaction_id)
        if txn is None:
            raise NotFoundError("BankTransaction", transaction_id)
        return replace(txn)

    async def list(
        self,
        reconciled: Optional[bool] = None,
        bank_account_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[BankTransaction]:
        result = []
        for txn in self._transactions.values():
            if reconciled is not None and txn.reconciled != reconciled:
                continue
            if bank_account_id and txn.bank_account_id != bank_account_id:
                continue
            if start and txn.date < start:
                continue
            if end and txn.date > end:
                continue
            result.append(replace(txn))
        return sorted(result, key=lambda t: t.date, reverse=True)

    async def mark_reconciled(self, transaction_id: str, invoice_id: str) -> BankTransaction:
        async with self._lock:
            current = self._transactions.get(transaction_id)
            if current is None:
                raise NotFoundError("BankTransaction", transaction_id)
            # Conditional update: WHERE reconciled = false
            if current.reconciled:
                raise ConflictError(
                    f"Transaction already reconciled: {transaction_id}",
                    details={
                        "transaction_id": transaction_id,
                        "reconciled_with": current.reconciled_with,
                    },
                )
            updated = replace(
                current,
                reconciled=True,
                reconciled_with=invoice_id,
                updated_at=utcnow(),
            )
            self._transactions[transaction_id] = updated
            return replace(updated)

    async def clear_reconciliation(self, transaction_id: str) -> BankTransaction:
        async with self._lock:
            current = self._transactions.get(transaction_id)
            if current is None:
                raise NotFoundError("BankTransaction", transaction_id)
            updated = replace(
                current,
                reconciled=False,
                reconciled_with=None,
                updated_at=utcnow(),
            )
            self._transactions[transaction_id] = updated
            return replace(updated)


class InMemoryPaymentBatchRepository:
    def __init__(self):
        self._batches: Dict[str, PaymentBatch] = {}
        self._items: Dict[str, PaymentBatchItem] = {}
        self._lock = asyncio.Lock()

    async def insert_batch(self, batch: PaymentBatch) -> PaymentBatch:
        async with self._lock:
            self._batches[batch.id] = replace(batch)
            return replace(batch)

    async def get_batch(self, batch_id: str) -> PaymentBatch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFoundError("PaymentBatch", batch_id)
        return replace(batch)

    async def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        search: Optional[str] = None,
    ) -> List[PaymentBatch]:
        needle = search.lower() if search else None
        batches = [
            replace(b) for b in self._batches.values()
            if (status is None or b.status == status)
            and (needle is None or needle in (b.title or "").lower())
        ]
        return sorted(batches, key=lambda b: b.created_at, reverse=True)

    async def update_batch(self, batch_id: str, changes: Dict[str, Any]) -> PaymentBatch:
        async with self._lock:
            current = self._batches.get(batch_id)
            if current is None:
                raise NotFoundError("PaymentBatch", batch_id)
            updated = _apply(current, changes)
            self._batches[batch_id] = updated
            return replace(updated)

    async def insert_item(self, item: PaymentBatchItem) -> PaymentBatchItem:
        async with self._lock:
            if item.batch_id not in self._batches:
                raise NotFoundError("PaymentBatch", item.batch_id)
            self._items[item.id] = replace(item)
            return replace(item)

    async def get_item(self, item_id: str) -> PaymentBatchItem:
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError("PaymentBatchItem", item_id)
        return replace(item)

    async def delete_item(self, item_id: str) -> None:
        async with self._lock:
            if self._items.pop(item_id, None) is None:
                raise NotFoundError("PaymentBatchItem", item_id)

    async def list_items(self, batch_id: str) -> List[PaymentBatchItem]:
        items = [replace(i) for i in self._items.values() if i.batch_id == batch_id]
        return sorted(items, key=lambda i: i.created_at)
