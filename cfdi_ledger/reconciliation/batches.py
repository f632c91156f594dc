"""
Payment batch manager.

A batch groups supplier invoices to be paid together:

    borrador -> programado -> pagado
    borrador | programado -> cancelado

Marking a batch paid fans out to every member invoice. The fan-out is
retriable: calling mark_paid again on a paid batch re-applies it.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

import structlog

from ..config import get_settings
from ..exceptions import ValidationError
from ..models import (
    AuditAction,
    BatchStatus,
    PaymentBatch,
    PaymentBatchItem,
    PaymentBatchSummary,
)
from ..repositories.base import InvoiceRepository, PaymentBatchRepository
from ..utils.audit_logger import AuditLogger
from .engine import to_amount

logger = structlog.get_logger()


class PaymentBatchManager:
    """Lifecycle and membership of payment batches."""

    def __init__(
        self,
        batches: PaymentBatchRepository,
        invoices: InvoiceRepository,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = get_settings()
        self.batches = batches
        self.invoices = invoices
        self.audit = audit or AuditLogger()
        # batch_id -> (lock, coroutines holding or waiting on it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    async def create_batch(
        self,
        title: Optional[str] = None,
        bank_account_id: Optional[str] = None,
        scheduled_date: Optional[date] = None,
        *,
        actor_id: str,
    ) -> PaymentBatch:
        batch = await self.batches.insert_batch(PaymentBatch(
            title=title,
            bank_account_id=bank_account_id,
            scheduled_date=scheduled_date,
            created_by=actor_id,
        ))
        self.audit.record(
            AuditAction.BATCH_CREATED,
            "Payment batch created",
            actor_id,
            batch.id,
            title=title,
        )
        return batch

    async def add_invoice(
        self,
        batch_id: str,
        invoice_id: str,
        amount,
        *,
        actor_id: str,
    ) -> PaymentBatchItem:
        """Add an invoice to an open batch with the amount to pay."""
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Batch item amount must be positive")

        async with self._batch_lock(batch_id):
            batch = await self.batches.get_batch(batch_id)
            self._require_open(batch, "add invoices to")
            invoice = await self.invoices.get(invoice_id)

            if self.settings.batch_enforce_balance:
                available = await self._available_amount(invoice_id, invoice.total_amount)
                if amount > available:
                    raise ValidationError(
                        "Batch item amount exceeds the invoice's unscheduled balance",
                        details={
                            "invoice_id": invoice_id,
                            "amount": str(amount),
                            "available": str(available),
                        },
                    )

            item = await self.batches.insert_item(PaymentBatchItem(
                batch_id=batch_id,
                invoice_id=invoice_id,
                amount=amount,
            ))

        self.audit.record(
            AuditAction.BATCH_ITEM_ADDED,
            "Invoice added to batch",
            actor_id,
            batch_id,
            invoice_id,
            item.id,
            amount=str(amount),
        )
        return item

    async def _available_amount(self, invoice_id: str, total: Decimal) -> Decimal:
        """Balance minus what open batches already intend to pay."""
        payments = await self.invoices.list_payments(invoice_id)
        available = total - sum((p.amount for p in payments), Decimal("0"))

        for batch in await self.batches.list_batches():
            if batch.status.is_terminal:
                continue
            for item in await self.batches.list_items(batch.id):
                if item.invoice_id == invoice_id:
                    available -= item.amount
        return available

    async def remove_invoice(self, item_id: str, *, actor_id: str) -> None:
        item = await self.batches.get_item(item_id)

        async with self._batch_lock(item.batch_id):
            batch = await self.batches.get_batch(item.batch_id)
            self._require_open(batch, "remove invoices from")
            await self.batches.delete_item(item_id)

        self.audit.record(
            AuditAction.BATCH_ITEM_REMOVED,
            "Invoice removed from batch",
            actor_id,
            item.batch_id,
            item.invoice_id,
            item_id,
        )

    async def schedule(
        self,
        batch_id: str,
        *,
        actor_id: str,
        scheduled_date: Optional[date] = None,
    ) -> PaymentBatch:
        """Move a draft batch to programado, optionally setting its date."""
        changes = {}
        if scheduled_date is not None:
            changes["scheduled_date"] = scheduled_date
        return await self._transition(batch_id, BatchStatus.PROGRAMADO, actor_id, changes)

    async def cancel(self, batch_id: str, *, actor_id: str) -> PaymentBatch:
        return await self._transition(batch_id, BatchStatus.CANCELADO, actor_id)

    async def mark_paid(self, batch_id: str, *, actor_id: str) -> PaymentBatch:
        """
        Set the batch to pagado and mark every member invoice paid.

        The status write happens first. If the invoice fan-out fails the
        batch stays pagado and calling mark_paid again completes it.
        """
        async with self._batch_lock(batch_id):
            batch = await self.batches.get_batch(batch_id)

            if batch.status == BatchStatus.PAGADO:
                logger.info("Batch already paid, re-applying invoice update", batch_id=batch_id)
            elif batch.status.can_transition_to(BatchStatus.PAGADO):
                batch = await self.batches.update_batch(batch_id, {"status": BatchStatus.PAGADO})
            else:
                raise ValidationError(
                    f"Cannot mark a {batch.status.value} batch as paid",
                    details={"batch_id": batch_id, "status": batch.status.value},
                )

            items = await self.batches.list_items(batch_id)
            invoice_ids = sorted({item.invoice_id for item in items})
            if invoice_ids:
                await self.invoices.set_paid(invoice_ids, True)

        logger.info("Batch paid", batch_id=batch_id, invoices=len(invoice_ids))
        self.audit.record(
            AuditAction.BATCH_STATUS_CHANGED,
            "Batch marked paid",
            actor_id,
            batch_id,
            *invoice_ids,
            status=BatchStatus.PAGADO.value,
        )
        return batch

    async def _transition(
        self,
        batch_id: str,
        target: BatchStatus,
        actor_id: str,
        changes: Optional[dict] = None,
    ) -> PaymentBatch:
        async with self._batch_lock(batch_id):
            batch = await self.batches.get_batch(batch_id)
            if not batch.status.can_transition_to(target):
                raise ValidationError(
                    f"Invalid batch transition: {batch.status.value} -> {target.value}",
                    details={
                        "batch_id": batch_id,
                        "from": batch.status.value,
                        "to": target.value,
                    },
                )
            previous = batch.status
            batch = await self.batches.update_batch(batch_id, {**(changes or {}), "status": target})

        logger.info(
            "Batch status changed",
            batch_id=batch_id,
            from_status=previous.value,
            to_status=target.value,
        )
        self.audit.record(
            AuditAction.BATCH_STATUS_CHANGED,
            f"Batch moved to {target.value}",
            actor_id,
            batch_id,
            status=target.value,
            previous=previous.value,
        )
        return batch

    @asynccontextmanager
    async def _batch_lock(self, batch_id: str) -> AsyncIterator[None]:
        """
        Serialize writes to one batch.

        Entries live only while some coroutine holds or waits on the lock,
        so the table never keeps ids of finished, terminal or unknown batches.
        """
        lock, users = self._locks.get(batch_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[batch_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[batch_id]
            if users <= 1:
                del self._locks[batch_id]
            else:
                self._locks[batch_id] = (lock, users - 1)

    @staticmethod
    def _require_open(batch: PaymentBatch, verb: str) -> None:
        if not batch.status.accepts_items:
            raise ValidationError(
                f"Cannot {verb} a {batch.status.value} batch",
                details={"batch_id": batch.id, "status": batch.status.value},
            )

    async def get_summary(self, batch_id: str) -> PaymentBatchSummary:
        batch = await self.batches.get_batch(batch_id)
        return await self._summarize(batch)

    async def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        search: Optional[str] = None,
    ) -> List[PaymentBatchSummary]:
        """Batches with item counts and totals, newest first."""
        return [
            await self._summarize(batch)
            for batch in await self.batches.list_batches(status=status, search=search)
        ]

    async def _summarize(self, batch: PaymentBatch) -> PaymentBatchSummary:
        items = await self.batches.list_items(batch.id)
        return PaymentBatchSummary(
            batch_id=batch.id,
            title=batch.title,
            status=batch.status,
            scheduled_date=batch.scheduled_date,
            bank_account_id=batch.bank_account_id,
            invoice_count=len(items),
            total_amount=sum((i.amount for i in items), Decimal("0")),
            created_at=batch.created_at,
        )
