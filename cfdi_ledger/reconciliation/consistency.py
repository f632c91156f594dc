"""
Consistency audit for reconciliations.

Reconciling writes the transaction and the invoice separately, so a crash
between the two can leave a transaction reconciled against an invoice that
is still unpaid. The auditor scans for those pairs and reports them.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import structlog

from ..config import get_settings
from ..exceptions import ConsistencyError
from ..models import AuditAction, utcnow
from ..repositories.base import BankTransactionRepository, InvoiceRepository
from ..utils.audit_logger import AuditLogger

logger = structlog.get_logger()


@dataclass
class ConsistencyReport:
    """Result of one audit pass."""
    checked: int = 0
    violations: List[ConsistencyError] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_consistent(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "is_consistent": self.is_consistent,
            "violations": [
                {"message": v.message, **v.details} for v in self.violations
            ],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ConsistencyAuditor:
    """Finds reconciled transactions whose invoice does not agree with them."""

    def __init__(
        self,
        transactions: BankTransactionRepository,
        invoices: InvoiceRepository,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = get_settings()
        self.transactions = transactions
        self.invoices = invoices
        self.audit = audit or AuditLogger()

    async def run(self) -> ConsistencyReport:
        report = ConsistencyReport()

        for txn in await self.transactions.list(reconciled=True):
            report.checked += 1
            violation = await self._check(txn)
            if violation is not None:
                report.violations.append(violation)
                self.audit.record(
                    AuditAction.CONSISTENCY_VIOLATION,
                    violation.message,
                    None,
                    txn.id,
                    violation.invoice_id,
                    success=False,
                    kind=violation.kind,
                )

        report.finished_at = utcnow()
        logger.info(
            "Consistency audit complete",
            checked=report.checked,
            violations=len(report.violations),
        )
        return report

    async def _check(self, txn) -> Optional[ConsistencyError]:
        if not txn.is_consistent:
            return ConsistencyError(
                "Transaction reconciled flag and link disagree",
                transaction_id=txn.id,
                invoice_id=txn.reconciled_with,
                kind="link_mismatch",
            )

        invoice = await self.invoices.find(txn.reconciled_with)
        if invoice is None:
            return ConsistencyError(
                "Transaction reconciled against a missing invoice",
                transaction_id=txn.id,
                invoice_id=txn.reconciled_with,
                kind="invoice_missing",
            )
        if not invoice.paid:
            # Partial allocations leave the invoice open on purpose
            payments = await self.invoices.list_payments(invoice.id)
            if any(p.transaction_id == txn.id for p in payments):
                return None
            return ConsistencyError(
                "Transaction reconciled against an unpaid invoice",
                transaction_id=txn.id,
                invoice_id=invoice.id,
                kind="invoice_unpaid",
            )
        return None

    async def run_periodically(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Run the audit every ``interval`` seconds until ``stop_event`` is set."""
        interval = interval if interval is not None else self.settings.audit_interval_seconds
        stop_event = stop_event or asyncio.Event()

        while not stop_event.is_set():
            try:
                await self.run()
            except Exception as e:
                logger.error("Consistency audit failed", error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
