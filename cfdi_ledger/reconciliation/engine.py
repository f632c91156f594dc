"""
Reconciliation Engine - links bank movements to the invoices they settle.

Each reconciliation is two sequential writes (transaction, then invoice)
with no cross-entity transaction. Double reconciliation is stopped by the
repository's conditional update; a failed invoice write is compensated by
unlinking the transaction, and anything that still slips through is
reported by the ConsistencyAuditor.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import structlog

from ..config import get_settings
from ..exceptions import ValidationError
from ..models import (
    AuditAction,
    BankTransaction,
    Invoice,
    InvoicePayment,
    InvoiceType,
    TransactionType,
)
from ..repositories.base import BankTransactionRepository, InvoiceRepository
from ..utils.audit_logger import AuditLogger

logger = structlog.get_logger()


def to_amount(value, field_name: str = "amount") -> Decimal:
    """Coerce a money value to Decimal without a binary float round trip."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            amount = None
    if amount is None or not amount.is_finite():
        raise ValidationError(
            f"Invalid {field_name}: {value!r}",
            details={"field": field_name, "value": str(value)},
        )
    return amount


@dataclass
class ReconciliationOutcome:
    """State of both sides after a reconcile call."""
    transaction: BankTransaction
    invoice: Invoice
    balance: Decimal
    payment: Optional[InvoicePayment] = None


@dataclass
class ReconciliationRow:
    """One bank movement with its linked invoice, if any."""
    transaction_id: str
    bank_account_id: str
    date: date
    description: Optional[str]
    amount: Decimal
    type: TransactionType
    reference: Optional[str]
    reconciled: bool
    invoice_id: Optional[str] = None
    uuid_cfdi: Optional[str] = None
    invoice_total: Optional[Decimal] = None
    emisor_id: Optional[str] = None
    diff: Optional[Decimal] = None
    reconciled_exact: Optional[bool] = None


@dataclass
class MatchSuggestion:
    """An unreconciled movement whose amount equals exactly one unpaid invoice."""
    transaction_id: str
    invoice_id: str
    amount: Decimal


class ReconciliationEngine:
    """
    Reconciles BankTransactions against Invoices.

    Transaction states:
        Unreconciled: reconciled=False, reconciled_with=None
        Reconciled:   reconciled=True,  reconciled_with=<invoice id>
    """

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

    async def register_transaction(
        self,
        *,
        bank_account_id: str,
        date: date,
        amount,
        type: TransactionType,
        actor_id: str,
        description: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> BankTransaction:
        """Record a bank movement entered manually or imported."""
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Transaction amount must be positive")
        if not bank_account_id:
            raise ValidationError("bank_account_id is required")

        txn = await self.transactions.insert(BankTransaction(
            bank_account_id=bank_account_id,
            date=date,
            amount=amount,
            type=TransactionType(type),
            description=description,
            reference=reference,
        ))
        self.audit.record(
            AuditAction.TRANSACTION_REGISTERED,
            "Bank transaction registered",
            actor_id,
            txn.id,
            amount=str(amount),
        )
        return txn

    async def get_balance(self, invoice_id: str) -> Decimal:
        """Outstanding balance: total_amount minus the sum of recorded payments."""
        invoice = await self.invoices.get(invoice_id)
        return await self._balance_of(invoice)

    async def _balance_of(self, invoice: Invoice) -> Decimal:
        payments = await self.invoices.list_payments(invoice.id)
        return invoice.total_amount - sum((p.amount for p in payments), Decimal("0"))

    async def reconcile_exact(
        self,
        transaction_id: str,
        invoice_id: str,
        *,
        actor_id: str,
        force_paid: bool = True,
    ) -> ReconciliationOutcome:
        """
        Link a transaction to an invoice and settle the invoice.

        With ``force_paid`` (the default, and the established policy) the
        invoice is marked paid no matter how the transaction amount compares
        to the invoice total. Without it, the transaction amount is applied
        as an allocation (see ``reconcile_with_allocation``).
        """
        invoice = await self.invoices.get(invoice_id)
        txn = await self.transactions.mark_reconciled(transaction_id, invoice_id)

        if not force_paid:
            return await self._settle(txn, invoice, txn.amount, actor_id)

        try:
            await self.invoices.set_paid([invoice_id], True)
        except Exception:
            await self._compensate(transaction_id, invoice_id)
            raise

        if txn.amount < invoice.total_amount:
            logger.info(
                "Invoice forced paid by smaller transaction",
                transaction_id=transaction_id,
                invoice_id=invoice_id,
                transaction_amount=str(txn.amount),
                invoice_total=str(invoice.total_amount),
            )

        invoice = await self.invoices.get(invoice_id)
        self.audit.record(
            AuditAction.TRANSACTION_RECONCILED,
            "Transaction reconciled (exact)",
            actor_id,
            transaction_id,
            invoice_id,
            amount=str(txn.amount),
            invoice_total=str(invoice.total_amount),
            force_paid=True,
        )
        return ReconciliationOutcome(
            transaction=txn,
            invoice=invoice,
            balance=await self._balance_of(invoice),
        )

    async def reconcile_with_allocation(
        self,
        transaction_id: str,
        invoice_id: str,
        amount,
        *,
        actor_id: str,
    ) -> ReconciliationOutcome:
        """
        Link a transaction to an invoice, applying ``amount`` to it.

        ``amount >= total_amount`` marks the invoice fully paid. A smaller
        amount is recorded as an InvoicePayment and the paid flag follows the
        derived balance.
        """
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Allocation amount must be positive")

        invoice = await self.invoices.get(invoice_id)
        txn = await self.transactions.mark_reconciled(transaction_id, invoice_id)
        return await self._settle(txn, invoice, amount, actor_id)

    async def _settle(
        self,
        txn: BankTransaction,
        invoice: Invoice,
        amount: Decimal,
        actor_id: str,
    ) -> ReconciliationOutcome:
        payment = None
        try:
            if amount >= invoice.total_amount:
                await self.invoices.set_paid([invoice.id], True)
            else:
                payment = await self.invoices.add_payment(InvoicePayment(
                    invoice_id=invoice.id,
                    amount=amount,
                    paid_on=txn.date,
                    transaction_id=txn.id,
                    recorded_by=actor_id,
                ))
                if self.settings.is_settled(await self._balance_of(invoice)):
                    await self.invoices.set_paid([invoice.id], True)
        except Exception:
            if payment is None:
                await self._compensate(txn.id, invoice.id)
            raise

        invoice = await self.invoices.get(invoice.id)
        balance = await self._balance_of(invoice)
        self.audit.record(
            AuditAction.TRANSACTION_RECONCILED,
            "Transaction reconciled (allocation)",
            actor_id,
            txn.id,
            invoice.id,
            amount=str(amount),
            partial=payment is not None,
            balance=str(balance),
        )
        return ReconciliationOutcome(
            transaction=txn,
            invoice=invoice,
            balance=balance,
            payment=payment,
        )

    async def _compensate(self, transaction_id: str, invoice_id: str) -> None:
        """Undo the transaction link after the invoice write failed."""
        try:
            await self.transactions.clear_reconciliation(transaction_id)
        except Exception as e:
            logger.error(
                "Compensation failed, transaction left reconciled",
                transaction_id=transaction_id,
                invoice_id=invoice_id,
                error=str(e),
            )
        else:
            logger.warning(
                "Invoice update failed, transaction unlinked",
                transaction_id=transaction_id,
                invoice_id=invoice_id,
            )

    async def unreconcile(self, transaction_id: str, *, actor_id: str) -> BankTransaction:
        """
        Unlink a transaction and mark its invoice unpaid.

        The rollback is not amount-aware: the invoice becomes unpaid even if
        earlier partial payments remain recorded against it.
        """
        txn = await self.transactions.get(transaction_id)
        invoice_id = txn.reconciled_with

        if not txn.reconciled and invoice_id is None:
            logger.info("Transaction not reconciled, nothing to undo", transaction_id=transaction_id)
            return txn

        txn = await self.transactions.clear_reconciliation(transaction_id)
        if invoice_id:
            await self.invoices.set_paid([invoice_id], False)

        self.audit.record(
            AuditAction.TRANSACTION_UNRECONCILED,
            "Reconciliation undone",
            actor_id,
            transaction_id,
            invoice_id,
        )
        return txn

    async def record_payment(
        self,
        invoice_id: str,
        amount,
        *,
        actor_id: str,
        paid_on: Optional[date] = None,
        transaction_id: Optional[str] = None,
    ) -> InvoicePayment:
        """
        Register a payment complement (PPD installment) against an invoice.
        The amount may not exceed the outstanding balance.
        """
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        invoice = await self.invoices.get(invoice_id)
        balance = await self._balance_of(invoice)
        if amount > balance:
            raise ValidationError(
                "Payment amount exceeds the outstanding balance",
                details={"amount": str(amount), "balance": str(balance)},
            )

        payment = await self.invoices.add_payment(InvoicePayment(
            invoice_id=invoice_id,
            amount=amount,
            paid_on=paid_on or date.today(),
            transaction_id=transaction_id,
            recorded_by=actor_id,
        ))
        if self.settings.is_settled(balance - amount):
            await self.invoices.set_paid([invoice_id], True)

        self.audit.record(
            AuditAction.PAYMENT_RECORDED,
            "Payment complement recorded",
            actor_id,
            invoice_id,
            payment.id,
            amount=str(amount),
            balance=str(balance - amount),
        )
        return payment

    async def reconciliation_view(
        self,
        reconciled: Optional[bool] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[ReconciliationRow]:
        """Bank movements with their linked invoice and amount difference."""
        rows = []
        for txn in await self.transactions.list(reconciled=reconciled, start=start, end=end):
            row = ReconciliationRow(
                transaction_id=txn.id,
                bank_account_id=txn.bank_account_id,
                date=txn.date,
                description=txn.description,
                amount=txn.amount,
                type=txn.type,
                reference=txn.reference,
                reconciled=txn.reconciled,
            )
            if txn.reconciled_with:
                invoice = await self.invoices.find(txn.reconciled_with)
                if invoice is not None:
                    row.invoice_id = invoice.id
                    row.uuid_cfdi = invoice.uuid_cfdi
                    row.invoice_total = invoice.total_amount
                    row.emisor_id = invoice.emisor_id
                    row.diff = txn.amount - invoice.total_amount
                    row.reconciled_exact = abs(row.diff) <= self.settings.paid_tolerance
            rows.append(row)
        return rows

    async def suggest_matches(self) -> List[MatchSuggestion]:
        """
        Propose exact-amount matches for unreconciled movements.

        A suggestion is made only when the amount identifies a single unpaid
        invoice of the same direction and that invoice is claimed by a single
        movement.
        """
        unpaid: Dict[tuple, List[Invoice]] = defaultdict(list)
        for invoice in await self.invoices.list(paid=False):
            unpaid[(invoice.tipo.value, invoice.total_amount)].append(invoice)

        candidates: Dict[str, List[BankTransaction]] = defaultdict(list)
        for txn in await self.transactions.list(reconciled=False):
            direction = (
                InvoiceType.EGRESO if txn.type == TransactionType.EGRESO else InvoiceType.INGRESO
            )
            matches = unpaid.get((direction.value, txn.amount), [])
            if len(matches) == 1:
                candidates[matches[0].id].append(txn)

        return [
            MatchSuggestion(transaction_id=txns[0].id, invoice_id=invoice_id, amount=txns[0].amount)
            for invoice_id, txns in candidates.items()
            if len(txns) == 1
        ]
