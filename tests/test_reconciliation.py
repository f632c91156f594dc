"""
Tests for the reconciliation engine and the consistency audit.
"""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from cfdi_ledger.exceptions import ConflictError, NotFoundError, RepositoryError, ValidationError
from cfdi_ledger.models import (
    AuditAction,
    BankTransaction,
    Invoice,
    InvoiceType,
    MetodoPago,
    TransactionType,
)
from cfdi_ledger.reconciliation import ConsistencyAuditor, ReconciliationEngine


@pytest.fixture
def engine(transaction_repo, invoice_repo, audit):
    return ReconciliationEngine(transaction_repo, invoice_repo, audit=audit)


@pytest.fixture
def auditor(transaction_repo, invoice_repo, audit):
    return ConsistencyAuditor(transaction_repo, invoice_repo, audit=audit)


async def make_invoice(repo, total="1500.00", **kwargs) -> Invoice:
    return await repo.insert(Invoice(total_amount=Decimal(total), **kwargs))


async def make_transaction(engine, amount="1500.00", **kwargs) -> BankTransaction:
    params = {
        "bank_account_id": "ACC1",
        "date": date(2024, 3, 20),
        "type": TransactionType.EGRESO,
        "actor_id": "user-1",
    }
    params.update(kwargs)
    return await engine.register_transaction(amount=amount, **params)


class TestReconcileExact:
    """Exact reconciliation marks the invoice paid unconditionally."""

    @pytest.mark.asyncio
    async def test_exact_amount(self, engine, invoice_repo, transaction_repo, audit):
        invoice = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)

        outcome = await engine.reconcile_exact(txn.id, invoice.id, actor_id="user-1")

        assert outcome.invoice.paid is True
        assert outcome.transaction.reconciled is True
        assert outcome.transaction.reconciled_with == invoice.id
        assert outcome.payment is None

        stored = await transaction_repo.get(txn.id)
        assert stored.reconciled and stored.reconciled_with == invoice.id
        assert (await invoice_repo.get(invoice.id)).paid is True

        entries = audit.find(AuditAction.TRANSACTION_RECONCILED)
        assert entries[0].actor_id == "user-1"
        assert set(entries[0].entity_ids) == {txn.id, invoice.id}

    @pytest.mark.asyncio
    async def test_smaller_amount_still_marks_paid(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00")
        txn = await make_transaction(engine, amount="400.00")

        outcome = await engine.reconcile_exact(txn.id, invoice.id, actor_id="user-1")

        assert outcome.invoice.paid is True
        assert outcome.balance == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_without_force_paid_allocates(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00")
        txn = await make_transaction(engine, amount="400.00")

        outcome = await engine.reconcile_exact(
            txn.id, invoice.id, actor_id="user-1", force_paid=False
        )

        assert outcome.invoice.paid is False
        assert outcome.payment.amount == Decimal("400.00")
        assert outcome.balance == Decimal("600.00")

    @pytest.mark.asyncio
    async def test_double_reconciliation_conflicts(self, engine, invoice_repo):
        first = await make_invoice(invoice_repo, total="100.00")
        second = await make_invoice(invoice_repo, total="100.00")
        txn = await make_transaction(engine, amount="100.00")

        await engine.reconcile_exact(txn.id, first.id, actor_id="user-1")
        with pytest.raises(ConflictError):
            await engine.reconcile_exact(txn.id, second.id, actor_id="user-2")

        assert (await invoice_repo.get(second.id)).paid is False

    @pytest.mark.asyncio
    async def test_concurrent_reconciliation_has_one_winner(self, engine, invoice_repo):
        first = await make_invoice(invoice_repo, total="100.00")
        second = await make_invoice(invoice_repo, total="100.00")
        txn = await make_transaction(engine, amount="100.00")

        results = await asyncio.gather(
            engine.reconcile_exact(txn.id, first.id, actor_id="a"),
            engine.reconcile_exact(txn.id, second.id, actor_id="b"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictError) for r in results) == 1
        paid = [inv for inv in await invoice_repo.list() if inv.paid]
        assert len(paid) == 1

    @pytest.mark.asyncio
    async def test_missing_invoice_writes_nothing(self, engine, transaction_repo):
        txn = await make_transaction(engine)

        with pytest.raises(NotFoundError):
            await engine.reconcile_exact(txn.id, "missing", actor_id="user-1")

        assert (await transaction_repo.get(txn.id)).reconciled is False

    @pytest.mark.asyncio
    async def test_invoice_write_failure_unlinks_transaction(
        self, engine, invoice_repo, transaction_repo
    ):
        invoice = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)
        invoice_repo.set_paid = AsyncMock(side_effect=RepositoryError("write failed"))

        with pytest.raises(RepositoryError, match="write failed"):
            await engine.reconcile_exact(txn.id, invoice.id, actor_id="user-1")

        stored = await transaction_repo.get(txn.id)
        assert stored.reconciled is False
        assert stored.reconciled_with is None


class TestReconcileWithAllocation:
    """Partial settlement through InvoicePayment rows."""

    @pytest.mark.asyncio
    async def test_partial_allocation(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00")
        txn = await make_transaction(engine, amount="400.00")

        outcome = await engine.reconcile_with_allocation(
            txn.id, invoice.id, "400.00", actor_id="user-1"
        )

        assert outcome.invoice.paid is False
        assert outcome.transaction.reconciled is True
        payments = await invoice_repo.list_payments(invoice.id)
        assert len(payments) == 1
        assert payments[0].amount == Decimal("400.00")
        assert payments[0].paid_on == txn.date
        assert payments[0].transaction_id == txn.id
        assert await engine.get_balance(invoice.id) == Decimal("600.00")

    @pytest.mark.asyncio
    async def test_full_allocation_marks_paid(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00")
        txn = await make_transaction(engine, amount="1200.00")

        outcome = await engine.reconcile_with_allocation(
            txn.id, invoice.id, Decimal("1000.00"), actor_id="user-1"
        )

        assert outcome.invoice.paid is True
        assert outcome.payment is None
        assert await invoice_repo.list_payments(invoice.id) == []

    @pytest.mark.asyncio
    async def test_last_installment_settles_invoice(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00", metodo_pago=MetodoPago.PPD)
        await engine.record_payment(invoice.id, "600.00", actor_id="user-1")
        txn = await make_transaction(engine, amount="400.00")

        outcome = await engine.reconcile_with_allocation(
            txn.id, invoice.id, "400.00", actor_id="user-1"
        )

        assert outcome.payment is not None
        assert outcome.balance == Decimal("0")
        assert outcome.invoice.paid is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-10", "abc"])
    async def test_rejects_non_positive_amount(self, engine, invoice_repo, transaction_repo, amount):
        invoice = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)

        with pytest.raises(ValidationError):
            await engine.reconcile_with_allocation(txn.id, invoice.id, amount, actor_id="user-1")

        assert (await transaction_repo.get(txn.id)).reconciled is False


class TestUnreconcile:
    """Undoing a reconciliation always leaves the invoice unpaid."""

    @pytest.mark.asyncio
    async def test_unreconcile(self, engine, invoice_repo, transaction_repo, audit):
        invoice = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)
        await engine.reconcile_exact(txn.id, invoice.id, actor_id="user-1")

        result = await engine.unreconcile(txn.id, actor_id="user-2")

        assert result.reconciled is False
        assert result.reconciled_with is None
        assert (await invoice_repo.get(invoice.id)).paid is False
        assert audit.find(AuditAction.TRANSACTION_UNRECONCILED)

    @pytest.mark.asyncio
    async def test_unreconcile_after_partial_payment(self, engine, invoice_repo):
        """Rollback is not amount-aware: earlier payments stay but paid is false."""
        invoice = await make_invoice(invoice_repo, total="1000.00")
        await engine.record_payment(invoice.id, "300.00", actor_id="user-1")
        txn = await make_transaction(engine, amount="700.00")
        await engine.reconcile_exact(txn.id, invoice.id, actor_id="user-1")

        await engine.unreconcile(txn.id, actor_id="user-1")

        assert (await invoice_repo.get(invoice.id)).paid is False
        assert len(await invoice_repo.list_payments(invoice.id)) == 1

    @pytest.mark.asyncio
    async def test_unreconcile_unlinked_transaction_is_noop(self, engine, audit):
        txn = await make_transaction(engine)

        result = await engine.unreconcile(txn.id, actor_id="user-1")

        assert result.reconciled is False
        assert not audit.find(AuditAction.TRANSACTION_UNRECONCILED)

    @pytest.mark.asyncio
    async def test_transaction_can_be_reconciled_again(self, engine, invoice_repo):
        first = await make_invoice(invoice_repo)
        second = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)

        await engine.reconcile_exact(txn.id, first.id, actor_id="user-1")
        await engine.unreconcile(txn.id, actor_id="user-1")
        outcome = await engine.reconcile_exact(txn.id, second.id, actor_id="user-1")

        assert outcome.transaction.reconciled_with == second.id


class TestPaymentsAndViews:
    """Payment complements, reconciliation view and match suggestions."""

    @pytest.mark.asyncio
    async def test_record_payment_rejects_excess(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00")
        await engine.record_payment(invoice.id, "800.00", actor_id="user-1")

        with pytest.raises(ValidationError):
            await engine.record_payment(invoice.id, "300.00", actor_id="user-1")

    @pytest.mark.asyncio
    async def test_record_payment_settles_balance(self, engine, invoice_repo, audit):
        invoice = await make_invoice(invoice_repo, total="1000.00")

        first = await engine.record_payment(
            invoice.id, "400.00", actor_id="user-1", paid_on=date(2024, 4, 1)
        )
        assert first.paid_on == date(2024, 4, 1)
        assert (await invoice_repo.get(invoice.id)).paid is False

        await engine.record_payment(invoice.id, "600.00", actor_id="user-1")
        assert (await invoice_repo.get(invoice.id)).paid is True
        assert await engine.get_balance(invoice.id) == Decimal("0")
        assert len(audit.find(AuditAction.PAYMENT_RECORDED)) == 2

    @pytest.mark.asyncio
    async def test_register_transaction_validates_amount(self, engine):
        with pytest.raises(ValidationError):
            await make_transaction(engine, amount="-1")

    @pytest.mark.asyncio
    async def test_reconciliation_view(self, engine, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1500.00", uuid_cfdi="UUID-1")
        exact = await make_transaction(engine, amount="1500.00")
        short = await make_transaction(engine, amount="1400.00")
        other = await make_invoice(invoice_repo, total="1500.00")
        await engine.reconcile_exact(exact.id, invoice.id, actor_id="user-1")
        await engine.reconcile_exact(short.id, other.id, actor_id="user-1")
        loose = await make_transaction(engine, amount="10.00", date=date(2024, 1, 1))

        rows = {row.transaction_id: row for row in await engine.reconciliation_view()}

        assert rows[exact.id].diff == Decimal("0")
        assert rows[exact.id].reconciled_exact is True
        assert rows[exact.id].uuid_cfdi == "UUID-1"
        assert rows[short.id].diff == Decimal("-100.00")
        assert rows[short.id].reconciled_exact is False
        assert rows[loose.id].invoice_id is None
        assert rows[loose.id].diff is None

        pending = await engine.reconciliation_view(reconciled=False)
        assert [row.transaction_id for row in pending] == [loose.id]

        march = await engine.reconciliation_view(start=date(2024, 3, 1))
        assert loose.id not in {row.transaction_id for row in march}

    @pytest.mark.asyncio
    async def test_suggest_matches(self, engine, invoice_repo):
        unique = await make_invoice(invoice_repo, total="1234.56")
        await make_invoice(invoice_repo, total="500.00")
        await make_invoice(invoice_repo, total="500.00")
        await make_invoice(invoice_repo, total="777.00", tipo=InvoiceType.INGRESO)

        hit = await make_transaction(engine, amount="1234.56")
        await make_transaction(engine, amount="500.00")
        await make_transaction(engine, amount="777.00")

        suggestions = await engine.suggest_matches()

        assert len(suggestions) == 1
        assert suggestions[0].transaction_id == hit.id
        assert suggestions[0].invoice_id == unique.id


class TestConsistencyAudit:
    """Detection of reconciled transactions whose invoice disagrees."""

    @pytest.mark.asyncio
    async def test_consistent_ledger(self, engine, auditor, invoice_repo):
        invoice = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)
        await engine.reconcile_exact(txn.id, invoice.id, actor_id="user-1")

        report = await auditor.run()

        assert report.checked == 1
        assert report.is_consistent

    @pytest.mark.asyncio
    async def test_detects_unpaid_invoice(self, engine, auditor, invoice_repo, transaction_repo, audit):
        invoice = await make_invoice(invoice_repo)
        txn = await make_transaction(engine)
        # Crash between the two writes: only the transaction side landed
        await transaction_repo.mark_reconciled(txn.id, invoice.id)

        report = await auditor.run()

        assert not report.is_consistent
        violation = report.violations[0]
        assert violation.kind == "invoice_unpaid"
        assert violation.transaction_id == txn.id
        assert violation.invoice_id == invoice.id
        assert audit.find(AuditAction.CONSISTENCY_VIOLATION)
        assert report.to_dict()["violations"][0]["kind"] == "invoice_unpaid"

    @pytest.mark.asyncio
    async def test_partial_allocation_is_not_a_violation(self, engine, auditor, invoice_repo):
        invoice = await make_invoice(invoice_repo, total="1000.00")
        txn = await make_transaction(engine, amount="400.00")
        await engine.reconcile_with_allocation(txn.id, invoice.id, "400.00", actor_id="user-1")

        report = await auditor.run()

        assert report.checked == 1
        assert report.is_consistent

    @pytest.mark.asyncio
    async def test_detects_missing_invoice(self, engine, auditor, transaction_repo):
        txn = await make_transaction(engine)
        await transaction_repo.mark_reconciled(txn.id, "deleted-invoice")

        report = await auditor.run()

        assert [v.kind for v in report.violations] == ["invoice_missing"]

    @pytest.mark.asyncio
    async def test_run_periodically_stops(self, auditor):
        stop = asyncio.Event()
        auditor.run = AsyncMock(side_effect=lambda: stop.set())

        await asyncio.wait_for(auditor.run_periodically(interval=0.01, stop_event=stop), timeout=1)

        auditor.run.assert_awaited_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
