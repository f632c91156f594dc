"""Reconciliation of bank movements, payment batches and ledger audits."""

from .engine import (
    MatchSuggestion,
    ReconciliationEngine,
    ReconciliationOutcome,
    ReconciliationRow,
)
from .consistency import ConsistencyAuditor, ConsistencyReport
from .batches import PaymentBatchManager
from .summary import InvoiceSummary, summarize_invoices

__all__ = [
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "ReconciliationRow",
    "MatchSuggestion",
    "ConsistencyAuditor",
    "ConsistencyReport",
    "PaymentBatchManager",
    "InvoiceSummary",
    "summarize_invoices",
]
