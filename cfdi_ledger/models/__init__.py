"""Data models for CFDI ingestion and reconciliation."""

from .enums import (
    AuditAction,
    BatchStatus,
    InvoiceType,
    MetodoPago,
    TransactionType,
)
from .cfdi import (
    CFDIDocument,
    CFDIMetadata,
    Concepto,
    Emisor,
    LineTax,
    Receptor,
    RelatedDocument,
    TaxTotals,
    TimbreFiscal,
)
from .invoice import Invoice, InvoicePayment
from .banking import BankTransaction
from .batch import PaymentBatch, PaymentBatchItem, PaymentBatchSummary
from .audit import AuditEntry
from .clock import utcnow

__all__ = [
    # Enums
    "AuditAction",
    "BatchStatus",
    "InvoiceType",
    "MetodoPago",
    "TransactionType",
    # CFDI
    "CFDIDocument",
    "CFDIMetadata",
    "Concepto",
    "Emisor",
    "LineTax",
    "Receptor",
    "RelatedDocument",
    "TaxTotals",
    "TimbreFiscal",
    # Ledger
    "Invoice",
    "InvoicePayment",
    "BankTransaction",
    "PaymentBatch",
    "PaymentBatchItem",
    "PaymentBatchSummary",
    # Audit
    "AuditEntry",
    "utcnow",
]
