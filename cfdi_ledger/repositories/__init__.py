"""Repository contracts and in-memory implementations."""

from .base import BankTransactionRepository, InvoiceRepository, PaymentBatchRepository
from .memory import (
    InMemoryBankTransactionRepository,
    InMemoryInvoiceRepository,
    InMemoryPaymentBatchRepository,
)

__all__ = [
    "BankTransactionRepository",
    "InvoiceRepository",
    "PaymentBatchRepository",
    "InMemoryBankTransactionRepository",
    "InMemoryInvoiceRepository",
    "InMemoryPaymentBatchRepository",
]
