"""Payment batch models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .clock import utcnow
from .enums import BatchStatus


@dataclass
class PaymentBatch:
    """A grouped, schedulable unit of supplier invoice payments."""
    id: str = field(default_factory=lambda: str(uuid4()))
    title: Optional[str] = None
    status: BatchStatus = BatchStatus.BORRADOR
    scheduled_date: Optional[date] = None
    bank_account_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PaymentBatchItem:
    """An invoice (or part of it) scheduled for payment in a batch."""
    batch_id: str
    invoice_id: str
    amount: Decimal
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PaymentBatchSummary:
    """Batch with its aggregated item figures."""
    batch_id: str
    title: Optional[str]
    status: BatchStatus
    scheduled_date: Optional[date]
    bank_account_id: Optional[str]
    invoice_count: int = 0
    total_amount: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
