"""Bank movement models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

from .clock import utcnow
from .enums import TransactionType


@dataclass
class BankTransaction:
    """
    Bank movement created by manual entry or import.
    Linked to at most one invoice at a time through ``reconciled_with``.
    """
    bank_account_id: str
    date: date
    amount: Decimal
    type: TransactionType = TransactionType.EGRESO
    id: str = field(default_factory=lambda: str(uuid4()))
    description: Optional[str] = None
    reference: Optional[str] = None

    # Reconciliation state
    reconciled: bool = False
    reconciled_with: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_consistent(self) -> bool:
        """The reconciled flag and the invoice link must agree."""
        return self.reconciled == (self.reconciled_with is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_account_id": self.bank_account_id,
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "type": self.type.value,
            "reference": self.reference,
            "reconciled": self.reconciled,
            "reconciled_with": self.reconciled_with,
        }
