"""Invoice and settlement models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

from .cfdi import CFDIMetadata
from .clock import utcnow
from .enums import InvoiceType, MetodoPago


@dataclass
class Invoice:
    """
    Invoice backed by a CFDI artifact pair (XML + optional PDF).

    ``paid`` is stored; the outstanding balance is always derived from the
    invoice payments and never stored on the invoice itself.
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    tipo: InvoiceType = InvoiceType.EGRESO

    # Parties
    emisor_id: Optional[str] = None
    receptor_id: Optional[str] = None
    project_id: Optional[str] = None

    # Fiscal data
    uuid_cfdi: Optional[str] = None
    folio: str = ""
    issued_at: Optional[datetime] = None
    total_amount: Decimal = Decimal("0")
    metodo_pago: MetodoPago = MetodoPago.PUE
    cfdi_metadata: Optional[CFDIMetadata] = None

    # Artifacts
    xml_path: Optional[str] = None
    pdf_path: Optional[str] = None

    # Settlement
    paid: bool = False

    # Audit
    uploaded_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.total_amount < 0:
            raise ValueError(f"total_amount must be >= 0, got {self.total_amount}")

    @property
    def expects_partial_payment(self) -> bool:
        """Check if partial payments are expected (PPD method)."""
        return self.metodo_pago == MetodoPago.PPD

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "tipo": self.tipo.value,
            "emisor_id": self.emisor_id,
            "receptor_id": self.receptor_id,
            "project_id": self.project_id,
            "uuid_cfdi": self.uuid_cfdi,
            "folio": self.folio,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "total_amount": str(self.total_amount),
            "metodo_pago": self.metodo_pago.value,
            "paid": self.paid,
            "xml_path": self.xml_path,
            "pdf_path": self.pdf_path,
            "cfdi_metadata": self.cfdi_metadata.to_dict() if self.cfdi_metadata else {},
        }


@dataclass
class InvoicePayment:
    """A partial settlement applied to an invoice (e.g. a PPD installment)."""
    invoice_id: str
    amount: Decimal
    id: str = field(default_factory=lambda: str(uuid4()))
    paid_on: Optional[date] = None
    transaction_id: Optional[str] = None
    recorded_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
