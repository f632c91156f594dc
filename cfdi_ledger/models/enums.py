"""Enumerations for CFDI ingestion and reconciliation."""

from enum import Enum


class MetodoPago(str, Enum):
    """
    CFDI payment method (MetodoPago field).

    PUE: Pago en Una sola Exhibicion (single payment)
    PPD: Pago en Parcialidades o Diferido (partial/deferred payment)
    """
    PUE = "PUE"
    PPD = "PPD"

    @classmethod
    def coerce(cls, value) -> "MetodoPago":
        """Map any raw value onto PUE/PPD, defaulting to PUE."""
        try:
            return cls(str(value).strip().upper()) if value else cls.PUE
        except ValueError:
            return cls.PUE


class InvoiceType(str, Enum):
    """Direction of an invoice from the company's point of view."""
    INGRESO = "ingreso"    # Issued to a client (receivable)
    EGRESO = "egreso"      # Received from a supplier (payable)


class TransactionType(str, Enum):
    """Direction of a bank movement."""
    INGRESO = "ingreso"    # Money in
    EGRESO = "egreso"      # Money out


class BatchStatus(str, Enum):
    """
    Payment batch lifecycle.

    BORRADOR -> PROGRAMADO -> PAGADO
    BORRADOR | PROGRAMADO -> CANCELADO
    """
    BORRADOR = "borrador"
    PROGRAMADO = "programado"
    PAGADO = "pagado"
    CANCELADO = "cancelado"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.PAGADO, BatchStatus.CANCELADO)

    @property
    def accepts_items(self) -> bool:
        """Items may be added or removed only before the batch is frozen."""
        return not self.is_terminal

    def can_transition_to(self, target: "BatchStatus") -> bool:
        return target in _BATCH_TRANSITIONS[self]


_BATCH_TRANSITIONS = {
    BatchStatus.BORRADOR: {BatchStatus.PROGRAMADO, BatchStatus.PAGADO, BatchStatus.CANCELADO},
    BatchStatus.PROGRAMADO: {BatchStatus.PAGADO, BatchStatus.CANCELADO},
    BatchStatus.PAGADO: set(),
    BatchStatus.CANCELADO: set(),
}


class AuditAction(str, Enum):
    """Type of audit action."""
    CFDI_UPLOADED = "cfdi_uploaded"
    CFDI_METADATA_MISSING = "cfdi_metadata_missing"
    ARTIFACTS_ROLLED_BACK = "artifacts_rolled_back"
    TRANSACTION_REGISTERED = "transaction_registered"
    TRANSACTION_RECONCILED = "transaction_reconciled"
    TRANSACTION_UNRECONCILED = "transaction_unreconciled"
    PAYMENT_RECORDED = "payment_recorded"
    BATCH_CREATED = "batch_created"
    BATCH_ITEM_ADDED = "batch_item_added"
    BATCH_ITEM_REMOVED = "batch_item_removed"
    BATCH_STATUS_CHANGED = "batch_status_changed"
    CONSISTENCY_VIOLATION = "consistency_violation"
