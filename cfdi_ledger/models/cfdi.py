"""Parsed CFDI (electronic invoice) document models."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Emisor:
    """Issuer block."""
    rfc: str = ""
    nombre: str = ""
    regimen_fiscal: str = ""


@dataclass(frozen=True)
class Receptor:
    """Recipient block."""
    rfc: str = ""
    nombre: str = ""
    uso_cfdi: Optional[str] = None
    domicilio_fiscal: Optional[str] = None
    regimen_fiscal: Optional[str] = None


@dataclass(frozen=True)
class LineTax:
    """A transferred (traslado) or withheld (retencion) tax on one line item."""
    kind: str  # "traslado" or "retencion"
    impuesto: str = ""
    base: Optional[Decimal] = None
    tipo_factor: Optional[str] = None
    tasa_o_cuota: Optional[Decimal] = None
    importe: Optional[Decimal] = None


@dataclass(frozen=True)
class Concepto:
    """Line item."""
    clave_prod_serv: str = ""
    descripcion: str = ""
    cantidad: Decimal = Decimal("1")
    clave_unidad: str = ""
    unidad: str = ""
    valor_unitario: Decimal = Decimal("0")
    importe: Decimal = Decimal("0")
    descuento: Decimal = Decimal("0")
    impuestos: Tuple[LineTax, ...] = ()


@dataclass(frozen=True)
class TimbreFiscal:
    """Digital stamp issued by the tax authority (TimbreFiscalDigital)."""
    uuid: str
    fecha_timbrado: Optional[datetime] = None
    sello_sat: Optional[str] = None
    no_certificado_sat: Optional[str] = None


@dataclass(frozen=True)
class TaxTotals:
    trasladados: Decimal = Decimal("0")
    retenidos: Decimal = Decimal("0")


@dataclass(frozen=True)
class RelatedDocument:
    """Invoice settled by a payment complement (Complemento de Pago)."""
    uuid: str
    serie: str = ""
    folio: str = ""
    moneda: str = "MXN"
    num_parcialidad: str = "1"
    imp_saldo_ant: Decimal = Decimal("0")
    imp_pagado: Decimal = Decimal("0")
    imp_saldo_insoluto: Decimal = Decimal("0")
    fecha_pago: Optional[datetime] = None


@dataclass
class CFDIDocument:
    """
    Structured CFDI 3.3 / 4.0 document.
    All monetary amounts are Decimal, copied verbatim from the XML attributes.
    """
    version: str
    tipo_comprobante: str
    timbre: TimbreFiscal
    moneda: str = "MXN"
    forma_pago: Optional[str] = None
    metodo_pago: Optional[str] = None
    tipo_cambio: Optional[Decimal] = None
    subtotal: Decimal = Decimal("0")
    descuento: Optional[Decimal] = None
    total: Decimal = Decimal("0")
    serie: Optional[str] = None
    folio: Optional[str] = None
    fecha: Optional[datetime] = None
    emisor: Emisor = field(default_factory=Emisor)
    receptor: Receptor = field(default_factory=Receptor)
    impuestos: TaxTotals = field(default_factory=TaxTotals)
    conceptos: Tuple[Concepto, ...] = ()
    related_documents: Tuple[RelatedDocument, ...] = ()
    warnings: List[str] = field(default_factory=list)

    @property
    def uuid(self) -> str:
        return self.timbre.uuid

    @property
    def is_payment_complement(self) -> bool:
        return self.tipo_comprobante == "P"

    @property
    def description(self) -> str:
        """Short description built from the first line items."""
        descriptions = [c.descripcion for c in self.conceptos if c.descripcion]
        return " | ".join(descriptions[:3])


@dataclass
class CFDIMetadata:
    """
    Metadata extracted from a CFDI and stored with the invoice.

    Known fields are typed; keys returned by an extraction service that this
    model does not know about are kept verbatim in ``extra``.
    """
    uuid: Optional[str] = None
    version: Optional[str] = None
    serie: Optional[str] = None
    folio_number: Optional[str] = None
    fecha_emision: Optional[datetime] = None
    tipo_comprobante: Optional[str] = None
    forma_pago: Optional[str] = None
    metodo_pago: Optional[str] = None
    moneda: Optional[str] = None
    subtotal: Optional[Decimal] = None
    total: Optional[Decimal] = None
    emisor_rfc: Optional[str] = None
    emisor_nombre: Optional[str] = None
    receptor_rfc: Optional[str] = None
    receptor_nombre: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: CFDIDocument) -> "CFDIMetadata":
        return cls(
            uuid=doc.uuid,
            version=doc.version,
            serie=doc.serie,
            folio_number=doc.folio,
            fecha_emision=doc.fecha,
            tipo_comprobante=doc.tipo_comprobante,
            forma_pago=doc.forma_pago,
            metodo_pago=doc.metodo_pago,
            moneda=doc.moneda,
            subtotal=doc.subtotal,
            total=doc.total,
            emisor_rfc=doc.emisor.rfc or None,
            emisor_nombre=doc.emisor.nombre or None,
            receptor_rfc=doc.receptor.rfc or None,
            receptor_nombre=doc.receptor.nombre or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary for storage."""
        data = {
            "uuid": self.uuid,
            "version": self.version,
            "serie": self.serie,
            "folio_number": self.folio_number,
            "fecha_emision": self.fecha_emision.isoformat() if self.fecha_emision else None,
            "tipo_comprobante": self.tipo_comprobante,
            "forma_pago": self.forma_pago,
            "metodo_pago": self.metodo_pago,
            "moneda": self.moneda,
            "subtotal": str(self.subtotal) if self.subtotal is not None else None,
            "total": str(self.total) if self.total is not None else None,
            "emisor": {"rfc": self.emisor_rfc, "nombre": self.emisor_nombre},
            "receptor": {"rfc": self.receptor_rfc, "nombre": self.receptor_nombre},
        }
        data.update(self.extra)
        return data
