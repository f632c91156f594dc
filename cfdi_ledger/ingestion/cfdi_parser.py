"""
CFDI (Electronic Invoice) XML parser.
Extracts a structured document from Mexican electronic invoices.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterator, List, Optional, Union
import xml.etree.ElementTree as ET

import structlog

from ..exceptions import InvalidDocumentError, ParseError, ParseErrorCode
from ..models import (
    CFDIDocument,
    Concepto,
    Emisor,
    LineTax,
    Receptor,
    RelatedDocument,
    TaxTotals,
    TimbreFiscal,
)

logger = structlog.get_logger()


DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d",
)


def _local_name(tag: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on qualified tags."""
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _children(parent: Optional[ET.Element], name: str) -> Iterator[ET.Element]:
    if parent is None:
        return iter(())
    return (child for child in parent if _local_name(child.tag) == name)


def _child(parent: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    return next(_children(parent, name), None)


def _attr(elem: Optional[ET.Element], *names: str) -> Optional[str]:
    """First non-empty attribute among ``names`` (SAT spelling varies: Rfc/RFC)."""
    if elem is None:
        return None
    for name in names:
        value = elem.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


class CFDIParser:
    """
    Parser for CFDI XML files.
    Supports CFDI 3.3 and 4.0 formats.

    Elements are matched by local name, so namespaced (``cfdi:Emisor``) and
    bare (``Emisor``) documents parse the same way.
    """

    def parse_xml(self, xml_content: Union[str, bytes]) -> CFDIDocument:
        """
        Parse a CFDI XML document.

        Args:
            xml_content: XML content as text or raw bytes

        Returns:
            CFDIDocument with all extracted fields

        Raises:
            ParseError: malformed XML, missing Comprobante node or bad number
            InvalidDocumentError: missing TimbreFiscalDigital UUID
        """
        # Leading whitespace or a BOM before the XML declaration is rejected by expat
        if isinstance(xml_content, bytes):
            xml_content = xml_content.lstrip(b"\xef\xbb\xbf").strip()
        else:
            xml_content = xml_content.lstrip("\ufeff").strip()

        try:
            root = ET.fromstring(xml_content)
        except ET.ParseError as e:
            logger.error("Failed to parse CFDI XML", error=str(e))
            raise ParseError(
                f"XML parse error: {e}", ParseErrorCode.MALFORMED_XML
            ) from e

        if _local_name(root.tag) != "Comprobante":
            raise ParseError(
                "Comprobante node not found in XML",
                ParseErrorCode.MISSING_ROOT_NODE,
                details={"root": _local_name(root.tag)},
            )

        timbre = self._extract_timbre(root)
        warnings: List[str] = []

        fecha_str = _attr(root, "Fecha")
        fecha = self._parse_datetime(fecha_str)
        if fecha_str and fecha is None:
            warnings.append(f"Unrecognized issue date: {fecha_str}")

        metodo_pago = _attr(root, "MetodoPago")
        if metodo_pago and metodo_pago not in ("PUE", "PPD"):
            warnings.append(f"Unknown payment method: {metodo_pago}")

        doc = CFDIDocument(
            version=_attr(root, "Version", "version") or "4.0",
            tipo_comprobante=_attr(root, "TipoDeComprobante") or "I",
            timbre=timbre,
            moneda=_attr(root, "Moneda") or "MXN",
            forma_pago=_attr(root, "FormaPago"),
            metodo_pago=metodo_pago,
            tipo_cambio=self._optional_decimal(root, "TipoCambio"),
            subtotal=self._decimal(root, "SubTotal"),
            descuento=self._optional_decimal(root, "Descuento"),
            total=self._decimal(root, "Total"),
            serie=_attr(root, "Serie"),
            folio=_attr(root, "Folio"),
            fecha=fecha,
            emisor=self._extract_emisor(root),
            receptor=self._extract_receptor(root),
            impuestos=self._extract_tax_totals(root),
            conceptos=tuple(self._extract_conceptos(root)),
            warnings=warnings,
        )

        if doc.is_payment_complement:
            doc.related_documents = tuple(self._extract_payment_complement(root))

        logger.debug(
            "CFDI parsed",
            uuid=doc.uuid,
            version=doc.version,
            total=str(doc.total),
            conceptos=len(doc.conceptos),
        )
        return doc

    def _extract_timbre(self, root: ET.Element) -> TimbreFiscal:
        tfd = None
        for elem in root.iter():
            if _local_name(elem.tag) == "TimbreFiscalDigital":
                tfd = elem
                break

        if tfd is None:
            raise InvalidDocumentError("TimbreFiscalDigital not found in CFDI")

        uuid = _attr(tfd, "UUID")
        if not uuid:
            raise InvalidDocumentError("TimbreFiscalDigital has no UUID")

        return TimbreFiscal(
            uuid=uuid.upper(),
            fecha_timbrado=self._parse_datetime(_attr(tfd, "FechaTimbrado")),
            sello_sat=_attr(tfd, "SelloSAT"),
            no_certificado_sat=_attr(tfd, "NoCertificadoSAT"),
        )

    def _extract_emisor(self, root: ET.Element) -> Emisor:
        emisor = _child(root, "Emisor")
        return Emisor(
            rfc=_attr(emisor, "Rfc", "RFC") or "",
            nombre=_attr(emisor, "Nombre") or "",
            regimen_fiscal=_attr(emisor, "RegimenFiscal") or "",
        )

    def _extract_receptor(self, root: ET.Element) -> Receptor:
        receptor = _child(root, "Receptor")
        return Receptor(
            rfc=_attr(receptor, "Rfc", "RFC") or "",
            nombre=_attr(receptor, "Nombre") or "",
            uso_cfdi=_attr(receptor, "UsoCFDI"),
            domicilio_fiscal=_attr(receptor, "DomicilioFiscalReceptor"),
            regimen_fiscal=_attr(receptor, "RegimenFiscalReceptor"),
        )

    def _extract_tax_totals(self, root: ET.Element) -> TaxTotals:
        # Only the document-level block; line items carry their own Impuestos.
        impuestos = _child(root, "Impuestos")
        if impuestos is None:
            return TaxTotals()
        return TaxTotals(
            trasladados=self._decimal(impuestos, "TotalImpuestosTrasladados"),
            retenidos=self._decimal(impuestos, "TotalImpuestosRetenidos"),
        )

    def _extract_conceptos(self, root: ET.Element) -> Iterator[Concepto]:
        """Extract line items from CFDI, in document order."""
        for concepto in _children(_child(root, "Conceptos"), "Concepto"):
            yield Concepto(
                clave_prod_serv=_attr(concepto, "ClaveProdServ") or "",
                descripcion=_attr(concepto, "Descripcion") or "",
                cantidad=self._decimal(concepto, "Cantidad", default="1"),
                clave_unidad=_attr(concepto, "ClaveUnidad") or "",
                unidad=_attr(concepto, "Unidad", "ClaveUnidad") or "",
                valor_unitario=self._decimal(concepto, "ValorUnitario"),
                importe=self._decimal(concepto, "Importe"),
                descuento=self._decimal(concepto, "Descuento"),
                impuestos=tuple(self._extract_line_taxes(concepto)),
            )

    def _extract_line_taxes(self, concepto: ET.Element) -> Iterator[LineTax]:
        impuestos = _child(concepto, "Impuestos")
        for group, item, kind in (
            ("Traslados", "Traslado", "traslado"),
            ("Retenciones", "Retencion", "retencion"),
        ):
            for tax in _children(_child(impuestos, group), item):
                yield LineTax(
                    kind=kind,
                    impuesto=_attr(tax, "Impuesto") or "",
                    base=self._optional_decimal(tax, "Base"),
                    tipo_factor=_attr(tax, "TipoFactor"),
                    tasa_o_cuota=self._optional_decimal(tax, "TasaOCuota"),
                    importe=self._optional_decimal(tax, "Importe"),
                )

    def _extract_payment_complement(self, root: ET.Element) -> Iterator[RelatedDocument]:
        """
        Extract related documents from payment complement (Complemento de Pago).
        Pagos 1.0 and 2.0 share the same element names.
        """
        pagos = None
        for elem in root.iter():
            if _local_name(elem.tag) == "Pagos":
                pagos = elem
                break

        for pago in _children(pagos, "Pago"):
            fecha_pago = self._parse_datetime(_attr(pago, "FechaPago"))
            for docto in _children(pago, "DoctoRelacionado"):
                uuid = _attr(docto, "IdDocumento")
                if not uuid:
                    continue
                yield RelatedDocument(
                    uuid=uuid.upper(),
                    serie=_attr(docto, "Serie") or "",
                    folio=_attr(docto, "Folio") or "",
                    moneda=_attr(docto, "MonedaDR") or "MXN",
                    num_parcialidad=_attr(docto, "NumParcialidad") or "1",
                    imp_saldo_ant=self._decimal(docto, "ImpSaldoAnt"),
                    imp_pagado=self._decimal(docto, "ImpPagado"),
                    imp_saldo_insoluto=self._decimal(docto, "ImpSaldoInsoluto"),
                    fecha_pago=fecha_pago,
                )

    def _decimal(self, elem: ET.Element, name: str, default: str = "0") -> Decimal:
        value = self._optional_decimal(elem, name)
        return Decimal(default) if value is None else value

    def _optional_decimal(self, elem: ET.Element, name: str) -> Optional[Decimal]:
        """Parse an attribute to Decimal; absent is None, garbage is an error."""
        raw = _attr(elem, name)
        if raw is None:
            return None
        try:
            value = Decimal(raw.replace(",", ""))
        except InvalidOperation:
            value = None
        if value is None or not value.is_finite():
            raise ParseError(
                f"Invalid numeric value for {name}: {raw!r}",
                ParseErrorCode.INVALID_NUMERIC_FIELD,
                details={"element": _local_name(elem.tag), "attribute": name, "value": raw},
            )
        return value

    def _parse_datetime(self, value: Optional[str]) -> Optional[datetime]:
        """Parse datetime string."""
        if not value:
            return None

        for fmt in DATETIME_FORMATS:
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue

        return None


def parse_cfdi(xml_content: Union[str, bytes]) -> CFDIDocument:
    """Parse a CFDI document with a default parser."""
    return CFDIParser().parse_xml(xml_content)
