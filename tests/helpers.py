"""
Sample CFDI documents and artifact store fakes used across tests.
"""

import asyncio
from typing import List, Optional, Tuple

from cfdi_ledger.exceptions import StorageError
from cfdi_ledger.integrations.storage import ArtifactFile, artifact_path


SAMPLE_UUID = "6F0C0A1E-3B2D-4C5A-9E8F-1A2B3C4D5E6F"

NAMESPACES = {
    "3.3": "http://www.sat.gob.mx/cfd/3",
    "4.0": "http://www.sat.gob.mx/cfd/4",
}


def build_cfdi(
    version: str = "4.0",
    uuid: Optional[str] = SAMPLE_UUID,
    total: str = "1500.00",
    subtotal: str = "1293.10",
    metodo_pago: str = "PUE",
    folio: Optional[str] = "1001",
) -> str:
    """CFDI with one taxed line item; 3.3 omits the 4.0-only receptor fields."""
    receptor_extra = (
        'DomicilioFiscalReceptor="64000" RegimenFiscalReceptor="601" '
        if version == "4.0" else ""
    )
    folio_attr = f'Folio="{folio}" ' if folio else ""
    timbre = (
        f'<tfd:TimbreFiscalDigital Version="1.1" UUID="{uuid}" '
        'FechaTimbrado="2024-03-15T10:31:00" SelloSAT="c2VsbG8=" '
        'NoCertificadoSAT="00001000000504465028"/>'
        if uuid is not None
        else '<tfd:TimbreFiscalDigital Version="1.1" FechaTimbrado="2024-03-15T10:31:00"/>'
    )
    return f'''<?xml version="1.0" encoding="UTF-8"?>
<cfdi:Comprobante xmlns:cfdi="{NAMESPACES[version]}"
    xmlns:tfd="http://www.sat.gob.mx/TimbreFiscalDigital"
    Version="{version}" Serie="A" {folio_attr}Fecha="2024-03-15T10:30:00"
    FormaPago="03" MetodoPago="{metodo_pago}" Moneda="MXN"
    SubTotal="{subtotal}" Total="{total}" TipoDeComprobante="I" LugarExpedicion="64000">
    <cfdi:Emisor Rfc="AAA010101AAA" Nombre="PROVEEDORA DEL NORTE" RegimenFiscal="601"/>
    <cfdi:Receptor Rfc="BBB020202BBB" Nombre="CONSTRUCTORA DEL SUR" {receptor_extra}UsoCFDI="G03"/>
    <cfdi:Conceptos>
        <cfdi:Concepto ClaveProdServ="72151500" Cantidad="1" ClaveUnidad="E48" Unidad="Servicio"
            Descripcion="Instalacion electrica" ValorUnitario="{subtotal}" Importe="{subtotal}">
            <cfdi:Impuestos>
                <cfdi:Traslados>
                    <cfdi:Traslado Base="{subtotal}" Impuesto="002" TipoFactor="Tasa"
                        TasaOCuota="0.160000" Importe="206.90"/>
                </cfdi:Traslados>
            </cfdi:Impuestos>
        </cfdi:Concepto>
    </cfdi:Conceptos>
    <cfdi:Impuestos TotalImpuestosTrasladados="206.90">
        <cfdi:Traslados>
            <cfdi:Traslado Base="{subtotal}" Impuesto="002" TipoFactor="Tasa"
                TasaOCuota="0.160000" Importe="206.90"/>
        </cfdi:Traslados>
    </cfdi:Impuestos>
    <cfdi:Complemento>
        {timbre}
    </cfdi:Complemento>
</cfdi:Comprobante>'''


PAYMENT_COMPLEMENT_XML = '''<?xml version="1.0" encoding="UTF-8"?>
<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4"
    xmlns:pago20="http://www.sat.gob.mx/Pagos20"
    xmlns:tfd="http://www.sat.gob.mx/TimbreFiscalDigital"
    Version="4.0" Fecha="2024-04-02T09:00:00" Moneda="XXX"
    SubTotal="0" Total="0" TipoDeComprobante="P" LugarExpedicion="64000">
    <cfdi:Emisor Rfc="AAA010101AAA" Nombre="PROVEEDORA DEL NORTE" RegimenFiscal="601"/>
    <cfdi:Receptor Rfc="BBB020202BBB" Nombre="CONSTRUCTORA DEL SUR" UsoCFDI="CP01"/>
    <cfdi:Conceptos>
        <cfdi:Concepto ClaveProdServ="84111506" Cantidad="1" ClaveUnidad="ACT"
            Descripcion="Pago" ValorUnitario="0" Importe="0"/>
    </cfdi:Conceptos>
    <cfdi:Complemento>
        <pago20:Pagos Version="2.0">
            <pago20:Pago FechaPago="2024-04-01T12:00:00" FormaDePagoP="03" MonedaP="MXN" Monto="500.00">
                <pago20:DoctoRelacionado IdDocumento="6f0c0a1e-3b2d-4c5a-9e8f-1a2b3c4d5e6f"
                    Serie="A" Folio="1001" MonedaDR="MXN" NumParcialidad="2"
                    ImpSaldoAnt="1000.00" ImpPagado="500.00" ImpSaldoInsoluto="500.00"/>
            </pago20:Pago>
        </pago20:Pagos>
        <tfd:TimbreFiscalDigital Version="1.1" UUID="0A1B2C3D-4E5F-4A6B-8C7D-9E0F1A2B3C4D"
            FechaTimbrado="2024-04-02T09:01:00"/>
    </cfdi:Complemento>
</cfdi:Comprobante>'''


class RecordingStore:
    """Artifact store fake that records uploads and deletes."""

    def __init__(self, fail_on: Optional[str] = None, fail_delete: bool = False):
        self.fail_on = fail_on
        self.fail_delete = fail_delete
        self.uploaded: List[Tuple[str, str]] = []
        self.deleted: List[Tuple[str, str]] = []

    async def upload(self, bucket: str, scope_id: str, file: ArtifactFile) -> str:
        if self.fail_on and file.extension == self.fail_on:
            raise StorageError(f"Upload failed for {file.filename}")
        path = artifact_path(scope_id, file.filename)
        self.uploaded.append((bucket, path))
        return path

    async def delete(self, bucket: str, path: str) -> None:
        self.deleted.append((bucket, path))
        if self.fail_delete:
            raise StorageError(f"Delete failed for {path}")

    @property
    def live(self) -> List[Tuple[str, str]]:
        return [entry for entry in self.uploaded if entry not in self.deleted]


class BlockingPdfStore(RecordingStore):
    """Store whose PDF upload waits until released, for cancellation tests."""

    def __init__(self):
        super().__init__()
        self.pdf_started = asyncio.Event()
        self.release = asyncio.Event()

    async def upload(self, bucket: str, scope_id: str, file: ArtifactFile) -> str:
        if file.extension == ".pdf":
            self.pdf_started.set()
            await self.release.wait()
        return await super().upload(bucket, scope_id, file)


