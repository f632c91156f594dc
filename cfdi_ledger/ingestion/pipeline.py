"""
CFDI ingestion pipeline.

Uploads the XML (and optional PDF) artifacts, extracts metadata and writes
the invoice row:
1. Validate file extensions
2. Upload XML, then PDF, to the artifact store scoped by issuer
3. Extract metadata (failure is logged, never fatal)
4. Insert or update the invoice
5. On failure after any upload, delete every uploaded artifact
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..config import get_settings
from ..exceptions import ValidationError
from ..integrations.metadata import LocalMetadataExtractor, MetadataExtractor
from ..integrations.storage import ArtifactFile, ArtifactStore
from ..models import AuditAction, CFDIMetadata, Invoice, InvoiceType, MetodoPago, utcnow
from ..repositories.base import InvoiceRepository
from ..utils.audit_logger import AuditLogger

logger = structlog.get_logger()

ProgressCallback = Callable[[float, str], None]


@dataclass
class IngestionResult:
    """Outcome of a successful ingestion."""
    invoice: Invoice
    xml_path: str
    pdf_path: Optional[str]
    metadata: Optional[CFDIMetadata]


class CFDIIngestionPipeline:
    """
    Orchestrates artifact upload, metadata extraction and invoice persistence.

    Either the invoice row is written and references the uploaded artifacts,
    or no artifact survives the call.
    """

    def __init__(
        self,
        store: ArtifactStore,
        invoices: InvoiceRepository,
        extractor: Optional[MetadataExtractor] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = get_settings()
        self.store = store
        self.invoices = invoices
        self.extractor = extractor or LocalMetadataExtractor()
        self.audit = audit or AuditLogger()

    async def ingest(
        self,
        xml_file: ArtifactFile,
        *,
        emisor_id: str,
        actor_id: str,
        pdf_file: Optional[ArtifactFile] = None,
        receptor_id: Optional[str] = None,
        project_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        """
        Ingest a CFDI XML file with an optional PDF companion.

        Args:
            xml_file: The CFDI XML (mandatory, ``.xml``)
            emisor_id: Issuer id; scopes the artifact paths
            actor_id: Who performs the upload
            pdf_file: Optional printed representation (``.pdf``)
            receptor_id: Optional recipient id
            project_id: Optional project id
            invoice_id: Update this invoice instead of inserting a new one
            progress_callback: Optional callback for advisory progress updates

        Returns:
            IngestionResult with the stored invoice and artifact paths
        """
        last_progress = 0.0

        def update_progress(percent: float, phase: str):
            nonlocal last_progress
            last_progress = max(last_progress, percent)
            if progress_callback:
                progress_callback(last_progress, phase)

        self._validate(xml_file, pdf_file, emisor_id, actor_id)
        update_progress(20, "Files validated")

        bucket = self.settings.cfdi_bucket
        uploaded: List[str] = []

        try:
            xml_path = await self.store.upload(bucket, emisor_id, xml_file)
            uploaded.append(xml_path)
            update_progress(40, "XML uploaded")

            pdf_path = None
            if pdf_file is not None:
                pdf_path = await self.store.upload(bucket, emisor_id, pdf_file)
                uploaded.append(pdf_path)
            update_progress(60, "PDF uploaded" if pdf_file else "No PDF")

            xml_text = xml_file.text()
            update_progress(70, "XML read")

            metadata = await self._extract_metadata(xml_text, xml_file.filename, actor_id)
            update_progress(80, "Metadata extracted")

            record = self._build_record(
                metadata,
                emisor_id=emisor_id,
                receptor_id=receptor_id,
                project_id=project_id,
                xml_path=xml_path,
                pdf_path=pdf_path,
                actor_id=actor_id,
            )

            if invoice_id:
                invoice = await self.invoices.update(invoice_id, record)
            else:
                invoice = await self.invoices.insert(Invoice(**record))

        except (Exception, asyncio.CancelledError) as exc:
            if uploaded:
                # Shielded so a cancelled caller cannot abandon the cleanup
                await asyncio.shield(self._rollback(bucket, uploaded, exc, actor_id))
            raise

        update_progress(100, "Complete")
        self.audit.record(
            AuditAction.CFDI_UPLOADED,
            "CFDI ingested",
            actor_id,
            invoice.id,
            xml_path=xml_path,
            pdf_path=pdf_path,
            uuid_cfdi=invoice.uuid_cfdi,
            updated=bool(invoice_id),
        )

        return IngestionResult(
            invoice=invoice,
            xml_path=xml_path,
            pdf_path=pdf_path,
            metadata=metadata,
        )

    def _validate(
        self,
        xml_file: ArtifactFile,
        pdf_file: Optional[ArtifactFile],
        emisor_id: str,
        actor_id: str,
    ) -> None:
        if xml_file is None or xml_file.extension != ".xml":
            raise ValidationError(
                "The CFDI file must be XML",
                details={"filename": getattr(xml_file, "filename", None)},
            )
        if pdf_file is not None and pdf_file.extension != ".pdf":
            raise ValidationError(
                "The PDF file must have a .pdf extension",
                details={"filename": pdf_file.filename},
            )
        if not emisor_id:
            raise ValidationError("emisor_id is required")
        if not actor_id:
            raise ValidationError("actor_id is required")

    async def _extract_metadata(
        self,
        xml_text: str,
        filename: str,
        actor_id: str,
    ) -> Optional[CFDIMetadata]:
        """Call the extraction collaborator; any failure yields no metadata."""
        try:
            metadata = await self.extractor.extract(xml_text)
        except Exception as e:
            logger.warning(
                "CFDI metadata extraction failed, continuing without metadata",
                filename=filename,
                error=str(e),
            )
            self.audit.record(
                AuditAction.CFDI_METADATA_MISSING,
                "Metadata extraction failed",
                actor_id,
                success=False,
                error_message=str(e),
                filename=filename,
            )
            return None

        if metadata is None:
            logger.warning("CFDI metadata extraction returned nothing", filename=filename)
        return metadata

    def _build_record(
        self,
        metadata: Optional[CFDIMetadata],
        *,
        emisor_id: str,
        receptor_id: Optional[str],
        project_id: Optional[str],
        xml_path: str,
        pdf_path: Optional[str],
        actor_id: str,
    ) -> Dict[str, Any]:
        """Invoice fields, falling back to defaults for anything metadata lacks."""
        meta = metadata or CFDIMetadata()

        total = meta.total if meta.total is not None else Decimal("0")
        if total < 0:
            raise ValidationError(
                "Invoice total cannot be negative",
                details={"total": str(total)},
            )

        return {
            "tipo": InvoiceType.EGRESO,
            "emisor_id": emisor_id,
            "receptor_id": receptor_id,
            "project_id": project_id,
            "uuid_cfdi": meta.uuid,
            "xml_path": xml_path,
            "pdf_path": pdf_path,
            "cfdi_metadata": metadata,
            "folio": meta.folio_number or self.settings.no_folio_marker,
            "issued_at": meta.fecha_emision or utcnow(),
            "total_amount": total,
            "metodo_pago": MetodoPago.coerce(meta.metodo_pago),
            "paid": False,
            "uploaded_by": actor_id,
        }

    async def _rollback(
        self,
        bucket: str,
        paths: List[str],
        error: BaseException,
        actor_id: str,
    ) -> None:
        """Delete uploaded artifacts; cleanup failures are logged, never raised."""
        removed: List[str] = []
        for path in reversed(paths):
            try:
                await self.store.delete(bucket, path)
                removed.append(path)
            except Exception as cleanup_error:
                logger.error(
                    "Error cleaning up artifact",
                    bucket=bucket,
                    path=path,
                    error=str(cleanup_error),
                )

        self.audit.record(
            AuditAction.ARTIFACTS_ROLLED_BACK,
            "Ingestion failed, uploaded artifacts removed",
            actor_id,
            success=False,
            error_message=str(error) or type(error).__name__,
            removed=removed,
            leftover=[p for p in paths if p not in removed],
        )
