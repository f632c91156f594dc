"""
CFDI metadata extraction collaborators.

LocalMetadataExtractor wraps the in-process parser; RemoteMetadataExtractor
calls an HTTP extraction service. Both return ``None`` when the document
yields no metadata; the remote client raises MetadataExtractionError on
transport or API failures.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import get_settings
from ..exceptions import MetadataExtractionError, ParseError
from ..models import CFDIMetadata

logger = structlog.get_logger()


class MetadataExtractor(Protocol):
    async def extract(self, xml_text: str) -> Optional[CFDIMetadata]:
        ...


class LocalMetadataExtractor:
    """Extract metadata with the in-process CFDI parser."""

    def __init__(self, parser=None):
        # Deferred: the ingestion package imports this module
        from ..ingestion.cfdi_parser import CFDIParser

        self.parser = parser or CFDIParser()

    async def extract(self, xml_text: str) -> Optional[CFDIMetadata]:
        try:
            doc = self.parser.parse_xml(xml_text)
        except ParseError as e:
            raise MetadataExtractionError(
                f"CFDI could not be parsed: {e.message}",
                details={"code": e.code, **e.details},
            ) from e

        for warning in doc.warnings:
            logger.warning("CFDI parse warning", uuid=doc.uuid, warning=warning)

        return CFDIMetadata.from_document(doc)


# Keys of the extraction service payload mapped onto CFDIMetadata fields
_KNOWN_KEYS = {
    "uuid", "version", "serie", "folio_number", "fecha_emision",
    "tipo_comprobante", "forma_pago", "metodo_pago", "moneda",
    "subtotal", "total", "emisor", "receptor",
}


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        # str() first so JSON floats keep their printed digits
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    # CFDI issue dates are local wall-clock times
    return parsed.replace(tzinfo=None)


def metadata_from_payload(payload: Dict[str, Any]) -> CFDIMetadata:
    """Build CFDIMetadata from an extraction service JSON object."""
    emisor = payload.get("emisor") or {}
    receptor = payload.get("receptor") or {}
    return CFDIMetadata(
        uuid=payload.get("uuid"),
        version=payload.get("version"),
        serie=payload.get("serie"),
        folio_number=payload.get("folio_number"),
        fecha_emision=_to_datetime(payload.get("fecha_emision")),
        tipo_comprobante=payload.get("tipo_comprobante"),
        forma_pago=payload.get("forma_pago"),
        metodo_pago=payload.get("metodo_pago"),
        moneda=payload.get("moneda"),
        subtotal=_to_decimal(payload.get("subtotal")),
        total=_to_decimal(payload.get("total")),
        emisor_rfc=emisor.get("rfc"),
        emisor_nombre=emisor.get("nombre"),
        receptor_rfc=receptor.get("rfc"),
        receptor_nombre=receptor.get("nombre"),
        extra={k: v for k, v in payload.items() if k not in _KNOWN_KEYS},
    )


def _is_retryable(exc: BaseException) -> bool:
    """Retry transport failures and server errors, never client errors."""
    if isinstance(exc, MetadataExtractionError):
        return exc.status_code == 0 or exc.status_code >= 500
    return False


class RemoteMetadataExtractor:
    """
    Client for a remote CFDI metadata extraction endpoint.
    POSTs ``{"xml_content": ...}`` and expects a JSON object or null.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.settings = get_settings()
        self.url = url or self.settings.metadata_extractor_url
        if not self.url:
            raise ValueError("metadata_extractor_url is not configured")
        self.token = token if token is not None else self.settings.metadata_extractor_token
        self.timeout = timeout or self.settings.metadata_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _request(self, xml_text: str) -> Any:
        client = await self._get_client()

        try:
            response = await client.post(self.url, json={"xml_content": xml_text})
        except httpx.TimeoutException as e:
            raise MetadataExtractionError("Request timeout") from e
        except httpx.RequestError as e:
            raise MetadataExtractionError(f"Request error: {str(e)}") from e

        if response.status_code >= 400:
            error_detail: Any = response.text
            try:
                error_detail = response.json()
            except ValueError:
                pass
            raise MetadataExtractionError(
                f"API error: {response.status_code}",
                status_code=response.status_code,
                details={"response": error_detail},
            )

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    async def extract(self, xml_text: str) -> Optional[CFDIMetadata]:
        payload = await self._request(xml_text)
        if not payload:
            return None
        if not isinstance(payload, dict):
            raise MetadataExtractionError(
                "Unexpected metadata payload",
                details={"type": type(payload).__name__},
            )
        return metadata_from_payload(payload)
