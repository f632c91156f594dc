"""
Typed exceptions for CFDI ingestion and reconciliation.

    LedgerError
    +-- ValidationError
    +-- ParseError
    |   +-- InvalidDocumentError
    +-- StorageError
    +-- MetadataExtractionError
    +-- RepositoryError
    |   +-- NotFoundError
    |   +-- ConflictError
    +-- ConsistencyError

ConsistencyError is produced by the consistency audit as a value; no
operation raises it.
"""

from enum import Enum
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception carrying a machine-readable code and structured details."""

    code: str = "LEDGER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(LedgerError):
    """Bad input: wrong extension, missing field, illegal state for an operation."""

    code = "VALIDATION_ERROR"


class ParseErrorCode(str, Enum):
    """Why a CFDI document could not be parsed."""
    MALFORMED_XML = "MALFORMED_XML"
    MISSING_ROOT_NODE = "MISSING_ROOT_NODE"
    MISSING_TIMBRE = "MISSING_TIMBRE"
    INVALID_NUMERIC_FIELD = "INVALID_NUMERIC_FIELD"


class ParseError(LedgerError):
    """Malformed or incompatible CFDI XML."""

    def __init__(
        self,
        message: str,
        code: ParseErrorCode,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code.value, details=details)
        self.parse_code = code


class InvalidDocumentError(ParseError):
    """The document has no fiscal stamp UUID, so it has no natural key."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ParseErrorCode.MISSING_TIMBRE, details)


class StorageError(LedgerError):
    """Artifact upload or delete failed."""

    code = "STORAGE_ERROR"


class MetadataExtractionError(LedgerError):
    """The metadata extraction collaborator failed."""

    code = "METADATA_EXTRACTION_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code


class RepositoryError(LedgerError):
    """Repository write or lookup failed."""

    code = "REPOSITORY_ERROR"


class NotFoundError(RepositoryError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(RepositoryError):
    """A conditional update lost the race (e.g. transaction already reconciled)."""

    code = "CONFLICT"


class ConsistencyError(LedgerError):
    """A reconciled transaction whose invoice state does not agree with it."""

    code = "CONSISTENCY_ERROR"

    def __init__(
        self,
        message: str,
        transaction_id: str,
        invoice_id: Optional[str] = None,
        kind: str = "invoice_unpaid",
    ):
        super().__init__(
            message,
            details={
                "transaction_id": transaction_id,
                "invoice_id": invoice_id,
                "kind": kind,
            },
        )
        self.transaction_id = transaction_id
        self.invoice_id = invoice_id
        self.kind = kind
