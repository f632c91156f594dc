"""
Shared fixtures: sample CFDI documents, in-memory repositories and fakes.
"""

import pytest

from cfdi_ledger.integrations.storage import ArtifactFile
from cfdi_ledger.repositories import (
    InMemoryBankTransactionRepository,
    InMemoryInvoiceRepository,
    InMemoryPaymentBatchRepository,
)
from cfdi_ledger.utils.audit_logger import AuditLogger

from .helpers import RecordingStore, build_cfdi


@pytest.fixture
def cfdi_40_xml():
    return build_cfdi("4.0")


@pytest.fixture
def cfdi_33_xml():
    return build_cfdi("3.3")


@pytest.fixture
def xml_file(cfdi_40_xml):
    return ArtifactFile("factura.xml", cfdi_40_xml.encode("utf-8"))


@pytest.fixture
def pdf_file():
    return ArtifactFile("factura.pdf", b"%PDF-1.4 sample")


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def invoice_repo():
    return InMemoryInvoiceRepository()


@pytest.fixture
def transaction_repo():
    return InMemoryBankTransactionRepository()


@pytest.fixture
def batch_repo():
    return InMemoryPaymentBatchRepository()


@pytest.fixture
def audit():
    return AuditLogger(session_id="test")
