"""
CFDI ledger: fiscal document ingestion and payment reconciliation.

Parses CFDI 3.3/4.0 XML, stores invoice artifacts with rollback on failure,
reconciles bank movements against invoices and manages payment batches.
"""

__version__ = "0.1.0"
