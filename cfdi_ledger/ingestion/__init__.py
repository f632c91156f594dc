"""Ingestion module for parsing and storing CFDIs."""

from .cfdi_parser import CFDIParser, parse_cfdi
from .pipeline import CFDIIngestionPipeline, IngestionResult

__all__ = ["CFDIParser", "parse_cfdi", "CFDIIngestionPipeline", "IngestionResult"]
