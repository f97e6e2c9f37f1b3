"""Ingestion layer - document text extraction via the external parser."""
from .document_parser import (
    DocumentParseClient,
    SUPPORTED_CONTENT_TYPES,
    is_plain_text,
    normalize_parse_result,
)

__all__ = ["DocumentParseClient", "SUPPORTED_CONTENT_TYPES", "is_plain_text", "normalize_parse_result"]
