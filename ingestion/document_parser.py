"""Text extraction through an external document-parse service."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from config import Config
from errors import DocumentParseError, ValidationError
from models import ParsedDocument, ParsedPage

logger = logging.getLogger(__name__)

# Content types the document parser accepts (plain text is handled locally)
SUPPORTED_CONTENT_TYPES = {
    # Images
    "image/jpeg", "image/jpg", "image/png", "image/bmp", "image/tiff", "image/heic",
    # Documents
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    # Hancom Office
    "application/x-hwp",
    "application/vnd.hancom.hwpx",
}


def is_plain_text(filename: str, content_type: Optional[str]) -> bool:
    return content_type == "text/plain" or filename.lower().endswith(".txt")


def _element_text(content: Any) -> str:
    if not isinstance(content, dict):
        return ""
    return content.get("markdown") or content.get("text") or ""


def normalize_parse_result(
    result: Dict[str, Any],
    filename: str,
    content_type: str,
    size: int,
) -> ParsedDocument:
    """
    Convert a document-parse response into a ParsedDocument.

    Tries, in order: a top-level markdown/text body, page-tagged elements
    grouped by page number, then a list of page objects.

    Raises:
        ValidationError: No text content could be extracted
    """
    doc = ParsedDocument(filename=filename, content_type=content_type, size=size)
    usage_pages = (result.get("usage") or {}).get("pages")

    body = _element_text(result.get("content"))
    if body.strip():
        doc.content = body
        return doc

    elements = result.get("elements")
    if isinstance(elements, list):
        groups: Dict[int, List[str]] = {}
        for element in elements:
            if not isinstance(element, dict):
                continue
            groups.setdefault(element.get("page") or 1, []).append(
                _element_text(element.get("content"))
            )
        for page_number in sorted(groups):
            text = "\n\n".join(t for t in groups[page_number] if t.strip())
            if text.strip():
                doc.pages.append(ParsedPage(page_number=page_number, content=text))
        doc.total_pages = usage_pages or len(groups)
    elif isinstance(result.get("content"), list):
        for i, page in enumerate(result["content"]):
            if not isinstance(page, dict):
                continue
            text = page.get("markdown") or page.get("text") or ""
            if text.strip():
                doc.pages.append(ParsedPage(page_number=page.get("page") or i + 1, content=text))
        doc.total_pages = usage_pages or len(doc.pages)

    if not doc.pages:
        raise ValidationError("No text content could be extracted from the document.")
    return doc


class DocumentParseClient:
    """Client for the document digitization API."""

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout)

    async def parse(self, filename: str, data: bytes, content_type: str) -> ParsedDocument:
        """
        Extract text from a document.

        Args:
            filename: Original file name
            data: Raw file bytes
            content_type: MIME type reported by the uploader

        Returns:
            ParsedDocument with either ``content`` or ``pages`` filled
        """
        files = {"document": (filename, data, content_type)}
        form = {
            "output_formats": '["markdown"]',
            "base64_encoding": '["table"]',
            "ocr": "auto",
            "coordinates": "false",
            "model": "document-parse",
        }
        try:
            response = await self.client.post(
                self.config.document_parse_url,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                data=form,
                files=files,
            )
        except httpx.HTTPError as exc:
            raise DocumentParseError(f"Document parse request failed: {exc}") from exc

        if not response.is_success:
            logger.error("Document parse API error %d: %s", response.status_code, response.text[:200])
            raise DocumentParseError(
                "Document parsing failed. Please try again.", status_code=response.status_code
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise DocumentParseError("Document parser returned invalid JSON") from exc

        return normalize_parse_result(result, filename, content_type, len(data))

    async def close(self):
        await self.client.aclose()
