"""Error taxonomy shared by the boundary, the streaming client and the orchestrator."""
import time
from typing import Dict, Optional


class TranslationError(Exception):
    """Base class for all translation service errors."""


class ValidationError(TranslationError):
    """Missing or oversize input, rejected before any upstream call."""


class AdmissionDenied(TranslationError):
    """Request quota exhausted for a client identity."""

    def __init__(self, message: str, reset_at: Optional[float] = None, limit: Optional[int] = None):
        super().__init__(message)
        self.reset_at = reset_at        # Epoch milliseconds
        self.limit = limit

    def retry_after_seconds(self, now_ms: Optional[float] = None) -> int:
        if self.reset_at is None:
            return 900
        if now_ms is None:
            now_ms = time.time() * 1000
        return max(0, int(-(-(self.reset_at - now_ms) // 1000)))

    def headers(self, now_ms: Optional[float] = None) -> Dict[str, str]:
        """Retry-After and X-RateLimit-* response headers."""
        return {
            "Retry-After": str(self.retry_after_seconds(now_ms)),
            "X-RateLimit-Limit": "" if self.limit is None else str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "" if self.reset_at is None else str(int(self.reset_at)),
        }


class UpstreamError(TranslationError):
    """Non-success status or transport failure from an upstream service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolSkew(TranslationError):
    """A single event-stream line could not be decoded.

    Never fatal: the line is dropped and the stream continues.
    """


class Cancelled(TranslationError):
    """Work superseded by a newer request. Not shown to users as an error."""


class DocumentParseError(UpstreamError):
    """The external document parser failed or returned no usable text."""
