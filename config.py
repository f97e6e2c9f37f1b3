"""Configuration management for the translation service."""
import os
from dataclasses import dataclass


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Upstream chat-completion service
    api_key: str = ""
    base_url: str = "https://api.upstage.ai/v1"
    model: str = "solar-pro2-preview"
    temperature: float = 0.3
    max_tokens: int = 4000
    request_timeout: float = 300.0  # seconds, applies per read on a stream

    # External document parsing (used by /upload)
    document_parse_url: str = "https://api.upstage.ai/v1/document-digitization"

    # Admission control (fixed 1 hour window by default)
    translate_rate_limit: int = 160
    upload_rate_limit: int = 40
    rate_limit_window_ms: int = 60 * 60 * 1000

    # Chunking and auto-translation policy
    chunk_max_words: int = 500
    min_auto_translate_words: int = 3

    # Input limits
    max_text_length: int = 50_000
    max_upload_bytes: int = 50 * 1024 * 1024

    log_level: str = "info"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(
            api_key=os.getenv("UPSTAGE_API_KEY", ""),
            base_url=os.getenv("UPSTAGE_BASE_URL", "https://api.upstage.ai/v1"),
            model=os.getenv("TRANSLATION_MODEL", "solar-pro2-preview"),
            temperature=float(os.getenv("TRANSLATION_TEMPERATURE", "0.3")),
            max_tokens=int(os.getenv("TRANSLATION_MAX_TOKENS", "4000")),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "300")),
            document_parse_url=os.getenv(
                "DOCUMENT_PARSE_URL", "https://api.upstage.ai/v1/document-digitization"
            ),
            translate_rate_limit=int(os.getenv("TRANSLATE_RATE_LIMIT", "160")),
            upload_rate_limit=int(os.getenv("UPLOAD_RATE_LIMIT", "40")),
            rate_limit_window_ms=int(os.getenv("RATE_LIMIT_WINDOW_MS", str(60 * 60 * 1000))),
            chunk_max_words=int(os.getenv("CHUNK_MAX_WORDS", "500")),
            min_auto_translate_words=int(os.getenv("MIN_AUTO_TRANSLATE_WORDS", "3")),
            max_text_length=int(os.getenv("MAX_TEXT_LENGTH", "50000")),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024))),
            log_level=os.getenv("LOG_LEVEL", "info"),
        )

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"
