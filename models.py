"""Data models for the translation service."""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class UnitStatus(str, Enum):
    """Lifecycle of a unit inside the orchestrator."""
    PENDING = "pending"
    TRANSLATING = "translating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Unit:
    """One page/segment of source text tracked through the pipeline."""
    index: int                       # Ordinal position in the orchestrator's unit list
    source_text: str = ""
    translated_text: str = ""        # Grows monotonically while streaming
    status: UnitStatus = UnitStatus.PENDING
    error_message: Optional[str] = None

    @property
    def word_count(self) -> int:
        return len(self.source_text.split())

    @property
    def has_content(self) -> bool:
        return bool(self.source_text.strip() or self.translated_text.strip())

    def reset(self) -> None:
        """Drop translation state, keeping the source text."""
        self.translated_text = ""
        self.status = UnitStatus.PENDING
        self.error_message = None


@dataclass(frozen=True)
class TranslationContext:
    """Previous unit's source/translation pair, used to keep terminology consistent."""
    previous_source: str
    previous_translation: str


@dataclass
class RateLimitEntry:
    """Fixed-window counter for one client identity."""
    count: int
    reset_at: float                  # Epoch milliseconds


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of an admission check."""
    allowed: bool
    remaining: int
    reset_at: float                  # Epoch milliseconds


@dataclass
class ParsedPage:
    """A single page of text returned by the document parser."""
    page_number: int                 # 1-indexed
    content: str


@dataclass
class ParsedDocument:
    """Text extracted from an uploaded document.

    Exactly one of ``content`` (single body of text) or ``pages`` is populated.
    """
    filename: str
    content_type: str
    size: int
    content: Optional[str] = None
    pages: List[ParsedPage] = field(default_factory=list)
    total_pages: Optional[int] = None

    @property
    def is_multi_page(self) -> bool:
        return len(self.pages) > 1


@dataclass
class ActiveRequestToken:
    """Handle for the single in-flight request of an orchestrator.

    Results are applied only while the token is still the orchestrator's
    active one; a cancelled token's late deltas are discarded.
    """
    generation: int
    unit_index: int
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
