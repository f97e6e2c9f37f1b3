"""Sentence-aware text chunking for oversized input."""
import math
import re
from typing import List

# A sentence ends at '.', '!' or '?' followed by whitespace.
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def count_words(text: str) -> int:
    """Count whitespace-separated tokens. Blank text has zero words."""
    if not text:
        return 0
    return len(text.split())


def needs_chunking(text: str, threshold: int = 500) -> bool:
    """Return True when text is longer than ``threshold`` words."""
    if not text:
        return False
    return count_words(text) > threshold


def split_sentences(text: str) -> List[str]:
    """Split text at sentence boundaries, dropping empty pieces."""
    return [s.strip() for s in SENTENCE_BOUNDARY.split(text) if s.strip()]


def split_long_sentence(sentence: str, max_words: int) -> List[str]:
    """Hard-split a sentence at word boundaries into ``max_words`` slices."""
    words = sentence.split()
    pieces = math.ceil(len(words) / max_words)
    return [" ".join(words[i * max_words:(i + 1) * max_words]) for i in range(pieces)]


def chunk_text(text: str, max_words: int = 500) -> List[str]:
    """
    Split text into chunks of at most ``max_words`` words.

    Chunks end at sentence boundaries, except where a single sentence is
    longer than ``max_words``: such a sentence is split at word boundaries
    and its pieces carry no sentence-boundary guarantee.

    Text already within the bound is returned unchanged as a single chunk.
    The result is deterministic and keeps the original order.
    """
    if max_words < 1:
        raise ValueError("max_words must be at least 1")
    if not text or not text.strip():
        return []
    if count_words(text) <= max_words:
        return [text]

    chunks: List[str] = []
    current: List[str] = []
    current_words = 0

    for sentence in split_sentences(text):
        sentence_words = count_words(sentence)

        if current and current_words + sentence_words > max_words:
            chunks.append(" ".join(current))
            current = []
            current_words = 0

        if sentence_words > max_words:
            chunks.extend(split_long_sentence(sentence, max_words))
            continue

        current.append(sentence)
        current_words += sentence_words

    if current:
        chunks.append(" ".join(current))

    return [chunk for chunk in chunks if chunk.strip()]
