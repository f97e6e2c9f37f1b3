"""Translation layer - chunking and streaming LLM translation."""
from .chunker import chunk_text, count_words, needs_chunking
from .llm_translator import StreamingTranslator, build_system_prompt, language_name
from .api_client import RemoteTranslator

__all__ = [
    "chunk_text",
    "count_words",
    "needs_chunking",
    "StreamingTranslator",
    "build_system_prompt",
    "language_name",
    "RemoteTranslator",
]
