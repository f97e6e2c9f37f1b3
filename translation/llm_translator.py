"""Streaming LLM translation over an OpenAI-compatible chat-completions API."""
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Optional

import httpx

from config import Config
from errors import ProtocolSkew, UpstreamError
from models import ActiveRequestToken, TranslationContext

logger = logging.getLogger(__name__)


# Short language codes accepted from callers; unknown codes are used verbatim.
LANGUAGE_NAMES = {
    "en": "English",
    "ko": "Korean",
    "ja": "Japanese",
    "zh": "Chinese",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ru": "Russian",
    "vi": "Vietnamese",
    "th": "Thai",
}

RULES = """Rules:
1. Maintain the original meaning and tone
2. Preserve formatting and structure
3. Only return the translated text, no explanations
4. If the text contains technical terms, preserve them when appropriate
5. Auto-detect the source language - do not ask for clarification
6. If previous context is provided, ensure consistency in terminology and style"""

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


def language_name(code: str) -> str:
    """Resolve a short language code to its canonical name."""
    return LANGUAGE_NAMES.get(code, code)


def build_system_prompt(
    target_language: str,
    instructions: Optional[str] = None,
    context: Optional[TranslationContext] = None,
) -> str:
    """
    Build the system instruction for one translation request.

    Args:
        target_language: Language code or name to translate into
        instructions: Optional free-form style instructions
        context: Previous unit's source and translation, for continuity

    Returns:
        System prompt text
    """
    parts = [
        "You are a professional translator. Auto-detect the source language and "
        f"translate the following text to {language_name(target_language)}."
    ]
    if instructions and instructions.strip():
        parts.append(f"Additional instructions: {instructions.strip()}")
    if context is not None:
        parts.append(
            "For consistency, here is the previous page translation context:\n"
            f'Previous source: "{context.previous_source}"\n'
            f'Previous translation: "{context.previous_translation}"\n\n'
            "Please maintain consistent terminology, style, and flow with the previous translation."
        )
    parts.append(RULES)
    return "\n\n".join(parts)


def decode_payload(data: str) -> Dict[str, Any]:
    """Decode one event payload, raising ProtocolSkew when it is not a JSON object."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProtocolSkew(f"Malformed event payload: {data[:80]!r}") from exc
    if not isinstance(payload, dict):
        raise ProtocolSkew(f"Unexpected event payload type: {type(payload).__name__}")
    return payload


def completion_delta(payload: Dict[str, Any]) -> Optional[str]:
    """Extract ``choices[0].delta.content`` from an upstream chunk."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


async def iter_sse_payloads(lines: AsyncIterable[str]) -> AsyncIterator[Dict[str, Any]]:
    """
    Decode a server-sent event stream into JSON payloads.

    Only ``data: `` lines are considered; ``[DONE]`` ends the stream. A line
    that fails to decode is logged and dropped, the stream keeps going.
    """
    async for line in lines:
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        data = line[len(SSE_DATA_PREFIX):].strip()
        if not data:
            continue
        if data == SSE_DONE:
            return
        try:
            payload = decode_payload(data)
        except ProtocolSkew as exc:
            logger.debug("Skipping event line: %s", exc)
            continue
        yield payload


async def iter_deltas(
    lines: AsyncIterable[str],
    extract: Callable[[Dict[str, Any]], Optional[str]] = completion_delta,
) -> AsyncIterator[str]:
    """Yield non-empty text deltas from an event stream, in stream order."""
    async for payload in iter_sse_payloads(lines):
        content = extract(payload)
        if content:
            yield content


class StreamingTranslator:
    """Translator streaming deltas from the upstream completion service."""

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout)

    def build_payload(self, text: str, system_prompt: str) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": text},
            ],
            "stream": True,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    async def stream_translate(
        self,
        text: str,
        target_language: str,
        instructions: Optional[str] = None,
        context: Optional[TranslationContext] = None,
        token: Optional[ActiveRequestToken] = None,
    ) -> AsyncIterator[str]:
        """
        Translate text, yielding deltas as soon as they are decoded.

        Each call issues a fresh upstream request. Iteration stops early once
        ``token`` is cancelled.

        Raises:
            UpstreamError: Missing credentials, non-success status or transport failure
        """
        if not self.config.api_key:
            raise UpstreamError("UPSTAGE_API_KEY not configured")

        payload = self.build_payload(text, build_system_prompt(target_language, instructions, context))
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with self.client.stream(
                "POST", self.config.completions_url, json=payload, headers=headers
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    logger.error(
                        "Upstream API error %d: %s",
                        response.status_code,
                        body[:200].decode("utf-8", "replace"),
                    )
                    raise UpstreamError(
                        f"Upstream API error: {response.status_code}",
                        status_code=response.status_code,
                    )

                async for delta in iter_deltas(response.aiter_lines()):
                    if token is not None and token.cancelled:
                        logger.debug("Stream for unit %d abandoned", token.unit_index)
                        return
                    yield delta
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream request failed: {exc}") from exc

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
