"""Client for this service's own /translate streaming endpoint."""
import logging
from datetime import datetime
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

import httpx

from errors import AdmissionDenied, UpstreamError
from models import ActiveRequestToken, TranslationContext
from translation.llm_translator import iter_sse_payloads

logger = logging.getLogger(__name__)


async def _content_deltas(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield ``content`` deltas. An ``error`` event ends the stream with UpstreamError."""
    async for payload in iter_sse_payloads(lines):
        if "error" in payload:
            raise UpstreamError(str(payload["error"]) or "Translation failed")
        content = payload.get("content")
        if isinstance(content, str) and content:
            yield content


def _parse_reset_time(value: Optional[str]) -> Optional[float]:
    """ISO-8601 timestamp to epoch milliseconds."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
    except ValueError:
        return None


class RemoteTranslator:
    """Translator that goes through a running translation API (and its rate limits)."""

    def __init__(self, base_url: str = "http://localhost:8000", client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=300.0)

    async def stream_translate(
        self,
        text: str,
        target_language: str,
        instructions: Optional[str] = None,
        context: Optional[TranslationContext] = None,
        token: Optional[ActiveRequestToken] = None,
    ) -> AsyncIterator[str]:
        body: Dict[str, Any] = {"text": text, "targetLang": target_language}
        if instructions:
            body["instructions"] = instructions
        if context is not None:
            body["previousContext"] = {
                "source": context.previous_source,
                "translation": context.previous_translation,
            }

        try:
            async with self.client.stream("POST", f"{self.base_url}/translate", json=body) as response:
                if response.status_code == 429:
                    await response.aread()
                    try:
                        data = response.json()
                    except ValueError:
                        data = {}
                    raise AdmissionDenied(
                        data.get("error", "Rate limit exceeded"),
                        reset_at=_parse_reset_time(data.get("resetTime")),
                    )
                if not response.is_success:
                    await response.aread()
                    raise UpstreamError(
                        f"Translation failed: {response.status_code}",
                        status_code=response.status_code,
                    )

                async for delta in _content_deltas(response.aiter_lines()):
                    if token is not None and token.cancelled:
                        return
                    yield delta
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Translation request failed: {exc}") from exc

    async def close(self):
        await self.client.aclose()
