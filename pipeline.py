"""Sequential streaming translation orchestrator."""
import argparse
import asyncio
import logging
import math
import sys
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Callable, Coroutine, Dict, List, Optional, Protocol, Set, Tuple

from admission import RateLimiter
from config import Config
from errors import AdmissionDenied, Cancelled, TranslationError, ValidationError
from models import ActiveRequestToken, ParsedDocument, ParsedPage, TranslationContext, Unit, UnitStatus
from translation import RemoteTranslator, StreamingTranslator, chunk_text, count_words, needs_chunking

logger = logging.getLogger(__name__)

FAILURE_PLACEHOLDER = "Translation failed. Please try again."


class Translator(Protocol):
    """Anything that can stream a translation as text deltas."""

    def stream_translate(
        self,
        text: str,
        target_language: str,
        instructions: Optional[str] = None,
        context: Optional[TranslationContext] = None,
        token: Optional[ActiveRequestToken] = None,
    ) -> AsyncIterator[str]:
        ...


class TranslationOrchestrator:
    """
    Owns a list of units and translates them one request at a time.

    At most one request is in flight. Starting new work cancels the active
    request; its late deltas are dropped without touching unit state. Units
    are translated in index order so that each request can carry the
    previous unit's finished translation as context.

    Operations that react to user input (edits, pastes, language changes,
    uploads) update the units immediately and schedule the translation as
    an asyncio task, so they must be called while an event loop is running.
    """

    def __init__(
        self,
        translator: Translator,
        target_language: str,
        instructions: Optional[str] = None,
        admission: Optional[RateLimiter] = None,
        identity: str = "local",
        chunk_max_words: int = 500,
        min_auto_translate_words: int = 3,
        on_update: Optional[Callable[[Unit], None]] = None,
    ):
        self.translator = translator
        self.target_language = target_language
        self.instructions = instructions
        self.admission = admission
        self.identity = identity
        self.chunk_max_words = chunk_max_words
        self.min_auto_translate_words = min_auto_translate_words
        self.on_update = on_update

        self.units: List[Unit] = [Unit(index=0)]
        self._generation = 0
        self._run_id = 0
        self._active: Optional[ActiveRequestToken] = None
        self._active_unit: Optional[Unit] = None
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: Config, translator: Translator, target_language: str, **kwargs) -> "TranslationOrchestrator":
        kwargs.setdefault("chunk_max_words", config.chunk_max_words)
        kwargs.setdefault("min_auto_translate_words", config.min_auto_translate_words)
        return cls(translator, target_language, **kwargs)

    # ------------------------------------------------------------------
    # Unit list management
    # ------------------------------------------------------------------

    def add_unit(self) -> Unit:
        unit = Unit(index=len(self.units))
        self.units.append(unit)
        return unit

    def erase_unit(self, index: int) -> None:
        """Clear both source and translation of a unit."""
        unit = self.units[index]
        if self._active_unit is unit:
            self.cancel()
        unit.source_text = ""
        unit.reset()
        self._notify(unit)

    def remove_unit(self, index: int) -> None:
        """Delete a unit. Only empty units can be removed."""
        unit = self.units[index]
        if unit.has_content:
            raise ValidationError("Please clear the content first, then try deleting.")
        if len(self.units) == 1:
            raise ValidationError("Cannot remove the last page.")
        del self.units[index]
        self._reindex()

    def clear_all(self) -> None:
        self.cancel()
        self.units = [Unit(index=0)]

    def _ensure_units(self, count: int) -> None:
        while len(self.units) < count:
            self.add_unit()

    def _reindex(self) -> None:
        for i, unit in enumerate(self.units):
            unit.index = i

    def _notify(self, unit: Unit) -> None:
        if self.on_update is not None:
            self.on_update(unit)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def active_token(self) -> Optional[ActiveRequestToken]:
        return self._active

    def cancel(self) -> None:
        """Abort the active request and stop any sequential run in progress."""
        self._run_id += 1
        self._cancel_active()

    def _cancel_active(self) -> None:
        token, unit = self._active, self._active_unit
        self._active = None
        self._active_unit = None
        if token is None:
            return
        token.cancel()
        if unit is not None and unit.status is UnitStatus.TRANSLATING:
            unit.status = UnitStatus.CANCELLED
            self._notify(unit)
        logger.debug("Cancelled request %d for unit %d", token.generation, token.unit_index)

    def _begin(self, unit: Unit) -> ActiveRequestToken:
        self._cancel_active()
        self._generation += 1
        token = ActiveRequestToken(generation=self._generation, unit_index=unit.index)
        self._active = token
        self._active_unit = unit
        return token

    def _is_current(self, token: ActiveRequestToken) -> bool:
        return self._active is token and not token.cancelled

    def _release(self, token: ActiveRequestToken) -> None:
        if self._active is token:
            self._active = None
            self._active_unit = None

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def context_for(self, index: int) -> Optional[TranslationContext]:
        """Context from the preceding unit, if it has both source and a translation."""
        if index <= 0 or index > len(self.units):
            return None
        previous = self.units[index - 1]
        if previous.status is UnitStatus.FAILED:
            return None
        if not previous.source_text.strip() or not previous.translated_text.strip():
            return None
        return TranslationContext(previous.source_text, previous.translated_text)

    async def translate_unit(self, index: int, target_language: Optional[str] = None) -> UnitStatus:
        """Translate one unit, superseding whatever is in flight."""
        if not 0 <= index < len(self.units):
            raise IndexError(f"No unit at index {index}")
        self.cancel()
        return await self._translate_unit(index, target_language)

    async def translate_sequential(
        self,
        start_index: int,
        count: int,
        target_language: Optional[str] = None,
        min_words: int = 0,
    ) -> Dict[int, UnitStatus]:
        """
        Translate units ``[start_index, start_index + count)`` in order.

        Each unit is awaited before the next one starts. A failed unit does
        not stop the run; being superseded by newer work does. Units with
        ``min_words`` words or fewer are skipped.

        Returns:
            Final status of every unit that was attempted
        """
        self.cancel()
        run_id = self._run_id
        results: Dict[int, UnitStatus] = {}

        i = start_index
        while i < start_index + count and i < len(self.units):
            if self._run_id != run_id:
                logger.info("Sequential run superseded before unit %d", i)
                break
            if count_words(self.units[i].source_text) > min_words:
                status = await self._translate_unit(i, target_language)
                results[i] = status
                if status is UnitStatus.FAILED:
                    logger.warning("Failed to translate unit %d, continuing", i)
                elif status is UnitStatus.CANCELLED:
                    break
            i += 1
        return results

    async def _translate_unit(self, index: int, target_language: Optional[str] = None) -> UnitStatus:
        unit = self.units[index]
        if not unit.source_text.strip():
            return unit.status

        token = self._begin(unit)
        context = self.context_for(index)
        language = target_language or self.target_language
        source = unit.source_text

        unit.status = UnitStatus.TRANSLATING
        unit.translated_text = ""
        unit.error_message = None
        self._notify(unit)

        try:
            self._admit()
            stream = self.translator.stream_translate(
                source, language, self.instructions, context, token=token
            )
            async with aclosing(stream):
                async for delta in stream:
                    if not self._is_current(token):
                        raise Cancelled(f"Request {token.generation} for unit {index} superseded")
                    unit.translated_text += delta
                    self._notify(unit)
        except asyncio.CancelledError:
            if self._is_current(token):
                self._release(token)
                unit.status = UnitStatus.CANCELLED
                self._notify(unit)
            raise
        except Cancelled as exc:
            # Superseded: nothing from this stream reaches the unit.
            logger.debug("Discarding stream: %s", exc)
            if self._is_current(token):
                self._release(token)
                unit.status = UnitStatus.CANCELLED
                self._notify(unit)
            return UnitStatus.CANCELLED
        except TranslationError as exc:
            if not self._is_current(token):
                return UnitStatus.CANCELLED
            self._release(token)
            logger.error("Translation failed for unit %d: %s", index, exc)
            unit.status = UnitStatus.FAILED
            unit.error_message = self._failure_message(exc)
            unit.translated_text = FAILURE_PLACEHOLDER
            self._notify(unit)
            return UnitStatus.FAILED

        if not self._is_current(token):
            return UnitStatus.CANCELLED
        self._release(token)
        unit.status = UnitStatus.DONE
        self._notify(unit)
        return UnitStatus.DONE

    def _admit(self) -> None:
        if self.admission is not None:
            self.admission.enforce(self.identity, "Rate limit exceeded")

    @staticmethod
    def _failure_message(exc: TranslationError) -> str:
        if isinstance(exc, AdmissionDenied):
            minutes = max(1, math.ceil(exc.retry_after_seconds() / 60))
            return f"Rate limit reached. Please wait {minutes} minutes before trying again."
        return str(exc) or "Translation failed"

    # ------------------------------------------------------------------
    # User-facing triggers
    # ------------------------------------------------------------------

    def _schedule(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every scheduled translation to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def edit_source(self, index: int, text: str) -> Optional[asyncio.Task]:
        """
        Apply a direct edit to a unit's source text.

        Oversized text is chunked across units. Otherwise the unit is
        translated only when the text is longer than the auto-translate
        threshold; shorter text just clears the unit's translation.
        """
        if index < 0:
            raise ValidationError("index must not be negative")
        if needs_chunking(text, self.chunk_max_words):
            return self.ingest_long_text(index, text)

        self._ensure_units(index + 1)
        unit = self.units[index]
        substantial = count_words(text) > self.min_auto_translate_words
        if substantial or self._active_unit is unit:
            self.cancel()
        unit.source_text = text

        if substantial:
            return self._schedule(self.translate_unit(index))

        unit.reset()
        self._notify(unit)
        return None

    def ingest_long_text(self, start_index: int, raw_text: str) -> Optional[asyncio.Task]:
        """
        Spread chunks of ``raw_text`` over consecutive units from ``start_index``.

        Units past the last chunk that held content before are cleared, and a
        sequential translation of exactly the chunked range is scheduled.
        """
        if start_index < 0:
            raise ValidationError("start_index must not be negative")
        chunks = chunk_text(raw_text, self.chunk_max_words)
        if not chunks:
            return None

        self.cancel()
        previous_count = len(self.units)
        self._ensure_units(start_index + len(chunks))

        for offset, chunk in enumerate(chunks):
            unit = self.units[start_index + offset]
            unit.source_text = chunk
            unit.reset()
            self._notify(unit)

        for i in range(start_index + len(chunks), previous_count):
            unit = self.units[i]
            unit.source_text = ""
            unit.reset()
            self._notify(unit)

        logger.info("Split text into %d units starting at unit %d", len(chunks), start_index)
        return self._schedule(self.translate_sequential(start_index, len(chunks)))

    def change_target_language(self, new_language: str) -> Optional[asyncio.Task]:
        """Switch language, drop every stale translation and translate again."""
        self.cancel()
        self.target_language = new_language
        for unit in self.units:
            unit.reset()
            self._notify(unit)

        if not any(u.word_count > self.min_auto_translate_words for u in self.units):
            return None
        return self._schedule(
            self.translate_sequential(
                0, len(self.units), new_language, min_words=self.min_auto_translate_words
            )
        )

    def retranslate_all(self) -> Optional[asyncio.Task]:
        self.cancel()
        for unit in self.units:
            unit.reset()
            self._notify(unit)
        if not any(u.source_text.strip() for u in self.units):
            return None
        return self._schedule(self.translate_sequential(0, len(self.units)))

    def load_pages(self, pages: List[ParsedPage]) -> Optional[asyncio.Task]:
        """Replace all units with pages of an uploaded document, placed by page number."""
        if not pages:
            return None
        self.cancel()
        size = max(max(p.page_number for p in pages), len(pages))
        self.units = [Unit(index=i) for i in range(size)]
        for page in pages:
            if page.page_number >= 1:
                self.units[page.page_number - 1].source_text = page.content
        for unit in self.units:
            self._notify(unit)

        if not any(u.word_count > self.min_auto_translate_words for u in self.units):
            return None
        return self._schedule(
            self.translate_sequential(0, size, min_words=self.min_auto_translate_words)
        )

    def load_document(self, document: ParsedDocument) -> Optional[asyncio.Task]:
        """Place an uploaded document's text into units and start translating."""
        if document.pages:
            return self.load_pages(document.pages)
        return self.edit_source(0, document.content or "")

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def progress(self) -> Tuple[int, int]:
        """(units done, units with source text)"""
        with_text = [u for u in self.units if u.source_text.strip()]
        return sum(u.status is UnitStatus.DONE for u in with_text), len(with_text)

    def full_translation(self) -> str:
        return "\n\n".join(u.translated_text for u in self.units)


# CLI entry point
async def main():
    """Translate a text file from the command line."""
    parser = argparse.ArgumentParser(description="Translate a text file with a streaming LLM.")
    parser.add_argument("input_file")
    parser.add_argument("target_lang", nargs="?", default="en")
    parser.add_argument("--instructions", default=None)
    parser.add_argument("--api", default=None, help="Base URL of a running translation API")
    args = parser.parse_args()

    config = Config.from_env()
    logging.basicConfig(level=config.log_level.upper())

    translator = RemoteTranslator(args.api) if args.api else StreamingTranslator(config)

    def progress_callback(unit: Unit):
        if unit.status in (UnitStatus.DONE, UnitStatus.FAILED):
            print(f"Unit {unit.index + 1}: {unit.status.value}", file=sys.stderr)

    orchestrator = TranslationOrchestrator.from_config(
        config,
        translator,
        args.target_lang,
        instructions=args.instructions,
        on_update=progress_callback,
    )

    try:
        text = Path(args.input_file).read_text(encoding="utf-8")
        orchestrator.ingest_long_text(0, text)
        await orchestrator.wait_idle()
        print(orchestrator.full_translation())
        if any(u.status is UnitStatus.FAILED for u in orchestrator.units):
            sys.exit(1)
    finally:
        await translator.close()


if __name__ == "__main__":
    asyncio.run(main())
