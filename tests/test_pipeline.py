"""
Translation orchestrator tests
"""
import asyncio
import json

import httpx
import pytest

from admission import RateLimiter, RateLimitOptions
from errors import Cancelled, ValidationError
from fakes import GatedTranslator, ScriptedTranslator, sse_body, upstream_chunk
from models import ParsedDocument, ParsedPage, TranslationContext, UnitStatus
from pipeline import FAILURE_PLACEHOLDER, TranslationOrchestrator
from translation.api_client import RemoteTranslator
from translation.chunker import count_words
from translation.llm_translator import StreamingTranslator


def long_text(sentences: int = 120, words_per_sentence: int = 10) -> str:
    parts = []
    for i in range(sentences):
        parts.append(" ".join(f"s{i}w{j}" for j in range(words_per_sentence - 1)) + " done.")
    return " ".join(parts)


def orchestrator_with(translator, *sources, **kwargs) -> TranslationOrchestrator:
    orchestrator = TranslationOrchestrator(translator, "es", **kwargs)
    orchestrator.units[0].source_text = sources[0] if sources else ""
    for source in sources[1:]:
        orchestrator.add_unit().source_text = source
    return orchestrator


class TestTranslateUnit:

    @pytest.mark.asyncio
    async def test_deltas_accumulate_and_are_observed(self, translator):
        snapshots = []
        orchestrator = orchestrator_with(
            translator,
            "Good morning everyone here",
            on_update=lambda unit: snapshots.append((unit.status, unit.translated_text)),
        )

        status = await orchestrator.translate_unit(0)

        unit = orchestrator.units[0]
        assert status is UnitStatus.DONE
        assert unit.status is UnitStatus.DONE
        assert unit.translated_text == "[es] Good morning everyone here"
        texts = [text for state, text in snapshots if state is UnitStatus.TRANSLATING]
        assert texts[0] == ""
        assert texts[-1] == unit.translated_text
        assert all(b.startswith(a) for a, b in zip(texts, texts[1:]))
        assert orchestrator.active_token is None

    @pytest.mark.asyncio
    async def test_previous_translation_is_cleared(self, translator):
        orchestrator = orchestrator_with(translator, "Fresh text to translate")
        orchestrator.units[0].translated_text = "stale"
        await orchestrator.translate_unit(0, "fr")
        assert orchestrator.units[0].translated_text == "[fr] Fresh text to translate"

    @pytest.mark.asyncio
    async def test_blank_unit_is_skipped(self, translator):
        orchestrator = orchestrator_with(translator, "   ")
        assert await orchestrator.translate_unit(0) is UnitStatus.PENDING
        assert translator.calls == []

    @pytest.mark.asyncio
    async def test_failure_sets_placeholder_and_message(self):
        translator = ScriptedTranslator(failures={"Broken page text"})
        orchestrator = orchestrator_with(translator, "Broken page text")

        status = await orchestrator.translate_unit(0)

        unit = orchestrator.units[0]
        assert status is UnitStatus.FAILED
        assert unit.error_message == "Upstream API error: 500"
        assert unit.translated_text == FAILURE_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_out_of_range_index(self, translator):
        orchestrator = orchestrator_with(translator, "text")
        with pytest.raises(IndexError):
            await orchestrator.translate_unit(3)


class TestSupersession:

    @pytest.mark.asyncio
    async def test_late_deltas_of_superseded_request_are_discarded(self):
        translator = GatedTranslator(["a1", "a2", "a3"])
        orchestrator = orchestrator_with(translator, "Unit A source text", "Unit B source text")

        task_a = asyncio.create_task(orchestrator.translate_unit(0))
        await translator.paused.wait()
        assert orchestrator.units[0].translated_text == "a1"

        status_b = await orchestrator.translate_unit(1)
        translator.gate.set()
        status_a = await task_a

        assert status_b is UnitStatus.DONE
        assert status_a is UnitStatus.CANCELLED
        assert orchestrator.units[0].translated_text == "a1"
        assert orchestrator.units[0].status is UnitStatus.CANCELLED
        assert orchestrator.units[0].error_message is None
        assert orchestrator.units[1].translated_text == "[es] Unit B source text"

    @pytest.mark.asyncio
    async def test_retranslating_same_unit_ignores_old_stream(self):
        translator = GatedTranslator(["old-1", "old-2"])
        orchestrator = orchestrator_with(translator, "Same unit source text")

        task_old = asyncio.create_task(orchestrator.translate_unit(0))
        await translator.paused.wait()

        assert await orchestrator.translate_unit(0, "fr") is UnitStatus.DONE
        translator.gate.set()
        assert await task_old is UnitStatus.CANCELLED

        assert orchestrator.units[0].translated_text == "[fr] Same unit source text"
        assert orchestrator.units[0].status is UnitStatus.DONE

    @pytest.mark.asyncio
    async def test_caller_cancel_is_silent(self):
        translator = GatedTranslator(["x1", "x2"])
        orchestrator = orchestrator_with(translator, "Some text to translate")

        task = asyncio.create_task(orchestrator.translate_unit(0))
        await translator.paused.wait()
        orchestrator.cancel()
        translator.gate.set()

        assert await task is UnitStatus.CANCELLED
        unit = orchestrator.units[0]
        assert unit.status is UnitStatus.CANCELLED
        assert unit.error_message is None
        assert unit.translated_text == "x1"

    @pytest.mark.asyncio
    async def test_backend_reporting_cancellation_is_not_a_failure(self):
        class AbandoningTranslator(ScriptedTranslator):
            async def stream_translate(self, text, target_language, instructions=None, context=None, token=None):
                yield "partial"
                raise Cancelled("stream abandoned")

        orchestrator = orchestrator_with(AbandoningTranslator(), "Some text to translate")

        assert await orchestrator.translate_unit(0) is UnitStatus.CANCELLED
        unit = orchestrator.units[0]
        assert unit.status is UnitStatus.CANCELLED
        assert unit.error_message is None
        assert unit.translated_text == "partial"
        assert orchestrator.active_token is None

    @pytest.mark.asyncio
    async def test_only_one_token_is_live(self):
        translator = GatedTranslator(["x1", "x2"])
        orchestrator = orchestrator_with(translator, "First unit text", "Second unit text")

        task = asyncio.create_task(orchestrator.translate_unit(0))
        await translator.paused.wait()
        first_token = orchestrator.active_token

        second = asyncio.create_task(orchestrator.translate_unit(1))
        await asyncio.sleep(0)
        assert first_token.cancelled is True
        assert orchestrator.active_token is not first_token

        translator.gate.set()
        await asyncio.gather(task, second)


class TestSequential:

    @pytest.mark.asyncio
    async def test_partial_failure_does_not_halt_run(self):
        translator = ScriptedTranslator(failures={"Second page fails here."})
        orchestrator = orchestrator_with(
            translator,
            "First page works fine.",
            "Second page fails here.",
            "Third page works too.",
        )

        results = await orchestrator.translate_sequential(0, 3)

        assert results == {0: UnitStatus.DONE, 1: UnitStatus.FAILED, 2: UnitStatus.DONE}
        assert orchestrator.units[1].error_message
        assert orchestrator.units[2].translated_text == "[es] Third page works too."
        # A failed predecessor provides no context.
        assert translator.calls[2].context is None

    @pytest.mark.asyncio
    async def test_units_run_in_order_with_context_chain(self, translator):
        orchestrator = orchestrator_with(translator, "One.", "Two.", "", "Four.")

        results = await orchestrator.translate_sequential(0, 4)

        assert list(results) == [0, 1, 3]
        assert [c.text for c in translator.calls] == ["One.", "Two.", "Four."]
        assert translator.calls[0].context is None
        assert translator.calls[1].context == TranslationContext("One.", "[es] One.")
        assert translator.calls[2].context is None

    @pytest.mark.asyncio
    async def test_range_is_clamped_to_units(self, translator):
        orchestrator = orchestrator_with(translator, "Only one unit here")
        assert await orchestrator.translate_sequential(0, 5) == {0: UnitStatus.DONE}

    @pytest.mark.asyncio
    async def test_superseded_run_stops(self):
        translator = GatedTranslator(["p1", "p2"])
        orchestrator = orchestrator_with(translator, "Page one text", "Page two text", "Page three text")

        run = asyncio.create_task(orchestrator.translate_sequential(0, 3))
        await translator.paused.wait()
        await orchestrator.translate_unit(2)
        translator.gate.set()

        assert await run == {0: UnitStatus.CANCELLED}
        assert orchestrator.units[1].status is UnitStatus.PENDING
        assert [c.text for c in translator.calls] == ["Page one text", "Page three text"]

    @pytest.mark.asyncio
    async def test_admission_denial_fails_unit(self, translator):
        limiter = RateLimiter(RateLimitOptions(window_ms=600_000, max_requests=1))
        orchestrator = orchestrator_with(
            translator, "First unit text", "Second unit text", admission=limiter, identity="tester"
        )

        results = await orchestrator.translate_sequential(0, 2)

        assert results == {0: UnitStatus.DONE, 1: UnitStatus.FAILED}
        assert orchestrator.units[1].error_message.startswith("Rate limit reached. Please wait 10 minutes")
        assert len(translator.calls) == 1


class TestContextPropagation:

    @pytest.mark.asyncio
    async def test_system_prompt_embeds_previous_unit(self, config):
        system_prompts = []

        def handler(request: httpx.Request) -> httpx.Response:
            system_prompts.append(json.loads(request.content)["messages"][0]["content"])
            return httpx.Response(200, content=sse_body(upstream_chunk("ok"), "[DONE]"))

        translator = StreamingTranslator(config, httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        orchestrator = orchestrator_with(translator, "Hello.", "How are you?")
        orchestrator.units[0].translated_text = "Hola."
        orchestrator.units[0].status = UnitStatus.DONE

        await orchestrator.translate_unit(1)
        assert "Hello." in system_prompts[0]
        assert "Hola." in system_prompts[0]

        await orchestrator.translate_unit(0)
        assert "Previous source" not in system_prompts[1]
        assert "Previous translation" not in system_prompts[1]

    def test_context_requires_source_and_translation(self, translator):
        orchestrator = orchestrator_with(translator, "Hello.", "World.")
        assert orchestrator.context_for(0) is None
        assert orchestrator.context_for(1) is None
        orchestrator.units[0].translated_text = "Hola."
        assert orchestrator.context_for(1) == TranslationContext("Hello.", "Hola.")
        orchestrator.units[0].source_text = "  "
        assert orchestrator.context_for(1) is None


class TestIngestLongText:

    @pytest.mark.asyncio
    async def test_chunks_fill_consecutive_units_and_translate_range(self, translator):
        orchestrator = orchestrator_with(translator, "Intro page stays where it is")
        text = long_text()

        task = orchestrator.ingest_long_text(1, text)

        assert len(orchestrator.units) == 4
        chunks = [u.source_text for u in orchestrator.units[1:]]
        assert len(chunks) == 3
        assert all(count_words(c) <= 500 for c in chunks)
        assert " ".join(chunks).split() == text.split()
        assert orchestrator.units[0].source_text == "Intro page stays where it is"

        results = await task
        assert results == {1: UnitStatus.DONE, 2: UnitStatus.DONE, 3: UnitStatus.DONE}
        assert [c.text for c in translator.calls] == chunks

    @pytest.mark.asyncio
    async def test_stale_units_beyond_chunks_are_cleared(self, translator):
        orchestrator = orchestrator_with(translator, "a", "b", "c", "d", "e", "f")
        for unit in orchestrator.units:
            unit.translated_text = "old"

        task = orchestrator.ingest_long_text(0, long_text(sentences=60))
        assert len(orchestrator.units) == 6
        assert [bool(u.source_text) for u in orchestrator.units] == [True, True, False, False, False, False]
        assert all(u.translated_text == "" for u in orchestrator.units)
        assert await task == {0: UnitStatus.DONE, 1: UnitStatus.DONE}

    @pytest.mark.asyncio
    async def test_paste_through_edit_source(self, translator):
        orchestrator = orchestrator_with(translator)
        task = orchestrator.edit_source(0, long_text(sentences=110))
        assert len(orchestrator.units) == 3
        await task
        assert orchestrator.progress == (3, 3)


class TestTriggers:

    @pytest.mark.asyncio
    async def test_substantial_edit_translates(self, translator):
        orchestrator = orchestrator_with(translator)
        task = orchestrator.edit_source(0, "This is enough words")
        assert task is not None
        assert await task is UnitStatus.DONE

    @pytest.mark.asyncio
    async def test_trivial_edit_clears_translation(self, translator):
        orchestrator = orchestrator_with(translator, "Earlier text that was translated")
        await orchestrator.translate_unit(0)

        assert orchestrator.edit_source(0, "just three words") is None
        assert orchestrator.units[0].translated_text == ""
        assert orchestrator.units[0].status is UnitStatus.PENDING
        assert len(translator.calls) == 1

    @pytest.mark.asyncio
    async def test_change_target_language(self, translator):
        orchestrator = orchestrator_with(translator, "First page with content", "tiny", "Third page with content")
        await orchestrator.translate_sequential(0, 3)

        task = orchestrator.change_target_language("ko")

        assert all(u.translated_text == "" for u in orchestrator.units)
        await task
        assert orchestrator.target_language == "ko"
        assert orchestrator.units[0].translated_text == "[ko] First page with content"
        assert orchestrator.units[1].translated_text == ""
        assert orchestrator.units[2].translated_text == "[ko] Third page with content"

    @pytest.mark.asyncio
    async def test_change_language_supersedes_running_translation(self):
        translator = GatedTranslator(["es-1", "es-2"])
        orchestrator = orchestrator_with(translator, "Page in progress here")

        old = asyncio.create_task(orchestrator.translate_unit(0))
        await translator.paused.wait()
        task = orchestrator.change_target_language("ja")
        translator.gate.set()

        assert await old is UnitStatus.CANCELLED
        await task
        assert orchestrator.units[0].translated_text == "[ja] Page in progress here"

    @pytest.mark.asyncio
    async def test_retranslate_all(self, translator):
        orchestrator = orchestrator_with(translator, "Alpha", "", "Gamma")
        await orchestrator.retranslate_all()
        assert [u.status for u in orchestrator.units] == [
            UnitStatus.DONE,
            UnitStatus.PENDING,
            UnitStatus.DONE,
        ]
        assert orchestrator.full_translation() == "[es] Alpha\n\n\n\n[es] Gamma"

    @pytest.mark.asyncio
    async def test_load_pages_places_by_page_number(self, translator):
        orchestrator = orchestrator_with(translator, "old content")
        pages = [
            ParsedPage(page_number=1, content="Content of the first page"),
            ParsedPage(page_number=3, content="Content of the third page"),
        ]

        task = orchestrator.load_pages(pages)

        assert [u.source_text for u in orchestrator.units] == [
            "Content of the first page",
            "",
            "Content of the third page",
        ]
        assert await task == {0: UnitStatus.DONE, 2: UnitStatus.DONE}

    @pytest.mark.asyncio
    async def test_load_document_with_single_body(self, translator):
        orchestrator = orchestrator_with(translator)
        doc = ParsedDocument("a.txt", "text/plain", 10, content="A short uploaded document")
        await orchestrator.load_document(doc)
        await orchestrator.wait_idle()
        assert orchestrator.units[0].status is UnitStatus.DONE


class TestUnitManagement:

    def test_remove_requires_empty_unit(self, translator):
        orchestrator = orchestrator_with(translator, "text", "", "more")
        with pytest.raises(ValidationError):
            orchestrator.remove_unit(0)

        orchestrator.remove_unit(1)

        assert [u.source_text for u in orchestrator.units] == ["text", "more"]
        assert [u.index for u in orchestrator.units] == [0, 1]

    def test_erase_and_clear(self, translator):
        orchestrator = orchestrator_with(translator, "text", "more")
        orchestrator.units[1].translated_text = "translated"
        orchestrator.erase_unit(1)
        assert orchestrator.units[1].has_content is False

        orchestrator.clear_all()
        assert len(orchestrator.units) == 1
        assert orchestrator.units[0].source_text == ""

    def test_negative_index_is_rejected(self, translator):
        orchestrator = orchestrator_with(translator, "first", "last")
        with pytest.raises(ValidationError):
            orchestrator.edit_source(-1, "new")
        with pytest.raises(ValidationError):
            orchestrator.edit_source(-1, long_text())
        assert [u.source_text for u in orchestrator.units] == ["first", "last"]


class TestRemoteBackend:

    @pytest.mark.asyncio
    async def test_error_event_fails_the_unit(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = sse_body(json.dumps({"content": "Hola"}), json.dumps({"error": "Translation failed"}))
            return httpx.Response(200, content=body)

        remote = RemoteTranslator(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        orchestrator = orchestrator_with(remote, "Hello there friend")

        status = await orchestrator.translate_unit(0)

        unit = orchestrator.units[0]
        assert status is UnitStatus.FAILED
        assert unit.error_message == "Translation failed"
        assert unit.translated_text == FAILURE_PLACEHOLDER
