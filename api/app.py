"""FastAPI application for the streaming translation service."""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from admission import RateLimiter, RateLimitStore, client_identity, rate_limits_from_config
from config import Config
from errors import AdmissionDenied, DocumentParseError, UpstreamError, ValidationError
from ingestion import SUPPORTED_CONTENT_TYPES, DocumentParseClient, is_plain_text
from models import TranslationContext
from translation import StreamingTranslator

logger = logging.getLogger(__name__)


class PreviousContext(BaseModel):
    source: str = ""
    translation: str = ""


class TranslateRequest(BaseModel):
    # Optional so that missing fields produce a 400 rather than a schema error
    text: Optional[str] = None
    targetLang: Optional[str] = None
    instructions: Optional[str] = None
    previousContext: Optional[PreviousContext] = None


def sse_event(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _identity(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_identity(request.headers, peer)


async def admission_denied_handler(request: Request, exc: AdmissionDenied) -> JSONResponse:
    reset_time = None
    if exc.reset_at is not None:
        reset_time = datetime.fromtimestamp(exc.reset_at / 1000, tz=timezone.utc).isoformat()
    return JSONResponse(
        status_code=429,
        content={"error": str(exc), "resetTime": reset_time},
        headers=exc.headers(),
    )


def create_app(
    config: Optional[Config] = None,
    translator: Optional[Any] = None,
    document_parser: Optional[Any] = None,
    limiters: Optional[Dict[str, RateLimiter]] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Service configuration (defaults to the environment)
        translator: Object with a ``stream_translate`` async generator
        document_parser: Object with an async ``parse(filename, data, content_type)``
        limiters: Rate limiters for the "translate" and "upload" actions
    """
    config = config or Config.from_env()
    translator = translator or StreamingTranslator(config)
    document_parser = document_parser or DocumentParseClient(config)
    if limiters is None:
        # One store per action keeps the quota tables independent.
        limiters = {
            action: RateLimiter(options, RateLimitStore())
            for action, options in rate_limits_from_config(config).items()
        }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for resource in (translator, document_parser):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()

    app = FastAPI(title="Streaming Translation API", version="1.0.0", lifespan=lifespan)
    app.state.config = config
    app.state.limiters = limiters

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AdmissionDenied, admission_denied_handler)

    @app.post("/translate")
    async def translate(body: TranslateRequest, request: Request):
        """
        Stream a translation of ``text`` as server-sent events.

        Each event carries ``{"content": <delta>}``.
        """
        limiters["translate"].enforce(
            _identity(request), "Too many translation requests. Please try again later."
        )

        if not body.text or not body.targetLang:
            raise HTTPException(status_code=400, detail="Missing required fields: text, targetLang")
        if len(body.text) > config.max_text_length:
            raise HTTPException(
                status_code=400,
                detail=f"Text exceeds the maximum length of {config.max_text_length} characters",
            )
        if not config.api_key:
            raise HTTPException(status_code=500, detail="UPSTAGE_API_KEY not configured")

        context = None
        previous = body.previousContext
        if previous is not None and previous.source.strip() and previous.translation.strip():
            context = TranslationContext(previous.source, previous.translation)

        stream = translator.stream_translate(body.text, body.targetLang, body.instructions, context)

        # Pull the first delta so upstream failures still map to an HTTP status.
        try:
            first: Optional[str] = await stream.__anext__()
        except StopAsyncIteration:
            first = None
        except UpstreamError as exc:
            logger.error("Translation error: %s", exc)
            raise HTTPException(status_code=500, detail="Translation failed") from exc

        async def events() -> AsyncIterator[str]:
            try:
                if first is None:
                    return
                yield sse_event({"content": first})
                async for delta in stream:
                    yield sse_event({"content": delta})
            except UpstreamError as exc:
                logger.error("Translation stream interrupted: %s", exc)
                yield sse_event({"error": "Translation failed"})
            finally:
                await stream.aclose()

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/upload")
    async def upload(request: Request, file: Optional[UploadFile] = File(None)):
        """Extract text from an uploaded document."""
        limiters["upload"].enforce(
            _identity(request), "Too many upload requests. Please try again later."
        )

        if file is None:
            raise HTTPException(status_code=400, detail="No file provided")

        limit_mb = config.max_upload_bytes // (1024 * 1024)
        too_large = HTTPException(
            status_code=400,
            detail=f"File size exceeds {limit_mb}MB limit. Please upload a smaller file.",
        )
        if file.size is not None and file.size > config.max_upload_bytes:
            raise too_large

        # Never buffer more than one byte past the limit.
        data = await file.read(config.max_upload_bytes + 1)
        if len(data) > config.max_upload_bytes:
            raise too_large

        filename = file.filename or "upload"
        content_type = file.content_type or ""
        meta = {"filename": filename, "fileType": content_type, "fileSize": len(data)}

        if is_plain_text(filename, content_type):
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError as exc:
                logger.error("Error reading text file %s: %s", filename, exc)
                raise HTTPException(status_code=500, detail="Failed to read the text file.") from exc
            if not text.strip():
                raise HTTPException(status_code=400, detail="The text file is empty.")
            return {"content": text, **meta, "isMultiPage": False}

        if content_type not in SUPPORTED_CONTENT_TYPES:
            raise HTTPException(
                status_code=400,
                detail=(
                    "Unsupported file type. Supported formats: TXT, JPEG, PNG, BMP, PDF, "
                    "TIFF, HEIC, DOCX, PPTX, XLSX, HWP, HWPX."
                ),
            )

        try:
            document = await document_parser.parse(filename, data, content_type)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except DocumentParseError as exc:
            logger.error("Upload processing error for %s: %s", filename, exc)
            raise HTTPException(
                status_code=500, detail="Document parsing failed. Please try again."
            ) from exc

        if document.pages:
            return {
                "pages": [
                    {"pageNumber": page.page_number, "content": page.content}
                    for page in document.pages
                ],
                **meta,
                "isMultiPage": document.is_multi_page,
                "totalPages": document.total_pages or len(document.pages),
            }
        return {"content": document.content, **meta, "isMultiPage": False}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "model": config.model,
            "api_key_configured": bool(config.api_key),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
