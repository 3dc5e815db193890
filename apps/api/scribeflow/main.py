"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from scribeflow.adapters.media import FfmpegMediaToolkit, MediaToolkit, MockMediaToolkit
from scribeflow.adapters.provider import AssemblyAIProvider, MockProvider, TranscriptionProvider
from scribeflow.core.background import running_tasks
from scribeflow.core.config import Settings, get_settings
from scribeflow.core.logging_safety import CORRELATION_HEADER
from scribeflow.errors import ApiError, InputError
from scribeflow.repositories.base import ContentRecordStore
from scribeflow.repositories.json_store import JsonFileContentStore
from scribeflow.repositories.memory import InMemoryContentStore
from scribeflow.routes import queue_router
from scribeflow.routes.dependencies import get_request_correlation_id
from scribeflow.schemas.error import InputNotFoundError
from scribeflow.services.content_identity import ContentIdentityService
from scribeflow.services.orchestrator import JobQueue

logger = logging.getLogger(__name__)


def build_content_store(settings: Settings) -> ContentRecordStore:
    if settings.content_store_dir is None:
        return InMemoryContentStore()
    return JsonFileContentStore(settings.content_store_dir)


def build_media_toolkit(settings: Settings) -> MediaToolkit:
    """Resolve media adapter from configuration."""
    if settings.media_toolkit == "ffmpeg":
        return FfmpegMediaToolkit(settings.ffmpeg_path)
    return MockMediaToolkit()


def build_provider(settings: Settings) -> TranscriptionProvider:
    """Resolve provider adapter from configuration."""
    if settings.provider == "assemblyai":
        return AssemblyAIProvider.from_settings(settings)
    return MockProvider()


def build_queue(settings: Settings) -> JobQueue:
    identity = ContentIdentityService(build_content_store(settings), settings.transcripts_dir)
    return JobQueue(
        identity=identity,
        media=build_media_toolkit(settings),
        provider=build_provider(settings),
        settings=settings,
    )


def create_app(queue: JobQueue | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "queue", None) is None:
            app.state.queue = build_queue(get_settings())
        yield
        active_queue: JobQueue = app.state.queue
        await active_queue.cancel_all()
        await asyncio.gather(*running_tasks(), return_exceptions=True)
        await active_queue.provider.aclose()
        logger.info("app.shutdown total_jobs=%s", active_queue.stats().total)

    app = FastAPI(title="Scribeflow API", version="1.0.0", lifespan=lifespan)
    app.state.queue = queue

    @app.middleware("http")
    async def attach_correlation_id(request: Request, call_next):
        correlation_id = get_request_correlation_id(request)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(InputError)
    async def handle_input_error(_, exc: InputError) -> JSONResponse:
        payload = InputNotFoundError(code="INPUT_NOT_FOUND", message=str(exc))
        return JSONResponse(status_code=404, content=payload.model_dump(exclude_none=True))

    app.include_router(queue_router, prefix="/api/v1")

    return app


app = create_app()
