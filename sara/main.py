"""
FastAPI application for SARA.

Exposes the article pipeline (transcript → article → TLDR), quota status,
cache statistics and reading history. Every expensive call goes through
the cache first and is charged against its service quota only on success.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from sara import __version__
from sara.cache import ResultCache
from sara.config import Settings, settings
from sara.database import DatabaseEngine, DatabaseLifecycle, get_database_url
from sara.errors import (
    CollaboratorError,
    QuotaExceededError,
    StorageError,
    TranscriptNotAvailableError,
    UnknownServiceError,
)
from sara.history import HistoryStore
from sara.llm import LLMClient
from sara.middleware import RequestIdMiddleware, SecurityHeadersMiddleware
from sara.pipeline import ArticlePipeline
from sara.quota import LLM_SERVICE, TRANSCRIPT_SERVICE, QuotaInfo, QuotaTracker, default_services
from sara.service import TranscriptFetcher
from sara.storage import DurableStore, MemoryStore, RedisStore
from sara.utils import MS_PER_DAY, normalize_video_id, sanitize_for_log

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger()

_app_start_time = time.time()


# ============================================================================
# Service Container
# ============================================================================


@dataclass
class Services:
    """Explicitly constructed components shared by all requests of one app."""

    store: DurableStore
    quota: QuotaTracker
    cache: ResultCache
    history: HistoryStore
    pipeline: ArticlePipeline
    shutdown: Callable[[], Awaitable[None]] | None = None

    async def store_health(self) -> dict[str, str]:
        health_check = getattr(self.store, "health_check", None)
        if health_check is None:
            return {"status": "healthy", "backend": type(self.store).__name__}
        return await health_check()


async def build_services(config: Settings) -> Services:
    """Create the durable store selected by ``config`` and every component on top of it."""
    shutdown = None
    if config.storage_backend == "sqlite":
        engine = DatabaseEngine(database_url=get_database_url(config.database_path))
        lifecycle = DatabaseLifecycle(engine)
        await lifecycle.startup()
        store: DurableStore = engine
        shutdown = lifecycle.shutdown
    elif config.storage_backend == "redis":
        redis_store = RedisStore(redis_url=config.redis_url)
        await redis_store.connect()
        store = redis_store
        shutdown = redis_store.disconnect
    else:
        store = MemoryStore()

    quota = QuotaTracker(
        store,
        default_services(
            llm_ceiling=config.llm_ceiling,
            llm_window_hours=config.llm_window_hours,
            transcript_ceiling=config.transcript_ceiling,
            transcript_reset_hour=config.transcript_reset_hour,
            transcript_reset_minute=config.transcript_reset_minute,
        ),
    )
    cache = ResultCache(
        store,
        max_entries=config.cache_max_entries,
        default_ttl=config.cache_ttl_days * MS_PER_DAY,
    )
    history = HistoryStore(store, max_entries=config.history_max_entries)
    pipeline = ArticlePipeline(
        cache=cache,
        quota=quota,
        transcripts=TranscriptFetcher(config),
        llm=LLMClient(
            api_key=config.openai_api_key,
            model=config.openai_model,
            timeout=config.openai_timeout,
        ),
    )
    return Services(
        store=store,
        quota=quota,
        cache=cache,
        history=history,
        pipeline=pipeline,
        shutdown=shutdown,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's service container."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


# ============================================================================
# Pydantic Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: str | None = Field(None, description="Additional error details")


class QuotaErrorResponse(ErrorResponse):
    """Quota exhausted: when it resets and how much is left."""

    service: str = Field(..., description="Service whose quota is exhausted")
    reset_time: datetime = Field(..., description="When the quota resets (UTC)")
    remaining: int = Field(..., description="Units left in the current window")
    ceiling: int = Field(..., description="Units per window")


class TranscriptSegmentModel(BaseModel):
    text: str = Field(..., description="Caption text")
    offset_ms: int = Field(..., description="Start of the caption in milliseconds")
    duration_ms: int = Field(..., description="Caption display time in milliseconds")


class TranscriptResponse(BaseModel):
    video_id: str = Field(..., description="YouTube video ID (11 characters)")
    transcript: list[TranscriptSegmentModel]
    from_cache: bool
    quota_remaining: int = Field(..., description="Transcript quota units left")


class ArticleRequest(BaseModel):
    video_id: str = Field(..., max_length=500, description="YouTube video URL or ID")
    title: str = Field(default="", max_length=500)
    lang: str = Field(default="en", pattern=r"^[a-z]{2}(-[A-Z]{2})?$")


class ArticleResponse(BaseModel):
    video_id: str
    article: str
    from_cache: bool
    quota_remaining: int = Field(..., description="LLM quota units left")


class SummaryRequest(BaseModel):
    video_id: str = Field(..., max_length=500, description="YouTube video URL or ID")
    article: str = Field(..., min_length=1, description="Article to summarise")
    title: str = Field(default="", max_length=500)


class SummaryResponse(BaseModel):
    video_id: str
    summary: str
    from_cache: bool
    quota_remaining: int = Field(..., description="LLM quota units left")


class CacheStatsResponse(BaseModel):
    total_entries: int
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
    total_size_bytes: int
    hits: int
    misses: int
    hit_rate: float
    miss_rate: float


class HistoryEntryResponse(BaseModel):
    video_id: str
    title: str
    viewed_at: int = Field(..., description="Epoch milliseconds")
    reading_progress: int
    favorite: bool


class HistoryAddRequest(BaseModel):
    video_id: str = Field(..., max_length=500, description="YouTube video URL or ID")
    title: str = Field(..., max_length=500)


class ProgressRequest(BaseModel):
    progress: int = Field(..., description="Reading progress percentage; clamped to 0-100")


class FavoriteResponse(BaseModel):
    video_id: str
    favorite: bool


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: float = Field(..., description="Current Unix timestamp")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    cache: dict = Field(default_factory=dict, description="Cache statistics")
    quota: dict = Field(default_factory=dict, description="Quota per service")
    storage: dict = Field(default_factory=dict, description="Durable store status")


def _video_id_or_400(value: str) -> str:
    video_id = normalize_video_id(value)
    if video_id is None:
        logger.warning(f"Invalid video reference: {sanitize_for_log(value)}")
        raise HTTPException(
            status_code=400,
            detail="Invalid YouTube URL or video ID. Expected format: https://www.youtube.com/watch?v=VIDEO_ID",
        )
    return video_id


def _history_response(entry: Any) -> HistoryEntryResponse:
    return HistoryEntryResponse.model_validate(entry.model_dump())


# ============================================================================
# Exception Handlers
# ============================================================================


async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> Response:
    """Quota exhaustion is a normal, recoverable condition: 429 with reset time."""
    logger.warning(f"Quota exceeded for {exc.service}, resets at {exc.reset_time.isoformat()}")
    body = QuotaErrorResponse(
        error="quota_exceeded",
        message=str(exc),
        service=exc.service,
        reset_time=exc.reset_time,
        remaining=exc.remaining,
        ceiling=exc.ceiling,
    )
    retry_after = max(int(exc.reset_time.timestamp() - time.time()), 0)
    return Response(
        content=body.model_dump_json(),
        status_code=429,
        media_type="application/json",
        headers={"Retry-After": str(retry_after)},
    )


async def transcript_not_available_handler(request: Request, exc: TranscriptNotAvailableError) -> Response:
    logger.info(f"No captions for {exc.video_id} ({exc.lang})")
    body = ErrorResponse(
        error="transcript_not_available",
        message="Failed to fetch transcript. This video might not have captions available.",
        detail=str(exc),
    )
    return Response(content=body.model_dump_json(), status_code=404, media_type="application/json")


async def collaborator_error_handler(request: Request, exc: CollaboratorError) -> Response:
    """Upstream failures: 503 if retrying later may help, 502 otherwise."""
    logger.error(f"Upstream {exc.service} error: {exc}")
    body = ErrorResponse(
        error=f"{exc.service}_unavailable" if exc.transient else f"{exc.service}_failed",
        message=f"The {exc.service} provider failed. No quota was used.",
        detail=str(exc)[:200],
    )
    return Response(
        content=body.model_dump_json(),
        status_code=503 if exc.transient else 502,
        media_type="application/json",
    )


async def storage_error_handler(request: Request, exc: StorageError) -> Response:
    logger.error(f"Storage error: {exc}")
    body = ErrorResponse(
        error="storage_unavailable",
        message="Could not persist state. Please retry.",
        detail=str(exc)[:200],
    )
    return Response(content=body.model_dump_json(), status_code=503, media_type="application/json")


async def unknown_service_handler(request: Request, exc: UnknownServiceError) -> Response:
    body = ErrorResponse(error="unknown_service", message=str(exc))
    return Response(content=body.model_dump_json(), status_code=404, media_type="application/json")


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    """Report request validation errors as 400 with the failing fields."""
    errors = exc.errors()
    logger.warning(f"Validation error: {errors}")

    details = []
    for error in errors:
        loc = " -> ".join(str(x) for x in error["loc"])
        details.append(f"{loc}: {error['msg']}")

    body = ErrorResponse(
        error="validation_error",
        message="Invalid request parameters",
        detail="; ".join(details),
    )
    return Response(content=body.model_dump_json(), status_code=400, media_type="application/json")


# ============================================================================
# Application Factory
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services from settings unless they were injected, and tear them down."""
    owned = getattr(app.state, "services", None) is None
    config: Settings = app.state.config

    logger.info("=" * 60)
    logger.info("SARA starting")
    logger.info("=" * 60)
    logger.info(f"  - Storage: {config.storage_backend}")
    logger.info(f"  - LLM quota: {config.llm_ceiling} per {config.llm_window_hours}h rolling window")
    logger.info(
        f"  - Transcript quota: {config.transcript_ceiling} per UTC day, resets at "
        f"{config.transcript_reset_hour:02d}:{config.transcript_reset_minute:02d}"
    )
    logger.info(f"  - Cache: {config.cache_max_entries} entries, {config.cache_ttl_days}d TTL")

    if owned:
        try:
            app.state.services = await build_services(config)
        except Exception as e:
            logger.error(f"Failed to initialize services: {e}")
            raise

    yield

    if not owned:
        return
    services: Services = app.state.services
    app.state.services = None
    if services.shutdown is not None:
        try:
            await services.shutdown()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
            raise


def create_app(services: Services | None = None, config: Settings | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Pre-built components (tests inject in-memory ones). When
            None, the lifespan builds them from settings on startup.
        config: Settings for middleware and for building services; defaults
            to the global settings
    """
    config = config or settings

    app = FastAPI(
        title="SARA",
        description="YouTube transcripts turned into articles and TLDR summaries, within API quotas",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.config = config

    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.add_middleware(RequestIdMiddleware)
    if config.enable_security_headers:
        app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(QuotaExceededError, quota_exceeded_handler)
    app.add_exception_handler(TranscriptNotAvailableError, transcript_not_available_handler)
    app.add_exception_handler(CollaboratorError, collaborator_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(UnknownServiceError, unknown_service_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    error_responses = {
        400: {"model": ErrorResponse, "description": "Invalid video reference or parameters"},
        429: {"model": QuotaErrorResponse, "description": "Service quota exhausted"},
        502: {"model": ErrorResponse, "description": "Upstream provider failed"},
        503: {"model": ErrorResponse, "description": "Upstream or storage temporarily unavailable"},
    }

    # ------------------------------------------------------------------ pipeline

    @app.get(
        "/api/v1/transcript",
        response_model=TranscriptResponse,
        responses={**error_responses, 404: {"model": ErrorResponse, "description": "No captions"}},
        summary="Fetch a video's transcript",
    )
    async def get_transcript(
        video_id: str = Query(..., max_length=500, description="YouTube video URL or ID"),
        lang: str = Query("en", pattern=r"^[a-z]{2}(-[A-Z]{2})?$", description="Caption language"),
        services: Services = Depends(get_services),
    ) -> TranscriptResponse:
        """
        Return the transcript of a video.

        Served from cache when possible; otherwise charges one unit of the
        daily transcript quota.
        """
        resolved = _video_id_or_400(video_id)
        segments, from_cache = await services.pipeline.get_transcript(resolved, lang)
        info = await services.quota.get_quota_info(TRANSCRIPT_SERVICE)
        return TranscriptResponse(
            video_id=resolved,
            transcript=[TranscriptSegmentModel(**segment) for segment in segments],
            from_cache=from_cache,
            quota_remaining=info.remaining,
        )

    @app.post(
        "/api/v1/articles",
        response_model=ArticleResponse,
        responses=error_responses,
        summary="Turn a video's transcript into an article",
    )
    async def create_article(
        body: ArticleRequest, services: Services = Depends(get_services)
    ) -> ArticleResponse:
        resolved = _video_id_or_400(body.video_id)
        article, from_cache = await services.pipeline.generate_article(resolved, body.title, body.lang)
        info = await services.quota.get_quota_info(LLM_SERVICE)
        return ArticleResponse(
            video_id=resolved, article=article, from_cache=from_cache, quota_remaining=info.remaining
        )

    @app.post(
        "/api/v1/summaries",
        response_model=SummaryResponse,
        responses=error_responses,
        summary="Summarise an article as five TLDR bullet points",
    )
    async def create_summary(
        body: SummaryRequest, services: Services = Depends(get_services)
    ) -> SummaryResponse:
        resolved = _video_id_or_400(body.video_id)
        summary, from_cache = await services.pipeline.generate_summary(resolved, body.article, body.title)
        info = await services.quota.get_quota_info(LLM_SERVICE)
        return SummaryResponse(
            video_id=resolved, summary=summary, from_cache=from_cache, quota_remaining=info.remaining
        )

    # --------------------------------------------------------------------- quota

    @app.get("/api/v1/quota", response_model=list[QuotaInfo], summary="Quota status of all services")
    async def list_quota(services: Services = Depends(get_services)) -> list[QuotaInfo]:
        return [await services.quota.get_quota_info(name) for name in services.quota.services]

    @app.get(
        "/api/v1/quota/{service}",
        response_model=QuotaInfo,
        responses={404: {"model": ErrorResponse, "description": "Unknown service"}},
        summary="Quota status of one service",
    )
    async def get_quota(service: str, services: Services = Depends(get_services)) -> QuotaInfo:
        return await services.quota.get_quota_info(service)

    # --------------------------------------------------------------------- cache

    @app.get("/api/v1/cache/stats", response_model=CacheStatsResponse, summary="Cache statistics")
    async def cache_stats(services: Services = Depends(get_services)) -> CacheStatsResponse:
        return CacheStatsResponse(**await services.cache.get_stats())

    @app.delete("/api/v1/cache/{key}", status_code=204, summary="Remove one cached result")
    async def remove_cache_entry(key: str, services: Services = Depends(get_services)) -> Response:
        await services.cache.remove(key)
        return Response(status_code=204)

    @app.delete("/api/v1/cache", status_code=204, summary="Remove all cached results")
    async def clear_cache(services: Services = Depends(get_services)) -> Response:
        await services.cache.clear()
        return Response(status_code=204)

    # ------------------------------------------------------------------- history

    @app.get("/api/v1/history", response_model=list[HistoryEntryResponse], summary="Reading history")
    async def list_history(services: Services = Depends(get_services)) -> list[HistoryEntryResponse]:
        return [_history_response(entry) for entry in await services.history.get_entries()]

    @app.get(
        "/api/v1/history/favorites",
        response_model=list[HistoryEntryResponse],
        summary="Favorite videos from the reading history",
    )
    async def list_favorites(services: Services = Depends(get_services)) -> list[HistoryEntryResponse]:
        return [_history_response(entry) for entry in await services.history.get_favorites()]

    @app.get("/api/v1/history/export", summary="Export the reading history as JSON")
    async def export_history(services: Services = Depends(get_services)) -> Response:
        return Response(
            content=await services.history.export_history(),
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="reading-history.json"'},
        )

    @app.post(
        "/api/v1/history",
        response_model=HistoryEntryResponse,
        status_code=201,
        summary="Record a viewed video",
    )
    async def add_history_entry(
        body: HistoryAddRequest, services: Services = Depends(get_services)
    ) -> HistoryEntryResponse:
        resolved = _video_id_or_400(body.video_id)
        return _history_response(await services.history.add_entry(resolved, body.title))

    @app.put(
        "/api/v1/history/{video_id}/progress",
        response_model=HistoryEntryResponse,
        responses={404: {"model": ErrorResponse, "description": "Video not in history"}},
        summary="Update reading progress",
    )
    async def update_progress(
        video_id: str, body: ProgressRequest, services: Services = Depends(get_services)
    ) -> HistoryEntryResponse:
        entry = await services.history.update_progress(video_id, body.progress)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Video {video_id} is not in the reading history")
        return _history_response(entry)

    @app.post(
        "/api/v1/history/{video_id}/favorite",
        response_model=FavoriteResponse,
        responses={404: {"model": ErrorResponse, "description": "Video not in history"}},
        summary="Toggle the favorite flag",
    )
    async def toggle_favorite(video_id: str, services: Services = Depends(get_services)) -> FavoriteResponse:
        entry = await services.history.toggle_favorite_entry(video_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Video {video_id} is not in the reading history")
        return FavoriteResponse(video_id=video_id, favorite=entry.favorite)

    @app.delete("/api/v1/history", status_code=204, summary="Clear the reading history")
    async def clear_history(services: Services = Depends(get_services)) -> Response:
        await services.history.clear_history()
        return Response(status_code=204)

    # -------------------------------------------------------------------- health

    @app.get("/", summary="Simple health check")
    async def root() -> dict[str, str]:
        return {"status": "healthy", "service": "sara", "version": __version__}

    @app.get("/health", response_model=HealthResponse, summary="Enhanced health check")
    async def health(services: Services = Depends(get_services)) -> HealthResponse:
        """Service status, uptime, cache statistics, quota and store health."""
        storage_status = await services.store_health()
        cache_stats = await services.cache.get_stats()
        quota = {}
        for name in services.quota.services:
            info = await services.quota.get_quota_info(name)
            quota[name] = info.model_dump(mode="json", exclude={"service"})

        return HealthResponse(
            status="healthy" if storage_status.get("status") == "healthy" else "degraded",
            service="sara",
            version=__version__,
            timestamp=time.time(),
            uptime_seconds=time.time() - _app_start_time,
            cache={
                **{k: v for k, v in cache_stats.items() if not isinstance(v, datetime)},
                "max_entries": services.cache.max_entries,
            },
            quota=quota,
            storage=storage_status,
        )


app = create_app()
