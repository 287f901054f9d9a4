"""Entry point for the FastAPI-powered recommendation service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import settings
from .database import Database
from .errors import RecommendationError
from .models import Recommendation, WatchlistMediaItem
from .services.recommendation_engine import RecommendationEngine
from .services.recommendation_service import RecommendationService
from .services.tmdb import TMDBClient

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

EMPTY_RESULT_MESSAGE = "No new recommendations were found for this list."

app: FastAPI


class GenerateRequest(BaseModel):
    """Watchlist contents submitted for generation or eligibility checks."""

    items: list[WatchlistMediaItem] = Field(default_factory=list)
    media_ids: list[str] = Field(default_factory=list, alias="mediaIds")

    model_config = ConfigDict(populate_by_name=True)


class RestoreRequest(BaseModel):
    """A previously produced result set to expose again."""

    recommendations: list[Recommendation]


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    tmdb = TMDBClient(settings, tmdb_http_client)
    engine = RecommendationEngine(
        tmdb,
        min_list_size=settings.min_list_size,
        keyword_sample_size=settings.keyword_sample_size,
        scoring_concurrency=settings.scoring_concurrency,
    )
    app.state.recommendation_service = RecommendationService(
        settings, engine, tmdb, database.session_factory
    )
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Watchlist recommendations powered by TMDB",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_recommendation_service(app: FastAPI) -> RecommendationService:
    service = getattr(app.state, "recommendation_service", None)
    if not isinstance(service, RecommendationService):
        raise RuntimeError("Recommendation service not initialised")
    return service


async def _read_payload(request: Request, model: type[BaseModel]) -> Any:
    body = await request.body()
    if not body.strip():
        payload: Any = {}
    else:
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail=json.loads(exc.json(include_url=False))
        ) from exc


def register_routes(fastapi_app: FastAPI) -> None:
    async def _resolve(
        service: RecommendationService, body: GenerateRequest
    ) -> list[WatchlistMediaItem]:
        try:
            return await service.resolve_items(body.items, body.media_ids)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/watchlists/eligibility")
    async def eligibility(request: Request) -> JSONResponse:
        service = get_recommendation_service(fastapi_app)
        body = await _read_payload(request, GenerateRequest)
        items = await _resolve(service, body)
        return JSONResponse(
            {
                "eligible": service.check_eligibility(items),
                "found": len(items),
                "required": service.min_list_size,
            }
        )

    @fastapi_app.post("/api/watchlists/{watchlist_id}/recommendations")
    async def generate(request: Request, watchlist_id: str) -> JSONResponse:
        service = get_recommendation_service(fastapi_app)
        body = await _read_payload(request, GenerateRequest)
        items = await _resolve(service, body)
        try:
            state = await service.generate(watchlist_id, items)
        except RecommendationError as exc:
            raise HTTPException(status_code=exc.status, detail=exc.to_payload()) from exc

        payload = state.to_payload()
        if not state.recommendations:
            payload["message"] = EMPTY_RESULT_MESSAGE
        return JSONResponse(payload)

    @fastapi_app.put("/api/watchlists/{watchlist_id}/recommendations")
    async def restore(request: Request, watchlist_id: str) -> JSONResponse:
        service = get_recommendation_service(fastapi_app)
        body = await _read_payload(request, RestoreRequest)
        state = await service.restore(watchlist_id, body.recommendations)
        return JSONResponse(state.to_payload())

    @fastapi_app.get("/api/watchlists/{watchlist_id}/recommendations")
    async def current(watchlist_id: str) -> JSONResponse:
        service = get_recommendation_service(fastapi_app)
        state = await service.current(watchlist_id)
        if state is None:
            raise HTTPException(status_code=404, detail="No recommendations stored")
        return JSONResponse(state.to_payload())

    @fastapi_app.delete("/api/watchlists/{watchlist_id}/recommendations")
    async def discard(watchlist_id: str) -> dict[str, bool]:
        service = get_recommendation_service(fastapi_app)
        cancelled = service.cancel(watchlist_id)
        await service.clear(watchlist_id)
        return {"cancelled": cancelled}


app = create_app()
