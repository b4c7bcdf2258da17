"""Entry point for the FastAPI-powered catalog browsing service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .config import settings
from .database import Database
from .errors import ShelfhomeError, StorageError
from .queries import (
    CatalogQuery,
    HomeSectionQuery,
    LatestQuery,
    PopularQuery,
    SearchQuery,
    normalize_filters,
    parse_query,
)
from .services.browse import CatalogBrowser
from .services.concurrency import BoundedExecutor
from .services.covers import CoverCache
from .services.downloads import DownloadQueue
from .services.home import SourceHomeModel
from .services.library import LibraryWorkflow
from .services.provider import HttpCatalogProvider, SourceRegistry
from .services.reconciler import IdentityReconciler
from .services.repository import LibraryRepository
from .services.trackers import TrackerBinder

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

FILTER_PREFIX = "filter."

app: FastAPI


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1)
    order: int | None = None


class CategoryAssignment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category_ids: list[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("category_ids", "categoryIds"),
    )


class MigrationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_id: int = Field(validation_alias=AliasChoices("target_id", "targetId"))


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    registry = SourceRegistry()
    if settings.source_api_url is not None:
        source_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.source_api_url),
                timeout=httpx.Timeout(settings.source_timeout_seconds, connect=10.0),
            )
        )
        registry.register(HttpCatalogProvider(settings, source_client))
    else:
        logger.warning("SOURCE_API_URL is not set; no catalog source is installed")

    database = Database(settings.database_url)
    await database.create_all()

    repository = LibraryRepository(database.session_factory)
    executor = BoundedExecutor(settings.section_concurrency)
    reconciler = IdentityReconciler(repository, executor)
    downloads = DownloadQueue()
    workflow = LibraryWorkflow(
        repository,
        registry,
        downloads,
        CoverCache(settings.cover_cache_dir),
        TrackerBinder(),
        settings,
    )

    fastapi_app.state.database = database
    fastapi_app.state.repository = repository
    fastapi_app.state.registry = registry
    fastapi_app.state.browser = CatalogBrowser(registry, reconciler)
    fastapi_app.state.workflow = workflow
    fastapi_app.state.downloads = downloads
    fastapi_app.state.home_models = {
        provider.source_id: SourceHomeModel(provider, reconciler, executor)
        for provider in registry
        if provider.supports_home_page
    }

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Browse remote manga catalogs and manage the local library",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def _require_state(fastapi_app: FastAPI, name: str) -> Any:
    value = getattr(fastapi_app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialised")
    return value


def get_home_model(fastapi_app: FastAPI, source_id: int) -> SourceHomeModel:
    models: dict[int, SourceHomeModel] = _require_state(fastapi_app, "home_models")
    model = models.get(source_id)
    if model is None:
        raise HTTPException(
            status_code=404, detail=f"Source {source_id} has no home page"
        )
    return model


def build_catalog_query(
    mode: str | None,
    text: str | None,
    section_id: str | None,
    filters: dict[str, str],
) -> CatalogQuery:
    """Translate catalog request parameters into a query.

    Without ``mode`` the ``q`` parameter is decoded as a query string, so
    links produced by ``to_query_string`` round-trip.
    """

    if mode is None:
        return parse_query(text, filters)
    if mode == "popular":
        return PopularQuery()
    if mode == "latest":
        return LatestQuery()
    if mode == "section":
        if not section_id:
            raise HTTPException(status_code=400, detail="section is required")
        return HomeSectionQuery(section_id)
    if mode == "search":
        return SearchQuery(text or "", normalize_filters(filters))
    raise HTTPException(status_code=400, detail=f"Unsupported catalog mode '{mode}'")


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(ShelfhomeError)
    async def _shelfhome_error_handler(
        request: Request, exc: ShelfhomeError
    ) -> JSONResponse:
        if isinstance(exc, StorageError):
            logger.error("Storage failure serving %s: %s", request.url.path, exc)
            detail = "The library database is unavailable. Try again later."
        else:
            detail = exc.message
        return JSONResponse(
            status_code=exc.http_status_code, content={"detail": detail}
        )

    def _workflow() -> LibraryWorkflow:
        return _require_state(fastapi_app, "workflow")

    def _repository() -> LibraryRepository:
        return _require_state(fastapi_app, "repository")

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/sources/{source_id}/home")
    async def source_home(source_id: int) -> dict[str, Any]:
        model = get_home_model(fastapi_app, source_id)
        if model.state.sections is None and not model.state.is_loading:
            await model.load_home_page()
        return model.state.to_payload()

    @fastapi_app.post("/sources/{source_id}/home/refresh")
    async def refresh_home(source_id: int) -> dict[str, Any]:
        state = await get_home_model(fastapi_app, source_id).refresh()
        return state.to_payload()

    @fastapi_app.post("/sources/{source_id}/home/tabs/{tab_id}")
    async def select_home_tab(source_id: int, tab_id: str) -> dict[str, Any]:
        state = await get_home_model(fastapi_app, source_id).select_tab(tab_id)
        return state.to_payload()

    @fastapi_app.post("/sources/{source_id}/home/sections/{section_id}/load")
    async def load_home_section(source_id: int, section_id: str) -> dict[str, Any]:
        model = get_home_model(fastapi_app, source_id)
        started = await model.load_section_items(section_id)
        payload = model.state.to_payload()
        payload["started"] = started
        return payload

    @fastapi_app.post("/sources/{source_id}/home/prefetch")
    async def prefetch_home_sections(source_id: int) -> dict[str, Any]:
        model = get_home_model(fastapi_app, source_id)
        results = await model.load_all_sections()
        payload = model.state.to_payload()
        payload["started"] = sum(1 for result in results if result.ok and result.value)
        return payload

    @fastapi_app.get("/sources/{source_id}/catalog")
    async def browse_catalog(
        request: Request,
        source_id: int,
        mode: str | None = None,
        q: str | None = None,
        section: str | None = None,
        page: int = 1,
    ) -> dict[str, Any]:
        if page < 1:
            raise HTTPException(status_code=400, detail="page must be at least 1")
        filters = {
            key[len(FILTER_PREFIX):]: value
            for key, value in request.query_params.items()
            if key.startswith(FILTER_PREFIX) and len(key) > len(FILTER_PREFIX)
        }
        query = build_catalog_query(mode, q, section, filters)
        browser: CatalogBrowser = _require_state(fastapi_app, "browser")
        result = await browser.fetch_page(source_id, query, page)
        return {
            "query": query.to_query_string(),
            "page": result.page,
            "hasNextPage": result.has_next_page,
            "items": [item.model_dump(mode="json") for item in result.items],
        }

    @fastapi_app.get("/categories")
    async def list_categories() -> list[dict[str, Any]]:
        categories = await _workflow().get_categories()
        return [category.model_dump() for category in categories]

    @fastapi_app.post("/categories", status_code=201)
    async def create_category(payload: CategoryCreate) -> dict[str, Any]:
        try:
            category = await _repository().create_category(
                payload.name, order=payload.order
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return category.model_dump()

    @fastapi_app.post("/library/{manga_id}/add")
    async def add_to_library(manga_id: int) -> dict[str, Any]:
        manga = await _repository().get_manga(manga_id)
        dialog = await _workflow().request_add(manga)
        current = await _repository().get_manga(manga_id)
        return {
            "manga": current.model_dump(mode="json"),
            "dialog": dialog.to_payload() if dialog is not None else None,
        }

    @fastapi_app.post("/library/{manga_id}/categories")
    async def assign_categories(
        manga_id: int, payload: CategoryAssignment
    ) -> dict[str, Any]:
        manga = await _repository().get_manga(manga_id)
        updated = await _workflow().confirm_categories(manga, payload.category_ids)
        category_ids = await _repository().get_manga_category_ids(manga_id)
        return {"manga": updated.model_dump(mode="json"), "categoryIds": category_ids}

    @fastapi_app.post("/library/{manga_id}/favorite/toggle")
    async def toggle_favorite(manga_id: int) -> dict[str, Any]:
        manga = await _repository().get_manga(manga_id)
        updated = await _workflow().change_manga_favorite(manga)
        return {"manga": updated.model_dump(mode="json")}

    @fastapi_app.delete("/library/{manga_id}/favorite")
    async def remove_from_library(manga_id: int) -> dict[str, Any]:
        manga = await _repository().get_manga(manga_id)
        updated = await _workflow().remove_favorite(manga)
        return {"manga": updated.model_dump(mode="json")}

    @fastapi_app.post("/library/{manga_id}/download")
    async def download_and_favorite(manga_id: int) -> dict[str, Any]:
        manga = await _repository().get_manga(manga_id)
        chapters = await _workflow().download_and_favorite(manga)
        return {
            "queued": len(chapters),
            "chapters": [chapter.model_dump(mode="json") for chapter in chapters],
        }

    @fastapi_app.post("/library/{manga_id}/migrate")
    async def migrate_manga(manga_id: int, payload: MigrationRequest) -> dict[str, Any]:
        current = await _repository().get_manga(manga_id)
        target = await _repository().get_manga(payload.target_id)
        migrated = await _workflow().migrate(current, target)
        return {"manga": migrated.model_dump(mode="json")}


app = create_app()
