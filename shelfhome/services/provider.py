"""Remote catalog sources: the provider protocol and its HTTP implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Protocol, Sequence

import httpx
from pydantic import BaseModel, ValidationError

from ..config import Settings
from ..errors import CapabilityError, ProviderError
from ..models import (
    ChaptersPage,
    EntriesPage,
    Manga,
    RemoteChapter,
    RemoteHomePage,
)

logger = logging.getLogger(__name__)


class CatalogProvider(Protocol):
    """Interface every remote catalog source exposes to the core."""

    source_id: int
    name: str

    @property
    def supports_latest(self) -> bool: ...

    @property
    def supports_home_page(self) -> bool: ...

    async def get_home_page(self, tab_id: str | None = None) -> RemoteHomePage: ...

    async def get_home_section_entries(
        self, section_id: str, page: int
    ) -> EntriesPage: ...

    async def get_popular(self, page: int) -> EntriesPage: ...

    async def get_latest(self, page: int) -> EntriesPage: ...

    async def search(
        self, text: str, filters: Sequence[tuple[str, str]], page: int
    ) -> EntriesPage: ...

    async def get_chapter_list(self, manga: Manga) -> list[RemoteChapter]: ...


class HttpCatalogProvider:
    """Catalog source speaking a small JSON-over-HTTP protocol."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        source_id: int | None = None,
        name: str | None = None,
        supports_latest: bool | None = None,
        supports_home_page: bool | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._max_retries = settings.source_max_retries
        self._page_limit = settings.chapter_page_limit
        self.source_id = settings.source_id if source_id is None else source_id
        self.name = name or settings.source_name
        self._supports_latest = (
            settings.source_supports_latest
            if supports_latest is None
            else supports_latest
        )
        self._supports_home_page = (
            settings.source_supports_home
            if supports_home_page is None
            else supports_home_page
        )

    @property
    def supports_latest(self) -> bool:
        return self._supports_latest

    @property
    def supports_home_page(self) -> bool:
        return self._supports_home_page

    async def get_home_page(self, tab_id: str | None = None) -> RemoteHomePage:
        if not self._supports_home_page:
            raise CapabilityError("home page", source_id=self.source_id)
        params = {"tab": tab_id} if tab_id else None
        data = await self._get_json("/home", params=params)
        return self._parse(RemoteHomePage, data, "home page")

    async def get_home_section_entries(
        self, section_id: str, page: int
    ) -> EntriesPage:
        data = await self._get_json(
            f"/home/sections/{section_id}", params={"page": page}
        )
        return self._parse(EntriesPage, data, f"home section {section_id}")

    async def get_popular(self, page: int) -> EntriesPage:
        data = await self._get_json("/popular", params={"page": page})
        return self._parse(EntriesPage, data, "popular")

    async def get_latest(self, page: int) -> EntriesPage:
        if not self._supports_latest:
            raise CapabilityError("latest", source_id=self.source_id)
        data = await self._get_json("/latest", params={"page": page})
        return self._parse(EntriesPage, data, "latest")

    async def search(
        self, text: str, filters: Sequence[tuple[str, str]], page: int
    ) -> EntriesPage:
        params: list[tuple[str, str | int]] = [("q", text), ("page", page)]
        params.extend((name, value) for name, value in filters)
        data = await self._get_json("/search", params=params)
        return self._parse(EntriesPage, data, f"search {text!r}")

    async def get_chapter_list(self, manga: Manga) -> list[RemoteChapter]:
        """Walk every chapter page of ``manga``."""

        chapters: list[RemoteChapter] = []
        page = 1
        while True:
            if page > self._page_limit:
                raise ProviderError(
                    f"Exceeded the chapter page limit ({self._page_limit}) "
                    f"for {manga.display_title()}",
                    source_id=self.source_id,
                )
            data = await self._get_json(
                "/chapters", params={"url": manga.url, "page": page}
            )
            batch = self._parse(ChaptersPage, data, f"chapters of {manga.url}")
            chapters.extend(batch.chapters)
            if not batch.has_next_page:
                return chapters
            page += 1

    async def _get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | Iterable[tuple[str, Any]] | None = None,
    ) -> Any:
        attempt = 0
        while True:
            try:
                response = await self._client.get(path, params=params)
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff(attempt)
                    logger.info(
                        "Transient error talking to %s (%s). Retrying %s in %.1fs",
                        self.name,
                        exc.__class__.__name__,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise ProviderError(
                    f"Request to {path} failed: {exc}", source_id=self.source_id
                ) from exc

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff(attempt)
                    logger.info(
                        "%s answered %s for %s. Retrying in %.1fs",
                        self.name,
                        response.status_code,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
            if response.status_code >= 400:
                raise ProviderError(
                    f"{self.name} answered {response.status_code} for {path}",
                    source_id=self.source_id,
                )
            break

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"Unexpected non-JSON response for {path}", source_id=self.source_id
            ) from exc

    def _parse(self, model: type[BaseModel], data: Any, what: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ProviderError(
                f"Malformed {what} payload from {self.name}", source_id=self.source_id
            ) from exc

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(2 ** (attempt - 1), 5) * 0.1 + (0.05 * attempt)


class SourceRegistry:
    """Explicit lookup of the providers known to the service."""

    def __init__(self, providers: Iterable[CatalogProvider] = ()):
        self._providers: dict[int, CatalogProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: CatalogProvider) -> None:
        self._providers[provider.source_id] = provider

    def get(self, source_id: int) -> CatalogProvider:
        """Return the provider for ``source_id``.

        Unknown sources behave like a stub whose calls all fail.
        """

        provider = self._providers.get(source_id)
        if provider is None:
            raise ProviderError(
                f"Source {source_id} is not installed", source_id=source_id
            )
        return provider

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._providers

    def __iter__(self):
        return iter(self._providers.values())
