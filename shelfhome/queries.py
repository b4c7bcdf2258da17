"""Catalog queries and their routing to remote fetch operations.

A query is a small tagged value: :class:`PopularQuery`, :class:`LatestQuery`,
:class:`HomeSectionQuery` or :class:`SearchQuery`. :func:`route` maps it to a
:class:`RemoteFetchOperation` which can then be awaited page by page against a
:class:`~shelfhome.services.provider.CatalogProvider`.

Queries also travel as plain strings (navigation links, the ``q`` parameter of
the HTTP API). The string form reserves three sentinels inside the
``shelfhome.catalog.query.`` namespace. Anything that is not one of them is a
search. Text typed by a user must always be wrapped in :class:`SearchQuery`
directly and never passed through :func:`parse_query`, so a sentinel can only
ever be produced by :meth:`CatalogQuery.to_query_string`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Union

from .models import EntriesPage
from .services.provider import CatalogProvider

QUERY_NAMESPACE = "shelfhome.catalog.query."
QUERY_POPULAR = f"{QUERY_NAMESPACE}POPULAR"
QUERY_LATEST = f"{QUERY_NAMESPACE}LATEST"
QUERY_HOME_SECTION_PREFIX = f"{QUERY_NAMESPACE}HOME_SECTION:"

Filters = tuple[tuple[str, str], ...]
FetchKind = Literal["popular", "latest", "home_section", "search"]


def normalize_filters(filters: Mapping[str, str] | Filters | None) -> Filters:
    """Return filters as a sorted tuple of ``(name, value)`` pairs."""

    if not filters:
        return ()
    pairs = filters.items() if isinstance(filters, Mapping) else filters
    return tuple(sorted((str(name), str(value)) for name, value in pairs))


@dataclass(frozen=True, slots=True)
class PopularQuery:
    def to_query_string(self) -> str:
        return QUERY_POPULAR


@dataclass(frozen=True, slots=True)
class LatestQuery:
    def to_query_string(self) -> str:
        return QUERY_LATEST


@dataclass(frozen=True, slots=True)
class HomeSectionQuery:
    section_id: str

    def to_query_string(self) -> str:
        return f"{QUERY_HOME_SECTION_PREFIX}{self.section_id}"


@dataclass(frozen=True, slots=True)
class SearchQuery:
    text: str
    filters: Filters = field(default=())

    def to_query_string(self) -> str:
        return self.text


CatalogQuery = Union[PopularQuery, LatestQuery, HomeSectionQuery, SearchQuery]


@dataclass(frozen=True, slots=True)
class RemoteFetchOperation:
    """A provider call selected by :func:`route`, parameterised by page."""

    kind: FetchKind
    section_id: str | None = None
    text: str | None = None
    filters: Filters = ()

    async def fetch(self, provider: CatalogProvider, page: int = 1) -> EntriesPage:
        if page < 1:
            raise ValueError("Pages are numbered from 1")
        if self.kind == "popular":
            return await provider.get_popular(page)
        if self.kind == "latest":
            return await provider.get_latest(page)
        if self.kind == "home_section":
            return await provider.get_home_section_entries(str(self.section_id), page)
        return await provider.search(self.text or "", self.filters, page)


def route(query: CatalogQuery) -> RemoteFetchOperation:
    """Map a catalog query to the provider operation that serves it.

    ``LatestQuery`` is routed even for sources without latest support; callers
    check ``supports_latest`` first and the provider fails otherwise.
    """

    if isinstance(query, PopularQuery):
        return RemoteFetchOperation(kind="popular")
    if isinstance(query, LatestQuery):
        return RemoteFetchOperation(kind="latest")
    if isinstance(query, HomeSectionQuery):
        return RemoteFetchOperation(kind="home_section", section_id=query.section_id)
    return RemoteFetchOperation(
        kind="search", text=query.text, filters=normalize_filters(query.filters)
    )


def parse_query(
    value: str | None, filters: Mapping[str, str] | Filters | None = None
) -> CatalogQuery:
    """Decode the string form produced by ``to_query_string``."""

    text = value or ""
    if text == QUERY_POPULAR:
        return PopularQuery()
    if text == QUERY_LATEST:
        return LatestQuery()
    if text.startswith(QUERY_HOME_SECTION_PREFIX):
        section_id = text[len(QUERY_HOME_SECTION_PREFIX):]
        if section_id:
            return HomeSectionQuery(section_id)
    return SearchQuery(text, normalize_filters(filters))
