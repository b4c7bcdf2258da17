"""Paged catalog browsing for one source."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import CapabilityError
from ..models import Manga
from ..queries import CatalogQuery, LatestQuery, route
from .provider import SourceRegistry
from .reconciler import IdentityReconciler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BrowsePage:
    items: list[Manga]
    has_next_page: bool
    page: int


class CatalogBrowser:
    def __init__(self, registry: SourceRegistry, reconciler: IdentityReconciler):
        self._registry = registry
        self._reconciler = reconciler

    async def fetch_page(
        self, source_id: int, query: CatalogQuery, page: int = 1
    ) -> BrowsePage:
        """Fetch ``page`` of ``query`` and map its entries to local identities.

        Latest listings are refused up front for sources that do not offer
        them.
        """

        provider = self._registry.get(source_id)
        if isinstance(query, LatestQuery) and not provider.supports_latest:
            raise CapabilityError("latest", source_id=source_id)
        result = await route(query).fetch(provider, page)
        items = await self._reconciler.reconcile(source_id, result.entries)
        logger.debug(
            "Fetched page %s of %s from source %s (%s items)",
            page,
            type(query).__name__,
            source_id,
            len(items),
        )
        return BrowsePage(items=items, has_next_page=result.has_next_page, page=page)
