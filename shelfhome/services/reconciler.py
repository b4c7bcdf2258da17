"""Map remote catalog entries onto stable local identities."""

from __future__ import annotations

import logging
from typing import Sequence

from ..errors import StorageError
from ..models import Manga, RemoteEntry
from .concurrency import BoundedExecutor
from .repository import LibraryRepository

logger = logging.getLogger(__name__)


class IdentityReconciler:
    """Deduplicate remote entries against the library by ``(source_id, url)``."""

    def __init__(self, repository: LibraryRepository, executor: BoundedExecutor):
        self._repository = repository
        self._executor = executor

    async def reconcile(
        self, source_id: int, entries: Sequence[RemoteEntry]
    ) -> list[Manga]:
        """Return one identity per entry, creating the ones never seen before.

        The batch commits as a whole; a :class:`StorageError` means nothing
        from it should be trusted and the caller retries the full batch.
        """

        if not entries:
            return []
        identities = await self._repository.find_or_create_identities(
            source_id, entries
        )
        logger.debug(
            "Reconciled %s entries from source %s", len(identities), source_id
        )
        return identities

    async def reconcile_many(
        self, batches: Sequence[tuple[int, Sequence[RemoteEntry]]]
    ) -> list[list[Manga]]:
        """Reconcile several batches concurrently, bounded by the executor."""

        results = await self._executor.run(
            [
                lambda source_id=source_id, entries=entries: self.reconcile(
                    source_id, entries
                )
                for source_id, entries in batches
            ]
        )
        for result in results:
            if isinstance(result.error, StorageError):
                raise result.error
        return [result.unwrap() for result in results]
