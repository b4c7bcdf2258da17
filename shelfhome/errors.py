"""Error taxonomy shared by the catalog, storage and library layers."""

from __future__ import annotations


class ShelfhomeError(Exception):
    """Base class for errors raised by the service.

    ``http_status_code`` tells the HTTP layer how to render the error.
    """

    http_status_code: int = 400

    def __init__(self, message: str = "Unexpected catalog error"):
        self.message = message
        super().__init__(message)


class ProviderError(ShelfhomeError):
    """Transport or parse failure while talking to a remote catalog source."""

    http_status_code = 502

    def __init__(self, message: str, *, source_id: int | None = None):
        self.source_id = source_id
        super().__init__(message)


class StorageError(ShelfhomeError):
    """Persistence failure. Always fatal: callers must not continue past it."""

    http_status_code = 500


class CapabilityError(ShelfhomeError):
    """The selected source does not support the requested operation."""

    http_status_code = 400

    def __init__(self, operation: str, *, source_id: int | None = None):
        self.operation = operation
        self.source_id = source_id
        message = f"Source does not support '{operation}'"
        if source_id is not None:
            message = f"Source {source_id} does not support '{operation}'"
        super().__init__(message)


class MangaNotFoundError(ShelfhomeError):
    """Raised when a local manga id does not resolve to a stored identity."""

    http_status_code = 404

    def __init__(self, manga_id: int):
        self.manga_id = manga_id
        super().__init__(f"Manga with id '{manga_id}' not found")
