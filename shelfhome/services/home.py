"""Source home page: sections metadata plus lazily loaded section items."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from ..errors import StorageError
from ..models import EntriesPage, HomeSection, HomeTab, Manga
from ..queries import HomeSectionQuery, route
from .concurrency import BoundedExecutor, TaskResult
from .provider import CatalogProvider
from .reconciler import IdentityReconciler

logger = logging.getLogger(__name__)


class SectionLoadState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED_EMPTY = "loaded_empty"
    LOADED = "loaded"


@dataclass(frozen=True)
class HomeState:
    """Immutable snapshot of a source home page.

    ``sections`` is ``None`` until the first load finishes. ``generation``
    increases with every full (re)load; lazy loads started under an older
    generation are discarded when they complete.
    """

    sections: tuple[HomeSection, ...] | None = None
    tabs: tuple[HomeTab, ...] = ()
    selected_tab_id: str | None = None
    is_loading: bool = False
    loaded_sections: frozenset[str] = field(default_factory=frozenset)
    loading_sections: frozenset[str] = field(default_factory=frozenset)
    hidden_sections: frozenset[str] = field(default_factory=frozenset)
    generation: int = 0

    def find_section(self, section_id: str) -> HomeSection | None:
        for section in self.sections or ():
            if section.section_id == section_id:
                return section
        return None

    def section_state(self, section_id: str) -> SectionLoadState | None:
        if section_id in self.loading_sections:
            return SectionLoadState.LOADING
        if section_id in self.hidden_sections:
            return SectionLoadState.LOADED_EMPTY
        section = self.find_section(section_id)
        if section is None:
            return None
        if section_id in self.loaded_sections:
            if section.items or section.has_more:
                return SectionLoadState.LOADED
            return SectionLoadState.LOADED_EMPTY
        if section.items:
            return SectionLoadState.LOADED
        return SectionLoadState.UNLOADED

    def to_payload(self) -> dict[str, Any]:
        sections = self.sections or ()
        return {
            "isLoading": self.is_loading,
            "generation": self.generation,
            "selectedTab": self.selected_tab_id,
            "tabs": [tab.model_dump() for tab in self.tabs],
            "sections": [
                {
                    "sectionId": section.section_id,
                    "title": section.title,
                    "hasMore": section.has_more,
                    "state": (
                        self.section_state(section.section_id).value
                        if section.section_id is not None
                        else SectionLoadState.LOADED.value
                    ),
                    "items": [item.model_dump(mode="json") for item in section.items],
                }
                for section in sections
            ],
            "loadedSections": sorted(self.loaded_sections),
        }


class SourceHomeModel:
    """State machine driving one source's home page.

    All state changes go through :meth:`_update`, which swaps the whole
    :class:`HomeState` without awaiting, so two lazy loads finishing together
    cannot overwrite each other's results.
    """

    def __init__(
        self,
        provider: CatalogProvider,
        reconciler: IdentityReconciler,
        executor: BoundedExecutor,
    ):
        self._provider = provider
        self._reconciler = reconciler
        self._executor = executor
        self._state = HomeState()

    @property
    def provider(self) -> CatalogProvider:
        return self._provider

    @property
    def state(self) -> HomeState:
        return self._state

    @property
    def visible_sections(self) -> tuple[HomeSection, ...]:
        return self._state.sections or ()

    def section_state(self, section_id: str) -> SectionLoadState | None:
        return self._state.section_state(section_id)

    def _update(self, transform: Callable[[HomeState], HomeState]) -> HomeState:
        self._state = transform(self._state)
        return self._state

    async def load_home_page(self) -> HomeState:
        """Fetch tabs and sections, resetting every per-section load."""

        started = self._update(
            lambda state: replace(
                state,
                is_loading=True,
                generation=state.generation + 1,
                loaded_sections=frozenset(),
                loading_sections=frozenset(),
                hidden_sections=frozenset(),
            )
        )
        generation = started.generation
        source_id = self._provider.source_id

        def _current(transform: Callable[[HomeState], HomeState]) -> Callable[[HomeState], HomeState]:
            return lambda state: transform(state) if state.generation == generation else state

        try:
            home = await self._provider.get_home_page(started.selected_tab_id)
            reconciled = await self._reconciler.reconcile_many(
                [(source_id, section.entries) for section in home.sections]
            )
        except StorageError:
            self._update(_current(lambda state: replace(state, is_loading=False)))
            raise
        except Exception as exc:
            logger.warning("Failed to load home page of source %s: %s", source_id, exc)
            return self._update(
                _current(lambda state: replace(state, sections=(), is_loading=False))
            )

        sections = tuple(
            HomeSection(
                section_id=remote.section_id,
                title=remote.title,
                items=items,
                has_more=remote.has_more,
            )
            for remote, items in zip(home.sections, reconciled)
        )
        return self._update(
            _current(
                lambda state: replace(
                    state,
                    sections=sections,
                    tabs=tuple(home.tabs),
                    is_loading=False,
                    loaded_sections=frozenset(),
                    loading_sections=frozenset(),
                    hidden_sections=frozenset(),
                )
            )
        )

    async def refresh(self) -> HomeState:
        return await self.load_home_page()

    async def select_tab(self, tab_id: str | None) -> HomeState:
        self._update(lambda state: replace(state, selected_tab_id=tab_id))
        return await self.load_home_page()

    async def load_section_items(self, section_id: str) -> bool:
        """Load page 1 of a lazy section once per home page generation.

        Returns ``True`` when this call issued the fetch. Calls made while the
        home page itself is (re)loading are no-ops, as are repeated calls for a
        section that is in flight, already loaded or already carries items.
        """

        state = self._state
        if state.is_loading:
            return False
        if section_id in state.loaded_sections or section_id in state.loading_sections:
            return False
        section = state.find_section(section_id)
        if section is None or section.items:
            return False
        generation = state.generation
        self._update(
            lambda current: replace(
                current, loading_sections=current.loading_sections | {section_id}
            )
        )

        try:
            page = await route(HomeSectionQuery(section_id)).fetch(self._provider, 1)
            items = await self._reconciler.reconcile(
                self._provider.source_id, page.entries
            )
        except StorageError:
            self._update(lambda current: self._release(current, generation, section_id))
            raise
        except Exception as exc:
            logger.warning("Failed to load section %s: %s", section_id, exc)
            self._update(
                lambda current: self._mark_loaded(current, generation, section_id)
            )
            return True

        self._update(
            lambda current: self._apply_section(
                current, generation, section_id, items, page
            )
        )
        return True

    async def load_all_sections(self) -> list[TaskResult[bool]]:
        """Prefetch every unloaded lazy section, bounded by the executor."""

        pending = [
            section.section_id
            for section in self.visible_sections
            if section.section_id is not None
            and self.section_state(section.section_id) is SectionLoadState.UNLOADED
        ]
        results = await self._executor.run(
            [
                lambda section_id=section_id: self.load_section_items(section_id)
                for section_id in pending
            ]
        )
        for result in results:
            if isinstance(result.error, StorageError):
                raise result.error
        return results

    @staticmethod
    def _release(state: HomeState, generation: int, section_id: str) -> HomeState:
        if state.generation != generation:
            return state
        return replace(state, loading_sections=state.loading_sections - {section_id})

    @staticmethod
    def _mark_loaded(state: HomeState, generation: int, section_id: str) -> HomeState:
        if state.generation != generation:
            return state
        return replace(
            state,
            loaded_sections=state.loaded_sections | {section_id},
            loading_sections=state.loading_sections - {section_id},
        )

    @staticmethod
    def _apply_section(
        state: HomeState,
        generation: int,
        section_id: str,
        items: list[Manga],
        page: EntriesPage,
    ) -> HomeState:
        if state.generation != generation:
            logger.debug("Discarding stale load of section %s", section_id)
            return state
        hidden = state.hidden_sections
        sections: list[HomeSection] = []
        for section in state.sections or ():
            if section.section_id != section_id:
                sections.append(section)
                continue
            if not items and not page.has_next_page:
                hidden = hidden | {section_id}
                continue
            sections.append(
                section.model_copy(
                    update={"items": items, "has_more": page.has_next_page}
                )
            )
        return replace(
            state,
            sections=tuple(sections),
            hidden_sections=hidden,
            loaded_sections=state.loaded_sections | {section_id},
            loading_sections=state.loading_sections - {section_id},
        )
