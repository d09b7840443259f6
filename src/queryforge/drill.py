"""Drill-down interaction engine.

a small state machine on top of queryforge.compiler.drill: a click opens a
menu of drill options, picking one rewrites the query and pushes a
breadcrumb. the very first drill snapshots the untouched query, chart config
and granularity so going back to the root is exact, no matter how many
drills happened in between.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from queryforge.compiler.drill import build_drill_options, build_drill_query, is_drill_enabled
from queryforge.models.drill import DataPointClick, DrillOption, DrillPathEntry
from queryforge.models.meta import CubeMeta
from queryforge.models.query import CompiledQuery
from queryforge.store import OverrideActiveQuery, QueryStateStore

logger = logging.getLogger(__name__)

QueryChangeHandler = Callable[[CompiledQuery], None]


class DrillState(str, Enum):
    IDLE = "idle"
    MENU_OPEN = "menu_open"


class DrillInteraction:
    """Click-driven drill navigation over a query.

    the engine keeps its own copy of the current query and calls
    on_query_change whenever a drill, a back-navigation or a root restore
    swaps it out. path entries remember the chart config that was in effect
    right after each drill so navigating back restores both together.
    """

    def __init__(
        self,
        query: CompiledQuery,
        meta: CubeMeta | None,
        on_query_change: QueryChangeHandler | None = None,
        chart_config: dict[str, Any] | None = None,
        enabled: bool = True,
    ) -> None:
        self.query = query
        self.meta = meta
        self.chart_config = chart_config  # the caller's own config, never rewritten
        self.enabled = enabled
        self._on_query_change = on_query_change

        self.state = DrillState.IDLE
        self.menu_options: list[DrillOption] = []
        self.menu_position: tuple[float, float] | None = None
        self._click: DataPointClick | None = None

        self._path: list[DrillPathEntry] = []
        self.current_chart_config = chart_config

        # one-shot snapshots, set on the first drill and cleared on root restore
        self._original_query: CompiledQuery | None = None
        self._original_chart_config: dict[str, Any] | None = None
        self._original_granularity: str | None = None

    @classmethod
    def for_store(
        cls, store: QueryStateStore, meta: CubeMeta | None, **kwargs: Any
    ) -> "DrillInteraction":
        """Engine wired to a store: drilled queries become the active query override."""

        def push(query: CompiledQuery) -> None:
            store.dispatch(OverrideActiveQuery(query))

        return cls(
            store.build_active_query(),
            meta,
            on_query_change=push,
            chart_config=store.state.chart_config,
            **kwargs,
        )

    @property
    def path(self) -> tuple[DrillPathEntry, ...]:
        return tuple(self._path)

    @property
    def menu_open(self) -> bool:
        return self.state == DrillState.MENU_OPEN

    @property
    def drill_enabled(self) -> bool:
        return self.enabled and is_drill_enabled(self.query, self.meta)

    @property
    def is_drilled(self) -> bool:
        return bool(self._path)

    def set_query(self, query: CompiledQuery) -> None:
        """Tell the engine the caller changed the query outside of drilling."""
        self.query = query

    # --- transitions ---

    def handle_data_point_click(self, event: DataPointClick) -> bool:
        """Open the drill menu for a click. Returns whether it opened."""
        if not self.enabled or self.meta is None:
            return False

        options = build_drill_options(event, self.query, self.meta)
        if not options:
            return False

        self._click = event
        self.menu_options = options
        self.menu_position = event.position
        self.state = DrillState.MENU_OPEN
        return True

    def close_menu(self) -> None:
        self.state = DrillState.IDLE
        self.menu_options = []
        self.menu_position = None
        self._click = None

    def select_option(self, option: DrillOption) -> None:
        """Apply a drill option picked from the open menu.

        first match wins:
        1. granularity already on the path -> truncate back to it
        2. granularity we started from -> restore the root
        3. hierarchy dimension already on the path -> truncate back to it
        4. otherwise build a new drill query and push it
        """
        if self._click is None or self.meta is None:
            return

        try:
            if option.target_granularity and self._path:
                if self._truncate_to_match(lambda e: e.granularity == option.target_granularity):
                    return
                original = self._original_granularity
                if original and option.target_granularity == original:
                    self._restore_root()
                    return

            if option.target_dimension and self._path:
                if self._truncate_to_match(lambda e: e.dimension == option.target_dimension):
                    return

            self._push_drill(option, self._click)
        except Exception:
            # nothing has been touched yet when build_drill_query fails
            logger.exception("Error building drill query for option %s", option.id)
        finally:
            self.close_menu()

    def navigate_back(self) -> None:
        if not self._path:
            return
        if len(self._path) == 1:
            self._restore_root()
            return
        self._path.pop()
        self._apply_entry(self._path[-1])

    def navigate_to_level(self, index: int) -> None:
        """Jump to breadcrumb index, 0 (or less) being the root."""
        if index <= 0:
            self._restore_root()
        elif index < len(self._path):
            del self._path[index:]
            self._apply_entry(self._path[-1])

    # --- internals ---

    def _truncate_to_match(self, matches: Callable[[DrillPathEntry], bool]) -> bool:
        """Cut the path back to the first matching entry.

        returns True if an entry matched, even when it was already the last
        one and nothing needed to change.
        """
        for index, entry in enumerate(self._path):
            if matches(entry):
                if index + 1 < len(self._path):
                    del self._path[index + 1 :]
                    self._apply_entry(entry)
                return True
        return False

    def _push_drill(self, option: DrillOption, click: DataPointClick) -> None:
        result = build_drill_query(option, click, self.query, self.meta)

        if not self._path:
            self._original_query = self.query
            self._original_chart_config = self.chart_config
            if option.target_granularity and self.query.time_dimensions:
                self._original_granularity = self.query.time_dimensions[0].granularity

        chart_config = result.chart_config
        if chart_config is None:
            chart_config = self.current_chart_config
        entry = result.path_entry.model_copy(update={"chart_config": chart_config})
        self._path.append(entry)
        self.current_chart_config = chart_config
        self._set_query(result.query)

    def _apply_entry(self, entry: DrillPathEntry) -> None:
        self.current_chart_config = entry.chart_config
        self._set_query(entry.query)

    def _restore_root(self) -> None:
        restored = self._original_query or self.query
        self._path = []
        self.current_chart_config = self._original_chart_config
        self._original_query = None
        self._original_chart_config = None
        self._original_granularity = None
        self._set_query(restored)

    def _set_query(self, query: CompiledQuery) -> None:
        self.query = query
        if self._on_query_change is not None:
            self._on_query_change(query)
