"""Execution coordinator - turns the store's current state into results.

plan() is pure: it looks at an AnalysisState and decides what would run
(single query, multi-query, one of the mode queries, or nothing yet).
execute() runs that plan and keeps one ExecutionState the renderer reads.

every run takes a request token. a response that comes back after a newer
run started is dropped, so a slow old query can't overwrite fresh results.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any

from queryforge.compiler.modes import (
    compile_flow,
    compile_funnel,
    compile_retention,
    validate_flow,
    validate_funnel,
    validate_retention,
    with_default_date_range,
)
from queryforge.compiler.multi_query import (
    build_multi_query_config,
    merge_query_results,
    validate_multi_query_config,
)
from queryforge.compiler.query_builder import build
from queryforge.config import Settings
from queryforge.errors import BatchQueryError, BatchResultMissingError, QueryForgeError
from queryforge.executor.batch import BatchCoordinator
from queryforge.executor.http_client import QueryClient, QueryLike, query_payload
from queryforge.executor.tasks import Debouncer, ScheduledTask
from queryforge.meta_cache import MetadataCache
from queryforge.models.meta import CubeMeta
from queryforge.models.query import CompiledQuery, MergeStrategy, ResultSet, ValidationResult
from queryforge.models.state import AnalysisState, AnalysisType
from queryforge.store import QueryStateStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.3


class ExecutionMode(str, Enum):
    IDLE = "idle"  # nothing runnable yet
    SINGLE = "single"
    MULTI = "multi"
    FUNNEL = "funnel"
    FLOW = "flow"
    RETENTION = "retention"


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    REFRESHING = "refreshing"  # loading again while previous results stay visible
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ExecutionPlan:
    """What a run would send, decided from one state snapshot."""

    mode: ExecutionMode
    queries: list[QueryLike] = field(default_factory=list)
    validation: ValidationResult | None = None
    merge_strategy: MergeStrategy = MergeStrategy.CONCAT
    merge_keys: list[str] | None = None
    labels: list[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.mode != ExecutionMode.IDLE and bool(self.queries)

    def payloads(self) -> list[dict[str, Any]]:
        return [query_payload(q) for q in self.queries]


@dataclass
class ExecutionState:
    status: ExecutionStatus = ExecutionStatus.IDLE
    results: list[dict[str, Any]] = field(default_factory=list)  # merged rows
    per_query_results: list[ResultSet | None] = field(default_factory=list)
    errors: list[Exception | None] = field(default_factory=list)
    error: Exception | None = None  # first error, also set on partial success
    plan: ExecutionPlan | None = None
    execution_time_ms: float | None = None

    @property
    def is_loading(self) -> bool:
        return self.status in (ExecutionStatus.LOADING, ExecutionStatus.REFRESHING)

    @property
    def has_results(self) -> bool:
        return any(r is not None for r in self.per_query_results)


def plan_execution(
    state: AnalysisState, meta: CubeMeta | None = None, today: date | None = None
) -> ExecutionPlan:
    """Decide what the given state would run."""
    analysis_type = state.analysis_type

    if analysis_type == AnalysisType.FUNNEL:
        validation = validate_funnel(state.funnel, meta)
        funnel = compile_funnel(state.funnel, meta) if validation.is_valid else None
        return _mode_plan(ExecutionMode.FUNNEL, funnel, validation)

    if analysis_type == AnalysisType.FLOW:
        validation = validate_flow(state.flow)
        flow = compile_flow(state.flow, state.chart_type) if validation.is_valid else None
        return _mode_plan(ExecutionMode.FLOW, flow, validation)

    if analysis_type == AnalysisType.RETENTION:
        retention_state = with_default_date_range(state.retention, today)
        validation = validate_retention(retention_state)
        retention = compile_retention(retention_state, today)
        return _mode_plan(ExecutionMode.RETENTION, retention, validation)

    # a drill override only ever replaces the active query
    if state.query_override is not None:
        return ExecutionPlan(ExecutionMode.SINGLE, [state.query_override])

    config = build_multi_query_config(state.query_states, state.merge_strategy)
    if config is not None:
        validation = validate_multi_query_config(
            config.queries, config.merge_strategy, config.merge_keys
        )
        if not validation.is_valid:
            return ExecutionPlan(ExecutionMode.IDLE, validation=validation)
        return ExecutionPlan(
            ExecutionMode.MULTI,
            list(config.queries),
            validation=validation,
            merge_strategy=config.merge_strategy,
            merge_keys=config.merge_keys,
            labels=list(config.query_labels),
        )

    query = build(state.active_query)
    if not query.has_content():
        return ExecutionPlan(ExecutionMode.IDLE)
    return ExecutionPlan(ExecutionMode.SINGLE, [query])


def _mode_plan(
    mode: ExecutionMode, query: QueryLike | None, validation: ValidationResult
) -> ExecutionPlan:
    if query is None:
        return ExecutionPlan(ExecutionMode.IDLE, validation=validation)
    return ExecutionPlan(mode, [query], validation=validation)


class ExecutionCoordinator:
    """Runs whatever the store currently describes.

    single queries go through the batcher when there is one (so several
    coordinators/panels share a request), multi-query runs register one
    future per query and merge whatever succeeded. nothing is retried -
    refetch() is the one way to run again.

    Example:
        coordinator = ExecutionCoordinator.from_settings(store, settings)
        coordinator.attach()            # re-run (debounced) on every edit
        state = await coordinator.refetch()
    """

    def __init__(
        self,
        store: QueryStateStore,
        client: QueryClient,
        batcher: BatchCoordinator | None = None,
        meta_cache: MetadataCache | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
    ) -> None:
        self.store = store
        self.client = client
        self.batcher = batcher
        self.meta_cache = meta_cache
        self.state = ExecutionState()
        self._debouncer = Debouncer(debounce)
        self._token = 0
        self._unsubscribe = None

    @classmethod
    def from_settings(
        cls,
        store: QueryStateStore,
        settings: Settings,
        client: QueryClient | None = None,
        use_batching: bool = True,
    ) -> "ExecutionCoordinator":
        client = client or QueryClient.from_settings(settings)
        batcher = None
        if use_batching:
            batcher = BatchCoordinator(client.batch_load, delay=settings.batch_delay)
        meta_cache = MetadataCache(client.meta, ttl_seconds=settings.meta_ttl_seconds)
        return cls(store, client, batcher, meta_cache, debounce=settings.debounce)

    @property
    def request_token(self) -> int:
        return self._token

    def plan(self, state: AnalysisState | None = None) -> ExecutionPlan:
        meta = self.meta_cache.cached if self.meta_cache is not None else None
        return plan_execution(state or self.store.state, meta)

    # --- running ---

    async def execute(self, bust_cache: bool = False) -> ExecutionState:
        """Run the current plan and update self.state.

        returns the state as it is after this run, which is the newer run's
        state if this one got superseded while waiting.
        """
        await self._refresh_meta()
        plan = self.plan()
        self._token += 1
        token = self._token

        if not plan.ready:
            self.state = ExecutionState(status=ExecutionStatus.IDLE, plan=plan)
            return self.state

        status = ExecutionStatus.REFRESHING if self.state.has_results else ExecutionStatus.LOADING
        self.state = replace(self.state, status=status, plan=plan, error=None)

        start = time.perf_counter()
        try:
            if plan.mode == ExecutionMode.MULTI:
                new_state = await self._run_multi(plan, bust_cache)
            else:
                result = await self._run_one(plan.queries[0], bust_cache)
                new_state = ExecutionState(
                    status=ExecutionStatus.SUCCESS,
                    results=list(result.data),
                    per_query_results=[result],
                    errors=[None],
                )
        except QueryForgeError as e:
            new_state = ExecutionState(status=ExecutionStatus.ERROR, errors=[e], error=e)
        except Exception as e:
            logger.exception("Unexpected error running %s query", plan.mode.value)
            new_state = ExecutionState(status=ExecutionStatus.ERROR, errors=[e], error=e)

        if token != self._token:
            logger.debug("Discarding stale response for request %d (latest %d)", token, self._token)
            return self.state

        new_state.plan = plan
        new_state.execution_time_ms = round((time.perf_counter() - start) * 1000, 2)
        self.state = new_state
        return self.state

    async def _refresh_meta(self) -> None:
        # planning still works without metadata, it just skips member checks
        if self.meta_cache is None:
            return
        try:
            await self.meta_cache.get()
        except Exception as e:
            logger.warning("Could not load metadata, planning without it: %s", e)

    async def _run_one(self, query: QueryLike, bust_cache: bool) -> ResultSet:
        # mode queries only go to load, and a cache bust needs its own header
        if self.batcher is not None and isinstance(query, CompiledQuery) and not bust_cache:
            return await self.batcher.register(query)
        return await self.client.load(query, bust_cache=bust_cache)

    async def _run_multi(self, plan: ExecutionPlan, bust_cache: bool) -> ExecutionState:
        outcomes = await self._collect(plan.queries, bust_cache)

        per_query: list[ResultSet | None] = []
        errors: list[Exception | None] = []
        for outcome in outcomes:
            if isinstance(outcome, ResultSet):
                per_query.append(outcome)
                errors.append(None)
            else:
                per_query.append(None)
                errors.append(outcome)

        first_error = next((e for e in errors if e is not None), None)
        succeeded = [i for i, r in enumerate(per_query) if r is not None]
        if not succeeded:
            return ExecutionState(
                status=ExecutionStatus.ERROR,
                per_query_results=per_query,
                errors=errors,
                error=first_error,
            )

        if first_error is not None:
            failed = len(plan.queries) - len(succeeded)
            logger.warning("%d of %d queries failed: %s", failed, len(plan.queries), first_error)

        rows = merge_query_results(
            [per_query[i] for i in succeeded],
            [plan.queries[i] for i in succeeded],
            plan.merge_strategy,
            plan.merge_keys,
            [plan.labels[i] for i in succeeded if i < len(plan.labels)] or None,
        )
        return ExecutionState(
            status=ExecutionStatus.SUCCESS,
            results=rows,
            per_query_results=per_query,
            errors=errors,
            error=first_error,
        )

    async def _collect(
        self, queries: list[QueryLike], bust_cache: bool
    ) -> list[ResultSet | Exception]:
        """One outcome per query, in order, errors included instead of raised."""
        if self.batcher is not None and not bust_cache:
            outcomes = await asyncio.gather(
                *(self.batcher.register(q) for q in queries), return_exceptions=True
            )
            for outcome in outcomes:
                # a cancelled future means somebody cleared the batcher under us
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
            return list(outcomes)

        results = await self.client.batch_load(queries, bust_cache=bust_cache)
        collected: list[ResultSet | Exception] = []
        for index in range(len(queries)):
            if index >= len(results):
                missing = BatchResultMissingError(f"No result for batch position {index}", index)
                collected.append(missing)
            elif results[index].error:
                collected.append(BatchQueryError(results[index].error, index))
            else:
                collected.append(results[index])
        return collected

    # --- scheduling ---

    def schedule(self) -> ScheduledTask:
        """Debounced execute(). A newer schedule() replaces one still waiting."""
        return self._debouncer.schedule(self.execute)

    async def refetch(self, bust_cache: bool = False) -> ExecutionState:
        self._debouncer.cancel()
        return await self.execute(bust_cache=bust_cache)

    def attach(self) -> None:
        """Schedule a run after every store change. Needs a running event loop."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(lambda state, action: self.schedule())

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def close(self) -> None:
        self.detach()
        self._debouncer.cancel()
        if self.batcher is not None:
            self.batcher.clear()
        await self.client.close()
