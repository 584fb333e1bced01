"""Execution trace and finality recorder.

Records the start, end, duration and error category of every flow run,
of each step inside it and of every outbound call, keyed by trace id, in
two sinks: the row store (ExecutionRepository) and the time-series sink
(ClickHouseSink). A per-trace log trail goes to Redis (FlowLogTrail).

Every sink write is best-effort: bounded by a short timeout, failures are
logged as warnings and never reach the business flow.

Finality: ``complete_flow`` performs at most one terminal transition per
trace. The first call wins, later calls return False without writing or
signalling. This holds across redeliveries too: the ids of recently
finalized traces are remembered, and a trace the row store already holds
as terminal is never signalled again. The finality callback (normally the
dispatcher) is invoked exactly once per trace, after which the trace's id
cache is discarded.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog

from src.app.core.errors import categorize_error, error_message, extract_status_code
from src.app.core.monitoring import record_flow_outcome, track_remote_call
from src.app.events.schemas import FinalityEvent
from src.app.observability.schemas import ExecutionEvent, ExecutionEventType

if TYPE_CHECKING:
    from src.app.events.trail import FlowLogTrail
    from src.app.observability.repository import ExecutionRepository
    from src.app.observability.timeseries import ClickHouseSink

logger = structlog.get_logger(__name__)

SINK_TIMEOUT_SECONDS = 5.0
FINALIZED_TRACES_REMEMBERED = 10000

FinalityHandler = Callable[[FinalityEvent], Awaitable[Any]]


class StepHandle:
    """Yielded by ``TraceContext.step``; lets the body mark the step skipped."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.skip_reason: str | None = None
        self.metadata: dict[str, Any] = {}

    def skip(self, reason: str, **metadata: Any) -> None:
        self.skip_reason = reason
        self.metadata.update(metadata)


class TraceContext:
    """State of one flow run, threaded through every call it makes.

    Holds the trace's id cache (flow execution row id and step row ids) so
    repeated writes within the trace need no lookups. The cache lives and
    dies with the trace.
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        trace_id: str,
        flow_name: str,
        flow_type: str,
    ) -> None:
        self.trace_id = trace_id
        self.flow_name = flow_name
        self.flow_type = flow_type
        self.execution_id: str | None = None
        self.step_ids: dict[str, str] = {}
        self.current_step: str | None = None
        self.failed_step: str | None = None
        self.steps_recorded: list[tuple[str, str]] = []
        self.api_calls_recorded = 0
        self.finalized = False
        self._recorder = recorder
        self._started = time.perf_counter()

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def discard_cache(self) -> None:
        self.execution_id = None
        self.step_ids.clear()

    @asynccontextmanager
    async def step(self, name: str) -> AsyncGenerator[StepHandle, None]:
        """Record a named stage around the block.

        The step completes as ``failed`` if the block raises (the exception
        propagates), ``skipped`` if the body called ``handle.skip()``, and
        ``success`` otherwise.
        """
        handle = StepHandle(name)
        started = time.perf_counter()
        self.current_step = name
        await self._recorder.start_step(self, name)
        try:
            yield handle
        except Exception as exc:
            self.failed_step = name
            await self._recorder.complete_step(
                self,
                name,
                "failed",
                int((time.perf_counter() - started) * 1000),
                error=exc,
                metadata=handle.metadata or None,
            )
            raise
        else:
            await self._recorder.complete_step(
                self,
                name,
                "skipped" if handle.skip_reason else "success",
                int((time.perf_counter() - started) * 1000),
                skip_reason=handle.skip_reason,
                metadata=handle.metadata or None,
            )
        finally:
            self.current_step = None

    @asynccontextmanager
    async def api_call(self, service: str, operation: str) -> AsyncGenerator[dict[str, Any], None]:
        """Time an outbound call and record it, whether or not it raised."""
        tracker: dict[str, Any] = {}
        try:
            async with track_remote_call(service, operation) as tracker:
                yield tracker
        finally:
            await self._recorder.record_api_call(
                self,
                service,
                operation,
                tracker.get("duration_ms", 0),
                tracker.get("status", "failed"),
                http_status=tracker.get("http_status"),
                error=tracker.get("error"),
            )

    async def log(self, level: str, message: str, **metadata: Any) -> None:
        """Log with structlog and append to the trace's log trail."""
        getattr(logger, level, logger.info)(message, trace_id=self.trace_id, **metadata)
        await self._recorder.append_trail(self, level, message, metadata)


class ExecutionRecorder:
    """Writes trace lifecycle events to every configured sink.

    Args:
        repository: Row store; None disables it.
        timeseries: Time-series sink; None disables it.
        trail: Redis log trail; None disables it.
        on_finality: Called once per trace with its FinalityEvent.
        sink_timeout: Upper bound for any single sink write, in seconds.
        remember_finalized: How many finalized trace ids to keep for the
            duplicate-finality check.
    """

    def __init__(
        self,
        repository: ExecutionRepository | None = None,
        timeseries: ClickHouseSink | None = None,
        trail: FlowLogTrail | None = None,
        on_finality: FinalityHandler | None = None,
        sink_timeout: float = SINK_TIMEOUT_SECONDS,
        remember_finalized: int = FINALIZED_TRACES_REMEMBERED,
    ) -> None:
        self._repository = repository
        self._timeseries = timeseries
        self._trail = trail
        self._on_finality = on_finality
        self._sink_timeout = sink_timeout
        self._active: dict[str, TraceContext] = {}
        self._finalized: OrderedDict[str, None] = OrderedDict()
        self._remember_finalized = remember_finalized

    def set_finality_handler(self, handler: FinalityHandler) -> None:
        self._on_finality = handler

    @property
    def active_traces(self) -> int:
        return len(self._active)

    def is_finalized(self, trace_id: str) -> bool:
        return trace_id in self._finalized

    def _remember_final(self, trace_id: str) -> None:
        self._finalized[trace_id] = None
        self._finalized.move_to_end(trace_id)
        while len(self._finalized) > self._remember_finalized:
            self._finalized.popitem(last=False)

    # ── Best-effort plumbing ────────────────────────────────────────────────

    async def _best_effort(self, operation: str, trace_id: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._sink_timeout)
        except Exception:
            logger.warning(
                "recorder.sink_write_failed",
                operation=operation,
                trace_id=trace_id,
                exc_info=True,
            )
            return None

    async def _emit(self, event: ExecutionEvent) -> None:
        if self._timeseries is None:
            return
        await self._best_effort(
            f"timeseries.{event.event_type.value}",
            event.trace_id,
            self._timeseries.insert_events([event]),
        )

    async def append_trail(
        self, ctx: TraceContext, level: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        if self._trail is None:
            return
        await self._best_effort(
            "trail.append", ctx.trace_id, self._trail.append(ctx.trace_id, level, message, metadata)
        )

    async def _execution_id(self, ctx: TraceContext) -> str | None:
        if ctx.execution_id is None and self._repository is not None:
            ctx.execution_id = await self._best_effort(
                "repository.find_execution_id",
                ctx.trace_id,
                self._repository.find_execution_id(ctx.trace_id),
            )
        return ctx.execution_id

    # ── Flow lifecycle ──────────────────────────────────────────────────────

    async def start_flow(
        self,
        trace_id: str,
        flow_name: str,
        flow_type: str,
        input_summary: dict[str, Any] | None = None,
    ) -> TraceContext:
        """Open a trace.

        A second start for an active trace id returns it unchanged. A start
        for a recently finalized trace id returns a context that is already
        final, so completing it again is a no-op.
        """
        existing = self._active.get(trace_id)
        if existing is not None:
            return existing
        if trace_id in self._finalized:
            logger.info("recorder.trace_already_final", trace_id=trace_id, flow_name=flow_name)
            ctx = TraceContext(self, trace_id, flow_name, flow_type)
            ctx.finalized = True
            return ctx

        ctx = TraceContext(self, trace_id, flow_name, flow_type)
        self._active[trace_id] = ctx

        if self._repository is not None:
            ctx.execution_id = await self._best_effort(
                "repository.start_execution",
                trace_id,
                self._repository.start_execution(trace_id, flow_name, flow_type, input_summary),
            )
        await self._emit(
            ExecutionEvent(
                event_type=ExecutionEventType.execution_started,
                trace_id=trace_id,
                flow_name=flow_name,
                flow_type=flow_type,
                status="running",
            )
        )
        await ctx.log("info", "flow.started", flow_name=flow_name, input=input_summary or {})
        return ctx

    async def complete_flow(
        self,
        ctx: TraceContext,
        status: str,
        duration_ms: int | None = None,
        error: BaseException | str | None = None,
        error_category: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Record the terminal status of a trace and signal finality.

        Returns:
            True for the call that finalized the trace, False for any later
            call and when the row store already holds the trace as terminal.
        """
        if ctx.finalized or ctx.trace_id in self._finalized:
            logger.debug("recorder.already_final", trace_id=ctx.trace_id, status=status)
            ctx.finalized = True
            return False
        ctx.finalized = True
        self._remember_final(ctx.trace_id)

        duration = duration_ms if duration_ms is not None else ctx.elapsed_ms()
        message = error_message(error) if error is not None else None
        category = error_category or (categorize_error(error).value if error is not None else None)

        if self._repository is not None:
            transitioned = await self._best_effort(
                "repository.finish_execution",
                ctx.trace_id,
                self._repository.finish_execution(ctx.trace_id, status, duration, message, category),
            )
            # None means the store was unreachable; only an explicit refusal stops finality.
            if transitioned is False:
                logger.warning("recorder.store_already_terminal", trace_id=ctx.trace_id, status=status)
                ctx.discard_cache()
                self._active.pop(ctx.trace_id, None)
                return False

        await ctx.log(
            "info" if status == "success" else "error",
            "flow.completed" if status == "success" else "flow.failed",
            status=status,
            duration_ms=duration,
            error=message,
        )

        await self._emit(
            ExecutionEvent(
                event_type=(
                    ExecutionEventType.execution_completed
                    if status == "success"
                    else ExecutionEventType.execution_failed
                ),
                trace_id=ctx.trace_id,
                flow_name=ctx.flow_name,
                flow_type=ctx.flow_type,
                step_name=ctx.failed_step or "",
                status=status,
                error_category=category or "",
                error_message=message or "",
                error_code=extract_status_code(error) if error is not None else None,
                duration_ms=duration,
            )
        )
        record_flow_outcome(ctx.flow_name, status)

        finality = FinalityEvent(
            trace_id=ctx.trace_id,
            flow_name=ctx.flow_name,
            status=status,
            duration_ms=duration,
            step_name=ctx.failed_step,
            error_message=message,
            error_category=category,
            result=result or {},
        )

        ctx.discard_cache()
        self._active.pop(ctx.trace_id, None)

        if self._on_finality is not None:
            await self._best_effort("finality", ctx.trace_id, self._on_finality(finality))
        return True

    # ── Steps ───────────────────────────────────────────────────────────────

    async def start_step(self, ctx: TraceContext, step_name: str) -> None:
        execution_id = await self._execution_id(ctx)
        if self._repository is not None and execution_id is not None:
            step_id = await self._best_effort(
                "repository.start_step",
                ctx.trace_id,
                self._repository.start_step(ctx.trace_id, execution_id, step_name),
            )
            if step_id:
                ctx.step_ids[step_name] = step_id
        await self._emit(
            ExecutionEvent(
                event_type=ExecutionEventType.step_started,
                trace_id=ctx.trace_id,
                flow_name=ctx.flow_name,
                flow_type=ctx.flow_type,
                step_name=step_name,
                status="started",
            )
        )

    async def complete_step(
        self,
        ctx: TraceContext,
        step_name: str,
        status: str,
        duration_ms: int,
        error: BaseException | str | None = None,
        skip_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        message = error_message(error) if error is not None else None
        category = categorize_error(error).value if error is not None else None
        ctx.steps_recorded.append((step_name, status))

        step_id = ctx.step_ids.get(step_name)
        if self._repository is not None and step_id is not None:
            await self._best_effort(
                "repository.finish_step",
                ctx.trace_id,
                self._repository.finish_step(
                    step_id, status, duration_ms, message, category, skip_reason, metadata
                ),
            )
        await self._emit(
            ExecutionEvent(
                event_type=(
                    ExecutionEventType.step_failed if status == "failed" else ExecutionEventType.step_completed
                ),
                trace_id=ctx.trace_id,
                flow_name=ctx.flow_name,
                flow_type=ctx.flow_type,
                step_name=step_name,
                status=status,
                error_category=category or "",
                error_message=message or "",
                error_code=extract_status_code(error) if error is not None else None,
                duration_ms=duration_ms,
            )
        )
        await ctx.log(
            "error" if status == "failed" else "info",
            f"step.{status}",
            step=step_name,
            duration_ms=duration_ms,
            skip_reason=skip_reason,
            error=message,
        )

    # ── External calls ──────────────────────────────────────────────────────

    async def record_api_call(
        self,
        ctx: TraceContext,
        service: str,
        operation: str,
        duration_ms: int,
        status: str,
        http_status: int | None = None,
        error: BaseException | str | None = None,
    ) -> None:
        message = error_message(error) if error is not None else None
        ctx.api_calls_recorded += 1

        execution_id = await self._execution_id(ctx)
        if self._repository is not None and execution_id is not None:
            step_id = ctx.step_ids.get(ctx.current_step) if ctx.current_step else None
            await self._best_effort(
                "repository.record_api_call",
                ctx.trace_id,
                self._repository.record_api_call(
                    ctx.trace_id,
                    execution_id,
                    service,
                    operation,
                    status,
                    duration_ms,
                    http_status=http_status,
                    error_message=message,
                    step_execution_id=step_id,
                ),
            )
        await self._emit(
            ExecutionEvent(
                event_type=ExecutionEventType.api_call,
                trace_id=ctx.trace_id,
                flow_name=ctx.flow_name,
                flow_type=ctx.flow_type,
                step_name=ctx.current_step or "",
                status=status,
                error_category=categorize_error(error).value if error is not None else "",
                error_message=message or "",
                error_code=http_status,
                duration_ms=duration_ms,
                service=service,
                operation=operation,
            )
        )
