"""Observability package: execution traces, time-series events, reports.

Provides:
- ExecutionRecorder / TraceContext: best-effort recording of flows, steps
  and outbound calls, with exactly-once finality
- ExecutionRepository: row store for the trace tables
- ClickHouseSink: time-series event sink
- FinalityNotifier / MailgunNotifier: finality reports

All sinks are optional; the recorder runs with whichever are configured.
"""

from __future__ import annotations


def __getattr__(name: str):
    if name in ("ExecutionRecorder", "TraceContext"):
        from src.app.observability import recorder

        return getattr(recorder, name)
    if name == "ExecutionRepository":
        from src.app.observability.repository import ExecutionRepository
        return ExecutionRepository
    if name == "ClickHouseSink":
        from src.app.observability.timeseries import ClickHouseSink
        return ClickHouseSink
    if name in ("FinalityNotifier", "MailgunNotifier"):
        from src.app.observability import notifications

        return getattr(notifications, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ClickHouseSink",
    "ExecutionRecorder",
    "ExecutionRepository",
    "FinalityNotifier",
    "MailgunNotifier",
    "TraceContext",
]
