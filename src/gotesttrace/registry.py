"""Correlating test events into spans."""

from __future__ import annotations

import logging
from typing import Mapping

from attrs import Factory, define

from . import Instant, SpanContext, SpanHandle, TracerBase
from .events import START_ACTIONS, TERMINAL_ACTIONS, TestEvent

__all__ = ["SpanRecord", "SpanRegistry", "resolve_parent", "span_key"]

log = logging.getLogger(__name__)


def span_key(scope: str, name: str) -> str:
    if not name:
        return scope
    return f"{scope}.{name}"


@define
class SpanRecord:
    key: str
    handle: SpanHandle
    context: SpanContext
    start_time: Instant
    closed: bool = False


def resolve_parent(
    scope: str,
    name: str,
    records: Mapping[str, SpanRecord],
    fallback: SpanContext,
) -> SpanContext:
    """Find the context a new span for `name` should be started under.

    For a test `a/b/c`, the spans of `a/b` and then `a` are tried, then the
    span of the scope itself. Scope-less events (plain output mode) always
    attach to `fallback`.
    """
    if not scope:
        return fallback
    until = len(name)
    while (sep := name.rfind("/", 0, until)) != -1:
        until = sep
        if (record := records.get(span_key(scope, name[:until]))) is not None:
            return record.context
    if name and (record := records.get(scope)) is not None:
        return record.context
    return fallback


@define
class SpanRegistry:
    """Open and closed spans of a run, keyed by test.

    Owned by the single task consuming the events, so no locking.
    """

    tracer: TracerBase
    root: SpanContext
    records: dict[str, SpanRecord] = Factory(dict)

    def apply(self, event: TestEvent) -> None:
        if event.action in START_ACTIONS:
            self._start(event)
        elif event.action in TERMINAL_ACTIONS:
            self._end(event)

    def open_spans(self) -> list[SpanRecord]:
        return [r for r in self.records.values() if not r.closed]

    def _start(self, event: TestEvent) -> None:
        key = span_key(event.scope, event.name)
        previous = self.records.get(key)
        if previous is not None and not previous.closed:
            # The old span is abandoned, not ended.
            log.debug("Duplicate start for %s, abandoning previous span", key)
        parent = resolve_parent(event.scope, event.name, self.records, self.root)
        metadata: dict[str, str | int | bool] = {}
        if event.scope:
            metadata["test.package"] = event.scope
        if event.name:
            metadata["test.name"] = event.name
        ctx, handle = self.tracer.start_span(
            parent, event.name or event.scope, event.timestamp, **metadata
        )
        self.records[key] = SpanRecord(key, handle, ctx, event.timestamp)

    def _end(self, event: TestEvent) -> None:
        key = span_key(event.scope, event.name)
        record = self.records.get(key)
        if record is None or record.closed:
            log.debug("No open span for %s, dropping %s", key, event.action)
            return
        if event.elapsed is not None:
            end = record.start_time + event.elapsed
        else:
            end = event.timestamp
        self.tracer.end_span(
            record.handle,
            end,
            "error" if event.action == "fail" else "unset",
            **{"test.result": event.action or ""},
        )
        record.closed = True
