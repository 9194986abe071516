"""Turn `go test` runs into OpenTelemetry traces."""

from __future__ import annotations

import logging
import re
from os import urandom
from time import time_ns
from typing import Any, Callable, Literal, NotRequired, TypedDict

from attrs import Factory, define, field, frozen
from rich.columns import Columns
from rich.console import Console, Group
from rich.text import Text
from rich.tree import Tree

__all__ = [
    "Span",
    "SpanContext",
    "SpanHandle",
    "Tracer",
    "TracerBase",
    "TraceId",
    "SpanId",
    "Metadata",
    "Status",
    "format_traceparent",
    "parse_traceparent",
    "print_trace",
]

log = logging.getLogger(__name__)

type Instant = int  # Nanoseconds since the epoch
type Duration = int  # Nanoseconds
type Metadata = dict[str, str | int | bool]
type TraceId = str
type SpanId = str
type Status = Literal["unset", "ok", "error"]

Span = TypedDict(
    "Span",
    {
        "name": str,
        "start_time": Instant,
        "end_time": Instant,
        "trace.trace_id": TraceId,
        "trace.span_id": SpanId,
        "trace.parent_id": NotRequired[SpanId],
        "status": Status,
        "metadata": Metadata,
        "tracer_metadata": Metadata,
    },
)


def trace_id_factory() -> TraceId:
    return urandom(16).hex()


def span_id_factory() -> SpanId:
    return urandom(8).hex()


@frozen
class SpanContext:
    """Where new child spans attach."""

    trace_id: TraceId
    span_id: SpanId
    remote: bool = False


@define
class SpanHandle:
    """A span that has been started and not yet emitted."""

    name: str
    context: SpanContext
    parent_id: SpanId | None
    start_time: Instant
    metadata: Metadata = Factory(dict)
    status: Status = "unset"
    ended: bool = False


_TRACEPARENT_RE = re.compile(
    r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})(-.*)?$"
)


def parse_traceparent(value: str) -> SpanContext | None:
    """Extract a remote parent from a W3C `traceparent` header value.

    Returns:
        The remote span context, or `None` if the value is not a valid
        traceparent.
    """
    m = _TRACEPARENT_RE.match(value.strip())
    if m is None:
        return None
    version, trace_id, span_id, _, rest = m.groups()
    if version == "ff" or (version == "00" and rest is not None):
        return None
    if trace_id == "0" * 32 or span_id == "0" * 16:
        return None
    return SpanContext(trace_id, span_id, remote=True)


def format_traceparent(ctx: SpanContext) -> str:
    return f"00-{ctx.trace_id}-{ctx.span_id}-01"


@define
class TracerBase:
    """
    A base class for tracers driven by explicit start and end calls,
    so subclasses can decide what happens to finished spans.
    """

    service_name: str
    name: str = "go-test-trace"
    metadata: Metadata = Factory(dict)
    receivers: list[Callable[[list[Span]], Any]] = Factory(list)
    _trace_id_factory: Callable[[], TraceId] = trace_id_factory
    _span_id_factory: Callable[[], SpanId] = span_id_factory
    _clock: Callable[[], Instant] = field(default=time_ns, kw_only=True)

    def __attrs_post_init__(self) -> None:
        self.metadata["service.name"] = self.service_name

    def open_root(
        self,
        name: str,
        traceparent: str | None = None,
        timestamp: Instant | None = None,
    ) -> tuple[SpanContext, SpanHandle]:
        """Start the span covering the whole run.

        Args:
            traceparent: A W3C traceparent to participate in. When missing
                or malformed, a new trace is started.
        """
        parent = None
        if traceparent:
            parent = parse_traceparent(traceparent)
            if parent is None:
                log.warning("Ignoring malformed traceparent %r", traceparent)
        if parent is None:
            parent = SpanContext(self._trace_id_factory(), "")
        return self.start_span(
            parent, name, self._clock() if timestamp is None else timestamp
        )

    def start_span(
        self,
        parent: SpanContext,
        name: str,
        timestamp: Instant,
        **kwargs: str | int | bool,
    ) -> tuple[SpanContext, SpanHandle]:
        """Start a new span under `parent`.

        Returns:
            The context for children of the new span, and its handle.
        """
        ctx = SpanContext(parent.trace_id, self._span_id_factory())
        handle = SpanHandle(
            name, ctx, parent.span_id or None, timestamp, metadata=kwargs
        )
        return ctx, handle

    def end_span(
        self,
        handle: SpanHandle,
        timestamp: Instant,
        status: Status = "unset",
        **kwargs: str | int | bool,
    ) -> None:
        """End a span and notify all receivers."""
        if handle.ended:
            log.debug("Span %s already ended", handle.name)
            return
        handle.ended = True
        handle.status = status
        handle.metadata.update(kwargs)
        span: Span = {
            "name": handle.name,
            "start_time": handle.start_time,
            "end_time": max(timestamp, handle.start_time),
            "trace.trace_id": handle.context.trace_id,
            "trace.span_id": handle.context.span_id,
            "status": status,
            "metadata": handle.metadata,
            "tracer_metadata": self.metadata,
        }
        if handle.parent_id is not None:
            span["trace.parent_id"] = handle.parent_id
        self._emit([span])

    async def connect(self) -> None:
        """Prepare the tracer for use; called once before any span is started."""

    async def shutdown(self) -> None:
        """Release resources; called once, after the last span has ended."""

    def _emit(self, spans: list[Span]) -> None:
        for receiver in self.receivers:
            receiver(spans)


@define
class Tracer(TracerBase):
    """A tracer that only hands finished spans to its receivers."""


def print_trace(spans: list[Span], console: Console | None = None) -> None:
    """Format a trace with Rich and print it out in the terminal."""
    if not spans:
        return
    console = console or Console(stderr=True)

    start = min(s["start_time"] for s in spans)
    end = max(s["end_time"] for s in spans)

    span_ids = {s["trace.span_id"] for s in spans}
    roots = [
        s
        for s in spans
        if ("trace.parent_id" not in s or s["trace.parent_id"] not in span_ids)
    ]

    for root_span in sorted(roots, key=lambda s: s["start_time"]):
        tree = Tree(t := Text(root_span["name"], style="bold white"))
        t.set_length(30)
        data = _process_children(root_span, spans, start, end, tree)

        width = 40
        lines = []
        durations = []
        for _, span_start, span_stop, dur, status in data:
            prefix = int(span_start * width) * " "
            body = max(int((span_stop - span_start) * width), 1) * "━"
            line = Text(prefix + body, style="red" if status == "error" else "")
            line.set_length(width)
            lines.append(line)
            durations.append(dur)

        console.print(
            Columns(
                [
                    tree,
                    Group(*lines),
                    Group(
                        *[f"[dim]{dur / 1e6:8.1f} [italic]ms[/][/]" for dur in durations]
                    ),
                ]
            )
        )


def _process_children(
    parent: Span, spans: list[Span], start: Instant, end: Instant, tree: Tree
) -> list[tuple[str, float, float, Duration, Status]]:
    total_duration = (end - start) or 1
    span_duration = parent["end_time"] - parent["start_time"]
    start_pct = (parent["start_time"] - start) / total_duration
    res = [
        (
            parent["name"],
            start_pct,
            start_pct + (span_duration / total_duration),
            span_duration,
            parent["status"],
        )
    ]
    children = sorted(
        (s for s in spans if s.get("trace.parent_id") == parent["trace.span_id"]),
        key=lambda s: s["start_time"],
    )
    for child in children:
        style = "red" if child["status"] == "error" else ""
        child_tree = tree.add(Text(child["name"], style=style))
        res.extend(_process_children(child, spans, start, end, child_tree))
    return res
