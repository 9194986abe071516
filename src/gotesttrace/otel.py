import logging
from asyncio import CancelledError, Event, Task, create_task, wait_for
from contextlib import suppress
from typing import Final, NotRequired, TypedDict
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientSession, ClientTimeout
from attrs import define, field
from orjson import JSONEncodeError, dumps

from . import Metadata, Status, TracerBase
from . import Span as GSpan

log = logging.getLogger(__name__)

DEFAULT_ENDPOINT: Final = "http://127.0.0.1:4318/v1/traces"


class ExportError(Exception):
    """The tracing backend cannot be reached."""


def normalize_endpoint(value: str) -> str:
    """Turn a collector address into an OTLP/HTTP traces URL.

    Accepts full URLs as well as bare `host:port` pairs. Bare addresses get
    the default `/v1/traces` path.
    """
    if "://" not in value:
        value = f"http://{value}"
    if urlsplit(value).path in ("", "/"):
        value = value.rstrip("/") + "/v1/traces"
    return value


@define
class Tracer(TracerBase):
    """An OTel-specific tracer, exporting spans via OTLP/HTTP JSON.

    The OTel collector uses port 4318 by default, and the URL prefix of
    `/v1/traces`.
    """

    url: str = field(default=DEFAULT_ENDPOINT, kw_only=True)
    timeout: float = field(default=1.0, kw_only=True)
    flush_interval: float = field(default=5.0, kw_only=True)
    batch_size: int = field(default=512, kw_only=True)
    _http_client: ClientSession | None = field(default=None, init=False)
    _buffer: list[GSpan] = field(factory=list, init=False)
    _wakeup: Event = field(factory=Event, init=False)
    _flusher: Task[None] | None = field(default=None, init=False)
    _closed: bool = field(default=False, init=False)

    def __attrs_post_init__(self) -> None:
        super().__attrs_post_init__()
        self.receivers.append(self._add_to_buffer)

    async def connect(self) -> None:
        """Open the HTTP session and make sure the collector answers.

        Raises:
            ExportError: If the collector is unreachable, too slow, or
                rejects the request.
        """
        self._http_client = ClientSession(timeout=ClientTimeout(total=self.timeout))
        try:
            await self._send([])
        except (ClientError, TimeoutError) as exc:
            await self._http_client.close()
            self._http_client = None
            raise ExportError(f"cannot export spans to {self.url}: {exc!r}") from exc
        self._flusher = create_task(self._flush_loop())

    async def shutdown(self) -> None:
        """Stop the background flusher and export everything still buffered."""
        if self._closed:
            return
        self._closed = True
        if self._flusher is not None:
            self._flusher.cancel()
            try:
                await self._flusher
            except CancelledError:
                pass
            except Exception:
                log.exception("Span flusher failed")
        if self._http_client is None:
            return
        pending = len(self._buffer)
        try:
            while self._buffer:
                await wait_for(self._flush(), self.timeout)
        except (ClientError, TimeoutError, JSONEncodeError) as exc:
            log.error(
                "Failed exporting spans on shutdown (%d were pending): %r", pending, exc
            )
        finally:
            await self._http_client.close()

    def _add_to_buffer(self, spans: list[GSpan]) -> None:
        self._buffer.extend(spans)
        if len(self._buffer) >= self.batch_size:
            self._wakeup.set()

    async def _flush_loop(self) -> None:
        while True:
            with suppress(TimeoutError):
                await wait_for(self._wakeup.wait(), self.flush_interval)
            self._wakeup.clear()
            try:
                await self._flush()
            except (ClientError, TimeoutError, JSONEncodeError) as exc:
                log.warning("Failed exporting spans: %r", exc)

    async def _flush(self) -> None:
        buf = self._buffer[: self.batch_size]
        if not buf:
            return
        del self._buffer[: len(buf)]
        try:
            await self._send(buf)
        except CancelledError:
            # Interrupted by shutdown; the final flush picks these up.
            self._buffer[:0] = buf
            raise

    async def _send(self, spans: list[GSpan]) -> None:
        assert self._http_client is not None
        payload = dumps(_spans_to_otel(self, spans))
        async with self._http_client.post(
            self.url, data=payload, headers={"content-type": "application/json"}
        ) as resp:
            resp.raise_for_status()


class StringValue(TypedDict):
    stringValue: str


class IntValue(TypedDict):
    intValue: str


class BoolValue(TypedDict):
    boolValue: bool


class KVPair(TypedDict):
    key: str
    value: StringValue | IntValue | BoolValue


class Resource(TypedDict):
    attributes: list[KVPair]


class SpanStatus(TypedDict):
    code: int


class Span(TypedDict):
    traceId: str
    spanId: str
    parentSpanId: NotRequired[str]
    name: str
    startTimeUnixNano: str
    endTimeUnixNano: str
    kind: int
    attributes: list[KVPair]
    status: SpanStatus


class InstrumentationScope(TypedDict):
    name: NotRequired[str]
    version: NotRequired[str]
    attributes: NotRequired[list[KVPair]]


class ScopeSpan(TypedDict):
    scope: InstrumentationScope
    spans: list[Span]


class ResourceSpan(TypedDict):
    resource: Resource
    scopeSpans: list[ScopeSpan]


class Payload(TypedDict):
    resourceSpans: list[ResourceSpan]


_KIND_INTERNAL: Final = 1

_STATUS_TO_OTEL: Final[dict[Status, int]] = {"unset": 0, "ok": 1, "error": 2}


def _spans_to_otel(tracer: TracerBase, spans: list[GSpan]) -> Payload:
    """Convert finished spans into an OTLP export request."""
    if not spans:
        return {"resourceSpans": []}
    return {
        "resourceSpans": [
            {
                "resource": {"attributes": _attributes(tracer.metadata)},
                "scopeSpans": [
                    {
                        "scope": {"name": _text(tracer.name)},
                        "spans": [_span_to_otel(span) for span in spans],
                    }
                ],
            }
        ]
    }


def _text(value: str) -> str:
    # Undecodable input bytes survive as lone surrogates; JSON needs valid UTF-8.
    return value.encode("utf-8", "surrogatepass").decode("utf-8", "replace")


def _attributes(metadata: Metadata) -> list[KVPair]:
    res: list[KVPair] = []
    for k, v in metadata.items():
        k = _text(k)
        if isinstance(v, bool):
            res.append({"key": k, "value": {"boolValue": v}})
        elif isinstance(v, int):
            res.append({"key": k, "value": {"intValue": str(v)}})
        else:
            res.append({"key": k, "value": {"stringValue": _text(v)}})
    return res


def _span_to_otel(span: GSpan) -> Span:
    res: Span = {
        "traceId": span["trace.trace_id"],
        "spanId": span["trace.span_id"],
        "startTimeUnixNano": str(span["start_time"]),
        "endTimeUnixNano": str(span["end_time"]),
        "kind": _KIND_INTERNAL,
        "name": _text(span["name"]),
        "attributes": _attributes(span["metadata"]),
        "status": {"code": _STATUS_TO_OTEL[span["status"]]},
    }
    if "trace.parent_id" in span:
        res["parentSpanId"] = span["trace.parent_id"]
    return res
