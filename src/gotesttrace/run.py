"""Running `go test` (or reading its output) and tracing the results."""

from __future__ import annotations

import logging
import os
import sys
from asyncio import create_subprocess_exec, gather, to_thread
from asyncio.subprocess import PIPE
from time import time_ns
from typing import AsyncIterable, AsyncIterator, BinaryIO, Final

from attrs import define

from . import Span, SpanContext, Tracer, TracerBase, format_traceparent, print_trace
from . import otel
from .config import Config
from .events import DecodeError, Decoder, JSONDecoder, LineDecoder, TestEvent
from .registry import SpanRegistry

__all__ = ["OutputRelay", "RunnerError", "drain", "read_lines", "run_go_test", "trace"]

log = logging.getLogger(__name__)

# `go test -json` output lines can be long.
LINE_LIMIT: Final = 16 * 1024 * 1024


class RunnerError(Exception):
    """`go test` could not be started."""


@define
class OutputRelay:
    """Echoes event text, byte for byte, in the order it was consumed."""

    stream: BinaryIO

    def write(self, text: str) -> None:
        if not text:
            return
        self.stream.write(text.encode("utf-8", "surrogateescape"))
        self.stream.flush()


async def read_lines(stream: BinaryIO) -> AsyncIterator[bytes]:
    """Read lines from a blocking stream without blocking the event loop."""
    while line := await to_thread(stream.readline):
        yield line


async def drain(
    lines: AsyncIterable[bytes],
    decoder: Decoder,
    registry: SpanRegistry,
    relay: OutputRelay,
) -> None:
    """Consume every line, updating spans and relaying the text."""
    async for line in lines:
        try:
            event = decoder.decode(line)
        except DecodeError as exc:
            log.warning("Failed to decode %r: %s", line, exc)
            text = line.decode("utf-8", "surrogateescape")
            event = TestEvent(time_ns(), None, text=text)
        try:
            registry.apply(event)
        finally:
            relay.write(event.text)


async def run_go_test(
    config: Config, registry: SpanRegistry, relay: OutputRelay, root: SpanContext
) -> int:
    """Run `go test -json`, tracing its events until it exits.

    Returns:
        The exit code of `go test`.
    """
    cmd = [config.go, "test", *config.go_args, "-json"]
    env = os.environ | {"TRACEPARENT": format_traceparent(root)}
    try:
        proc = await create_subprocess_exec(
            *cmd, stdout=PIPE, env=env, limit=LINE_LIMIT
        )
    except OSError as exc:
        raise RunnerError(f"cannot run {' '.join(cmd)}: {exc}") from exc
    assert proc.stdout is not None

    try:
        _, code = await gather(
            drain(proc.stdout, JSONDecoder(), registry, relay), proc.wait()
        )
    except BaseException:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return code


def _make_tracer(config: Config) -> TracerBase:
    if config.endpoint is None:
        return Tracer(config.service_name, config.name)
    return otel.Tracer(
        config.service_name,
        config.name,
        url=config.endpoint,
        timeout=config.export_timeout,
    )


async def trace(
    config: Config, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None
) -> int:
    """Trace a whole run, from connecting to the collector to the final flush.

    Returns:
        The exit code to finish with.
    """
    tracer = _make_tracer(config)
    spans: list[Span] = []
    if config.print_trace:
        tracer.receivers.append(spans.extend)
    relay = OutputRelay(sys.stdout.buffer if stdout is None else stdout)

    await tracer.connect()
    root_ctx, root = tracer.open_root(config.name, config.traceparent)
    registry = SpanRegistry(tracer, root_ctx)
    try:
        if config.stdin:
            await drain(
                read_lines(sys.stdin.buffer if stdin is None else stdin),
                LineDecoder(),
                registry,
                relay,
            )
            return 0
        return await run_go_test(config, registry, relay, root_ctx)
    finally:
        for record in registry.open_spans():
            log.debug("Span %s was never ended", record.key)
        tracer.end_span(root, time_ns())
        await tracer.shutdown()
        if config.print_trace:
            print_trace(spans)
