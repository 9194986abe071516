"""Decoding `go test` output into test events.

Two decoders are available, picked once at startup:

* `JSONDecoder` reads the records produced by `go test -json`.
* `LineDecoder` reads plain `go test -v` output, as piped in through stdin.

Both produce `TestEvent` instances, and both keep the original text around
so it can be relayed unchanged.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from time import time_ns
from typing import Callable, Final, Protocol

from attrs import define, frozen
from orjson import JSONDecodeError, loads

from . import Duration, Instant

__all__ = [
    "DecodeError",
    "Decoder",
    "JSONDecoder",
    "LineDecoder",
    "TestEvent",
    "parse_duration",
    "parse_timestamp",
]

log = logging.getLogger(__name__)

START_ACTIONS: Final = frozenset({"start", "run"})
TERMINAL_ACTIONS: Final = frozenset({"pass", "fail", "skip"})


class DecodeError(ValueError):
    """A line could not be turned into a test event."""


@frozen
class TestEvent:
    """A single observation of a test run.

    `action` is `None` for lines that are plain output. `elapsed` is only
    known when the event was read from plain output, where it replaces the
    missing end timestamp.
    """

    __test__ = False  # Not a pytest test class.

    timestamp: Instant
    action: str | None
    scope: str = ""
    name: str = ""
    text: str = ""
    elapsed: Duration | None = None


_EPOCH: Final = datetime(1970, 1, 1, tzinfo=UTC)
_TIMESTAMP_RE: Final = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?([Zz]|[+-]\d{2}:\d{2})$"
)


def parse_timestamp(value: str) -> Instant:
    """Parse an RFC 3339 timestamp, as written by `go test -json`.

    Fractional seconds are kept to the nanosecond.
    """
    m = _TIMESTAMP_RE.match(value)
    if m is None:
        raise DecodeError(f"invalid timestamp: {value!r}")
    date, clock, fraction, offset = m.groups()
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        dt = datetime.fromisoformat(f"{date}T{clock}{offset}")
    except ValueError as exc:
        raise DecodeError(f"invalid timestamp: {value!r}") from exc
    seconds = (dt - _EPOCH) // timedelta(seconds=1)
    return seconds * 1_000_000_000 + int((fraction or "0").ljust(9, "0"))


_DURATION_UNITS: Final = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,  # U+00B5
    "μs": 1_000,  # U+03BC
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_RE: Final = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> Duration:
    """Parse a Go duration string such as `1.50s` or `1m30s` into nanoseconds."""
    s = value.strip()
    sign = 1
    if s and s[0] in "+-":
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    if s == "0":
        return 0
    total = Decimal(0)
    pos = 0
    for m in _DURATION_RE.finditer(s):
        if m.start() != pos:
            break
        total += Decimal(m[1]) * _DURATION_UNITS[m[2]]
        pos = m.end()
    if pos == 0 or pos != len(s):
        raise DecodeError(f"invalid duration: {value!r}")
    return sign * int(total)


class Decoder(Protocol):
    def decode(self, line: bytes) -> TestEvent: ...


def _str_field(record: dict[str, object], key: str) -> str:
    value = record.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"field {key} is not a string: {value!r}")
    return value


@define
class JSONDecoder:
    """Decodes `go test -json` records, one per line."""

    clock: Callable[[], Instant] = time_ns

    def decode(self, line: bytes) -> TestEvent:
        try:
            record = loads(line)
        except JSONDecodeError as exc:
            raise DecodeError(f"invalid JSON record: {exc}") from exc
        if not isinstance(record, dict):
            raise DecodeError(f"expected a JSON object, got {record!r}")
        time = _str_field(record, "Time")
        return TestEvent(
            parse_timestamp(time) if time else self.clock(),
            _str_field(record, "Action") or None,
            _str_field(record, "Package"),
            _str_field(record, "Test"),
            _str_field(record, "Output"),
        )


_RESULT_RE: Final = re.compile(r"^--- (PASS|FAIL): (.+) \(([^()\s]+)\)$")


@define
class LineDecoder:
    """Decodes the plain output of `go test -v`.

    Only `=== RUN` and `--- PASS`/`--- FAIL` lines carry an action; summary
    lines, skips and everything else are plain output.
    """

    clock: Callable[[], Instant] = time_ns

    def decode(self, line: bytes) -> TestEvent:
        text = line.decode("utf-8", "surrogateescape")
        trimmed = text.strip()
        now = self.clock()
        if trimmed.startswith("=== RUN"):
            name = trimmed.removeprefix("=== RUN").strip()
            if name:
                return TestEvent(now, "run", name=name, text=text)
        elif m := _RESULT_RE.match(trimmed):
            try:
                elapsed = parse_duration(m[3])
            except DecodeError:
                log.debug("Unparseable duration in %r", trimmed)
            else:
                return TestEvent(
                    now, m[1].lower(), name=m[2], text=text, elapsed=elapsed
                )
        return TestEvent(now, None, text=text)
