from datetime import UTC, datetime

import pytest
from orjson import dumps

from gotesttrace.events import (
    DecodeError,
    JSONDecoder,
    LineDecoder,
    TestEvent,
    parse_duration,
    parse_timestamp,
)

T0 = int(datetime(2021, 8, 11, 17, tzinfo=UTC).timestamp()) * 1_000_000_000


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("1.50s", 1_500_000_000),
        ("0.00s", 0),
        ("0", 0),
        ("250ms", 250_000_000),
        ("1.5µs", 1_500),
        ("1.5us", 1_500),
        ("42ns", 42),
        ("1m30s", 90_000_000_000),
        ("1h0m0.5s", 3_600_500_000_000),
        ("-2s", -2_000_000_000),
    ],
)
def test_parse_duration(value: str, expected: int) -> None:
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "1.5", "s", "1x", "1s 2s", "(1.50s)"])
def test_parse_duration_invalid(value: str) -> None:
    with pytest.raises(DecodeError):
        parse_duration(value)


def test_parse_timestamp() -> None:
    """Timestamps keep nanosecond precision and honor offsets."""
    assert parse_timestamp("2021-08-11T17:00:00Z") == T0
    assert parse_timestamp("2021-08-11T17:00:00.5Z") == T0 + 500_000_000
    assert parse_timestamp("2021-08-11T10:00:00.123456789-07:00") == T0 + 123_456_789
    assert parse_timestamp("2021-08-11T19:00:00.000000001+02:00") == T0 + 1


@pytest.mark.parametrize(
    "value", ["", "yesterday", "2021-08-11", "2021-08-11T17:00:00", "2021-13-11T17:00:00Z"]
)
def test_parse_timestamp_invalid(value: str) -> None:
    with pytest.raises(DecodeError):
        parse_timestamp(value)


def test_json_decoder() -> None:
    decoder = JSONDecoder()
    line = dumps(
        {
            "Time": "2021-08-11T17:00:00Z",
            "Action": "output",
            "Package": "example.com/pkg",
            "Test": "TestA/b",
            "Output": "=== RUN   TestA/b\n",
            "Elapsed": 0.5,
        }
    )

    assert decoder.decode(line + b"\n") == TestEvent(
        T0, "output", "example.com/pkg", "TestA/b", "=== RUN   TestA/b\n"
    )


def test_json_decoder_package_event() -> None:
    """Package level events have no test name, and may lack a time."""
    decoder = JSONDecoder(clock=lambda: 42)

    event = decoder.decode(b'{"Action": "start", "Package": "example.com/pkg"}')

    assert event == TestEvent(42, "start", "example.com/pkg")


@pytest.mark.parametrize(
    "line",
    [
        b"FAIL\texample.com/pkg [build failed]\n",
        b"\n",
        b"[1, 2]",
        b'{"Action": 1}',
        b'{"Time": "later", "Action": "run"}',
    ],
)
def test_json_decoder_invalid(line: bytes) -> None:
    with pytest.raises(DecodeError):
        JSONDecoder().decode(line)


def test_line_decoder_run() -> None:
    decoder = LineDecoder(clock=lambda: 42)
    line = b"=== RUN   TestGetConfig/otlp#01\n"

    assert decoder.decode(line) == TestEvent(
        42, "run", name="TestGetConfig/otlp#01", text=line.decode()
    )


@pytest.mark.parametrize(
    ("line", "action"),
    [
        ("    --- PASS: TestGetConfig/otlp#01 (1.50s)", "pass"),
        ("    --- FAIL: TestGetConfig/otlp#01 (1.50s)", "fail"),
    ],
)
def test_line_decoder_result(line: str, action: str) -> None:
    """Results carry the test name and its duration."""
    event = LineDecoder(clock=lambda: 42).decode(line.encode())

    assert event.action == action
    assert event.name == "TestGetConfig/otlp#01"
    assert event.elapsed == 1_500_000_000
    assert event.text == line


@pytest.mark.parametrize(
    "line",
    [
        "--- SKIP: TestSkipped (0.00s)",
        "PASS",
        "FAIL",
        "ok  \texample.com/pkg\t0.012s",
        "?   \texample.com/other\t[no test files]",
        "=== PAUSE TestParallel",
        "=== CONT  TestParallel",
        "=== RUN",
        "--- PASS: TestNoDuration",
        "    main_test.go:12: some log output",
        "",
    ],
)
def test_line_decoder_plain_output(line: str) -> None:
    event = LineDecoder(clock=lambda: 42).decode(f"{line}\n".encode())

    assert event == TestEvent(42, None, text=f"{line}\n")


def test_line_decoder_keeps_undecodable_bytes() -> None:
    line = b"\xff\xfe not utf-8\n"

    event = LineDecoder().decode(line)

    assert event.action is None
    assert event.text.encode("utf-8", "surrogateescape") == line
