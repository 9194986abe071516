"""Command line and environment configuration."""

from __future__ import annotations

from argparse import ArgumentParser, ArgumentTypeError
from itertools import islice
from typing import Final, Mapping, Sequence

from attrs import frozen

from .otel import DEFAULT_ENDPOINT, normalize_endpoint

USAGE: Final = """Usage:
go-test-trace [flags...] [go test flags...]

Flags:
-name            Name of the trace span created for the test, optional.
-endpoint        OpenTelemetry OTLP/HTTP collector endpoint,
                 http://127.0.0.1:4318/v1/traces by default.
                 An empty value disables exporting.
-traceparent     Trace to participate into if any, in W3C Trace Context format.
-stdin           Parse go test verbose output from stdin.
-print           Print the trace to stderr once the tests are done.
-export-timeout  Seconds to wait for the collector, 1 by default.
-help            Print this text.

Run "go help test" for go test flags."""


@frozen
class Config:
    endpoint: str | None = DEFAULT_ENDPOINT
    name: str = "go-test-trace"
    traceparent: str | None = None
    stdin: bool = False
    print_trace: bool = False
    export_timeout: float = 1.0
    service_name: str = "go test"
    go: str = "go"
    go_args: tuple[str, ...] = ()
    help: bool = False

    @classmethod
    def from_args(cls, argv: Sequence[str], environ: Mapping[str, str]) -> Config:
        """Build the configuration.

        Flags win over environment variables, which win over defaults. Any
        argument not recognized here is kept, in order, for `go test`.
        """
        ours, rest = _split_args(argv)
        args = _make_parser().parse_args(ours)

        if args.endpoint is not None:
            endpoint = normalize_endpoint(args.endpoint) if args.endpoint else None
        elif url := environ.get("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"):
            endpoint = normalize_endpoint(url)
        elif url := environ.get("OTEL_EXPORTER_OTLP_ENDPOINT"):
            endpoint = url.rstrip("/") + "/v1/traces"
        else:
            endpoint = DEFAULT_ENDPOINT

        return cls(
            endpoint=endpoint,
            name=args.name,
            traceparent=args.traceparent or environ.get("TRACEPARENT") or None,
            stdin=args.stdin,
            print_trace=args.print_trace,
            export_timeout=args.export_timeout,
            service_name=environ.get("OTEL_SERVICE_NAME") or "go test",
            go=environ.get("GOTESTTRACE_GO") or "go",
            go_args=tuple(rest),
            help=args.help,
        )


_VALUE_FLAGS: Final = frozenset({"endpoint", "name", "traceparent", "export-timeout"})
_BOOL_FLAGS: Final = frozenset({"stdin", "print", "help"})


def _split_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Separate our flags from the ones meant for `go test`.

    Only exact flag names count, so `go test` flags like `-p` or `-n` are
    never taken for abbreviations of ours. Everything from `-args` on is
    meant for the test binary and is passed through untouched.
    """
    ours: list[str] = []
    rest: list[str] = []
    args = iter(argv)
    for arg in args:
        if arg in ("-args", "--args"):
            rest.append(arg)
            rest.extend(args)
            break
        flag = arg.lstrip("-").partition("=")[0] if arg.startswith("-") else ""
        if flag in _VALUE_FLAGS:
            ours.append(arg)
            if "=" not in arg:
                ours.extend(islice(args, 1))
        elif flag in _BOOL_FLAGS:
            ours.append(arg)
        else:
            rest.append(arg)
    return ours, rest


def _parse_bool(value: str) -> bool:
    # The spellings Go's strconv.ParseBool accepts.
    if value in ("1", "t", "T", "true", "TRUE", "True"):
        return True
    if value in ("0", "f", "F", "false", "FALSE", "False"):
        return False
    raise ArgumentTypeError(f"invalid boolean value {value!r}")


# `-flag` alone means true; `-flag=false` is accepted too.
_BOOL: Final = {"nargs": "?", "const": True, "default": False, "type": _parse_bool}


def _make_parser() -> ArgumentParser:
    # Go style flags. `-h` goes to go test.
    parser = ArgumentParser(prog="go-test-trace", add_help=False, allow_abbrev=False)
    parser.add_argument("-endpoint", "--endpoint", default=None)
    parser.add_argument("-name", "--name", default="go-test-trace")
    parser.add_argument("-traceparent", "--traceparent", default=None)
    parser.add_argument("-stdin", "--stdin", **_BOOL)
    parser.add_argument("-print", "--print", dest="print_trace", **_BOOL)
    parser.add_argument(
        "-export-timeout", "--export-timeout", type=float, default=1.0
    )
    parser.add_argument("-help", "--help", **_BOOL)
    return parser
