import logging
import os
import sys
from asyncio import run
from typing import Sequence

from rich.console import Console
from rich.logging import RichHandler

from .config import USAGE, Config
from .otel import ExportError
from .run import RunnerError, trace

log = logging.getLogger("gotesttrace")


def setup_logging(level: str) -> None:
    """Send log records to stderr; stdout carries the test output."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def main(argv: Sequence[str] | None = None) -> None:
    config = Config.from_args(sys.argv[1:] if argv is None else argv, os.environ)
    if config.help:
        print(USAGE)
        sys.exit(0)
    setup_logging(os.environ.get("LOG_LEVEL", "WARNING"))

    try:
        code = run(trace(config))
    except (ExportError, RunnerError) as exc:
        log.error("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception:
        log.exception("go-test-trace failed")
        sys.exit(1)
    # Killed by a signal.
    if code < 0:
        code = 128 - code
    sys.exit(code)
