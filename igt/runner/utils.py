from __future__ import annotations

import builtins
import sys
from functools import partial
from typing import IO, Optional

from ..utils import Color, env_flag

LOG_LEVELS = ("quiet", "normal", "verbose")

_print = partial(builtins.print, end="", flush=True)


def use_color(stream: IO[str]) -> bool:
    """Return True when ANSI colors should be written to ``stream``."""

    if env_flag("IGT_PLAIN_OUTPUT"):
        return False
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def colorize(text: str, color: Optional[str], stream: IO[str]) -> str:
    if not color or not use_color(stream):
        return text
    return f"{color}{text}{Color.RESET}"


def outf(text: str, color: Optional[str] = None) -> None:
    """Write runner progress to stdout."""

    _print(colorize(text, color, sys.stdout), file=sys.stdout)


def errf(text: str, color: Optional[str] = Color.RED) -> None:
    """Write a runner problem to stderr."""

    _print(colorize(text, color, sys.stderr), file=sys.stderr)
