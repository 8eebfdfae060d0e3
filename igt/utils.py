from __future__ import annotations

import os
from typing import List, Mapping, Optional, Sequence, Tuple

import psutil


class Color:
    """ANSI color codes for terminal output"""

    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""

    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.2f}s"


def format_size(num_bytes: Optional[int]) -> str:
    """Return a human-friendly representation of ``num_bytes``."""

    if num_bytes is None or num_bytes < 0:
        return "unknown"

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024.0:
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} EB"


def env_flag(name: str, environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return True if the specified environment variable is truthy."""

    value = (os.environ if environ is None else environ).get(name)
    if value is None:
        return False

    normalized = value.strip().lower()
    if not normalized:
        return False

    return normalized not in {"0", "false", "no", "off"}


def find_lingering_processes(prefixes: Sequence[str]) -> List[Tuple[int, str]]:
    """Return processes whose name, or a program in their command line,
    starts with one of ``prefixes``."""

    normalized_prefixes = tuple(prefixes)
    matches: List[Tuple[int, str]] = []
    for proc in psutil.process_iter(["name", "cmdline"]):
        name = proc.info.get("name") or ""
        # Interpreted test binaries show up under their interpreter's name.
        candidates = [name] + [os.path.basename(arg) for arg in (proc.info.get("cmdline") or [])[:2]]
        if any(candidate.startswith(normalized_prefixes) for candidate in candidates if candidate):
            matches.append((proc.pid, name))
    return matches
