"""Subtest selection patterns.

A selection is a comma separated list of shell style wildcards. A pattern
prefixed with ``!`` excludes, and the last pattern that matches a name decides
whether the name is selected::

    >>> matches("basic-render", "basic*,!basic-render*")
    False
"""

from __future__ import annotations

import fnmatch
import re
from functools import lru_cache
from typing import List, Tuple


@lru_cache(maxsize=256)
def _compile(pattern: str) -> "re.Pattern[str]":
    # Character classes use ^ for negation, fnmatch expects !
    translated = pattern.replace("[^", "[!")
    return re.compile(fnmatch.translate(translated))


def split_patterns(selection: str) -> List[Tuple[bool, str]]:
    """Return ``(negated, pattern)`` pairs for ``selection``."""

    patterns: List[Tuple[bool, str]] = []
    for raw in selection.split(","):
        if raw.startswith("!"):
            patterns.append((True, raw[1:]))
        else:
            patterns.append((False, raw))
    return patterns


def matches(name: str, selection: str) -> bool:
    """Return True if ``name`` is selected by ``selection``."""

    selected = False
    for negated, pattern in split_patterns(selection):
        if _compile(pattern).match(name):
            selected = not negated
    return selected
