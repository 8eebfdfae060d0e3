from __future__ import annotations

from .base import PlatformSupport
from .posix import PosixPlatformSupport


def get_platform_support(*, verbose: bool = False) -> PlatformSupport:
    """Return the platform adapter for the current host."""

    return PosixPlatformSupport(verbose=verbose)


__all__ = [
    "PlatformSupport",
    "get_platform_support",
]
