"""Output primitives for use inside signal handlers.

Nothing here goes through ``sys.stderr`` or the logging machinery: the
handler may have interrupted either of them while they held a lock. Text is
encoded up front and handed to ``os.write`` directly.
"""

from __future__ import annotations

import errno
import faulthandler
import os
from typing import Dict


class SignalSafeWriter:
    """Minimal writer around a raw file descriptor."""

    def __init__(self, fd: int = 2) -> None:
        self.fd = fd
        self._encoded: Dict[str, bytes] = {}

    def prepare(self, *texts: str) -> None:
        """Encode ``texts`` ahead of time so ``write_text`` never encodes."""

        for text in texts:
            self._encoded[text] = text.encode("ascii", "replace")

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.fd, view)
            except OSError as exc:
                if exc.errno == errno.EINTR:
                    continue
                return
            view = view[written:]

    def write_text(self, text: str) -> None:
        data = self._encoded.get(text)
        if data is None:
            data = text.encode("ascii", "replace")
        self.write(data)

    def backtrace(self) -> None:
        """Dump the Python stacks of every thread to the descriptor."""

        try:
            faulthandler.dump_traceback(self.fd, all_threads=True)
        except (OSError, ValueError, RuntimeError):
            self.write(b"(backtrace unavailable)\n")
