from __future__ import annotations

import atexit
import os
import signal
import threading
from typing import Callable, Dict, List, Optional

from .outcomes import RuntimeInvariantError, exit_code_for_signal
from .sigsafe import SignalSafeWriter

MAX_EXIT_HANDLERS = 10

ExitHandler = Callable[[int], None]

# Signals that run the exit handlers before the process dies. The silent ones
# are ordinary ways to stop a test and are not worth a backtrace.
SILENT_SIGNALS = (signal.SIGINT, signal.SIGHUP, signal.SIGPIPE, signal.SIGTERM)
NAMED_SIGNALS = (signal.SIGQUIT, signal.SIGABRT, signal.SIGSEGV, signal.SIGBUS, signal.SIGFPE)
HANDLED_SIGNALS = SILENT_SIGNALS + NAMED_SIGNALS
CRASH_SIGNALS = frozenset({signal.SIGILL, signal.SIGBUS, signal.SIGFPE, signal.SIGSEGV})


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class ExitHandlerStack:
    """Cleanup callbacks run once, at exit or on a fatal signal.

    Handlers run most recently installed first and receive the signal
    number, or 0 for a normal exit. Installing the first handler also hooks
    the fatal signals and ``atexit``.
    """

    def __init__(self, writer: Optional[SignalSafeWriter] = None) -> None:
        self.writer = writer or SignalSafeWriter(2)
        self.disabled = False
        self.crash_hook: Optional[Callable[[int], None]] = None
        self.raw_sender: Optional[Callable[[bytes], None]] = None
        self._handlers: List[ExitHandler] = []
        self._lock = threading.RLock()
        self._hooked = False
        self._atexit_registered = False
        self._messages: Dict[int, str] = {}
        self._packets: Dict[int, bytes] = {}

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, fn: object) -> bool:
        return fn in self._handlers

    def install(self, fn: ExitHandler) -> None:
        with self._lock:
            if fn in self._handlers:
                return
            if len(self._handlers) >= MAX_EXIT_HANDLERS:
                raise RuntimeInvariantError(f"Too many exit handlers (max {MAX_EXIT_HANDLERS})")
            self._handlers.append(fn)
            first = len(self._handlers) == 1

        if first and not self._hooked:
            self._hook_signals()

    def prepare_signal_messages(self, encode_packet: Optional[Callable[[str], bytes]] = None) -> None:
        """Pre-render the per-signal messages so the handler never formats."""

        for signum in NAMED_SIGNALS:
            text = f"Received signal {signal_name(signum)}.\n"
            self._messages[signum] = text
            self.writer.prepare(text)
            if encode_packet is not None:
                self._packets[signum] = encode_packet(text)

    def _hook_signals(self) -> None:
        if not self._messages:
            self.prepare_signal_messages()
        installed: List[int] = []
        try:
            for signum in HANDLED_SIGNALS:
                signal.signal(signum, self._fatal_signal)
                installed.append(signum)
        except (OSError, ValueError):
            # Only the main thread may install handlers.
            for signum in installed:
                signal.signal(signum, signal.SIG_DFL)
            return
        if not self._atexit_registered:
            atexit.register(self._atexit)
            self._atexit_registered = True
        self._hooked = True

    def restore_signals(self) -> None:
        for signum in HANDLED_SIGNALS:
            try:
                signal.signal(signum, signal.SIG_DFL)
            except (OSError, ValueError):
                continue
        self._hooked = False

    def run(self, sig: int) -> None:
        """Call every handler once, newest first."""

        # Reentrant: a signal may land while this thread holds the lock in install().
        with self._lock:
            handlers, self._handlers = self._handlers, []
        for fn in reversed(handlers):
            fn(sig)

    def reset(self) -> None:
        """Forget all handlers; used in freshly forked children."""

        self._handlers = []
        self._lock = threading.RLock()

    def _atexit(self) -> None:
        self.restore_signals()
        if not self.disabled:
            self.run(0)

    def _fatal_signal(self, signum: int, frame: object) -> None:
        message = self._messages.get(signum)
        if message is not None:
            packet = self._packets.get(signum)
            if packet is not None and self.raw_sender is not None:
                self.raw_sender(packet)
            else:
                self.writer.write_text(message)
            self.writer.backtrace()

        if signum in CRASH_SIGNALS and self.crash_hook is not None:
            # May not return: inside a subtest the crash resolves it.
            self.crash_hook(signum)

        self.restore_signals()
        self.run(signum)
        signal.raise_signal(signum)
        os._exit(exit_code_for_signal(signum))
