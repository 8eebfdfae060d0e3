from __future__ import annotations

import collections
import logging
import os
import sys
import threading
from typing import IO, Callable, Deque, Dict, List, Optional

from ..comms import RunnerConnection, log_packet

LOG_BUFFER_SIZE = 256
ROOT_LOGGER = "igt"

# Threshold names accepted by IGT_LOG_LEVEL.
LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "critical": logging.CRITICAL,
    "none": logging.CRITICAL + 10,
}

_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARNING",
    logging.ERROR: "WARNING",
    logging.CRITICAL: "CRITICAL",
}


def parse_log_level(value: Optional[str], default: int = logging.INFO) -> int:
    """Return the logging level named by an ``IGT_LOG_LEVEL`` value."""

    if not value:
        return default
    return LOG_LEVELS.get(value.strip().lower(), default)


def get_logger(domain: Optional[str] = None) -> logging.Logger:
    """Return the logger for ``domain``; None is the test's own domain."""

    if not domain:
        return logging.getLogger(ROOT_LOGGER)
    return logging.getLogger(f"{ROOT_LOGGER}.{domain}")


class LogBuffer:
    """Ring of the most recent log lines, replayed when a subtest fails."""

    def __init__(self, size: int = LOG_BUFFER_SIZE) -> None:
        self._entries: Deque[str] = collections.deque(maxlen=size)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, line: str) -> None:
        with self._lock:
            self._entries.append(line)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def entries(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def dump(self, write: Callable[[str], None]) -> None:
        """Write the buffered lines between debug markers and empty the ring."""

        with self._lock:
            lines = list(self._entries)
            self._entries.clear()

        write("**** DEBUG ****\n")
        for line in lines:
            write(line if line.endswith("\n") else line + "\n")
        write("****  END  ****\n")

    def reinit_after_fork(self) -> None:
        # Another thread may have held the lock when fork() happened.
        self._lock = threading.Lock()


class RuntimeLogHandler(logging.Handler):
    """Format records the way test output is parsed and route them.

    Every record lands in the log buffer. Records at or above ``threshold``
    are also written to stdout (below WARNING) or stderr, or sent to the
    runner when a comms connection is attached.
    """

    def __init__(self, program_name: str, buffer: LogBuffer) -> None:
        super().__init__(logging.DEBUG)
        self.program_name = program_name
        self.buffer = buffer
        self.threshold = logging.INFO
        self.domain_filter: Optional[str] = None
        self.prefix = ""
        self.connection: Optional[RunnerConnection] = None
        self.suppressed = False
        self.stdout: IO[str] = sys.stdout
        self.stderr: IO[str] = sys.stderr
        self.main_thread = threading.main_thread()

    def reinit_after_fork(self) -> None:
        self.buffer.reinit_after_fork()
        self.main_thread = threading.main_thread()

    def _domain(self, record: logging.LogRecord) -> Optional[str]:
        if record.name == ROOT_LOGGER or not record.name.startswith(ROOT_LOGGER + "."):
            return None
        return record.name[len(ROOT_LOGGER) + 1:]

    def _filtered_out(self, domain: Optional[str], level: int) -> bool:
        if level < self.threshold:
            return True
        if self.domain_filter and level <= logging.DEBUG:
            if self.domain_filter == "all":
                return False
            if domain is None:
                return self.domain_filter != "application"
            return self.domain_filter != domain
        return False

    def format_line(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            message = message.rstrip("\n") + "\n" + logging.Formatter().formatException(record.exc_info)
        if not message.endswith("\n"):
            message += "\n"
        domain = self._domain(record)
        thread = ""
        if threading.current_thread() is not self.main_thread:
            thread = f"[thread:{threading.get_native_id()}] "
        level_name = _LEVEL_NAMES.get(record.levelno, record.levelname)
        domain_part = f"{domain}-" if domain else ""
        return f"{self.prefix}({self.program_name}:{os.getpid()}) {thread}{domain_part}{level_name}: {message}"

    def emit(self, record: logging.LogRecord) -> None:
        if self.suppressed and record.levelno <= logging.WARNING:
            return
        try:
            line = self.format_line(record)
            self.buffer.append(line)

            domain = self._domain(record)
            if self._filtered_out(domain, record.levelno):
                return

            if record.levelno == logging.INFO:
                text = record.getMessage()
                line = self.prefix + (text if text.endswith("\n") else text + "\n")

            to_stderr = record.levelno >= logging.WARNING
            if self.connection is not None:
                self.connection.send(log_packet(2 if to_stderr else 1, line))
                return
            if to_stderr:
                self.stdout.flush()
                self.stderr.write(line)
                self.stderr.flush()
            else:
                self.stdout.write(line)
                self.stdout.flush()
        except Exception:
            self.handleError(record)


def install_handler(handler: RuntimeLogHandler) -> logging.Logger:
    """Attach ``handler`` as the only handler of the runtime's logger tree."""

    logger = logging.getLogger(ROOT_LOGGER)
    for existing in list(logger.handlers):
        if isinstance(existing, RuntimeLogHandler):
            logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger
