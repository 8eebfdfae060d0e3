"""The per-process test program context.

A test binary owns exactly one ``TestProgram``. It holds every piece of
process-wide state of the subtest machinery: which fixture, subtest or
dynamic subtest is current, the skip-henceforth flag, the children being
tracked, the exit handler stack and the log buffer. Forked children reset
the parts that must not leak across ``fork()`` through
``reinit_after_fork``.

Test bodies never see control flow after a resolved outcome: ``skip``,
``fail`` and ``success`` raise a ``SubtestOutcome`` that the block wrappers
(``run_fixture``, ``run_subtest``, ``run_dynamic``) catch.
"""

from __future__ import annotations

import argparse
import configparser
import enum
import linecache
import logging
import os
import platform
import re
import signal
import sys
import threading
import time
from pathlib import Path
from typing import IO, Callable, NoReturn, Optional, Sequence

from .. import comms
from ..utils import Color, env_flag
from . import fork as forking
from .exit_handlers import ExitHandlerStack
from .log import LogBuffer, RuntimeLogHandler, install_handler, parse_log_level
from .outcomes import (
    IGT_EXIT_ABORT,
    IGT_EXIT_FAILURE,
    IGT_EXIT_INVALID,
    IGT_EXIT_SKIP,
    IGT_EXIT_SUCCESS,
    RESULT_CRASH,
    RESULT_FAIL,
    RESULT_SKIP,
    RESULT_SUCCESS,
    ChildExit,
    FixtureExit,
    RuntimeInvariantError,
    SubtestExit,
    exit_code_for_signal,
)
from .sigsafe import SignalSafeWriter
from .wildcard import matches

IGT_VERSION = "1.28"

_VALID_NAME = re.compile(r"[A-Za-z0-9_-]+\Z")

_RESULT_COLORS = {
    RESULT_SUCCESS: Color.GREEN,
    RESULT_SKIP: Color.YELLOW,
    RESULT_FAIL: Color.RED,
    RESULT_CRASH: Color.RED,
}


class SkipHenceforth(enum.Enum):
    CONTINUE = 0
    SKIP = 1
    FAIL = 2


def valid_subtest_name(name: str) -> bool:
    return bool(_VALID_NAME.match(name))


class _OptionParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        sys.stderr.write(f"{self.prog}: {message}\n")
        sys.exit(IGT_EXIT_INVALID)


def build_option_parser(prog: str, description: Optional[str],
                        extra: Optional[Callable[[argparse.ArgumentParser], None]] = None) -> argparse.ArgumentParser:
    parser = _OptionParser(prog=prog, description=description, add_help=False, allow_abbrev=False)
    parser.add_argument("--list-subtests", action="store_true", help="list the subtests of this binary")
    parser.add_argument("--describe", nargs="?", const="*", default=None, metavar="PATTERN",
                        help="list subtests with their descriptions")
    parser.add_argument("--run-subtest", metavar="PATTERN", help="run only the subtests matching PATTERN")
    parser.add_argument("--dynamic-subtest", metavar="PATTERN",
                        help="run only the dynamic subtests matching PATTERN")
    parser.add_argument("--help-description", action="store_true", help="print the test description")
    parser.add_argument("--debug", nargs="?", const="all", default=None, metavar="DOMAIN",
                        help="print debug output, optionally only for DOMAIN")
    parser.add_argument("--interactive-debug", nargs="?", const="all", default=None, metavar="DOMAIN",
                        help="pause at interactive debug points")
    parser.add_argument("--skip-crc-compare", action="store_true", help="do not compare CRCs")
    parser.add_argument("--trace-on-oops", action="store_true", help="dump the test state on kernel oopses")
    parser.add_argument("--device", metavar="FILTER", help="device filter to run against")
    parser.add_argument("--version", action="store_true", help="print the version and exit")
    parser.add_argument("-h", "--help", action="store_true", help="print this help and exit")
    if extra is not None:
        extra(parser)
    return parser


class TestProgram:
    """State and control flow of one test binary."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        with_subtests: bool,
        description: Optional[str] = None,
        extra_options: Optional[Callable[[argparse.ArgumentParser], None]] = None,
        environ: Optional[dict] = None,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
    ) -> None:
        self.environ = dict(os.environ if environ is None else environ)
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.argv = list(argv)
        self.program_name = Path(self.argv[0]).name if self.argv else "igt"
        self.command_str = " ".join(self.argv)
        self.description = description
        self.test_with_subtests = with_subtests

        self.in_fixture = False
        self.in_subtest: Optional[str] = None
        self.in_dynamic_subtest: Optional[str] = None
        self.dynamic_tests_executed = -1
        self.skip_subtests_henceforth = SkipHenceforth.CONTINUE
        self.skipped_one = False
        self.succeeded_one = False
        self.failed_one = False
        self.dynamic_failed_one = False
        self.exitcode = IGT_EXIT_SUCCESS
        self.run_single_subtest_found = False
        self.pending_description: Optional[str] = None
        self.thread_failed = False

        self.test_start = time.monotonic()
        self.subtest_time = self.test_start
        self.dynamic_subtest_time = self.test_start

        self.pid = os.getpid()
        self.children = forking.ChildRegistry()
        self.log_buffer = LogBuffer()
        self.log_handler = RuntimeLogHandler(self.program_name, self.log_buffer)
        self.log_handler.stdout = self.stdout
        self.log_handler.stderr = self.stderr
        self.log = install_handler(self.log_handler)
        self.writer = SignalSafeWriter(2)
        self.exit_handlers = ExitHandlerStack(self.writer)
        self.exit_handlers.crash_hook = self._crash_signal
        self.connection: Optional[comms.RunnerConnection] = None
        self.main_thread = threading.main_thread()

        self.plain_output = env_flag("IGT_PLAIN_OUTPUT", self.environ) or not _isatty(self.stdout)
        self.sentinel_on_stderr = env_flag("IGT_SENTINEL_ON_STDERR", self.environ)
        self.log_handler.threshold = parse_log_level(self.environ.get("IGT_LOG_LEVEL"))
        self.frame_dump_path = self.environ.get("IGT_FRAME_DUMP_PATH")
        self.force_driver = self.environ.get("IGT_FORCE_DRIVER")
        self.device = self.environ.get("IGT_DEVICE")
        self._load_config()

        self.options = self._parse_options(extra_options)

    # -- setup -------------------------------------------------------------

    def _load_config(self) -> None:
        path = self.environ.get("IGT_CONFIG_PATH")
        if not path:
            home = self.environ.get("HOME")
            if not home:
                return
            path = os.path.join(home, ".igtrc")
        config = configparser.ConfigParser()
        try:
            if not config.read(path):
                return
        except configparser.Error as exc:
            self.log.warning("Cannot parse %s: %s", path, exc)
            return
        if config.has_section("Common"):
            common = config["Common"]
            if self.frame_dump_path is None:
                self.frame_dump_path = common.get("FrameDumpPath")
            if self.device is None:
                self.device = common.get("Device")

    def _parse_options(self, extra: Optional[Callable[[argparse.ArgumentParser], None]]) -> argparse.Namespace:
        parser = build_option_parser(self.program_name, self.description, extra)
        options = parser.parse_args(self.argv[1:])

        if options.help:
            parser.print_help(self.stdout)
            self.stdout.flush()
            sys.exit(IGT_EXIT_SUCCESS)
        if options.version:
            self._print_version()
            sys.exit(IGT_EXIT_SUCCESS)
        if options.help_description:
            self.stdout.write(f"{self.description or ''}\n")
            self.stdout.flush()
            sys.exit(IGT_EXIT_SUCCESS)

        if options.describe is not None:
            options.list_subtests = True
        if not self.test_with_subtests and (options.run_subtest or options.list_subtests
                                            or options.dynamic_subtest):
            sys.exit(IGT_EXIT_INVALID)

        if options.debug is not None:
            self.log_handler.threshold = logging.DEBUG
            if options.debug != "all":
                self.log_handler.domain_filter = options.debug
        if options.device:
            self.device = options.device
        if self.device:
            self.environ["IGT_DEVICE"] = self.device

        self.log_handler.suppressed = options.list_subtests
        if not options.list_subtests:
            self._connect_runner()
            self.exit_handlers.install(self._common_exit_handler)
            self._print_version()
            self.kmsg(f"{self.program_name}: executing")
        return options

    def _connect_runner(self) -> None:
        self.connection = comms.RunnerConnection.from_environment(self.environ)
        if self.connection is None:
            return
        self.log_handler.connection = self.connection
        self.exit_handlers.raw_sender = self.connection.send_raw
        self.exit_handlers.prepare_signal_messages(lambda text: comms.encode(comms.log_packet(2, text)))

    def _common_exit_handler(self, sig: int) -> None:
        self.children.kill_children(signal.SIGKILL)
        self.children.reap_children()

    def _print_version(self) -> None:
        uname = platform.uname()
        text = (f"IGT-Version: {IGT_VERSION}-python ({uname.machine}) "
                f"({uname.system}: {uname.release} {uname.machine})\n")
        if self.connection is not None:
            self.connection.send(comms.versionstring_packet(text))
            return
        self.stdout.write(text)
        self.stdout.flush()

    def reinit_after_fork(self) -> None:
        self.log_handler.reinit_after_fork()
        self.main_thread = threading.main_thread()

    def set_log_prefix(self, prefix: str) -> None:
        self.log_handler.prefix = prefix

    # -- helpers -----------------------------------------------------------

    @property
    def list_subtests(self) -> bool:
        return bool(self.options.list_subtests)

    def can_fail(self) -> bool:
        return not self.test_with_subtests or self.in_fixture or self.in_subtest is not None

    def internal_assert(self, condition: bool, message: str) -> None:
        if condition:
            return
        self.log.critical("internal assertion failed: %s", message)
        raise RuntimeInvariantError(message)

    def kmsg(self, text: str) -> None:
        """Best effort note in the kernel log."""

        try:
            with open("/dev/kmsg", "w", encoding="utf-8") as handle:
                handle.write(f"<6>[IGT] {text}\n")
        except OSError:
            return

    def _bold(self, text: str) -> str:
        if self.plain_output:
            return text
        return f"{Color.BOLD}{text}{Color.RESET}"

    def _out_line(self, text: str, *, sentinel: bool = True) -> None:
        self.stdout.write(self._bold(text) + "\n")
        self.stdout.flush()
        if sentinel and self.sentinel_on_stderr:
            self.stderr.write(text + "\n")
            self.stderr.flush()

    def _announce_start(self, name: str, dynamic: bool) -> None:
        if self.connection is not None:
            packet = comms.dynamic_subtest_start_packet(name) if dynamic else comms.subtest_start_packet(name)
            self.connection.send(packet)
            return
        self._out_line(f"Starting {'dynamic subtest' if dynamic else 'subtest'}: {name}")

    def _announce_result(self, name: str, result: str, elapsed: float, dynamic: bool) -> None:
        timestr = f"{elapsed:.3f}"
        if self.connection is not None:
            builder = comms.dynamic_subtest_result_packet if dynamic else comms.subtest_result_packet
            self.connection.send(builder(name, result, timestr))
            return
        kind = "Dynamic subtest" if dynamic else "Subtest"
        if self.plain_output:
            colored = result
        else:
            colored = f"{_RESULT_COLORS.get(result, '')}{result}{Color.RESET}{Color.BOLD}"
        self.stdout.write(self._bold(f"{kind} {name}: {colored} ({timestr}s)") + "\n")
        self.stdout.flush()
        if self.sentinel_on_stderr:
            self.stderr.write(f"{kind} {name}: {result} ({timestr}s)\n")
            self.stderr.flush()

    def _dump_log_buffer(self) -> None:
        if self.in_dynamic_subtest is not None:
            header = f"Dynamic subtest {self.in_dynamic_subtest} failed.\n"
        elif self.in_subtest is not None:
            header = f"Subtest {self.in_subtest} failed.\n"
        else:
            header = f"Test {self.command_str} failed.\n"
        lines = [header]
        if not len(self.log_buffer):
            lines.append("No log.\n")
        else:
            self.log_buffer.dump(lines.append)
        if self.connection is not None:
            for line in lines:
                self.connection.send(comms.log_packet(2, line))
            return
        self.stdout.flush()
        for line in lines:
            self.stderr.write(line)
        self.stderr.flush()

    # -- fixtures and subtests ------------------------------------------------

    def describe(self, text: str) -> None:
        self.pending_description = text

    def enter_fixture(self) -> bool:
        self.internal_assert(not self.in_fixture, "nested fixtures are not allowed")
        self.internal_assert(self.in_subtest is None, "fixtures are not allowed inside subtests")
        self.internal_assert(self.test_with_subtests, "fixtures are only allowed in tests with subtests")
        if self.list_subtests:
            return False
        if self.skip_subtests_henceforth is not SkipHenceforth.CONTINUE:
            return False
        self.in_fixture = True
        return True

    def _print_description(self, name: str, body: Optional[Callable[..., None]]) -> None:
        location = ""
        if body is not None:
            code = body.__code__
            location = f" {code.co_filename}:{code.co_firstlineno}:"
        self.stdout.write(f"SUB {name}{location}\n")
        text = self.pending_description or "NO DOCUMENTATION!"
        for line in text.splitlines() or [""]:
            self.stdout.write(f"  {line}\n")
        self.stdout.write("\n")
        self.stdout.flush()

    def enter_subtest(self, name: str, body: Optional[Callable[..., None]] = None) -> bool:
        if not valid_subtest_name(name):
            self.log.critical('Invalid subtest name "%s".', name)
            raise RuntimeInvariantError(f'Invalid subtest name "{name}".')
        self.internal_assert(not self.in_fixture, "subtests are not allowed inside fixtures")
        self.internal_assert(self.in_subtest is None, "subtests can not be nested")
        self.internal_assert(self.test_with_subtests, "subtests are only allowed in tests with subtests")

        description, self.pending_description = self.pending_description, None
        if self.list_subtests:
            describe = self.options.describe
            if describe is None:
                self.stdout.write(f"{name}\n")
                self.stdout.flush()
            elif matches(name, describe):
                self.pending_description = description
                self._print_description(name, body)
                self.pending_description = None
            return False

        selection = self.options.run_subtest
        if selection and not matches(name, selection):
            return False
        if selection:
            self.run_single_subtest_found = True

        if self.skip_subtests_henceforth is not SkipHenceforth.CONTINUE:
            result = RESULT_SKIP if self.skip_subtests_henceforth is SkipHenceforth.SKIP else RESULT_FAIL
            if self.connection is not None:
                self.connection.send(comms.subtest_start_packet(name))
            self._announce_result(name, result, 0.0, dynamic=False)
            return False

        self.kmsg(f"{self.program_name}: starting subtest {name}")
        self.log.debug("Starting subtest: %s", name)
        self.log_buffer.reset()
        self.subtest_time = time.monotonic()
        self._announce_start(name, dynamic=False)
        self.in_subtest = name
        return True

    def enter_dynamic_container(self) -> None:
        self.dynamic_tests_executed = 0
        self.dynamic_failed_one = False

    def enter_dynamic_subtest(self, name: str) -> bool:
        self.internal_assert(self.in_subtest is not None and not self.in_fixture
                             and self.dynamic_tests_executed >= 0,
                             "dynamic subtests are only allowed inside subtest_with_dynamic")
        self.internal_assert(self.in_dynamic_subtest is None,
                             "dynamic subtests can not be nested in another dynamic subtest")
        if not valid_subtest_name(name):
            self.log.critical('Invalid dynamic subtest name "%s".', name)
            raise RuntimeInvariantError(f'Invalid dynamic subtest name "{name}".')

        selection = self.options.dynamic_subtest
        if selection and not matches(name, selection):
            return False

        self.kmsg(f"{self.program_name}: starting dynamic subtest {name}")
        self.log.debug("Starting dynamic subtest: %s", name)
        self.log_buffer.reset()
        self.dynamic_subtest_time = time.monotonic()
        self._announce_start(name, dynamic=True)
        self.in_dynamic_subtest = name
        self.dynamic_tests_executed += 1
        return True

    def _exit_subtest(self, result: str) -> NoReturn:
        now = time.monotonic()
        dynamic = self.in_dynamic_subtest is not None
        name = self.in_dynamic_subtest if dynamic else self.in_subtest
        assert name is not None
        started = self.dynamic_subtest_time if dynamic else self.subtest_time
        self._announce_result(name, result, max(0.0, now - started), dynamic)
        self.kmsg(f"{self.program_name}: finished subtest {name}, {result}")

        self.children.kill_children(signal.SIGKILL)
        self.children.reap_children()

        if dynamic:
            self.in_dynamic_subtest = None
            self.log_buffer.reset()
        else:
            self.in_subtest = None
            self.dynamic_tests_executed = -1
            self.dynamic_failed_one = False
        raise SubtestExit(result)

    def guarded(self, body: Callable[[], None]) -> None:
        """Run ``body``; an unexpected exception fails the current block."""

        try:
            body()
        except Exception:
            self.log.critical("Unexpected exception in %s:", self.in_dynamic_subtest or self.in_subtest
                              or "fixture", exc_info=True)
            self.fail(IGT_EXIT_FAILURE)

    def run_fixture(self, body: Callable[[], None]) -> bool:
        if not self.enter_fixture():
            return False
        try:
            self.guarded(body)
        except FixtureExit:
            pass
        finally:
            self.in_fixture = False
        return True

    def run_subtest(self, name: str, body: Callable[[], None], *, dynamic_container: bool = False) -> bool:
        if not self.enter_subtest(name, body):
            return False
        if dynamic_container:
            self.enter_dynamic_container()
        try:
            self.guarded(body)
            self.success()
        except SubtestExit:
            pass
        return True

    def run_dynamic(self, name: str, body: Callable[[], None]) -> bool:
        if not self.enter_dynamic_subtest(name):
            return False
        try:
            self.guarded(body)
            self.success()
        except SubtestExit:
            pass
        return True

    def run_group(self, body: Callable[[], None]) -> None:
        """Scope fixture skips and failures to the subtests in ``body``."""

        saved = self.skip_subtests_henceforth
        try:
            body()
        finally:
            self.skip_subtests_henceforth = saved

    # -- outcomes ------------------------------------------------------------

    def success(self) -> None:
        if self.in_subtest is not None and self.in_dynamic_subtest is None and self.dynamic_tests_executed >= 0:
            if self.dynamic_failed_one:
                self.fail(IGT_EXIT_FAILURE)
            if self.dynamic_tests_executed == 0:
                self.skip("No dynamic tests executed.")
        if self.in_dynamic_subtest is None:
            self.succeeded_one = True
        if self.in_subtest is not None:
            self._exit_subtest(RESULT_SUCCESS)

    def skip(self, message: str = "") -> NoReturn:
        self.skipped_one = True
        self.internal_assert(not self.children.test_child, "skips are not allowed in forks")
        if message and not self.list_subtests:
            self.log.info(message)

        if self.children.multi_fork_child:
            raise ChildExit(IGT_EXIT_SKIP)
        if self.in_dynamic_subtest is not None:
            self.dynamic_tests_executed -= 1
            self._exit_subtest(RESULT_SKIP)
        if self.in_subtest is not None:
            self._exit_subtest(RESULT_SKIP)
        if self.test_with_subtests:
            self.internal_assert(self.in_fixture, "skipping is only allowed in fixtures, subtests or simple tests")
            self.skip_subtests_henceforth = SkipHenceforth.SKIP
            raise FixtureExit(RESULT_SKIP)
        self.exitcode = IGT_EXIT_SKIP
        self.exit()

    def fail(self, exitcode: int = IGT_EXIT_FAILURE) -> NoReturn:
        self.internal_assert(exitcode not in (IGT_EXIT_SUCCESS, IGT_EXIT_SKIP),
                             "fail() needs a failure exit code")
        if threading.current_thread() is not self.main_thread:
            self.thread_failed = True
            raise SystemExit(exitcode)

        container_failing = (self.in_dynamic_subtest is None and self.dynamic_tests_executed >= 0)
        if self.in_dynamic_subtest is not None:
            self.dynamic_failed_one = True
        else:
            # A dynamic container only fails through its children.
            self.internal_assert(not container_failing or self.dynamic_failed_one,
                                 "explicit failure inside a dynamic subtest container")
            if not self.failed_one:
                self.exitcode = exitcode
            self.failed_one = True

        if self.children.test_child:
            raise ChildExit(exitcode)

        if container_failing and self.in_subtest is not None:
            # The failing child already dumped its log.
            self.log_buffer.reset()
        else:
            self._dump_log_buffer()

        if self.children.multi_fork_child:
            raise ChildExit(exitcode)

        if self.in_subtest is not None:
            self._exit_subtest(RESULT_FAIL)

        self.internal_assert(self.can_fail(),
                             "failing is only allowed in fixtures, subtests and simple tests")
        if self.in_fixture:
            self.skip_subtests_henceforth = SkipHenceforth.FAIL
            raise FixtureExit(RESULT_FAIL)
        self.exit()

    def fail_assert(self, message: str, *, depth: int = 2) -> NoReturn:
        """Log where an assertion failed, then ``fail``."""

        frame = sys._getframe(depth)
        source = linecache.getline(frame.f_code.co_filename, frame.f_lineno).strip()
        self.log.critical("Test assertion failure function %s, file %s:%d:",
                          frame.f_code.co_name, frame.f_code.co_filename, frame.f_lineno)
        self.log.critical("Failed assertion: %s", source or "<unknown>")
        if message:
            self.log.critical("%s", message)
        self.fail(IGT_EXIT_FAILURE)

    def skip_check(self, message: str, *, depth: int = 2) -> NoReturn:
        frame = sys._getframe(depth)
        source = linecache.getline(frame.f_code.co_filename, frame.f_lineno).strip()
        self.skip(f"Test requirement not met in function {frame.f_code.co_name}, file "
                  f"{frame.f_code.co_filename}:{frame.f_lineno}:\n"
                  f"Test requirement: {source or '<unknown>'}\n{message}")

    def abort(self, message: str = "", *, depth: int = 2) -> NoReturn:
        frame = sys._getframe(depth)
        self.log.critical("Test abort in function %s, file %s:%d:",
                          frame.f_code.co_name, frame.f_code.co_filename, frame.f_lineno)
        if message:
            self.log.critical("%s", message)
        self.children.kill_children(signal.SIGKILL)
        self.writer.backtrace()
        self._dump_log_buffer()
        self._flush()
        sys.exit(IGT_EXIT_ABORT)

    def _crash_signal(self, signum: int) -> None:
        if os.getpid() != self.pid:
            # Forked workers die from the signal; their parent reports it.
            return
        if not self.failed_one:
            self.exitcode = exit_code_for_signal(signum)
        self.failed_one = True
        if self.in_dynamic_subtest is not None:
            self.dynamic_failed_one = True
        if self.in_subtest is not None:
            self._exit_subtest(RESULT_CRASH)

    def thread_assert_no_failures(self) -> None:
        if self.thread_failed:
            self.thread_failed = False
            self.log.critical("Failure in a thread!")
            self.fail(IGT_EXIT_FAILURE)

    def interactive_debug(self, var: str, message: str) -> None:
        """Pause until enter is pressed if ``--interactive-debug`` selects ``var``."""

        selected = self.options.interactive_debug
        if not selected or not _isatty(sys.stdin):
            return
        if selected != "all" and selected not in var.split(","):
            return
        self.log.info("%s", message)
        self.log.info("Press enter to continue")
        sys.stdin.readline()

    # -- exit ----------------------------------------------------------------

    def _flush(self) -> None:
        for stream in (self.stdout, self.stderr):
            try:
                stream.flush()
            except (OSError, ValueError):
                continue

    def exit(self) -> NoReturn:
        if not self.test_with_subtests:
            self.thread_assert_no_failures()

        if self.options.run_subtest and not self.run_single_subtest_found:
            self.log_handler.suppressed = False
            self.log.critical("Unknown subtest: %s", self.options.run_subtest)
            self._flush()
            sys.exit(IGT_EXIT_INVALID)

        if self.list_subtests:
            self._flush()
            sys.exit(IGT_EXIT_SUCCESS)

        if self.test_with_subtests and not self.failed_one:
            self.exitcode = IGT_EXIT_SUCCESS if self.succeeded_one else IGT_EXIT_SKIP

        self.kmsg(f"{self.command_str}: exiting, ret={self.exitcode}")
        self.log.debug("Exiting with status code %d", self.exitcode)

        self.children.kill_children(signal.SIGKILL)
        self.children.reap_children()

        if not self.test_with_subtests:
            elapsed = max(0.0, time.monotonic() - self.subtest_time)
            if self.exitcode == IGT_EXIT_SUCCESS:
                result = RESULT_SUCCESS
            elif self.exitcode == IGT_EXIT_SKIP:
                result = RESULT_SKIP
            else:
                result = RESULT_FAIL
            if self.children.multi_fork_child:
                raise ChildExit(self.exitcode)
            self._out_line(f"{result} ({elapsed:.3f}s)", sentinel=False)

        self._flush()
        sys.exit(self.exitcode)

    def internal_error_exit(self) -> NoReturn:
        """Terminate after the runtime itself was misused."""

        self.children.kill_children(signal.SIGKILL)
        self.children.reap_children()
        self._flush()
        sys.exit(IGT_EXIT_FAILURE)


def _isatty(stream: object) -> bool:
    try:
        return bool(stream.isatty())  # type: ignore[attr-defined]
    except (AttributeError, ValueError):
        return False


_current: Optional[TestProgram] = None


def current() -> TestProgram:
    if _current is None:
        raise RuntimeInvariantError("the test program has not been initialized")
    return _current


def init_program(argv: Optional[Sequence[str]] = None, **kwargs) -> TestProgram:
    """Create the process-wide ``TestProgram`` from the command line."""

    global _current
    _current = TestProgram(list(sys.argv if argv is None else argv), **kwargs)
    return _current
