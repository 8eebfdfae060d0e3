"""Sequential execution of a job list into a results directory.

Every job gets a numbered directory holding ``journal.txt`` (names of the
subtests as they start, then an ``exit:`` or ``timeout:`` line), the
captured ``out.txt``/``err.txt``, kernel messages in ``dmesg.txt`` and, when
the comms socket is used, the raw packet dump ``comms``. A run can be
resumed from whatever is on disk.
"""

from __future__ import annotations

import os
import re
import shutil
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Set, Tuple

from .. import comms
from ..core.outcomes import IGT_EXIT_ABORT
from ..utils import Color, env_flag, format_duration, format_size
from .job_list import JobList, JobListEntry, read_job_list, serialize_job_list
from .platform import PlatformSupport, get_platform_support
from .settings import (
    ABORT_LOCKDEP,
    ABORT_TAINT,
    LogLevel,
    Settings,
    read_settings_from_dir,
    serialize_settings,
    validate_settings,
)
from .utils import errf, outf

JOURNAL_FILE = "journal.txt"
OUT_FILE = "out.txt"
ERR_FILE = "err.txt"
DMESG_FILE = "dmesg.txt"
COMMS_FILE = "comms"
ABORTED_FILE = "aborted.txt"
UNAME_FILE = "uname.txt"
STARTTIME_FILE = "starttime.txt"
ENDTIME_FILE = "endtime.txt"

ENV_DISABLE_SOCKET = "IGT_RUNNER_DISABLE_SOCKET_COMMUNICATION"

# Seconds to wait after SIGQUIT before SIGKILL, and after SIGKILL before giving up.
SIGQUIT_GRACE = 120.0
SIGKILL_GRACE = 20.0
MONITOR_INTERVAL = 0.5
READER_JOIN_TIMEOUT = 5.0

_ANSI = re.compile(r"\x1b\[[0-9;]*m")
_STARTING_SUBTEST = "Starting subtest: "
_STARTING_DYNAMIC = "Starting dynamic subtest: "
_SUBTEST_RESULT = re.compile(r"^Subtest (\S+): ")


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


@dataclass
class ExecuteState:
    results_dir: Path
    next: int = 0
    dry: bool = False
    time_left: float = 0.0


# -- resume -------------------------------------------------------------------


@dataclass
class JobProgress:
    """What one job directory says about how far its execution got."""

    started: List[str] = field(default_factory=list)
    exited: bool = False
    timed_out: bool = False

    def start(self, name: str) -> None:
        if name not in self.started:
            self.started.append(name)

    def merge(self, other: "JobProgress") -> "JobProgress":
        merged = JobProgress(list(self.started), self.exited or other.exited, self.timed_out or other.timed_out)
        for name in other.started:
            merged.start(name)
        return merged


# Abstract job events shared by both on-disk encodings.
EVENT_START = "start"
EVENT_EXIT = "exit"
EVENT_TIMEOUT = "timeout"


def journal_events(text: str) -> Iterable[Tuple[str, str]]:
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("exit:"):
            yield EVENT_EXIT, line
        elif line.startswith("timeout:"):
            yield EVENT_TIMEOUT, line
        else:
            yield EVENT_START, line


def comms_events(packets: Iterable[comms.Packet]) -> Iterable[Tuple[str, str]]:
    timed_out = False
    for packet in packets:
        if packet.type == comms.PacketType.SUBTEST_START:
            timed_out = False
            yield EVENT_START, packet.name
        elif packet.type == comms.PacketType.RESULT_OVERRIDE and packet.result == "timeout":
            timed_out = True
        elif packet.type == comms.PacketType.EXIT:
            yield (EVENT_TIMEOUT if timed_out else EVENT_EXIT), packet.timeused
            timed_out = False


def reduce_events(events: Iterable[Tuple[str, str]]) -> JobProgress:
    progress = JobProgress()
    for kind, value in events:
        if kind == EVENT_START:
            progress.start(value)
        elif kind == EVENT_EXIT:
            progress.exited = True
        elif kind == EVENT_TIMEOUT:
            progress.timed_out = True
    return progress


def read_job_progress(job_dir: Path) -> Optional[JobProgress]:
    """Return the merged journal and comms progress of ``job_dir``, if any was recorded."""

    sources: List[JobProgress] = []
    journal = job_dir / JOURNAL_FILE
    if journal.exists():
        sources.append(reduce_events(journal_events(journal.read_text(encoding="utf-8", errors="replace"))))
    dump = job_dir / COMMS_FILE
    if dump.exists():
        try:
            sources.append(reduce_events(comms_events(comms.read_dump(dump))))
        except comms.CommsParseError as exc:
            errf(f"Ignoring unreadable comms dump {dump}: {exc}\n")
    if not sources:
        return None
    progress = sources[0]
    for other in sources[1:]:
        progress = progress.merge(other)
    return progress


def prune_entry(entry: JobListEntry, progress: JobProgress) -> bool:
    """Exclude the already started subtests from ``entry``.

    Return True when the entry needs no further execution.
    """

    old_count = len(entry.subtests)
    if progress.started and not entry.subtests:
        entry.subtests.append("*")
    for name in progress.started:
        entry.subtests.append(f"!{name}")
    pruned = len(progress.started)
    return progress.exited or (old_count > 0 and pruned >= old_count)


def _numbered_dirs(results_dir: Path) -> List[int]:
    numbers = []
    for child in results_dir.iterdir():
        if child.is_dir() and child.name.isdigit():
            numbers.append(int(child.name))
    return sorted(numbers)


def _resume_position(results_dir: Path, job_list: JobList) -> int:
    numbers = [n for n in _numbered_dirs(results_dir) if n < len(job_list)]
    if not numbers:
        return 0
    last = numbers[-1]
    progress = read_job_progress(results_dir / str(last))
    if progress is None:
        return last
    complete = prune_entry(job_list[last], progress)
    if complete or not progress.started:
        # Nothing to resume from in this job, the next one is up.
        return last + 1
    return last


def initialize_execute_state(settings: Settings, job_list: JobList) -> ExecuteState:
    """Prepare a fresh results directory for ``job_list``."""

    validate_settings(settings)
    results_dir = Path(settings.results_path)
    if settings.overwrite and results_dir.exists():
        clear_directory(results_dir)
    serialize_settings(settings, results_dir, sync=settings.sync)
    serialize_job_list(job_list, results_dir, overwrite=settings.overwrite, sync=settings.sync)
    return ExecuteState(results_dir=results_dir, next=0, dry=settings.dry_run, time_left=settings.overall_timeout)


def initialize_execute_state_from_resume(results_dir: Path) -> Tuple[ExecuteState, Settings, JobList]:
    """Rebuild the state of an interrupted run from ``results_dir``."""

    results_dir = Path(results_dir)
    settings = replace(read_settings_from_dir(results_dir), dry_run=False)
    job_list = read_job_list(results_dir)
    state = ExecuteState(results_dir=results_dir, next=_resume_position(results_dir, job_list),
                         time_left=settings.overall_timeout)
    return state, settings, job_list


def clear_directory(path: Path) -> None:
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


# -- one job ------------------------------------------------------------------


def entry_display_name(entry: JobListEntry) -> str:
    if not entry.subtests:
        return entry.binary
    return f"{entry.binary} ({','.join(entry.subtests)})"


def build_argv(settings: Settings, entry: JobListEntry) -> List[str]:
    argv = [str(Path(settings.test_root) / entry.binary)]
    if not entry.subtests:
        return argv
    first = entry.subtests[0]
    if "@" in first:
        subtest, _, dynamic = first.partition("@")
        return argv + ["--run-subtest", subtest, "--dynamic-subtest", dynamic]
    return argv + ["--run-subtest", ",".join(entry.subtests)]


class _JobFiles:
    """Output files of one job, shared by the reader threads."""

    def __init__(self, job_dir: Path, *, sync: bool, use_comms: bool) -> None:
        self.sync = sync
        self.lock = threading.Lock()
        self.journal = (job_dir / JOURNAL_FILE).open("a", encoding="utf-8")
        self.out: BinaryIO = (job_dir / OUT_FILE).open("ab")
        self.err: BinaryIO = (job_dir / ERR_FILE).open("ab")
        self.dmesg = (job_dir / DMESG_FILE).open("a", encoding="utf-8")
        self.comms: Optional[BinaryIO] = (job_dir / COMMS_FILE).open("ab") if use_comms else None
        self.journaled: Set[str] = set()
        self.bytes_written = 0

    def _flush(self, handle: BinaryIO) -> None:
        handle.flush()
        if self.sync:
            os.fsync(handle.fileno())

    def write_output(self, stream: BinaryIO, data: bytes) -> None:
        with self.lock:
            stream.write(data)
            self._flush(stream)
            self.bytes_written += len(data)

    def journal_start(self, name: str) -> bool:
        with self.lock:
            if name in self.journaled:
                return False
            self.journaled.add(name)
            self.journal.write(f"{name}\n")
            self._flush(self.journal)  # type: ignore[arg-type]
            return True

    def journal_end(self, line: str) -> None:
        with self.lock:
            self.journal.write(line)
            self._flush(self.journal)  # type: ignore[arg-type]

    def write_packet(self, data: bytes) -> None:
        if self.comms is None:
            return
        with self.lock:
            comms.write_packet_with_canary(self.comms, data, sync=self.sync)

    def write_dmesg(self, records: Iterable[str]) -> None:
        with self.lock:
            for record in records:
                self.dmesg.write(record if record.endswith("\n") else record + "\n")
                self.bytes_written += len(record)
            self._flush(self.dmesg)  # type: ignore[arg-type]

    def close(self) -> None:
        for handle in (self.journal, self.out, self.err, self.dmesg, self.comms):
            if handle is not None:
                handle.close()


@dataclass
class _Activity:
    last_output: float
    last_subtest: float
    lock: threading.Lock = field(default_factory=threading.Lock)

    def touch(self, *, subtest: bool = False) -> None:
        now = time.monotonic()
        with self.lock:
            self.last_output = now
            if subtest:
                self.last_subtest = now


@dataclass
class JobOutcome:
    """How a single job ended: ``result`` > 0 timed out, < 0 must stop the run."""

    result: int = 0
    abort_reason: Optional[str] = None
    time_spent: float = 0.0


class JobRunner:
    """Run one job list entry and record everything it does."""

    def __init__(self, settings: Settings, platform: PlatformSupport, *, index: int, total: int,
                 results_dir: Path, kmsg_fd: Optional[int], watchdog_fd: Optional[int],
                 time_left: float, hangup: threading.Event) -> None:
        self.settings = settings
        self.platform = platform
        self.index = index
        self.total = total
        self.results_dir = results_dir
        self.kmsg_fd = kmsg_fd
        self.watchdog_fd = watchdog_fd
        self.time_left = time_left
        self.hangup = hangup
        self.use_socket = not env_flag(ENV_DISABLE_SOCKET)
        self.verbose = settings.log_level >= LogLevel.VERBOSE

    # Reader threads.

    def _handle_stdout_line(self, files: _JobFiles, activity: _Activity, line: bytes) -> None:
        text = strip_ansi(line.decode("utf-8", "replace")).rstrip("\n")
        if text.startswith(_STARTING_SUBTEST):
            name = text[len(_STARTING_SUBTEST):].strip()
            files.journal_start(name)
            activity.touch(subtest=True)
            if self.verbose:
                outf(f"Starting subtest: {name}\n")
            return
        if text.startswith(_STARTING_DYNAMIC):
            activity.touch(subtest=True)
            if self.verbose:
                outf(f"{text}\n")
            return
        match = _SUBTEST_RESULT.match(text)
        if match:
            files.journal_start(match.group(1))
            if self.verbose:
                outf(f"{text}\n")
        elif text.startswith("Dynamic subtest ") and self.verbose:
            outf(f"{text}\n")

    def _read_pipe(self, pipe: BinaryIO, files: _JobFiles, stream: BinaryIO,
                   activity: _Activity, parse: bool) -> None:
        try:
            for line in iter(pipe.readline, b""):
                files.write_output(stream, line)
                activity.touch()
                if parse:
                    self._handle_stdout_line(files, activity, line)
        except (OSError, ValueError):
            # The pipe may be closed from the monitor during shutdown.
            pass
        finally:
            pipe.close()

    def _handle_packet(self, files: _JobFiles, activity: _Activity, packet: comms.Packet) -> None:
        kind = packet.type
        if kind == comms.PacketType.LOG:
            stream = files.err if packet.stream == 2 else files.out
            files.write_output(stream, packet.text.encode("utf-8", "replace"))
            return
        if kind == comms.PacketType.VERSIONSTRING:
            files.write_output(files.out, packet.text.encode("utf-8", "replace"))
            return

        line = None
        if kind == comms.PacketType.SUBTEST_START:
            files.journal_start(packet.name)
            activity.touch(subtest=True)
            line = f"Starting subtest: {packet.name}\n"
        elif kind == comms.PacketType.SUBTEST_RESULT:
            files.journal_start(packet.name)
            line = f"Subtest {packet.name}: {packet.result} ({packet.timeused}s)\n"
        elif kind == comms.PacketType.DYNAMIC_SUBTEST_START:
            activity.touch(subtest=True)
            line = f"Starting dynamic subtest: {packet.name}\n"
        elif kind == comms.PacketType.DYNAMIC_SUBTEST_RESULT:
            line = f"Dynamic subtest {packet.name}: {packet.result} ({packet.timeused}s)\n"
        if line is None:
            return
        data = line.encode("utf-8")
        files.write_output(files.out, data)
        files.write_output(files.err, data)
        if self.verbose:
            outf(line)

    def _read_socket(self, sock: socket.socket, files: _JobFiles, activity: _Activity) -> None:
        peek = bytearray(1)
        try:
            while True:
                # MSG_TRUNC makes the peek report the full size of the pending packet.
                size = sock.recv_into(peek, 1, socket.MSG_PEEK | socket.MSG_TRUNC)
                if size == 0:
                    break
                buf = bytearray(size)
                received = sock.recv_into(buf, size)
                data = bytes(buf[:received])
                activity.touch()
                files.write_packet(data)
                try:
                    packet = comms.decode(data)
                except comms.CommsParseError as exc:
                    errf(f"Invalid comms packet: {exc}\n")
                    continue
                self._handle_packet(files, activity, packet)
        except OSError:
            pass
        finally:
            sock.close()

    # Monitoring.

    def _need_to_timeout(self, killed: int, tainted: bool, activity: _Activity,
                         time_killed: float, disk_usage: int) -> Optional[Tuple[str, bool]]:
        """Return ``(reason, is_timeout)`` when the job must be (further) killed."""

        now = time.monotonic()
        settings = self.settings
        if killed:
            grace = SIGKILL_GRACE if killed == signal.SIGKILL else SIGQUIT_GRACE
            if (killed == signal.SIGKILL and tainted) or now - time_killed > grace:
                return "Timeout. Killing the current test with SIGKILL.\n", True
            return None

        decrease = 1
        if settings.abort_mask & ABORT_TAINT and tainted:
            if not (settings.per_test_timeout or settings.inactivity_timeout):
                return "Killing the test because the kernel is tainted.\n", False
            decrease = 10

        with activity.lock:
            since_subtest = now - activity.last_subtest
            since_output = now - activity.last_output

        if settings.per_test_timeout and since_subtest > settings.per_test_timeout / decrease:
            if decrease > 1:
                return "Killing the test because the kernel is tainted.\n", False
            self.platform.show_kernel_task_state()
            return "Per-test timeout exceeded. Killing the current test with SIGQUIT.\n", True
        if settings.inactivity_timeout and since_output > settings.inactivity_timeout / decrease:
            if decrease > 1:
                return "Killing the test because the kernel is tainted.\n", False
            self.platform.show_kernel_task_state()
            return "Inactivity timeout exceeded. Killing the current test with SIGQUIT.\n", True
        if settings.disk_usage_limit and disk_usage > settings.disk_usage_limit:
            return "Disk usage limit exceeded.\n", False
        return None

    def _report_lingering(self, pid: int) -> None:
        lingering = [p for p in self.platform.collect_process_group_pids(pid) if p != pid]
        if not lingering:
            return
        details = self.platform.describe_processes(lingering)
        for lingering_pid in lingering:
            errf(f"  lingering process {lingering_pid}: {details.get(lingering_pid, 'details unavailable')}\n",
                 Color.YELLOW)
        self.platform.signal_process_group(pid, signal.SIGKILL)

    def _dump_dmesg(self, files: _JobFiles) -> None:
        if self.kmsg_fd is not None:
            files.write_dmesg(self.platform.read_kernel_log(self.kmsg_fd))

    def _display(self, entry: JobListEntry) -> None:
        if self.settings.log_level < LogLevel.NORMAL:
            return
        width = len(str(self.total))
        prefix = f"[{self.index + 1:0{width}d}/{self.total:0{width}d}] "
        if self.settings.overall_timeout:
            prefix += f"({self.time_left:.0f}s left) "
        outf(f"{prefix}{entry_display_name(entry)}\n", Color.BOLD)

    def run(self, entry: JobListEntry) -> JobOutcome:
        job_dir = self.results_dir / str(self.index)
        job_dir.mkdir(parents=True, exist_ok=True)
        files = _JobFiles(job_dir, sync=self.settings.sync, use_comms=self.use_socket)
        try:
            return self._run(entry, files)
        finally:
            files.close()

    def _run(self, entry: JobListEntry, files: _JobFiles) -> JobOutcome:
        argv = build_argv(self.settings, entry)
        self._display(entry)

        env = os.environ.copy()
        env.update(self.settings.environment)
        env["IGT_SENTINEL_ON_STDERR"] = "1"
        env.pop(comms.ENV_SOCKET_FD, None)

        parent_sock: Optional[socket.socket] = None
        child_sock: Optional[socket.socket] = None
        popen_kwargs = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
            "env": env,
        }
        if self.use_socket:
            parent_sock, child_sock = socket.socketpair(socket.AF_UNIX, socket.SOCK_SEQPACKET)
            env[comms.ENV_SOCKET_FD] = str(child_sock.fileno())
            popen_kwargs["pass_fds"] = (child_sock.fileno(),)
        self.platform.configure_popen(popen_kwargs)

        files.write_packet(comms.encode(comms.exec_packet(argv)))
        if self.kmsg_fd is not None:
            self.platform.read_kernel_log(self.kmsg_fd)

        start = time.monotonic()
        try:
            process = subprocess.Popen(argv, **popen_kwargs)  # type: ignore[call-overload]
        except OSError as exc:
            errf(f"Failed to execute {argv[0]}: {exc}\n")
            if parent_sock is not None:
                parent_sock.close()
            if child_sock is not None:
                child_sock.close()
            files.journal_end(f"exit:{-1} (0.000s)\n")
            return JobOutcome(result=0, time_spent=0.0)
        finally:
            if child_sock is not None:
                child_sock.close()

        activity = _Activity(last_output=start, last_subtest=start)
        readers = [
            threading.Thread(target=self._read_pipe, args=(process.stdout, files, files.out, activity, True),
                             daemon=True),
            threading.Thread(target=self._read_pipe, args=(process.stderr, files, files.err, activity, False),
                             daemon=True),
        ]
        if parent_sock is not None:
            readers.append(threading.Thread(target=self._read_socket, args=(parent_sock, files, activity),
                                            daemon=True))
        for reader in readers:
            reader.start()

        killed = 0
        time_killed = 0.0
        timed_out = False
        abort_reason: Optional[str] = None
        result = 0

        while True:
            try:
                process.wait(timeout=MONITOR_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass

            self._dump_dmesg(files)
            if self.watchdog_fd is not None:
                self.platform.ping_watchdog(self.watchdog_fd)

            if self.hangup.is_set() and killed != signal.SIGKILL:
                errf("Runner got SIGHUP, interrupting the current test.\n", Color.YELLOW)
                files.write_packet(comms.encode(comms.result_override_packet("notrun")))
                self.platform.signal_process_group(process.pid, signal.SIGKILL)
                killed = signal.SIGKILL
                time_killed = time.monotonic()
                result = -1
                continue

            taints, bad = self.platform.kernel_taints()
            decision = self._need_to_timeout(killed, bool(bad), activity, time_killed, files.bytes_written)
            if decision is None:
                continue
            reason, is_timeout = decision

            if killed == signal.SIGKILL:
                errf(f"Child refuses to die, tainted {taints:#x}. Aborting.\n")
                abort_reason = f"Child refuses to die, tainted {taints:#x}."
                self._report_lingering(process.pid)
                result = -1
                break

            if self.settings.log_level >= LogLevel.NORMAL:
                outf(reason, Color.YELLOW)
            files.write_output(files.err, reason.encode("utf-8"))
            if is_timeout and not killed:
                timed_out = True
                files.write_packet(comms.encode(comms.result_override_packet("timeout")))
            killed = signal.SIGKILL if killed else signal.SIGQUIT
            self.platform.signal_process_group(process.pid, killed)
            time_killed = time.monotonic()

        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)
        if any(reader.is_alive() for reader in readers):
            # Leftover grandchildren keep the pipes open.
            self._report_lingering(process.pid)
            for reader in readers:
                reader.join(timeout=READER_JOIN_TIMEOUT)
        self._dump_dmesg(files)

        elapsed = time.monotonic() - start
        returncode = process.poll()
        if returncode is None:
            status = -signal.SIGKILL
        elif returncode >= 128:
            status = 128 - returncode
        else:
            status = returncode

        timeused = f"{elapsed:.3f}"
        files.write_packet(comms.encode(comms.exit_packet(status, timeused)))
        if result < 0 and abort_reason is None:
            # Interrupted by the runner: no terminal journal line so the job runs again on resume.
            return JobOutcome(result=result, time_spent=elapsed)
        files.journal_end(f"{'timeout' if timed_out else 'exit'}:{status} ({timeused}s)\n")

        if status == IGT_EXIT_ABORT and abort_reason is None:
            abort_reason = "Test exited with IGT_EXIT_ABORT"
        if self.settings.log_level >= LogLevel.VERBOSE:
            outf(f"  exited with {status} after {format_duration(elapsed)}, "
                 f"{format_size(files.bytes_written)} of output\n")
        if result == 0 and timed_out:
            result = 1
        return JobOutcome(result=result, abort_reason=abort_reason, time_spent=elapsed)


# -- whole run ----------------------------------------------------------------


def need_to_abort(settings: Settings, platform: PlatformSupport) -> Optional[str]:
    """Return why the run must stop because of a monitored kernel condition."""

    reasons = []
    if settings.abort_mask & ABORT_LOCKDEP:
        report = platform.lockdep_report()
        if report:
            reasons.append(report)
    if settings.abort_mask & ABORT_TAINT:
        taints, bad = platform.kernel_taints()
        if bad:
            text = f"Kernel badly tainted ({taints:#x}, {bad:#x}) (check dmesg for details):\n"
            text += "".join(f"\t{line}\n" for line in platform.explain_taints(bad))
            reasons.append(text)
    if not reasons:
        return None
    return "".join(reasons)


def write_abort_file(results_dir: Path, reason: str, previous: str, following: str) -> None:
    text = f"Aborting.\nPrevious test: {previous}\nNext test: {following}\n\n{reason}"
    (results_dir / ABORTED_FILE).write_text(text, encoding="utf-8")


def _write_time(path: Path) -> None:
    path.write_text(f"{time.time():.6f}\n", encoding="utf-8")


def execute(state: ExecuteState, settings: Settings, job_list: JobList,
            platform: Optional[PlatformSupport] = None) -> bool:
    """Run ``job_list`` from ``state.next`` on.

    Return True when every job ran, False when the run was aborted,
    interrupted or ran out of time.
    """

    if state.dry:
        outf("Dry run, not executing. Invoke igt_resume if you want to execute.\n")
        return True

    platform = platform or get_platform_support(verbose=settings.log_level >= LogLevel.VERBOSE)
    results_dir = state.results_dir
    results_dir.mkdir(parents=True, exist_ok=True)
    (results_dir / UNAME_FILE).write_text(platform.uname() + "\n", encoding="utf-8")
    if not (results_dir / STARTTIME_FILE).exists():
        _write_time(results_dir / STARTTIME_FILE)

    hangup = threading.Event()
    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGHUP, lambda signum, frame: hangup.set())

    kmsg_fd = platform.open_kernel_log()
    watchdog_fd = platform.open_watchdog() if settings.use_watchdog else None
    completed = False
    try:
        completed, rerun = _execute_entries(state, settings, job_list, platform, kmsg_fd, watchdog_fd, hangup)
    finally:
        if watchdog_fd is not None:
            platform.close_watchdog(watchdog_fd)
        if kmsg_fd is not None:
            os.close(kmsg_fd)
        if previous_handler is not None:
            signal.signal(signal.SIGHUP, previous_handler)

    if rerun:
        time_left = state.time_left
        resumed, settings, job_list = initialize_execute_state_from_resume(results_dir)
        resumed.time_left = time_left
        return execute(resumed, settings, job_list, platform)

    _write_time(results_dir / ENDTIME_FILE)
    return completed


def _execute_entries(state: ExecuteState, settings: Settings, job_list: JobList, platform: PlatformSupport,
                     kmsg_fd: Optional[int], watchdog_fd: Optional[int],
                     hangup: threading.Event) -> Tuple[bool, bool]:
    """Return ``(completed, rerun)`` for one pass over the remaining entries."""

    results_dir = state.results_dir
    if state.next < len(job_list):
        reason = need_to_abort(settings, platform)
        if reason is not None:
            write_abort_file(results_dir, reason, "nothing", entry_display_name(job_list[state.next]))
            return False, False

    while state.next < len(job_list):
        if settings.overall_timeout and state.time_left <= 0:
            outf("Overall timeout time exceeded, stopping.\n", Color.YELLOW)
            return False, False
        if hangup.is_set():
            return False, False

        entry = job_list[state.next]
        runner = JobRunner(settings, platform, index=state.next, total=len(job_list), results_dir=results_dir,
                           kmsg_fd=kmsg_fd, watchdog_fd=watchdog_fd, time_left=state.time_left, hangup=hangup)
        outcome = runner.run(entry)
        if settings.overall_timeout:
            state.time_left -= outcome.time_spent

        reason = outcome.abort_reason
        if reason is None and outcome.result >= 0:
            reason = need_to_abort(settings, platform)
        if reason is not None:
            following = (entry_display_name(job_list[state.next + 1])
                         if state.next + 1 < len(job_list) else "nothing")
            write_abort_file(results_dir, reason, entry_display_name(entry), following)
            errf(f"Aborting: {reason.splitlines()[0] if reason else ''}\n")
            return False, False
        if outcome.result < 0:
            return False, False
        if outcome.result > 0:
            return False, True
        state.next += 1
    return True, False

