from __future__ import annotations

import errno
import os
import platform
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import psutil

from .base import PlatformSupport

TAINT_FILE = Path("/proc/sys/kernel/tainted")
LOCKDEP_FILE = Path("/proc/lockdep_stats")
SYSRQ_TRIGGER = Path("/proc/sysrq-trigger")
KMSG_DEVICE = "/dev/kmsg"
WATCHDOG_DEVICE = "/dev/watchdog"

# Taint bits that make further testing pointless.
BAD_TAINTS = {
    4: "TAINT_MACHINE_CHECK: Processor reported a Machine Check Exception.",
    5: "TAINT_BAD_PAGE: Bad page reference or an unexpected page flags.",
    7: "TAINT_DIE: Kernel has died - BUG/OOPS.",
    9: "TAINT_WARN: WARN_ON has happened.",
}
BAD_TAINT_MASK = sum(1 << bit for bit in BAD_TAINTS)


class PosixPlatformSupport(PlatformSupport):
    """Platform helpers for Linux and other Unix-like systems."""

    def uname(self) -> str:
        info = platform.uname()
        return f"{info.system} {info.node} {info.release} {info.version} {info.machine}"

    def signal_process_group(self, pid: int, signum: int) -> None:
        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            return

        try:
            os.killpg(pgid, signum)
        except ProcessLookupError:
            pass

    def collect_process_group_pids(self, pgid: int) -> List[int]:
        pids: List[int] = []
        for proc in psutil.process_iter():
            try:
                if os.getpgid(proc.pid) == pgid:
                    pids.append(proc.pid)
            except (ProcessLookupError, PermissionError):
                continue
        return pids

    def describe_processes(self, pids: Sequence[int]) -> Dict[int, str]:
        unique_pids = sorted({pid for pid in pids if isinstance(pid, int) and pid > 0})
        details: Dict[int, str] = {}
        now = time.time()
        for pid in unique_pids:
            try:
                proc = psutil.Process(pid)
                with proc.oneshot():
                    parts = [
                        f"ppid={proc.ppid()}",
                        f"pgid={os.getpgid(pid)}",
                        f"status={proc.status()}",
                    ]
                    uptime = now - proc.create_time()
                    if uptime >= 0:
                        parts.append(f"uptime={uptime:.1f}s")
                    cmdline = proc.cmdline() or [proc.name()]
            except (psutil.Error, OSError):
                details[pid] = "details unavailable"
                continue
            if cmdline:
                parts.append(f"cmd={' '.join(cmdline)}")
            details[pid] = " ".join(parts)
        return details

    def kernel_taints(self) -> Tuple[int, int]:
        try:
            taints = int(TAINT_FILE.read_text().strip() or "0")
        except (OSError, ValueError):
            return 0, 0
        return taints, taints & BAD_TAINT_MASK

    def explain_taints(self, bad: int) -> List[str]:
        return [text for bit, text in sorted(BAD_TAINTS.items()) if bad & (1 << bit)]

    def lockdep_report(self) -> Optional[str]:
        try:
            contents = LOCKDEP_FILE.read_text()
        except OSError:
            return None

        for line in contents.splitlines():
            key, _, value = line.partition(":")
            if key.strip() != "debug_locks":
                continue
            try:
                active = int(value.strip()) == 1
            except ValueError:
                return None
            if active:
                return None
            return "Lockdep not active\n\n/proc/lockdep_stats contents:\n" + contents
        return None

    def show_kernel_task_state(self) -> None:
        try:
            SYSRQ_TRIGGER.write_text("t")
        except OSError:
            pass

    def open_kernel_log(self) -> Optional[int]:
        try:
            fd = os.open(KMSG_DEVICE, os.O_RDONLY | os.O_NONBLOCK | os.O_CLOEXEC)
        except OSError:
            return None
        os.lseek(fd, 0, os.SEEK_END)
        return fd

    def read_kernel_log(self, fd: int) -> List[str]:
        records: List[str] = []
        while True:
            try:
                data = os.read(fd, 8192)
            except BlockingIOError:
                break
            except OSError as exc:
                # The ring buffer wrapped past our position.
                if exc.errno == errno.EPIPE:
                    continue
                break
            if not data:
                break
            records.append(data.decode("utf-8", "replace"))
        return records

    def open_watchdog(self) -> Optional[int]:
        try:
            return os.open(WATCHDOG_DEVICE, os.O_WRONLY | os.O_CLOEXEC)
        except OSError:
            return None

    def ping_watchdog(self, fd: int) -> None:
        try:
            os.write(fd, b"\0")
        except OSError:
            pass

    def close_watchdog(self, fd: int) -> None:
        try:
            os.write(fd, b"V")
        except OSError:
            pass
        os.close(fd)

