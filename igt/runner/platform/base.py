from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple


class PlatformSupport:
    """Abstract base class describing platform specific behaviour."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def configure_popen(self, popen_kwargs: Dict[str, Any]) -> None:
        """Mutate ``popen_kwargs`` with platform specific settings."""

        popen_kwargs.setdefault("start_new_session", True)

    def uname(self) -> str:
        """Return the one-line system description stored with the results."""

        raise NotImplementedError

    def signal_process_group(self, pid: int, signum: int) -> None:
        """Send ``signum`` to the process group led by ``pid``."""

        raise NotImplementedError

    def collect_process_group_pids(self, pgid: int) -> List[int]:
        """Return all process IDs belonging to ``pgid``."""

        return []

    def describe_processes(self, pids: Sequence[int]) -> Dict[int, str]:
        """Return a mapping of process IDs to human readable descriptions."""

        return {}

    def kernel_taints(self) -> Tuple[int, int]:
        """Return ``(taints, bad_taints)`` of the running kernel."""

        return 0, 0

    def explain_taints(self, bad: int) -> List[str]:
        """Return one human readable line per bit set in ``bad``."""

        return []

    def lockdep_report(self) -> Optional[str]:
        """Return a report when lock debugging got disabled, else None."""

        return None

    def show_kernel_task_state(self) -> None:
        """Ask the kernel to log the state of all tasks, if possible."""

    def open_kernel_log(self) -> Optional[int]:
        """Return a non-blocking descriptor on the kernel log, seeked to its end."""

        return None

    def read_kernel_log(self, fd: int) -> List[str]:
        """Return the kernel log records available on ``fd``."""

        return []

    def open_watchdog(self) -> Optional[int]:
        return None

    def ping_watchdog(self, fd: int) -> None:
        """Keep the hardware watchdog from firing."""

    def close_watchdog(self, fd: int) -> None:
        """Disarm and close the watchdog."""
