"""Process isolation for test bodies.

Workers run in forked children and report back through their exit status
only. The parent keeps the pids in a ``ChildRegistry`` that lives on the
test program, and every spawn point resets the registry in the child.
"""

from __future__ import annotations

import os
import signal
import sys
import traceback
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

from .outcomes import (
    IGT_EXIT_FAILURE,
    IGT_EXIT_SKIP,
    IGT_EXIT_SUCCESS,
    ChildExit,
    SubtestOutcome,
    exit_code_for_signal,
)

if TYPE_CHECKING:
    from .program import TestProgram

HELPER_SLOTS = 4


@dataclass
class HelperProcess:
    """A background helper started with ``fork_helper``."""

    use_sigkill: bool = False
    running: bool = False
    pid: int = -1
    id: int = -1

    @property
    def stop_signal(self) -> int:
        return signal.SIGKILL if self.use_sigkill else signal.SIGTERM


class ChildRegistry:
    """Pids of the children this process is responsible for."""

    def __init__(self) -> None:
        self.test_children: List[int] = []
        self.multi_fork_children: List[int] = []
        self.helper_pids: List[int] = [-1] * HELPER_SLOTS
        self.test_child = False
        self.multi_fork_child = False

    @property
    def helper_count(self) -> int:
        return sum(1 for pid in self.helper_pids if pid != -1)

    def reset_helpers(self) -> None:
        self.helper_pids = [-1] * HELPER_SLOTS

    def kill_children(self, signum: int) -> None:
        for pid in self.test_children + self.multi_fork_children:
            if pid > 0:
                try:
                    os.kill(pid, signum)
                except ProcessLookupError:
                    continue

    def reap_children(self) -> None:
        for pid in self.test_children + self.multi_fork_children:
            if pid > 0:
                _waitpid(pid)
        self.test_children = []
        self.multi_fork_children = []

    # The three handlers below may run from a fatal signal: only syscalls.

    def children_exit_handler(self, sig: int) -> None:
        for pid in self.test_children:
            _waitpid(pid)
        self.test_children = []

    def multi_fork_exit_handler(self, sig: int) -> None:
        for pid in self.multi_fork_children:
            _waitpid(pid)
        self.multi_fork_children = []

    def helper_exit_handler(self, sig: int) -> None:
        for index, pid in enumerate(self.helper_pids):
            if pid != -1:
                try:
                    os.kill(pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
                _waitpid(pid)
                self.helper_pids[index] = -1


def _waitpid(pid: int) -> int:
    try:
        _, status = os.waitpid(pid, 0)
    except ChildProcessError:
        return -1
    return status


def _flush_outputs() -> None:
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            continue


def _status_to_code(status: int) -> int:
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    if os.WIFSIGNALED(status):
        return exit_code_for_signal(os.WTERMSIG(status))
    return 256


def _child_main(program: "TestProgram", body: Callable[..., None], *args: object) -> None:
    """Run ``body`` in a freshly forked child and never return."""

    code = IGT_EXIT_SUCCESS
    try:
        body(*args)
    except ChildExit as exc:
        code = exc.code
    except SystemExit as exc:
        code = exc.code if isinstance(exc.code, int) else IGT_EXIT_FAILURE
    except SubtestOutcome:
        code = IGT_EXIT_FAILURE
    except BaseException:
        traceback.print_exc()
        code = IGT_EXIT_FAILURE
    try:
        program.exit_handlers.run(0)
    finally:
        _flush_outputs()
        os._exit(code)


def fork(program: "TestProgram", num_children: int, body: Callable[[int], None]) -> None:
    """Spawn ``num_children`` workers running ``body(child_index)``."""

    children = program.children
    program.internal_assert(not program.test_with_subtests or program.in_subtest is not None,
                            "forking is only allowed in subtests or simple_main tests")
    program.internal_assert(not children.test_child,
                            "forking is not allowed from already forked children")

    program.exit_handlers.install(children.children_exit_handler)

    for index in range(num_children):
        _flush_outputs()
        pid = os.fork()
        if pid == 0:
            children.test_child = True
            program.exit_handlers.reset()
            children.reset_helpers()
            program.reinit_after_fork()
            _child_main(program, body, index)
        children.test_children.append(pid)


def multi_fork(program: "TestProgram", num_children: int, body: Callable[[int], None]) -> None:
    """Like ``fork`` but each child gets its own log prefix and may skip."""

    children = program.children
    program.internal_assert(not program.test_with_subtests or program.in_subtest is not None,
                            "multi-forking is only allowed in subtests or simple_main tests")
    program.internal_assert(not children.test_child,
                            "multi-forking is not allowed from already forked children")
    program.internal_assert(not children.multi_fork_child,
                            "multi-forking is not allowed from already multi-forked children")

    if not children.multi_fork_children:
        program.exit_handlers.install(children.multi_fork_exit_handler)

    for index in range(num_children):
        _flush_outputs()
        pid = os.fork()
        if pid == 0:
            children.multi_fork_child = True
            program.set_log_prefix(f"<g:{len(children.multi_fork_children)}> ")
            # Only the parent tracks siblings.
            children.multi_fork_children = []
            program.exit_handlers.reset()
            children.reset_helpers()
            program.reinit_after_fork()
            _child_main(program, body, index)
        children.multi_fork_children.append(pid)


def _wait_test_children(program: "TestProgram") -> int:
    children = program.children
    err = 0
    pending = list(children.test_children)
    while pending:
        try:
            pid, status = os.wait()
        except ChildProcessError:
            program.log.info("wait(num_children:%d) failed", len(pending))
            return IGT_EXIT_FAILURE
        if pid not in pending:
            continue
        index = children.test_children.index(pid)
        pending.remove(pid)
        if err == 0 and status != 0:
            if os.WIFEXITED(status):
                print(f"child {index} failed with exit status {os.WEXITSTATUS(status)}", flush=True)
            elif os.WIFSIGNALED(status):
                signum = os.WTERMSIG(status)
                print(f"child {index} died with signal {signum}, {signal.strsignal(signum)}", flush=True)
            else:
                print(f"Unhandled failure [{status}] in child {index}", flush=True)
            err = _status_to_code(status)
            children.kill_children(signal.SIGKILL)
    children.test_children = []
    return err


def _wait_multi_fork_children(program: "TestProgram") -> int:
    children = program.children
    err = 0
    was_killed = False
    pending = list(children.multi_fork_children)
    while pending:
        try:
            pid, status = os.wait()
        except ChildProcessError:
            program.log.debug("wait(multi_fork children running:%d) failed", len(pending))
            return IGT_EXIT_FAILURE
        if pid not in pending:
            continue
        index = children.multi_fork_children.index(pid)
        pending.remove(pid)
        if status == 0:
            continue
        if os.WIFEXITED(status):
            print(f"dynamic child {index} pid:{pid} failed with exit status {os.WEXITSTATUS(status)}", flush=True)
            children.multi_fork_children[index] = -1
        elif os.WIFSIGNALED(status):
            signum = os.WTERMSIG(status)
            print(f"dynamic child {index} pid:{pid} died with signal {signum}, {signal.strsignal(signum)}",
                  flush=True)
            children.multi_fork_children[index] = -1
        else:
            print(f"Unhandled failure [{status}] in dynamic child {index} pid:{pid}", flush=True)
        last = _status_to_code(status)
        # A skip never hides an error.
        if err in (0, IGT_EXIT_SKIP):
            err = last
        if err and err != IGT_EXIT_SKIP and not was_killed:
            children.kill_children(signal.SIGKILL)
            was_killed = True
    children.multi_fork_children = []
    return err


def collect_children(program: "TestProgram") -> int:
    """Join all workers and return the aggregated exit code."""

    program.internal_assert(not program.children.test_child and not program.children.multi_fork_child,
                            "waiting for children is only allowed in the parent")
    if program.children.multi_fork_children:
        return _wait_multi_fork_children(program)
    return _wait_test_children(program)


def waitchildren(program: "TestProgram", timeout: Optional[float] = None, reason: str = "") -> None:
    """Join all workers and fail the current test if any of them failed.

    With ``timeout`` an alarm kills every child once it expires, which then
    shows up as a failure.
    """

    previous = None
    if timeout is not None:
        def _alarm(signum: int, frame: object) -> None:
            program.log.info("Timed out waiting for children%s", f": {reason}" if reason else "")
            program.children.kill_children(signal.SIGKILL)

        previous = signal.signal(signal.SIGALRM, _alarm)
        signal.setitimer(signal.ITIMER_REAL, timeout)
    try:
        err = collect_children(program)
    finally:
        if timeout is not None:
            signal.setitimer(signal.ITIMER_REAL, 0)
            signal.signal(signal.SIGALRM, previous if previous is not None else signal.SIG_DFL)

    if err == IGT_EXIT_SKIP:
        program.skip("All children skipped.")
    if err:
        program.fail(err)


def fork_helper(program: "TestProgram", proc: HelperProcess, body: Callable[[], None]) -> None:
    """Start ``body`` as a detached helper tracked in a small fixed table."""

    children = program.children
    program.internal_assert(not proc.running, "helper process is already running")
    program.internal_assert(children.helper_count < HELPER_SLOTS, "too many helper processes")

    slot = children.helper_pids.index(-1)
    program.exit_handlers.install(children.helper_exit_handler)

    _flush_outputs()
    pid = os.fork()
    if pid == 0:
        program.exit_handlers.reset()
        children.reset_helpers()
        program.reinit_after_fork()
        _child_main(program, body)

    proc.running = True
    proc.pid = pid
    proc.id = slot
    children.helper_pids[slot] = pid


def wait_helper(program: "TestProgram", proc: HelperProcess) -> int:
    """Join ``proc`` and return its raw wait status."""

    program.internal_assert(proc.running, "helper process is not running")
    status = _waitpid(proc.pid)
    proc.running = False
    program.children.helper_pids[proc.id] = -1
    return status


def stop_helper(program: "TestProgram", proc: HelperProcess) -> None:
    """Terminate ``proc``; it must die from the signal it was sent."""

    if not proc.running:
        return
    try:
        os.kill(proc.pid, proc.stop_signal)
    except ProcessLookupError:
        pass
    status = wait_helper(program, proc)
    alive = os.WIFSIGNALED(status) and os.WTERMSIG(status) == proc.stop_signal
    if not alive:
        program.log.debug("Helper died too early with status=%d", status)
    program.internal_assert(alive, "helper process died before it was stopped")
