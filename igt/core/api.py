"""Functions test binaries are written against.

Blocks are declared with decorators that run the decorated function right
away, in declaration order::

    @igt.main
    def test():
        @igt.fixture
        def _():
            igt.require(have_device())

        igt.describe("Basic sanity check.")
        @igt.subtest("basic")
        def _():
            igt.assert_eq(1 + 1, 2)
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Any, Callable, Iterator, Optional

from . import fork as forking
from .exit_handlers import ExitHandler
from .fork import HelperProcess
from .log import get_logger
from .outcomes import IGT_EXIT_FAILURE, RuntimeInvariantError
from .program import current, init_program

Body = Callable[[], None]


def _run_main(body: Body, with_subtests: bool, description: Optional[str],
              extra_options: Optional[Callable[[argparse.ArgumentParser], None]]) -> None:
    program = init_program(sys.argv, with_subtests=with_subtests, description=description,
                           extra_options=extra_options)
    try:
        if with_subtests:
            body()
        else:
            program.guarded(body)
    except RuntimeInvariantError:
        program.internal_error_exit()
    except Exception:
        program.log.critical("Unexpected exception outside of any subtest:", exc_info=True)
        program.internal_error_exit()
    program.exit()


def main(body: Optional[Body] = None, *, description: Optional[str] = None,
         extra_options: Optional[Callable[[argparse.ArgumentParser], None]] = None) -> Any:
    """Run ``body`` as the main function of a test with subtests."""

    if body is None:
        return lambda fn: _run_main(fn, True, description, extra_options)
    _run_main(body, True, description, extra_options)
    return body


def simple_main(body: Optional[Body] = None, *, description: Optional[str] = None,
                extra_options: Optional[Callable[[argparse.ArgumentParser], None]] = None) -> Any:
    """Run ``body`` as a test without subtests."""

    if body is None:
        return lambda fn: _run_main(fn, False, description, extra_options)
    _run_main(body, False, description, extra_options)
    return body


def options() -> argparse.Namespace:
    return current().options


def fixture(body: Body) -> Body:
    current().run_fixture(body)
    return body


def subtest(name: str) -> Callable[[Body], Body]:
    def decorate(body: Body) -> Body:
        current().run_subtest(name, body)
        return body

    return decorate


def subtest_with_dynamic(name: str) -> Callable[[Body], Body]:
    """Declare a subtest whose result comes from its dynamic subtests."""

    def decorate(body: Body) -> Body:
        current().run_subtest(name, body, dynamic_container=True)
        return body

    return decorate


def dynamic(name: str) -> Callable[[Body], Body]:
    def decorate(body: Body) -> Body:
        current().run_dynamic(name, body)
        return body

    return decorate


def subtest_group(body: Body) -> Body:
    current().run_group(body)
    return body


def describe(text: str) -> None:
    """Attach ``text`` to the next subtest for ``--describe``."""

    current().describe(text)


def only_list_subtests() -> bool:
    return current().list_subtests


def skip(message: str = "") -> None:
    current().skip(message)


def require(condition: Any, message: str = "") -> None:
    if not condition:
        current().skip_check(message)


def fail(exitcode: int = IGT_EXIT_FAILURE) -> None:
    current().fail(exitcode)


def success() -> None:
    current().success()


def assert_(condition: Any, message: str = "") -> None:
    if not condition:
        current().fail_assert(message)


def assert_eq(left: Any, right: Any, message: str = "") -> None:
    if left != right:
        detail = f"error: {left!r} != {right!r}"
        current().fail_assert(f"{detail}\n{message}" if message else detail)


def assert_neq(left: Any, right: Any, message: str = "") -> None:
    if left == right:
        detail = f"error: {left!r} == {right!r}"
        current().fail_assert(f"{detail}\n{message}" if message else detail)


def warn_on(condition: Any) -> bool:
    """Log a warning when ``condition`` holds and return it."""

    if condition:
        frame = sys._getframe(1)
        get_logger().warning("Warning on condition in function %s, file %s:%d",
                             frame.f_code.co_name, frame.f_code.co_filename, frame.f_lineno)
    return bool(condition)


def abort(message: str = "") -> None:
    current().abort(message)


def abort_on(condition: Any, message: str = "") -> None:
    if condition:
        current().abort(message)


def fork(num_children: int) -> Callable[[Callable[[int], None]], Callable[[int], None]]:
    """Run the decorated function in ``num_children`` forked workers."""

    def decorate(body: Callable[[int], None]) -> Callable[[int], None]:
        forking.fork(current(), num_children, body)
        return body

    return decorate


def multi_fork(num_children: int) -> Callable[[Callable[[int], None]], Callable[[int], None]]:
    def decorate(body: Callable[[int], None]) -> Callable[[int], None]:
        forking.multi_fork(current(), num_children, body)
        return body

    return decorate


def waitchildren(timeout: Optional[float] = None, reason: str = "") -> None:
    forking.waitchildren(current(), timeout, reason)


def fork_helper(proc: HelperProcess) -> Callable[[Body], Body]:
    def decorate(body: Body) -> Body:
        forking.fork_helper(current(), proc, body)
        return body

    return decorate


def wait_helper(proc: HelperProcess) -> int:
    return forking.wait_helper(current(), proc)


def stop_helper(proc: HelperProcess) -> None:
    forking.stop_helper(current(), proc)


def install_exit_handler(fn: ExitHandler) -> None:
    current().exit_handlers.install(fn)


def thread_assert_no_failures() -> None:
    current().thread_assert_no_failures()


def debug_wait_for_keypress(var: str) -> None:
    current().interactive_debug(var, f"Waiting on {var}")


def log_domain(domain: Optional[str] = None) -> logging.Logger:
    return get_logger(domain)


def debug(message: str, *args: Any) -> None:
    get_logger().debug(message, *args)


def info(message: str, *args: Any) -> None:
    get_logger().info(message, *args)


def warn(message: str, *args: Any) -> None:
    get_logger().warning(message, *args)


def critical(message: str, *args: Any) -> None:
    get_logger().critical(message, *args)


def until_timeout(seconds: float) -> Iterator[float]:
    """Yield the elapsed time until ``seconds`` have passed."""

    start = time.monotonic()
    while True:
        elapsed = time.monotonic() - start
        if elapsed >= seconds:
            return
        yield elapsed

