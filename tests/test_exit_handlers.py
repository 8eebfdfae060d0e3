import pytest

from igt.core.exit_handlers import MAX_EXIT_HANDLERS, ExitHandlerStack, signal_name
from igt.core.outcomes import RuntimeInvariantError


def _stack():
    stack = ExitHandlerStack()
    # Keep the pytest process' own signal handling intact.
    stack._hooked = True
    return stack


def test_handlers_run_newest_first_and_once():
    stack = _stack()
    calls = []
    stack.install(lambda sig: calls.append(("first", sig)))
    stack.install(lambda sig: calls.append(("second", sig)))
    stack.run(0)
    stack.run(0)
    assert calls == [("second", 0), ("first", 0)]


def test_installing_twice_is_ignored():
    stack = _stack()

    def handler(sig):
        pass

    stack.install(handler)
    stack.install(handler)
    assert len(stack) == 1
    assert handler in stack


def test_too_many_handlers():
    stack = _stack()
    for i in range(MAX_EXIT_HANDLERS):
        stack.install(lambda sig, i=i: None)
    with pytest.raises(RuntimeInvariantError):
        stack.install(lambda sig: None)


def test_reset_forgets_handlers():
    stack = _stack()
    stack.install(lambda sig: None)
    stack.reset()
    assert len(stack) == 0


def test_signal_name():
    assert signal_name(15) == "SIGTERM"


def test_run_while_installing_on_the_same_thread():
    stack = _stack()
    calls = []
    stack.install(lambda sig: calls.append(sig))
    # A fatal signal can interrupt install() with the lock held.
    with stack._lock:
        stack.run(15)
    assert calls == [15]
    assert len(stack) == 0


def test_handler_installed_during_run_is_kept_for_later():
    stack = _stack()
    calls = []

    def late(sig):
        calls.append(("late", sig))

    stack.install(lambda sig: stack.install(late))
    stack.run(0)
    assert calls == []
    assert late in stack
    stack.run(0)
    assert calls == [("late", 0)]
