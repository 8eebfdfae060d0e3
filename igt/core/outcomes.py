from __future__ import annotations

from typing import Optional


IGT_EXIT_SUCCESS = 0
IGT_EXIT_SKIP = 77
IGT_EXIT_TIMEOUT = 78
IGT_EXIT_INVALID = 79
IGT_EXIT_FAILURE = 98
IGT_EXIT_ABORT = 112

# Result strings printed by the runtime and parsed by the runner.
RESULT_SUCCESS = "SUCCESS"
RESULT_SKIP = "SKIP"
RESULT_FAIL = "FAIL"
RESULT_CRASH = "CRASH"

RESULTS = (RESULT_SUCCESS, RESULT_SKIP, RESULT_FAIL, RESULT_CRASH)


class SubtestOutcome(BaseException):
    """Control transfer back to the enclosing fixture or subtest boundary.

    Derived from ``BaseException`` so that ``except Exception`` blocks inside
    test bodies can not intercept a resolved outcome.
    """

    def __init__(self, result: Optional[str] = None) -> None:
        super().__init__(result)
        self.result = result


class SubtestExit(SubtestOutcome):
    """Leave the current subtest or dynamic subtest with ``result``."""


class FixtureExit(SubtestOutcome):
    """Leave the current fixture after it skipped or failed."""


class ChildExit(SubtestOutcome):
    """Leave a forked child with ``code`` as its exit status."""

    def __init__(self, code: int) -> None:
        super().__init__(None)
        self.code = code


class RuntimeInvariantError(BaseException):
    """Raised when the runtime is used in a way its state machine forbids."""


def exit_code_for_signal(signum: int) -> int:
    """Return the exit code reported for a death by ``signum``."""

    return 128 + signum
