"""Test binary runtime and test runner."""

from .core.api import (
    abort,
    abort_on,
    assert_,
    assert_eq,
    assert_neq,
    critical,
    debug,
    debug_wait_for_keypress,
    describe,
    dynamic,
    fail,
    fixture,
    fork,
    fork_helper,
    info,
    install_exit_handler,
    log_domain,
    main,
    multi_fork,
    only_list_subtests,
    options,
    require,
    simple_main,
    skip,
    stop_helper,
    subtest,
    subtest_group,
    subtest_with_dynamic,
    success,
    thread_assert_no_failures,
    until_timeout,
    wait_helper,
    waitchildren,
    warn,
    warn_on,
)
from .core.fork import HelperProcess
from .core.outcomes import (
    IGT_EXIT_ABORT,
    IGT_EXIT_FAILURE,
    IGT_EXIT_INVALID,
    IGT_EXIT_SKIP,
    IGT_EXIT_SUCCESS,
    IGT_EXIT_TIMEOUT,
)

__version__ = "1.28"
