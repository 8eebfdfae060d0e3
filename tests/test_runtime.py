"""Test binaries built on the runtime, run as real processes."""

import os
import re
import signal
import subprocess
import textwrap
from pathlib import Path

import pytest

from igt.core.outcomes import (
    IGT_EXIT_ABORT,
    IGT_EXIT_FAILURE,
    IGT_EXIT_INVALID,
    IGT_EXIT_SKIP,
    IGT_EXIT_SUCCESS,
)


def run(path, *args, env=None):
    environ = os.environ.copy()
    if env:
        environ.update(env)
    return subprocess.run([str(path), *args], stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                          text=True, env=environ, timeout=60, check=False)


@pytest.fixture
def script(tmp_path, interpreter_env):
    """Write a test binary from source and return its path."""

    def make(name, source):
        path = tmp_path / name
        path.write_text("#!/usr/bin/env python3\nimport igt\n\n" + textwrap.dedent(source))
        path.chmod(0o755)
        return path

    return make


def test_list_subtests(test_root):
    result = run(test_root / "successtest", "--list-subtests")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert result.stdout == "first-subtest\nsecond-subtest\n"


def test_list_subtests_of_simple_test_is_invalid(test_root):
    assert run(test_root / "no-subtests", "--list-subtests").returncode == IGT_EXIT_INVALID
    assert run(test_root / "no-subtests", "--run-subtest", "x").returncode == IGT_EXIT_INVALID


def test_simple_test_result_line(test_root):
    result = run(test_root / "no-subtests")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert result.stdout.startswith("IGT-Version: ")
    assert "This is a test without subtests\n" in result.stdout
    assert result.stdout.splitlines()[-1].startswith("SUCCESS (")


def test_run_single_subtest(test_root):
    result = run(test_root / "successtest", "--run-subtest", "first-subtest")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert "Starting subtest: first-subtest\n" in result.stdout
    assert "Subtest first-subtest: SUCCESS (" in result.stdout
    assert "second-subtest" not in result.stdout


def test_run_subtest_with_wildcards(test_root):
    result = run(test_root / "successtest", "--run-subtest", "*,!first-subtest")
    assert "first-subtest" not in result.stdout
    assert "Subtest second-subtest: SUCCESS" in result.stdout


def test_unknown_subtest(test_root):
    result = run(test_root / "successtest", "--run-subtest", "no-such-subtest")
    assert result.returncode == IGT_EXIT_INVALID
    assert "Unknown subtest: no-such-subtest" in result.stderr


def test_unknown_option(test_root):
    assert run(test_root / "successtest", "--no-such-option").returncode == IGT_EXIT_INVALID


def test_sentinels_mirrored_on_stderr(test_root):
    result = run(test_root / "successtest", env={"IGT_SENTINEL_ON_STDERR": "1"})
    assert "Starting subtest: first-subtest\n" in result.stderr
    assert "Subtest second-subtest: SUCCESS (" in result.stderr


def test_describe(test_root):
    result = run(test_root / "successtest", "--describe")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert "SUB first-subtest " in result.stdout
    assert "  Passes.\n" in result.stdout
    assert "  Also passes.\n" in result.stdout

    result = run(test_root / "successtest", "--describe=second*")
    assert "first-subtest" not in result.stdout
    assert "SUB second-subtest " in result.stdout


def test_help_description(test_root):
    result = run(test_root / "successtest", "--help-description")
    assert result.stdout.strip() == "Two subtests that always pass."


def test_fixture_skip_skips_every_subtest(test_root):
    result = run(test_root / "skippers")
    assert result.returncode == IGT_EXIT_SKIP
    assert "Subtest skip-one: SKIP" in result.stdout
    assert "Subtest skip-two: SKIP" in result.stdout
    assert "Never reached" not in result.stdout


def test_dynamic_subtests(test_root):
    result = run(test_root / "dynamic")
    assert result.returncode == IGT_EXIT_FAILURE
    assert "Dynamic subtest passing: SUCCESS" in result.stdout
    assert "Dynamic subtest failing: FAIL" in result.stdout
    assert "Subtest dynamic-subtest: FAIL" in result.stdout
    assert "Dynamic subtest failing failed." in result.stderr
    assert "**** DEBUG ****" in result.stderr


def test_dynamic_subtest_selection(test_root):
    result = run(test_root / "dynamic", "--run-subtest", "dynamic-subtest", "--dynamic-subtest", "passing")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert "failing" not in result.stdout


def test_abort_stops_the_binary(test_root):
    result = run(test_root / "abort")
    assert result.returncode == IGT_EXIT_ABORT
    assert "Subtest a-subtest: SUCCESS" in result.stdout
    assert "Starting subtest: b-subtest" in result.stdout
    assert "c-subtest" not in result.stdout
    assert "Aborting dramatically" in result.stderr


@pytest.mark.parametrize("binary", ["abort-fixture", "abort-simple", "abort-dynamic"])
def test_abort_exit_code(test_root, binary):
    assert run(test_root / binary).returncode == IGT_EXIT_ABORT


def test_exception_fails_only_its_subtest(script):
    path = script("raises", """
        @igt.main
        def test():
            @igt.subtest("broken")
            def _():
                raise ValueError("boom")

            @igt.subtest("fine")
            def _():
                pass
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_FAILURE
    assert "Subtest broken: FAIL" in result.stdout
    assert "Subtest fine: SUCCESS" in result.stdout
    assert "ValueError: boom" in result.stderr


def test_assertion_failure_is_reported(script):
    path = script("asserts", """
        @igt.main
        def test():
            @igt.subtest("compare")
            def _():
                igt.assert_eq(1, 2, "numbers differ")
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_FAILURE
    assert "Test assertion failure function _, file" in result.stderr
    assert "error: 1 != 2" in result.stderr
    assert "numbers differ" in result.stderr


def test_invalid_subtest_name(script):
    path = script("badname", """
        @igt.main
        def test():
            @igt.subtest("bad name")
            def _():
                pass
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_FAILURE
    assert 'Invalid subtest name "bad name".' in result.stderr


def test_nested_subtests_are_rejected(script):
    path = script("nested", """
        @igt.main
        def test():
            @igt.subtest("outer")
            def _():
                @igt.subtest("inner")
                def _():
                    pass
    """)
    assert run(path).returncode == IGT_EXIT_FAILURE


def test_failing_fixture_fails_following_subtests(script):
    path = script("fixturefail", """
        @igt.main
        def test():
            @igt.subtest_group
            def _():
                @igt.fixture
                def _():
                    igt.assert_(False)

                @igt.subtest("in-group")
                def _():
                    pass

            @igt.subtest("after-group")
            def _():
                pass
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_FAILURE
    assert "Subtest in-group: FAIL" in result.stdout
    assert "Subtest after-group: SUCCESS" in result.stdout


def test_forked_children(script):
    path = script("forks", """
        @igt.main
        def test():
            @igt.subtest("all-good")
            def _():
                @igt.fork(3)
                def _(child):
                    igt.assert_(child < 3)

                igt.waitchildren()

            @igt.subtest("one-bad")
            def _():
                @igt.fork(2)
                def _(child):
                    igt.assert_(child == 0)

                igt.waitchildren()
    """)
    result = run(path)
    assert "Subtest all-good: SUCCESS" in result.stdout
    assert "Subtest one-bad: FAIL" in result.stdout
    assert "child 1 failed with exit status" in result.stdout


def test_exit_handlers_run_at_exit(script, tmp_path):
    marker = tmp_path / "marker"
    path = script("handlers", f"""
        def cleanup(sig):
            with open({str(marker)!r}, "a") as handle:
                handle.write(f"cleanup {{sig}}\\n")

        @igt.simple_main
        def test():
            igt.install_exit_handler(cleanup)
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_SUCCESS
    assert Path(marker).read_text() == "cleanup 0\n"


def test_extra_options(script):
    path = script("options", """
        def extra(parser):
            parser.add_argument("--count", type=int, default=1)

        @igt.simple_main(extra_options=extra)
        def test():
            igt.info("count=%d", igt.options().count)
    """)
    result = run(path, "--count", "5")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert "count=5" in result.stdout


def test_crash_signal_fails_only_its_subtest(script):
    path = script("crashes", """
        import os
        import signal

        @igt.main
        def test():
            @igt.subtest("crashes")
            def _():
                os.kill(os.getpid(), signal.SIGSEGV)

            @igt.subtest("after")
            def _():
                pass
    """)
    result = run(path)
    assert "Received signal SIGSEGV." in result.stderr
    assert "Subtest crashes: CRASH" in result.stdout
    assert "Subtest after: SUCCESS" in result.stdout
    assert result.returncode == 128 + signal.SIGSEGV


def test_terminating_signal_runs_exit_handlers(script, tmp_path):
    marker = tmp_path / "marker"
    path = script("terminated", f"""
        import os
        import signal

        def cleanup(sig):
            with open({str(marker)!r}, "a") as handle:
                handle.write(f"cleanup {{sig}}\\n")

        @igt.simple_main
        def test():
            igt.install_exit_handler(cleanup)
            os.kill(os.getpid(), signal.SIGTERM)
    """)
    result = run(path)
    assert result.returncode == -signal.SIGTERM
    assert Path(marker).read_text() == f"cleanup {int(signal.SIGTERM)}\n"


def test_multi_fork_reports_the_failing_child(script):
    path = script("multiforks", """
        @igt.main
        def test():
            @igt.subtest("workers")
            def _():
                @igt.multi_fork(3)
                def _(child):
                    igt.info("worker %d", child)
                    igt.assert_(child != 1)

                igt.waitchildren()
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_FAILURE
    assert "<g:0> worker 0" in result.stdout
    assert "<g:2> worker 2" in result.stdout
    assert re.search(r"dynamic child 1 pid:\d+ failed with exit status 98", result.stdout)
    assert "Subtest workers: FAIL" in result.stdout


def test_helper_process_is_stopped(script):
    path = script("helpers", """
        import time

        @igt.main
        def test():
            @igt.subtest("helper")
            def _():
                proc = igt.HelperProcess()

                @igt.fork_helper(proc)
                def _():
                    while True:
                        time.sleep(0.1)

                igt.assert_(proc.running)
                igt.stop_helper(proc)
                igt.assert_(not proc.running)
    """)
    result = run(path)
    assert result.returncode == IGT_EXIT_SUCCESS
    assert "Subtest helper: SUCCESS" in result.stdout


def test_waitchildren_timeout_kills_stuck_children(script):
    path = script("stuck", """
        import time

        @igt.main
        def test():
            @igt.subtest("stuck")
            def _():
                @igt.fork(1)
                def _(child):
                    time.sleep(60)

                igt.waitchildren(timeout=0.5, reason="worker hangs")
    """)
    result = run(path)
    assert "Timed out waiting for children: worker hangs" in result.stdout
    assert "child 0 died with signal 9" in result.stdout
    assert "Subtest stuck: FAIL" in result.stdout


def test_undocumented_subtest_description(script):
    path = script("undocumented", """
        @igt.main
        def test():
            @igt.subtest("plain")
            def _():
                pass
    """)
    result = run(path, "--describe")
    assert result.returncode == IGT_EXIT_SUCCESS
    assert "SUB plain " in result.stdout
    assert "  NO DOCUMENTATION!\n" in result.stdout
