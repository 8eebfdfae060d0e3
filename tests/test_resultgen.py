import json

import pytest

from igt import comms
from igt.runner.executor import execute, initialize_execute_state
from igt.runner.job_list import JobListEntry, create_job_list, serialize_job_list
from igt.runner.resultgen import (
    RUNNER_ABORTED,
    generate_results,
    prune_tests,
    split_output,
    worst_result,
    write_results,
)
from igt.runner.settings import PruneMode, parse_options, serialize_settings

from .conftest import add_binary, make_settings


def run_and_generate(test_root, results_dir, platform, *args):
    settings = make_settings(test_root, results_dir, *args)
    job_list = create_job_list(settings)
    state = initialize_execute_state(settings, job_list)
    execute(state, settings, job_list, platform)
    return generate_results(results_dir)


def results_of(document):
    return {name: data["result"] for name, data in document["tests"].items()}


def synthetic_results(tmp_path, job_list, *args):
    """A results directory for ``job_list`` with no job output yet."""

    results = tmp_path / "results"
    settings = parse_options(["--allow-non-root", *args, str(tmp_path), str(results)])
    serialize_settings(settings, results)
    serialize_job_list(job_list, results)
    return results


def write_job(results, index, **files):
    job_dir = results / str(index)
    job_dir.mkdir()
    for name, text in files.items():
        (job_dir / f"{name}.txt").write_text(text)
    return job_dir


# -- whole runs -------------------------------------------------------------


def test_successtest(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "-t", "successtest")
    assert results_of(document) == {
        "igt@successtest@first-subtest": "pass",
        "igt@successtest@second-subtest": "pass",
    }
    assert document["name"] == "results"
    assert document["totals"]["root"]["pass"] == 2
    assert document["totals"]["igt@successtest"]["pass"] == 2
    first = document["tests"]["igt@successtest@first-subtest"]
    assert "Starting subtest: first-subtest" in first["out"]
    assert "Subtest first-subtest: SUCCESS" in first["out"]
    assert "second-subtest" not in first["out"]
    assert document["time_elapsed"]["end"] >= document["time_elapsed"]["start"] > 0


def test_test_without_subtests(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "-t", "no-subtests")
    assert results_of(document) == {"igt@no-subtests": "pass"}
    assert "This is a test without subtests" in document["tests"]["igt@no-subtests"]["out"]


def test_skippers_multiple_mode(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "--multiple-mode", "-t", "skippers")
    assert results_of(document) == {
        "igt@skippers@skip-one": "skip",
        "igt@skippers@skip-two": "skip",
    }


def test_dynamic_subtests_keep_all(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "--prune-mode=keep-all", "-t", "^dynamic@")
    assert results_of(document) == {
        "igt@dynamic@dynamic-subtest": "fail",
        "igt@dynamic@dynamic-subtest@passing": "pass",
        "igt@dynamic@dynamic-subtest@failing": "fail",
    }
    failing = document["tests"]["igt@dynamic@dynamic-subtest@failing"]
    assert "Dynamic subtest failing failed." in failing["err"]


def test_dynamic_subtests_default_prune(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "-t", "^dynamic@")
    assert results_of(document) == {
        "igt@dynamic@dynamic-subtest@passing": "pass",
        "igt@dynamic@dynamic-subtest@failing": "fail",
    }


def test_failing_dynamic_subtest_leaves_its_sibling_alone(test_root, results_dir, platform):
    add_binary(test_root, "dynamic-sibling", """
        @igt.main
        def test():
            @igt.subtest_with_dynamic("dynamic-subtest")
            def _():
                @igt.dynamic("failing")
                def _():
                    igt.debug("This one fails")
                    igt.assert_eq(1, 2)

            @igt.subtest("sibling")
            def _():
                igt.debug("The sibling passes")
    """)
    document = run_and_generate(test_root, results_dir, platform, "-t", "^dynamic-sibling@")
    assert results_of(document) == {
        "igt@dynamic-sibling@dynamic-subtest@failing": "fail",
        "igt@dynamic-sibling@sibling": "pass",
    }
    failing = document["tests"]["igt@dynamic-sibling@dynamic-subtest@failing"]["err"]
    assert "Dynamic subtest failing failed.\n**** DEBUG ****\n" in failing
    assert "This one fails" in failing
    assert "**** DEBUG ****" not in document["tests"]["igt@dynamic-sibling@sibling"]["err"]

    # The log dump travels over the socket with the result packets.
    packets = comms.read_dump(results_dir / "0" / "comms")
    dumped = [p.text for p in packets if p.type == comms.PacketType.LOG and p.stream == 2]
    assert "Dynamic subtest failing failed.\n" in dumped
    assert "**** DEBUG ****\n" in dumped


def test_fixture_abort_multiple_mode(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "--multiple-mode", "-t", "abort-fixture")
    results = results_of(document)
    assert results.pop(RUNNER_ABORTED) == "fail"
    assert results == {"igt@abort-fixture": "abort"}
    assert "Test exited with IGT_EXIT_ABORT" in document["tests"][RUNNER_ABORTED]["out"]


def test_fixture_abort_normal_mode(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "-t", "abort-fixture")
    results = results_of(document)
    assert results.pop(RUNNER_ABORTED) == "fail"
    assert results == {
        "igt@abort-fixture@a-subtest": "abort",
        "igt@abort-fixture@b-subtest": "notrun",
    }


def test_subtest_abort_normal_mode(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "-t", "^abort@")
    results = results_of(document)
    assert results.pop(RUNNER_ABORTED) == "fail"
    assert results == {
        "igt@abort@a-subtest": "pass",
        "igt@abort@b-subtest": "abort",
        "igt@abort@c-subtest": "notrun",
    }


def test_subtest_abort_multiple_mode(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "--multiple-mode", "-t", "^abort@")
    results = results_of(document)
    assert results.pop(RUNNER_ABORTED) == "fail"
    assert results == {
        "igt@abort@a-subtest": "pass",
        "igt@abort@b-subtest": "abort",
    }


def test_dynamic_abort(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "--multiple-mode", "--prune-mode=keep-all",
                                "-t", "abort-dynamic")
    results = results_of(document)
    assert results.pop(RUNNER_ABORTED) == "fail"
    assert results == {
        "igt@abort-dynamic@a-subtest": "pass",
        "igt@abort-dynamic@b-subtest": "abort",
        "igt@abort-dynamic@b-subtest@a-dynamic": "pass",
        "igt@abort-dynamic@b-subtest@b-dynamic": "abort",
    }


def test_simple_abort(test_root, results_dir, platform):
    document = run_and_generate(test_root, results_dir, platform, "-t", "abort-simple")
    results = results_of(document)
    assert results.pop(RUNNER_ABORTED) == "fail"
    assert results == {"igt@abort-simple": "abort"}


def test_write_results_is_idempotent(test_root, results_dir, platform):
    run_and_generate(test_root, results_dir, platform, "--multiple-mode", "-t", "successtest|skippers")
    write_results(results_dir)
    first = (results_dir / "results.json").read_text()
    write_results(results_dir)
    assert (results_dir / "results.json").read_text() == first
    assert json.loads(first)["totals"]["root"]["skip"] == 2


# -- synthetic results directories ------------------------------------------


def test_timeout_and_resumed_subtests(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a", "b"])], "--multiple-mode")
    write_job(
        results, 0,
        journal="a\ntimeout:-3 (1.500s)\nb\nexit:0 (0.100s)\n",
        out="Starting subtest: a\nStarting subtest: b\nSubtest b: SUCCESS (0.050s)\n",
        err="Per-test timeout exceeded. Killing the current test with SIGQUIT.\n",
    )
    document = generate_results(results)
    assert results_of(document) == {"igt@bin@a": "timeout", "igt@bin@b": "pass"}
    assert document["tests"]["igt@bin@a"]["time"]["end"] == 1.5
    assert document["runtimes"]["igt@bin"]["time"]["end"] == pytest.approx(1.6)


def test_missing_subtests_are_notrun_after_clean_exit(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a", "b"])])
    write_job(results, 0, journal="a\nexit:0 (0.100s)\n", out="Starting subtest: a\nSubtest a: SUCCESS (0.050s)\n")
    assert results_of(generate_results(results)) == {"igt@bin@a": "pass", "igt@bin@b": "notrun"}


def test_unfinished_subtest_is_incomplete(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a"])])
    write_job(results, 0, journal="a\n", out="Starting subtest: a\n")
    assert results_of(generate_results(results)) == {"igt@bin@a": "incomplete"}


def test_stderr_output_turns_pass_into_warn(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a", "b"])])
    write_job(
        results, 0,
        journal="a\nb\nexit:0 (0.100s)\n",
        out="Starting subtest: a\nSubtest a: SUCCESS (0.010s)\nStarting subtest: b\nSubtest b: SUCCESS (0.010s)\n",
        err="Starting subtest: a\nSubtest a: SUCCESS (0.010s)\n"
            "Starting subtest: b\nsomething odd\nSubtest b: SUCCESS (0.010s)\n",
    )
    assert results_of(generate_results(results)) == {"igt@bin@a": "pass", "igt@bin@b": "warn"}


@pytest.mark.parametrize("args, expected", [
    ((), "dmesg-warn"),
    (("--piglit-style-dmesg",), "pass"),
    (("--dmesg-warn-level=3",), "pass"),
])
def test_dmesg_warnings(tmp_path, args, expected):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a"])], *args)
    write_job(
        results, 0,
        journal="a\nexit:0 (0.100s)\n",
        out="Starting subtest: a\nSubtest a: SUCCESS (0.010s)\n",
        dmesg="6,100,1000000,-;[IGT] bin: starting subtest a\n4,101,1500000,-;something went wrong\n",
    )
    document = generate_results(results)
    assert results_of(document) == {"igt@bin@a": expected}
    assert "<4> [1.500000] something went wrong" in document["tests"]["igt@bin@a"]["dmesg"]


def test_runner_override_from_comms(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a"])])
    job_dir = write_job(results, 0, journal="a\n", out="Starting subtest: a\n")
    with (job_dir / "comms").open("wb") as handle:
        for packet in (comms.exec_packet(["bin", "--run-subtest", "a"]),
                       comms.subtest_start_packet("a"),
                       comms.result_override_packet("notrun"),
                       comms.exit_packet(-9, "0.500")):
            comms.write_packet_with_canary(handle, packet)
    assert results_of(generate_results(results)) == {"igt@bin@a": "notrun"}


def test_journal_rebuilt_from_comms(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin")])
    job_dir = write_job(results, 0, out="Starting subtest: a\nSubtest a: FAIL (0.010s)\n")
    with (job_dir / "comms").open("wb") as handle:
        for packet in (comms.subtest_start_packet("a"),
                       comms.subtest_result_packet("a", "FAIL", "0.010"),
                       comms.exit_packet(98, "0.100")):
            comms.write_packet_with_canary(handle, packet)
    document = generate_results(results)
    assert results_of(document) == {"igt@bin@a": "fail"}
    assert document["runtimes"]["igt@bin"]["time"]["end"] == pytest.approx(0.1)


@pytest.mark.parametrize("code, expected", [(0, "pass"), (77, "skip"), (98, "fail"), (79, "fail"), (-11, "crash")])
def test_whole_binary_result_from_exit_code(tmp_path, code, expected):
    results = synthetic_results(tmp_path, [JobListEntry("bin")])
    write_job(results, 0, journal=f"exit:{code} (0.100s)\n")
    assert results_of(generate_results(results)) == {"igt@bin": expected}


def test_jobs_after_abort_are_notrun_in_normal_mode(tmp_path):
    results = synthetic_results(tmp_path, [JobListEntry("bin", ["a"]), JobListEntry("bin", ["b"]),
                                           JobListEntry("other")])
    write_job(results, 0, journal="a\nexit:0 (0.100s)\n", out="Starting subtest: a\nSubtest a: SUCCESS (0.010s)\n")
    (results / "aborted.txt").write_text("Aborting.\nPrevious test: bin (a)\nNext test: bin (b)\n\nKernel tainted\n")
    results_by_name = results_of(generate_results(results))
    assert results_by_name == {
        "igt@bin@a": "pass",
        "igt@bin@b": "notrun",
        "igt@other": "notrun",
        RUNNER_ABORTED: "fail",
    }


# -- helpers ------------------------------------------------------------------


def test_worst_result():
    assert worst_result([]) == "notrun"
    assert worst_result(["pass", "skip"]) == "pass"
    assert worst_result(["pass", "dmesg-warn", "warn"]) == "warn"
    assert worst_result(["fail", "incomplete", "timeout"]) == "incomplete"


def test_split_output():
    output = split_output(
        "IGT-Version: 1.28\n"
        "Starting subtest: sub\n"
        "before\n"
        "Starting dynamic subtest: dyn\n"
        "inside\n"
        "Dynamic subtest dyn: SUCCESS (0.001s)\n"
        "Subtest sub: FAIL (0.002s)\n"
    )
    assert output.order == ["sub", "sub@dyn"]
    assert output.results == {"sub@dyn": ("pass", 0.001), "sub": ("fail", 0.002)}
    assert output.own["sub"] == ["before\n"]
    assert "inside\n" in output.text["sub"]
    assert output.own["sub@dyn"] == ["inside\n"]
    assert output.outside == ["IGT-Version: 1.28\n"]


PRUNE_INPUT = {
    "igt@bin@sub": {"result": "pass"},
    "igt@bin@sub@dyn1": {"result": "pass"},
    "igt@bin@sub@dyn2": {"result": "dmesg-warn"},
    "igt@bin@other": {"result": "skip"},
}


@pytest.mark.parametrize("mode, expected", [
    (PruneMode.KEEP_ALL, dict(PRUNE_INPUT)),
    (PruneMode.KEEP_DYNAMIC, {
        "igt@bin@sub@dyn1": "pass",
        "igt@bin@sub@dyn2": "dmesg-warn",
        "igt@bin@other": "skip",
    }),
    (PruneMode.KEEP_SUBTESTS, {
        "igt@bin@sub": "dmesg-warn",
        "igt@bin@other": "skip",
    }),
    (PruneMode.KEEP_REQUESTED, {
        "igt@bin@sub@dyn1": "pass",
        "igt@bin@other": "skip",
    }),
])
def test_prune_modes(mode, expected):
    job_list = [JobListEntry("bin", ["sub@dyn1"]), JobListEntry("bin", ["other"])]
    pruned = prune_tests(PRUNE_INPUT, mode, job_list)
    if mode == PruneMode.KEEP_ALL:
        assert pruned == expected
    else:
        assert {name: data["result"] for name, data in pruned.items()} == expected
    assert PRUNE_INPUT["igt@bin@sub"]["result"] == "pass"
