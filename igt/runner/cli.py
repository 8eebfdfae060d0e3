"""Console entry points: ``igt_runner``, ``igt_resume`` and ``igt_results``."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .. import comms
from ..utils import Color, find_lingering_processes
from .executor import execute, initialize_execute_state, initialize_execute_state_from_resume
from .job_list import JobList, JobListError, create_job_list, list_all
from .resultgen import RESULTS_FILE, write_results
from .settings import LogLevel, SettingsError, parse_options
from .utils import errf, outf

EXIT_ABORTED = 1
EXIT_ERROR = 2


def _warn_lingering(job_list: JobList) -> None:
    binaries = sorted({entry.binary for entry in job_list})
    for pid, name in find_lingering_processes(binaries):
        errf(f"Warning: test process {name} (pid {pid}) is still running\n", Color.YELLOW)


def _finish(results_dir: Path, completed: bool, job_list: JobList, log_level: LogLevel) -> int:
    _warn_lingering(job_list)
    try:
        write_results(results_dir)
    except (OSError, SettingsError, JobListError, comms.CommsParseError) as exc:
        errf(f"Error: result generation failed: {exc}\n")
        return EXIT_ERROR
    if log_level >= LogLevel.NORMAL:
        outf(f"Results written to {results_dir / RESULTS_FILE}\n")
    if not completed:
        errf("Execution did not complete.\n")
        return EXIT_ABORTED
    return 0


def runner_main(argv: Optional[Sequence[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    try:
        settings = parse_options(argv)
        job_list = create_job_list(settings)
    except (SettingsError, JobListError) as exc:
        errf(f"Error: {exc}\n")
        return EXIT_ERROR

    if settings.list_all:
        try:
            names = list_all(settings, job_list)
        except JobListError as exc:
            errf(f"Error: {exc}\n")
            return EXIT_ERROR
        for name in names:
            outf(f"{name}\n")
        return 0

    if not job_list:
        errf("Error: no tests match the given filters\n")
        return EXIT_ERROR

    try:
        state = initialize_execute_state(settings, job_list)
    except (OSError, SettingsError, JobListError) as exc:
        errf(f"Error: cannot initialize {settings.results_path}: {exc}\n")
        return EXIT_ERROR

    completed = execute(state, settings, job_list)
    if state.dry:
        return 0 if completed else EXIT_ABORTED
    return _finish(state.results_dir, completed, job_list, settings.log_level)


def resume_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="igt_resume", description="Continue an interrupted test run")
    parser.add_argument("results_dir", type=Path, help="Results directory of the interrupted run")
    args = parser.parse_args(argv)

    try:
        state, settings, job_list = initialize_execute_state_from_resume(args.results_dir)
    except (OSError, SettingsError, JobListError, comms.CommsParseError) as exc:
        errf(f"Error: cannot resume from {args.results_dir}: {exc}\n")
        return EXIT_ERROR

    completed = execute(state, settings, job_list)
    return _finish(state.results_dir, completed, job_list, settings.log_level)


def results_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="igt_results", description="Generate results.json for a results directory")
    parser.add_argument("results_dir", type=Path, help="Results directory to process")
    args = parser.parse_args(argv)

    try:
        document = write_results(args.results_dir)
    except (OSError, SettingsError, JobListError, comms.CommsParseError) as exc:
        errf(f"Error: {exc}\n")
        return EXIT_ERROR

    totals: List[str] = [f"{result}: {count}" for result, count in sorted(document["totals"]["root"].items())  # type: ignore[index]
                         if count]
    outf(f"{args.results_dir / RESULTS_FILE}: {', '.join(totals) or 'no tests'}\n")
    return 0


def runner() -> None:
    sys.exit(runner_main())


def resume() -> None:
    sys.exit(resume_main())


def results() -> None:
    sys.exit(results_main())
