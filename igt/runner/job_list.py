"""Building, filtering and persisting the list of test executions."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.outcomes import IGT_EXIT_INVALID
from .settings import Settings

log = logging.getLogger(__name__)

JOBLIST_FILE = "joblist.txt"
TEST_LIST_FILE = "test-list.txt"
LIST_SUBTESTS_TIMEOUT = 60.0


class JobListError(Exception):
    """The job list could not be built or read back."""


@dataclass
class JobListEntry:
    """One execution of ``binary``; no subtests means the whole binary."""

    binary: str
    subtests: List[str] = field(default_factory=list)

    def serialize(self) -> str:
        if not self.subtests:
            return self.binary
        return f"{self.binary} {','.join(self.subtests)}"


JobList = List[JobListEntry]


def strip_igt_prefix(name: str) -> str:
    return name[len("igt@"):] if name.startswith("igt@") else name


def _binary_path(settings: Settings, binary: str) -> Path:
    return Path(settings.test_root) / binary


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def list_subtests(settings: Settings, binary: str) -> Optional[List[str]]:
    """Return the subtests of ``binary``, or None when it has none."""

    path = _binary_path(settings, binary)
    env = os.environ.copy()
    env.update(settings.environment)
    try:
        completed = subprocess.run(
            [str(path), "--list-subtests"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            text=True,
            env=env,
            timeout=LIST_SUBTESTS_TIMEOUT,
            check=False,
        )
    except subprocess.TimeoutExpired:
        raise JobListError(f"Listing subtests of {binary} timed out") from None
    except OSError as exc:
        raise JobListError(f"Cannot execute {path}: {exc}") from None

    names = [line.strip() for line in completed.stdout.splitlines() if line.strip()]
    if completed.returncode == IGT_EXIT_INVALID or not names:
        return None
    if completed.returncode != 0:
        raise JobListError(f"Listing subtests of {binary} failed with exit code {completed.returncode}")
    return names


def _read_binaries(settings: Settings) -> List[str]:
    path = Path(settings.test_root) / TEST_LIST_FILE
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise JobListError(f"Cannot open {path}: {exc}") from None

    binaries = []
    for line in lines:
        name = strip_igt_prefix(line.split("#", 1)[0].strip())
        if name:
            binaries.append(name)
    return binaries


def _job_list_from_root(settings: Settings) -> JobList:
    entries: JobList = []
    for binary in _read_binaries(settings):
        if not _is_executable(_binary_path(settings, binary)):
            if settings.ignore_missing:
                log.info("Ignoring missing test binary %s", binary)
                continue
            raise JobListError(f"Test binary {binary} does not exist in {settings.test_root}")

        subtests = list_subtests(settings, binary)
        if subtests is None:
            if settings.matches_filters(binary):
                entries.append(JobListEntry(binary))
            continue

        selected = [name for name in subtests if settings.matches_filters(f"{binary}@{name}")]
        if not selected:
            continue
        if not settings.multiple_mode:
            entries.extend(JobListEntry(binary, [name]) for name in selected)
        elif len(selected) == len(subtests):
            entries.append(JobListEntry(binary))
        else:
            entries.append(JobListEntry(binary, selected))
    return entries


def _parse_test_list_line(line: str) -> Optional[Tuple[str, Optional[str]]]:
    text = line.split("#", 1)[0].strip()
    if not text:
        return None
    binary, sep, rest = strip_igt_prefix(text).partition("@")
    return binary, rest if sep else None


def _job_list_from_test_list(settings: Settings) -> JobList:
    assert settings.test_list is not None
    try:
        lines = Path(settings.test_list).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise JobListError(f"Cannot open test list {settings.test_list}: {exc}") from None

    entries: JobList = []
    missing: Dict[str, bool] = {}
    for line in lines:
        parsed = _parse_test_list_line(line)
        if parsed is None:
            continue
        binary, subtest = parsed
        name = f"{binary}@{subtest}" if subtest else binary
        if not settings.matches_filters(name):
            continue

        if binary not in missing:
            missing[binary] = not _is_executable(_binary_path(settings, binary))
        if missing[binary]:
            if settings.ignore_missing:
                continue
            raise JobListError(f"Test binary {binary} from the test list does not exist in {settings.test_root}")

        last = entries[-1] if entries else None
        if (settings.multiple_mode and subtest and "@" not in subtest and last is not None
                and last.binary == binary and last.subtests
                and not any("@" in existing for existing in last.subtests)):
            last.subtests.append(subtest)
            continue
        entries.append(JobListEntry(binary, [subtest] if subtest else []))
    return entries


def create_job_list(settings: Settings) -> JobList:
    """Return the executions requested by ``settings``, in run order."""

    if settings.test_list:
        return _job_list_from_test_list(settings)
    return _job_list_from_root(settings)


def entry_names(entry: JobListEntry) -> List[str]:
    """Return the fully qualified names an entry asks for."""

    if not entry.subtests:
        return [f"igt@{entry.binary}"]
    return [f"igt@{entry.binary}@{name}" for name in entry.subtests]


def list_all(settings: Settings, job_list: JobList) -> List[str]:
    names = []
    for entry in job_list:
        if entry.subtests:
            names.extend(entry_names(entry))
            continue
        subtests = list_subtests(settings, entry.binary)
        if subtests is None:
            names.append(f"igt@{entry.binary}")
        else:
            names.extend(f"igt@{entry.binary}@{name}" for name in subtests
                         if settings.matches_filters(f"{entry.binary}@{name}"))
    return names


def serialize_job_list(job_list: Sequence[JobListEntry], results_dir: Path, *,
                       overwrite: bool = False, sync: bool = False) -> None:
    path = results_dir / JOBLIST_FILE
    if path.exists() and not overwrite:
        raise JobListError(f"{path} already exists, not overwriting")
    with path.open("w", encoding="utf-8") as handle:
        for entry in job_list:
            handle.write(entry.serialize() + "\n")
        if sync:
            handle.flush()
            os.fsync(handle.fileno())


def read_job_list(results_dir: Path) -> JobList:
    path = results_dir / JOBLIST_FILE
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise JobListError(f"Cannot read {path}: {exc}") from None

    entries: JobList = []
    for line in lines:
        if not line.strip():
            continue
        binary, _, subtests = line.strip().partition(" ")
        entries.append(JobListEntry(binary, [name for name in subtests.split(",") if name]))
    return entries
