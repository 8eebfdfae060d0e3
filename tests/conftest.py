from __future__ import annotations

import os
import shutil
import stat
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from igt.runner.job_list import create_job_list
from igt.runner.platform.posix import BAD_TAINT_MASK, PosixPlatformSupport
from igt.runner.settings import Settings, parse_options

REPO_ROOT = Path(__file__).resolve().parent.parent
TESTDATA = Path(__file__).resolve().parent / "testdata"


@pytest.fixture(autouse=True)
def _runner_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("IGT_TEST_ROOT", raising=False)


@pytest.fixture
def interpreter_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Make ``#!/usr/bin/env python3`` test binaries run with this interpreter and package."""

    bindir = tmp_path / "bin"
    bindir.mkdir()
    (bindir / "python3").symlink_to(sys.executable)
    monkeypatch.setenv("PATH", f"{bindir}{os.pathsep}{os.environ.get('PATH', '')}")
    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv("PYTHONPATH", f"{REPO_ROOT}{os.pathsep}{pythonpath}" if pythonpath else str(REPO_ROOT))
    monkeypatch.setenv("IGT_PLAIN_OUTPUT", "1")
    monkeypatch.delenv("IGT_RUNNER_SOCKET_FD", raising=False)
    monkeypatch.delenv("IGT_RUNNER_DISABLE_SOCKET_COMMUNICATION", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    return bindir


@pytest.fixture
def test_root(tmp_path: Path, interpreter_env: Path) -> Path:
    """A private copy of the test binaries."""

    root = tmp_path / "testdata"
    shutil.copytree(TESTDATA, root)
    for path in root.iterdir():
        if path.name != "test-list.txt":
            path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return root


@pytest.fixture
def results_dir(tmp_path: Path) -> Path:
    return tmp_path / "results"


def make_settings(test_root: Path, results_dir: Optional[Path], *args: str) -> Settings:
    if results_dir is None:
        results_dir = test_root.parent / "results"
    argv: List[str] = ["--allow-non-root", *args, str(test_root), str(results_dir)]
    return parse_options(argv)


def entries_as_tuples(settings: Settings) -> List[tuple]:
    return [(entry.binary, tuple(entry.subtests)) for entry in create_job_list(settings)]


def write_test_list(path: Path, lines: Sequence[str]) -> Path:
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    return path


def add_binary(test_root: Path, name: str, source: str) -> Path:
    """Write an extra test binary into ``test_root`` and list it in test-list.txt."""

    path = test_root / name
    path.write_text("#!/usr/bin/env python3\nimport time\nimport igt\n\n" + textwrap.dedent(source))
    path.chmod(0o755)
    with (test_root / "test-list.txt").open("a") as handle:
        handle.write(f"{name}\n")
    return path


class QuietPlatform(PosixPlatformSupport):
    """Host adapter that ignores the real kernel log and taint state."""

    def __init__(self, *, taints: int = 0, lockdep: Optional[str] = None) -> None:
        super().__init__()
        self.taints = taints
        self.lockdep = lockdep

    def kernel_taints(self):
        return self.taints, self.taints & BAD_TAINT_MASK

    def lockdep_report(self):
        return self.lockdep

    def show_kernel_task_state(self) -> None:
        pass

    def open_kernel_log(self):
        return None

    def open_watchdog(self):
        return None


@pytest.fixture
def platform() -> QuietPlatform:
    return QuietPlatform()
