"""Build ``results.json`` from the contents of a results directory.

The document is a pure function of what is on disk, so generating it again
gives the same output.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .. import comms
from ..core.outcomes import (
    IGT_EXIT_ABORT,
    IGT_EXIT_FAILURE,
    IGT_EXIT_SKIP,
    IGT_EXIT_SUCCESS,
    IGT_EXIT_TIMEOUT,
)
from .executor import (
    ABORTED_FILE,
    COMMS_FILE,
    DMESG_FILE,
    ENDTIME_FILE,
    ERR_FILE,
    JOURNAL_FILE,
    OUT_FILE,
    STARTTIME_FILE,
    UNAME_FILE,
    strip_ansi,
)
from .job_list import JobList, JobListEntry, read_job_list
from .settings import PruneMode, Settings, read_settings_from_dir

log = logging.getLogger(__name__)

RESULTS_FILE = "results.json"
RUNNER_ABORTED = "igt@runner@aborted"

RESULT_NAMES = {
    "SUCCESS": "pass",
    "SKIP": "skip",
    "FAIL": "fail",
    "CRASH": "crash",
}

# Ascending severity, used when folding several results into one.
SEVERITY = (
    "notrun",
    "skip",
    "pass",
    "dmesg-warn",
    "warn",
    "dmesg-fail",
    "fail",
    "timeout",
    "crash",
    "incomplete",
    "abort",
)

PIGLIT_DMESG_DRIVERS = re.compile(r"(\[drm:|drm_|intel_|i915_|\[drm\]|amdgpu|xe_)")

_START = re.compile(r"^Starting subtest: (\S+)\s*$")
_RESULT = re.compile(r"^Subtest (\S+): (\w+) \(([\d.]+)s\)\s*$")
_DYNAMIC_START = re.compile(r"^Starting dynamic subtest: (\S+)\s*$")
_DYNAMIC_RESULT = re.compile(r"^Dynamic subtest (\S+): (\w+) \(([\d.]+)s\)\s*$")
_SIMPLE_RESULT = re.compile(r"^(SUCCESS|SKIP|FAIL|CRASH) \(([\d.]+)s\)\s*$")
_JOURNAL_END = re.compile(r"^(exit|timeout):(-?\d+) \(([\d.]+)s\)\s*$")
_KMSG_MARKER = re.compile(r"^\[IGT\] \S+: starting (dynamic )?subtest (\S+)")


def worst_result(results: Iterable[str]) -> str:
    worst = "notrun"
    for result in results:
        if SEVERITY.index(result) > SEVERITY.index(worst):
            worst = result
    return worst


@dataclass
class _Output:
    """One captured stream split at the subtest sentinels.

    Keys are subtest names, or ``subtest@dynamic`` for dynamic subtests.
    """

    order: List[str] = field(default_factory=list)
    results: Dict[str, Tuple[str, float]] = field(default_factory=dict)
    text: Dict[str, List[str]] = field(default_factory=dict)
    own: Dict[str, List[str]] = field(default_factory=dict)
    outside: List[str] = field(default_factory=list)
    simple_result: Optional[Tuple[str, float]] = None

    def _add(self, key: str) -> None:
        if key not in self.text:
            self.order.append(key)
            self.text[key] = []
            self.own[key] = []



def split_output(data: str) -> _Output:
    output = _Output()
    subtest: Optional[str] = None
    dynamic: Optional[str] = None
    for raw in data.splitlines(keepends=True):
        line = strip_ansi(raw)
        match = _START.match(line)
        if match:
            subtest, dynamic = match.group(1), None
            output._add(subtest)
            output.text[subtest].append(raw)
            continue
        match = _DYNAMIC_START.match(line)
        if match and subtest is not None:
            dynamic = f"{subtest}@{match.group(1)}"
            output._add(dynamic)
            output.text[subtest].append(raw)
            output.text[dynamic].append(raw)
            continue
        match = _DYNAMIC_RESULT.match(line)
        if match and subtest is not None:
            key = f"{subtest}@{match.group(1)}"
            output._add(key)
            output.results[key] = (RESULT_NAMES.get(match.group(2), "fail"), float(match.group(3)))
            output.text[subtest].append(raw)
            output.text[key].append(raw)
            dynamic = None
            continue
        match = _RESULT.match(line)
        if match:
            name = match.group(1)
            output._add(name)
            output.results[name] = (RESULT_NAMES.get(match.group(2), "fail"), float(match.group(3)))
            output.text[name].append(raw)
            subtest, dynamic = None, None
            continue
        match = _SIMPLE_RESULT.match(line)
        if match and subtest is None:
            output.simple_result = (RESULT_NAMES[match.group(1)], float(match.group(2)))
            continue

        if dynamic is not None:
            output.text[dynamic].append(raw)
            output.own[dynamic].append(raw)
            output.text[subtest].append(raw)  # type: ignore[index]
        elif subtest is not None:
            output.text[subtest].append(raw)
            output.own[subtest].append(raw)
        else:
            output.outside.append(raw)
    return output


@dataclass
class _JobEnd:
    kind: str
    code: int
    time: float


@dataclass
class _Journal:
    """Started subtests paired with the job end that interrupted them."""

    started: List[str] = field(default_factory=list)
    ends: List[_JobEnd] = field(default_factory=list)
    interrupted: Dict[str, _JobEnd] = field(default_factory=dict)
    # End lines seen while no subtest was running.
    idle_ends: List[_JobEnd] = field(default_factory=list)


def _journal_from_text(text: str) -> List[Tuple[str, object]]:
    events: List[Tuple[str, object]] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        match = _JOURNAL_END.match(line)
        if match:
            events.append(("end", _JobEnd(match.group(1), int(match.group(2)), float(match.group(3)))))
        elif not line.startswith(("exit:", "timeout:")):
            events.append(("start", line))
    return events


def _journal_from_comms(packets: Iterable[comms.Packet]) -> List[Tuple[str, object]]:
    events: List[Tuple[str, object]] = []
    timed_out = False
    for packet in packets:
        if packet.type == comms.PacketType.SUBTEST_START:
            events.append(("start", packet.name))
        elif packet.type == comms.PacketType.RESULT_OVERRIDE and packet.result == "timeout":
            timed_out = True
        elif packet.type == comms.PacketType.EXIT:
            try:
                elapsed = float(packet.timeused)
            except ValueError:
                elapsed = 0.0
            events.append(("end", _JobEnd("timeout" if timed_out else "exit", packet.exitcode, elapsed)))
            timed_out = False
    return events


def read_journal(events: List[Tuple[str, object]], finished: Dict[str, Tuple[str, float]]) -> _Journal:
    journal = _Journal()
    running: Optional[str] = None
    for kind, value in events:
        if kind == "start":
            name = str(value)
            if name not in journal.started:
                journal.started.append(name)
            running = name
            continue
        end = value
        assert isinstance(end, _JobEnd)
        journal.ends.append(end)
        if running is not None and running not in finished:
            journal.interrupted[running] = end
        else:
            journal.idle_ends.append(end)
        running = None
    return journal


def result_for_end(end: Optional[_JobEnd]) -> str:
    """Return the result of a subtest that was running when the job ended."""

    if end is None:
        return "incomplete"
    if end.kind == "timeout":
        return "timeout"
    if end.code == IGT_EXIT_ABORT:
        return "abort"
    return "incomplete"


def result_for_exit_code(end: Optional[_JobEnd]) -> str:
    """Return the result of a test without subtests from how it ended."""

    if end is None:
        return "incomplete"
    if end.kind == "timeout":
        return "timeout"
    code = end.code
    if code < 0:
        return "crash"
    return {
        IGT_EXIT_SUCCESS: "pass",
        IGT_EXIT_SKIP: "skip",
        IGT_EXIT_TIMEOUT: "timeout",
        IGT_EXIT_FAILURE: "fail",
        IGT_EXIT_ABORT: "abort",
    }.get(code, "fail")


@dataclass
class _Dmesg:
    all_lines: List[str] = field(default_factory=list)
    warn_lines: List[str] = field(default_factory=list)
    segments: Dict[str, List[str]] = field(default_factory=dict)
    warn_keys: Dict[str, bool] = field(default_factory=dict)


def parse_dmesg(text: str, settings: Settings) -> _Dmesg:
    """Split kernel messages at the subtest markers the runtime leaves."""

    dmesg = _Dmesg()
    subtest: Optional[str] = None
    key: Optional[str] = None
    for line in text.splitlines():
        if not line or line[0].isspace():
            continue
        prefix, sep, message = line.partition(";")
        if not sep:
            continue
        fields = prefix.split(",")
        try:
            level = int(fields[0]) & 7
            timestamp = int(fields[2]) / 1e6 if len(fields) > 2 else 0.0
        except ValueError:
            continue
        formatted = f"<{level}> [{timestamp:.6f}] {message}\n"

        marker = _KMSG_MARKER.match(message)
        if marker:
            if marker.group(1):
                key = f"{subtest}@{marker.group(2)}" if subtest else None
            else:
                subtest = key = marker.group(2)

        dmesg.all_lines.append(formatted)
        targets = [k for k in (subtest, key) if k]
        for target in dict.fromkeys(targets):
            dmesg.segments.setdefault(target, []).append(formatted)

        is_warning = level <= settings.dmesg_warn_level and not message.startswith("[IGT]")
        if is_warning and settings.piglit_style_dmesg:
            is_warning = bool(PIGLIT_DMESG_DRIVERS.search(message))
        if is_warning:
            dmesg.warn_lines.append(formatted)
            for target in dict.fromkeys(targets):
                dmesg.warn_keys[target] = True
    return dmesg


def _apply_dmesg(result: str, warned: bool) -> str:
    if not warned:
        return result
    if result in ("pass", "warn"):
        return "dmesg-warn"
    if result == "fail":
        return "dmesg-fail"
    return result


def _overrides(packets: Iterable[comms.Packet]) -> Dict[Optional[str], str]:
    """Return the runner's result overrides keyed by the subtest they hit."""

    overrides: Dict[Optional[str], str] = {}
    current: Optional[str] = None
    for packet in packets:
        if packet.type == comms.PacketType.SUBTEST_START:
            current = packet.name
        elif packet.type == comms.PacketType.SUBTEST_RESULT:
            current = None
        elif packet.type == comms.PacketType.RESULT_OVERRIDE:
            overrides[current] = packet.result
    return overrides


def _test_entry(result: str, elapsed: float, out: str = "", err: str = "", dmesg: str = "") -> Dict[str, object]:
    return {
        "result": result,
        "time": {"start": 0.0, "end": elapsed},
        "out": out,
        "err": err,
        "dmesg": dmesg,
    }


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""


class JobResults:
    """Results of one numbered job directory."""

    def __init__(self, job_dir: Path, entry: JobListEntry, settings: Settings) -> None:
        self.job_dir = job_dir
        self.entry = entry
        self.settings = settings
        self.binary = entry.binary
        self.tests: Dict[str, Dict[str, object]] = {}
        self.aborted = False
        self.elapsed = 0.0

    def name(self, key: Optional[str] = None) -> str:
        return f"igt@{self.binary}" if key is None else f"igt@{self.binary}@{key}"

    def parse(self) -> None:
        out = split_output(_read_text(self.job_dir / OUT_FILE))
        err = split_output(_read_text(self.job_dir / ERR_FILE))
        dmesg = parse_dmesg(_read_text(self.job_dir / DMESG_FILE), self.settings)

        packets: List[comms.Packet] = []
        comms_path = self.job_dir / COMMS_FILE
        if comms_path.exists():
            try:
                packets = comms.read_dump(comms_path)
            except comms.CommsParseError as exc:
                log.warning("Ignoring unreadable comms dump in %s: %s", self.job_dir, exc)

        journal_path = self.job_dir / JOURNAL_FILE
        if journal_path.exists():
            events = _journal_from_text(_read_text(journal_path))
        else:
            events = _journal_from_comms(packets)
        journal = read_journal(events, out.results)
        final_end = journal.ends[-1] if journal.ends else None
        self.elapsed = sum(end.time for end in journal.ends)
        self.aborted = any(end.code == IGT_EXIT_ABORT for end in journal.ends)

        keys = list(out.order)
        for name in journal.started:
            if name not in keys:
                keys.append(name)

        for key in keys:
            parent, _, dyn = key.partition("@")
            if key in out.results:
                result, elapsed = out.results[key]
            elif dyn and parent in journal.interrupted:
                result, elapsed = result_for_end(journal.interrupted[parent]), 0.0
            elif dyn:
                result, elapsed = "incomplete", 0.0
            else:
                end = journal.interrupted.get(key)
                result = result_for_end(end)
                elapsed = end.time if end is not None else 0.0

            if result == "pass" and any(line.strip() for line in err.own.get(key, [])):
                result = "warn"
            result = _apply_dmesg(result, dmesg.warn_keys.get(key, False))
            self.tests[self.name(key)] = _test_entry(
                result,
                elapsed,
                "".join(out.text.get(key, [])),
                "".join(err.text.get(key, [])),
                "".join(dmesg.segments.get(key, [])),
            )

        started_any = any("@" not in key for key in keys)
        if not self.entry.subtests and not started_any:
            self._whole_binary_result(out, err, dmesg, final_end)
        elif self.entry.subtests:
            self._requested_results(keys, journal, final_end)

        for target, result in _overrides(packets).items():
            name = self.name(target) if target is not None else None
            if name in self.tests:
                self.tests[name]["result"] = result
            elif target is None and self.name() in self.tests:
                self.tests[self.name()]["result"] = result

    def _whole_binary_result(self, out: _Output, err: _Output, dmesg: _Dmesg, end: Optional[_JobEnd]) -> None:
        if out.simple_result is not None and (end is None or end.kind != "timeout"):
            result, elapsed = out.simple_result
        else:
            result = result_for_exit_code(end)
            elapsed = end.time if end is not None else 0.0
        if result == "pass" and any(line.strip() for line in err.outside):
            result = "warn"
        result = _apply_dmesg(result, bool(dmesg.warn_lines))
        self.tests[self.name()] = _test_entry(
            result, elapsed, "".join(out.outside), "".join(err.outside), "".join(dmesg.all_lines))

    def _requested_results(self, keys: List[str], journal: _Journal, end: Optional[_JobEnd]) -> None:
        """Fill in requested subtests that never started."""

        missing = [name for name in self.entry.subtests if "@" not in name and name not in keys]
        if not missing:
            return
        aborted_idle = any(e.code == IGT_EXIT_ABORT for e in journal.idle_ends)
        if aborted_idle:
            first = missing.pop(0)
            self.tests[self.name(first)] = _test_entry("abort", end.time if end is not None else 0.0)
        interrupted = self.aborted or end is None or end.kind == "timeout"
        if interrupted and self.settings.multiple_mode:
            return
        for name in missing:
            self.tests[self.name(name)] = _test_entry("notrun", 0.0)


def requested_names(entry: JobListEntry) -> List[str]:
    if not entry.subtests:
        return [f"igt@{entry.binary}"]
    return [f"igt@{entry.binary}@{name}" for name in entry.subtests]


def _notrun_entries(entry: JobListEntry) -> Dict[str, Dict[str, object]]:
    return {name: _test_entry("notrun", 0.0) for name in requested_names(entry) if name.count("@") < 3}


def prune_tests(tests: Dict[str, Dict[str, object]], mode: PruneMode, job_list: JobList) -> Dict[str, Dict[str, object]]:
    def is_dynamic(name: str) -> bool:
        return name.count("@") >= 3

    def parent_of(name: str) -> str:
        return name.rsplit("@", 1)[0]

    parents_with_children = {parent_of(name) for name in tests if is_dynamic(name)}

    if mode == PruneMode.KEEP_ALL:
        return dict(tests)
    if mode == PruneMode.KEEP_DYNAMIC:
        return {name: data for name, data in tests.items() if name not in parents_with_children}
    if mode == PruneMode.KEEP_SUBTESTS:
        pruned = {name: dict(data) for name, data in tests.items() if not is_dynamic(name)}
        for parent in parents_with_children:
            if parent not in pruned:
                continue
            children = [str(data["result"]) for name, data in tests.items()
                        if is_dynamic(name) and parent_of(name) == parent]
            pruned[parent]["result"] = worst_result(children + [str(pruned[parent]["result"])])
        return pruned

    wanted = set()
    whole = set()
    for entry in job_list:
        if entry.subtests:
            wanted.update(requested_names(entry))
        else:
            whole.add(f"igt@{entry.binary}")
    return {name: data for name, data in tests.items()
            if name in wanted or name == RUNNER_ABORTED
            or any(name == prefix or (name.startswith(prefix + "@") and not is_dynamic(name)) for prefix in whole)}


def _count_totals(tests: Dict[str, Dict[str, object]]) -> Dict[str, Dict[str, int]]:
    def empty() -> Dict[str, int]:
        return {result: 0 for result in SEVERITY}

    totals: Dict[str, Dict[str, int]] = {"root": empty()}
    for name, data in tests.items():
        result = str(data["result"])
        totals["root"][result] += 1
        binary = "@".join(name.split("@", 2)[:2])
        totals.setdefault(binary, empty())[result] += 1
    return totals


def _read_time(path: Path) -> Optional[float]:
    try:
        return float(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def generate_results(results_dir: Path) -> Dict[str, object]:
    """Return the result document of ``results_dir``."""

    results_dir = Path(results_dir)
    settings = read_settings_from_dir(results_dir)
    job_list = read_job_list(results_dir)
    aborted = (results_dir / ABORTED_FILE).exists()

    tests: Dict[str, Dict[str, object]] = {}
    runtimes: Dict[str, Dict[str, object]] = {}
    for index, entry in enumerate(job_list):
        job_dir = results_dir / str(index)
        if not job_dir.is_dir():
            if aborted and not settings.multiple_mode:
                tests.update(_notrun_entries(entry))
            continue
        job = JobResults(job_dir, entry, settings)
        job.parse()
        tests.update(job.tests)
        runtime = runtimes.setdefault(f"igt@{entry.binary}", {"time": {"start": 0.0, "end": 0.0}})
        runtime["time"]["end"] += job.elapsed  # type: ignore[index]

    if aborted:
        tests[RUNNER_ABORTED] = _test_entry("fail", 0.0, _read_text(results_dir / ABORTED_FILE))

    tests = prune_tests(tests, settings.prune_mode, job_list)

    start = _read_time(results_dir / STARTTIME_FILE)
    end = _read_time(results_dir / ENDTIME_FILE)
    return {
        "name": settings.name or results_dir.name,
        "uname": _read_text(results_dir / UNAME_FILE).strip(),
        "runtimes": runtimes,
        "time_elapsed": {"start": start or 0.0, "end": end or start or 0.0},
        "tests": tests,
        "totals": _count_totals(tests),
    }


def write_results(results_dir: Path) -> Dict[str, object]:
    document = generate_results(results_dir)
    path = Path(results_dir) / RESULTS_FILE
    path.write_text(json.dumps(document, indent=4, sort_keys=True) + "\n", encoding="utf-8")
    return document
