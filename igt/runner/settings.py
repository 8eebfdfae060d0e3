"""Runner settings: command line parsing and ``metadata.txt`` persistence."""

from __future__ import annotations

import argparse
import enum
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Mapping, NoReturn, Optional, Sequence, Tuple

log = logging.getLogger(__name__)

METADATA_FILE = "metadata.txt"
ENVIRONMENT_FILE = "environment.txt"

ABORT_TAINT = 1 << 0
ABORT_LOCKDEP = 1 << 1
ABORT_ALL = ABORT_TAINT | ABORT_LOCKDEP

_ABORT_CONDITIONS = {
    "taint": ABORT_TAINT,
    "lockdep": ABORT_LOCKDEP,
    "all": ABORT_ALL,
}

DEFAULT_DMESG_WARN_LEVEL = 4
PIGLIT_DMESG_WARN_LEVEL = 5

_SIZE_SUFFIXES = {"k": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


class SettingsError(Exception):
    """Invalid runner command line or unreadable metadata."""


class LogLevel(enum.IntEnum):
    QUIET = -1
    NORMAL = 0
    VERBOSE = 1


class PruneMode(enum.IntEnum):
    KEEP_DYNAMIC = 0
    KEEP_SUBTESTS = 1
    KEEP_ALL = 2
    KEEP_REQUESTED = 3


_PRUNE_MODES = {
    "keep-dynamic": PruneMode.KEEP_DYNAMIC,
    "keep-dynamic-subtests": PruneMode.KEEP_DYNAMIC,
    "keep-subtests": PruneMode.KEEP_SUBTESTS,
    "keep-all": PruneMode.KEEP_ALL,
    "keep-requested": PruneMode.KEEP_REQUESTED,
}


@dataclass(frozen=True)
class Settings:
    test_root: str = ""
    results_path: str = ""
    name: str = ""
    abort_mask: int = 0
    disk_usage_limit: int = 0
    test_list: Optional[str] = None
    ignore_missing: bool = False
    dry_run: bool = False
    allow_non_root: bool = False
    include_regexes: Tuple[str, ...] = ()
    exclude_regexes: Tuple[str, ...] = ()
    env_vars: Tuple[Tuple[str, str], ...] = ()
    sync: bool = False
    log_level: LogLevel = LogLevel.NORMAL
    overwrite: bool = False
    multiple_mode: bool = False
    inactivity_timeout: float = 0
    per_test_timeout: float = 0
    overall_timeout: float = 0
    use_watchdog: bool = False
    piglit_style_dmesg: bool = False
    dmesg_warn_level: int = DEFAULT_DMESG_WARN_LEVEL
    prune_mode: PruneMode = PruneMode.KEEP_DYNAMIC
    list_all: bool = False
    _include: Tuple["re.Pattern[str]", ...] = field(default=(), repr=False, compare=False)
    _exclude: Tuple["re.Pattern[str]", ...] = field(default=(), repr=False, compare=False)

    def matches_filters(self, name: str) -> bool:
        """Return True when ``name`` passes the include and exclude regexes."""

        if self._include and not any(regex.search(name) for regex in self._include):
            return False
        return not any(regex.search(name) for regex in self._exclude)

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.env_vars)


def parse_abort_mask(value: Optional[str]) -> int:
    if value is None:
        return 0
    mask = 0
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if part not in _ABORT_CONDITIONS:
            raise SettingsError(f"Unknown abort condition: {part}")
        mask |= _ABORT_CONDITIONS[part]
    return mask


def parse_size(value: str) -> int:
    """Return the number of bytes in ``value``, e.g. ``4096``, ``4k``, ``1M``, ``1G``."""

    match = re.fullmatch(r"\s*(\d+)\s*([kMG]?)\s*", value)
    if not match:
        raise SettingsError(f"Cannot parse disk usage limit: {value}")
    number, suffix = match.groups()
    return int(number) * _SIZE_SUFFIXES.get(suffix, 1)


def parse_prune_mode(value: str) -> PruneMode:
    try:
        return _PRUNE_MODES[value]
    except KeyError:
        raise SettingsError(f"Unknown prune mode: {value}") from None


def parse_log_level(value: str) -> LogLevel:
    try:
        return LogLevel[value.upper()]
    except KeyError:
        raise SettingsError(f"Unknown log level: {value}") from None


def _parse_env_var(text: str, environ: Mapping[str, str]) -> Tuple[str, str]:
    key, sep, value = text.partition("=")
    if not key:
        raise SettingsError(f"Invalid environment variable: {text}")
    if not sep:
        if key not in environ:
            raise SettingsError(f"Environment variable {key} requested without a value and not set")
        value = environ[key]
    return key, value


def _read_blacklist(path: str) -> List[str]:
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise SettingsError(f"Cannot open blacklist {path}: {exc}") from None
    regexes = []
    for line in lines:
        text = line.split("#", 1)[0].strip()
        if text:
            regexes.append(text)
    return regexes


def _compile(regexes: Sequence[str]) -> Tuple["re.Pattern[str]", ...]:
    compiled = []
    for text in regexes:
        try:
            compiled.append(re.compile(text))
        except re.error as exc:
            raise SettingsError(f"Invalid regex '{text}': {exc}") from None
    return tuple(compiled)


def _absolute(path: str) -> str:
    return os.path.realpath(os.path.abspath(path))


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise SettingsError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="igt_runner",
        description="Run test binaries and collect their results",
        allow_abbrev=False,
    )
    parser.add_argument("-n", "--name", help="Name of this test run (default: basename of the results directory)")
    parser.add_argument("--abort-on-monitored-error", nargs="?", const="all", default=None, metavar="CONDITIONS",
                        help="Abort the run on kernel taint and/or lockdep problems (taint, lockdep, all)")
    parser.add_argument("--disk-usage-limit", default=None, metavar="N[kMG]",
                        help="Kill a test once its output exceeds this many bytes")
    parser.add_argument("--test-list", help="Run the tests listed in this file")
    parser.add_argument("--ignore-missing", action="store_true", help="Ignore tests in the test list that do not exist")
    parser.add_argument("-d", "--dry-run", action="store_true",
                        help="Only create the results directory, do not run anything")
    parser.add_argument("--allow-non-root", action="store_true", help="Allow running as a regular user")
    parser.add_argument("-t", "--include-tests", "--include", dest="include_tests", action="append",
                        default=[], metavar="REGEX",
                        help="Run only tests matching REGEX (repeatable)")
    parser.add_argument("-x", "--exclude-tests", "--exclude", dest="exclude_tests", action="append",
                        default=[], metavar="REGEX",
                        help="Skip tests matching REGEX (repeatable)")
    parser.add_argument("-e", "--environment", action="append", default=[], metavar="KEY[=VALUE]",
                        help="Set an environment variable for the tests")
    parser.add_argument("-b", "--blacklist", action="append", default=[], metavar="FILE",
                        help="Exclude the regexes listed in FILE")
    parser.add_argument("-s", "--sync", action="store_true", help="Sync results to disk after every write")
    parser.add_argument("-l", "--log-level", default="normal", choices=["quiet", "normal", "verbose"],
                        help="Console verbosity")
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing results directory")
    parser.add_argument("-m", "--multiple-mode", action="store_true",
                        help="Run all subtests of a binary in one execution")
    parser.add_argument("--inactivity-timeout", type=float, default=0, metavar="SECONDS")
    parser.add_argument("--per-test-timeout", type=float, default=0, metavar="SECONDS")
    parser.add_argument("--overall-timeout", type=float, default=0, metavar="SECONDS")
    parser.add_argument("--use-watchdog", action="store_true", help="Use the hardware watchdog")
    parser.add_argument("--piglit-style-dmesg", action="store_true",
                        help="Only count driver kernel messages at or below the warn level")
    parser.add_argument("--dmesg-warn-level", type=int, default=None, metavar="LEVEL")
    parser.add_argument("--prune-mode", default="keep-dynamic", choices=sorted(_PRUNE_MODES))
    parser.add_argument("-L", "--list-all", action="store_true", help="List all matching tests and exit")
    parser.add_argument("paths", nargs="*", metavar="PATH", help="test-root and results-path")
    return parser


def parse_options(argv: Sequence[str], environ: Optional[Mapping[str, str]] = None,
                  uid: Optional[int] = None) -> Settings:
    """Return ``Settings`` for the runner command line ``argv`` (without argv[0])."""

    env = os.environ if environ is None else environ
    args = build_parser().parse_args(list(argv))

    paths = list(args.paths)
    env_root = env.get("IGT_TEST_ROOT")
    if args.list_all:
        if len(paths) > 1:
            raise SettingsError("--list-all takes only the test root")
        test_root = paths[0] if paths else env_root
        results_path = ""
    elif len(paths) == 2:
        test_root, results_path = paths
    elif len(paths) == 1 and env_root:
        test_root, results_path = env_root, paths[0]
    else:
        raise SettingsError("Missing required arguments: test-root and results-path")
    if not test_root:
        raise SettingsError("Missing test root")
    if env_root:
        test_root = env_root

    if not args.allow_non_root and not args.list_all:
        if (os.getuid() if uid is None else uid) != 0:
            raise SettingsError("Runner needs to run as UID 0")

    excludes = list(args.exclude_tests)
    for blacklist in args.blacklist:
        excludes.extend(_read_blacklist(blacklist))

    if args.dmesg_warn_level is not None:
        warn_level = args.dmesg_warn_level
    else:
        warn_level = PIGLIT_DMESG_WARN_LEVEL if args.piglit_style_dmesg else DEFAULT_DMESG_WARN_LEVEL

    results_path = _absolute(results_path) if results_path else ""
    return Settings(
        test_root=_absolute(test_root),
        results_path=results_path,
        name=args.name or os.path.basename(results_path.rstrip("/")),
        abort_mask=parse_abort_mask(args.abort_on_monitored_error),
        disk_usage_limit=parse_size(args.disk_usage_limit) if args.disk_usage_limit else 0,
        test_list=_absolute(args.test_list) if args.test_list else None,
        ignore_missing=args.ignore_missing,
        dry_run=args.dry_run,
        allow_non_root=args.allow_non_root,
        include_regexes=tuple(args.include_tests),
        exclude_regexes=tuple(excludes),
        env_vars=tuple(_parse_env_var(text, env) for text in args.environment),
        sync=args.sync,
        log_level=parse_log_level(args.log_level),
        overwrite=args.overwrite,
        multiple_mode=args.multiple_mode,
        inactivity_timeout=args.inactivity_timeout,
        per_test_timeout=args.per_test_timeout,
        overall_timeout=args.overall_timeout,
        use_watchdog=args.use_watchdog,
        piglit_style_dmesg=args.piglit_style_dmesg,
        dmesg_warn_level=warn_level,
        prune_mode=parse_prune_mode(args.prune_mode),
        list_all=args.list_all,
        _include=_compile([_strip_igt_prefix(text) for text in args.include_tests]),
        _exclude=_compile([_strip_igt_prefix(text) for text in excludes]),
    )


def _strip_igt_prefix(regex: str) -> str:
    return regex[len("igt@"):] if regex.startswith("igt@") else regex


def validate_settings(settings: Settings) -> None:
    """Raise ``SettingsError`` when ``settings`` can not be used for a run."""

    if settings.test_list is not None and not os.access(settings.test_list, os.R_OK):
        raise SettingsError(f"Cannot open test-list file {settings.test_list}")
    if not os.path.isdir(settings.test_root):
        raise SettingsError(f"Test root {settings.test_root} is not a directory")
    if not settings.list_all and not settings.results_path:
        raise SettingsError("No results path given")


# Fields persisted to metadata.txt, in file order.
_SERIALIZED = (
    "abort_mask", "disk_usage_limit", "test_list", "name", "dry_run", "allow_non_root", "sync",
    "log_level", "overwrite", "multiple_mode", "inactivity_timeout", "per_test_timeout",
    "overall_timeout", "use_watchdog", "piglit_style_dmesg", "dmesg_warn_level", "prune_mode",
    "test_root", "results_path", "ignore_missing",
)
_BOOLEANS = {f.name for f in fields(Settings) if f.type in ("bool", bool)}
_FLOATS = {"inactivity_timeout", "per_test_timeout", "overall_timeout"}
_INTS = {"abort_mask", "disk_usage_limit", "dmesg_warn_level"}


def _format_value(name: str, value: object) -> str:
    if name in _BOOLEANS:
        return "1" if value else "0"
    if isinstance(value, enum.IntEnum):
        return str(int(value))
    if name in _FLOATS:
        return format(value, "g")
    return str(value)


def serialize_settings(settings: Settings, results_dir: Path, *, sync: bool = False) -> None:
    """Write ``metadata.txt`` and ``environment.txt`` into ``results_dir``."""

    results_dir.mkdir(parents=True, exist_ok=True)
    metadata = results_dir / METADATA_FILE
    if metadata.exists() and not settings.overwrite:
        raise SettingsError(f"{metadata} already exists, not overwriting")

    lines = []
    for name in _SERIALIZED:
        value = getattr(settings, name)
        if value is None:
            continue
        lines.append(f"{name} : {_format_value(name, value)}\n")
    _write_file(metadata, "".join(lines), sync)
    _write_file(results_dir / ENVIRONMENT_FILE,
                "".join(f"{key}={value}\n" for key, value in settings.env_vars), sync)


def _write_file(path: Path, text: str, sync: bool) -> None:
    with path.open("w", encoding="utf-8") as handle:
        handle.write(text)
        if sync:
            handle.flush()
            os.fsync(handle.fileno())


def read_settings_from_lines(lines: Sequence[str]) -> Settings:
    values: Dict[str, object] = {}
    for line in lines:
        key, sep, value = line.rstrip("\n").partition(" : ")
        key = key.strip()
        if not sep or not key:
            continue
        if key not in _SERIALIZED:
            log.warning("Unknown metadata key %s", key)
            continue
        try:
            if key in _BOOLEANS:
                values[key] = value.strip() not in ("", "0")
            elif key in _FLOATS:
                values[key] = float(value)
            elif key in _INTS:
                values[key] = int(value)
            elif key == "log_level":
                values[key] = LogLevel(int(value))
            elif key == "prune_mode":
                values[key] = PruneMode(int(value))
            else:
                values[key] = value
        except ValueError:
            raise SettingsError(f"Invalid metadata value for {key}: {value}") from None

    if "dmesg_warn_level" not in values:
        values["dmesg_warn_level"] = (PIGLIT_DMESG_WARN_LEVEL if values.get("piglit_style_dmesg")
                                      else DEFAULT_DMESG_WARN_LEVEL)
    return Settings(**values)  # type: ignore[arg-type]


def read_settings_from_dir(results_dir: Path) -> Settings:
    """Rebuild the settings of an existing results directory."""

    try:
        lines = (results_dir / METADATA_FILE).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise SettingsError(f"Cannot read {METADATA_FILE} from {results_dir}: {exc}") from None
    settings = read_settings_from_lines(lines)

    env_path = results_dir / ENVIRONMENT_FILE
    if env_path.exists():
        pairs = []
        for line in env_path.read_text(encoding="utf-8").splitlines():
            key, sep, value = line.partition("=")
            if sep and key:
                pairs.append((key, value))
        settings = replace(settings, env_vars=tuple(pairs))
    return settings
