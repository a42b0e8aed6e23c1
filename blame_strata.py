#!/usr/bin/env python3
"""
blame-strata - code ownership statistics from git blame.

Streams `git blame --line-porcelain` output for every tracked file of one or
more repositories, annotates each attributed line with its directory cluster,
language, repository and age, and aggregates the lines into a two-level count
(for example author x age bucket) rendered as CSV, HTML or JSON lines.

Pipeline:
1. Discovery: resolve repositories and list tracked files (git ls-files)
2. Clustering: group files into directory-aligned clusters (tree_clustering)
3. Extraction: blame one file at a time, parse porcelain into typed rows
4. Aggregation: consume the row stream into nested counts
5. Output: CSV / HTML / JSON lines

Interrupting with Ctrl+C finishes the current file and reports the partial
result; a second Ctrl+C exits immediately.
"""

import csv
import fnmatch
import html
import itertools
import json
import os
import random
import re
import signal
import subprocess
import sys
import time
import traceback
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import click
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from tree_clustering import (
    STRATEGIES,
    FileTreeCluster,
    cluster_files,
    cluster_lookup,
    default_cluster_bounds,
)

colorama_init(autoreset=True)

VERSION = "1.0.0"

DEFAULT_DAY_BUCKETS = (7, 30, 180, 365)
AGE_BIN_CEILING = 1_000_000
UNBUCKETED = -1
UNBUCKETED_LABEL = "unbucketed"
OLDER_LABEL = "Older"
SECONDS_PER_DAY = 86400


# ============================================================================
# ERRORS
# ============================================================================


class BlameStrataError(Exception):
    """Base class for errors reported to the user."""


class RepositoryNotFoundError(BlameStrataError):
    pass


class BlameError(BlameStrataError):
    """git blame failed for one file (binary, unreadable, vanished...)."""


# ============================================================================
# PORCELAIN PARSING
# ============================================================================

PORCELAIN_FIELDS = ("commit", "author", "author-mail", "committer-time", "boundary")

HEADER_PATTERN = re.compile(
    r"^(?P<marker>[^0-9a-fA-F\s])?(?P<commit>[0-9a-fA-F]{40})(?: \d+)+$"
)
ZERO_COMMIT = "0" * 40


@dataclass(frozen=True)
class BlameRow:
    """Attribution of one line of the current file content."""

    commit: str = ""
    author: str = ""
    author_mail: str = ""
    committer_time: int = 0
    boundary: bool = False

    def get(self, field_name: str) -> Any:
        """Value of a porcelain field name (``committer-time`` etc.)."""
        if field_name == "commit":
            return self.commit
        if field_name == "author":
            return self.author
        if field_name == "author-mail":
            return self.author_mail
        if field_name == "committer-time":
            return self.committer_time
        if field_name == "boundary":
            return int(self.boundary)
        raise ValueError(f"Unknown porcelain field: {field_name}")


def is_hunk_header(line: str) -> bool:
    """
    True for ``<40 hex> <orig-line> <final-line> [<count>]`` lines.

    One leading non-hex marker character (such as ``^``) is tolerated.
    """
    return HEADER_PATTERN.match(line) is not None


def _strip_brackets(value: str) -> str:
    return re.sub(r"^<|>$", "", value)


def iter_blame_rows(lines: Iterable[str]) -> Iterator[BlameRow]:
    """
    Parse porcelain blame output into one BlameRow per content line.

    Metadata is remembered per commit, so plain ``--porcelain`` output, where
    a commit's metadata is only printed on its first hunk, parses the same as
    ``--line-porcelain``.
    """
    known: Dict[str, Dict[str, Any]] = {}
    current: Dict[str, Any] = {}

    for line in lines:
        if line.startswith("\t"):
            yield BlameRow(**current)
            continue

        header = HEADER_PATTERN.match(line)
        if header:
            commit = header.group("commit")
            current = known.setdefault(commit, {"commit": commit})
        elif line.startswith("author "):
            current["author"] = _strip_brackets(line[len("author ") :])
        elif line.startswith("author-mail "):
            current["author_mail"] = _strip_brackets(line[len("author-mail ") :])
        elif line.startswith("committer-time "):
            try:
                current["committer_time"] = int(line[len("committer-time ") :])
            except ValueError:
                pass
        elif line == "boundary":
            current["boundary"] = True


def parse_porcelain(lines, fields: List[str]) -> List[Tuple]:
    """
    Parse porcelain output into tuples ordered like ``fields``.

    Args:
        lines: Output lines (a single string is split on newlines)
        fields: Any of commit, author, author-mail, committer-time, boundary

    Returns:
        One tuple per content line
    """
    unknown = [name for name in fields if name not in PORCELAIN_FIELDS]
    if unknown:
        raise ValueError(f"Unknown porcelain field(s): {', '.join(unknown)}")
    if isinstance(lines, str):
        lines = lines.split("\n")
    return [tuple(row.get(name) for name in fields) for row in iter_blame_rows(lines)]


def render_porcelain(rows: Iterable[BlameRow]) -> List[str]:
    """Re-synthesize porcelain output with one hunk per row."""
    lines = []
    for number, row in enumerate(rows, 1):
        lines.append(f"{row.commit or ZERO_COMMIT} {number} {number} 1")
        lines.append(f"author {row.author}")
        if row.author_mail:
            lines.append(f"author-mail <{row.author_mail}>")
        lines.append(f"committer-time {row.committer_time}")
        if row.boundary:
            lines.append("boundary")
        lines.append("\t")
    return lines


# ============================================================================
# BUCKETING
# ============================================================================


def bucket(value: float, boundaries: List[float]) -> float:
    """
    Lower boundary of the open interval containing ``value``.

    ``boundaries`` must be ascending. A value equal to a boundary, or outside
    ``(boundaries[0], boundaries[-1])``, returns UNBUCKETED.
    """
    for i in range(1, len(boundaries)):
        if boundaries[i - 1] < value < boundaries[i]:
            return boundaries[i - 1]
    return UNBUCKETED


def day_bucket_label(age_days: float, boundaries: Iterable[int]) -> str:
    """'Last N days' for the smallest boundary N >= age, else 'Older'."""
    for boundary in boundaries:
        if age_days <= boundary:
            return f"Last {boundary} days"
    return OLDER_LABEL


def day_bucket_labels(boundaries: Iterable[int]) -> List[str]:
    return [f"Last {boundary} days" for boundary in boundaries] + [OLDER_LABEL]


def days_ago(epoch: int, now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    return int((now - epoch) // SECONDS_PER_DAY)


def parse_day_buckets(value) -> Tuple[int, ...]:
    """
    Parse day boundaries from ``"7,30,180"`` or a list.

    Returns a sorted, de-duplicated tuple; None gives the defaults.
    """
    if value is None:
        return DEFAULT_DAY_BUCKETS
    items = value.split(",") if isinstance(value, str) else list(value)
    days = set()
    for item in items:
        text = str(item).strip()
        if not text:
            continue
        try:
            day = int(text)
        except ValueError:
            raise ValueError(f"Invalid day bucket: {text!r}")
        if day <= 0:
            raise ValueError(f"Day buckets must be positive, got {day}")
        days.add(day)
    if not days:
        raise ValueError("At least one day bucket is required")
    return tuple(sorted(days))


# ============================================================================
# AGGREGATION
# ============================================================================


@dataclass(frozen=True)
class AnnotatedRow:
    """A BlameRow with the context of the file it came from."""

    commit: str
    author: str
    author_mail: str
    committer_time: int
    boundary: bool
    file_path: str
    cluster_path: str
    language: str
    repository: str
    age_days: int

    @classmethod
    def from_blame(cls, row: BlameRow, **context) -> "AnnotatedRow":
        return cls(**asdict(row), **context)


DIMENSION_ATTRIBUTES = {
    "author": "author",
    "repo": "repository",
    "lang": "language",
    "cluster": "cluster_path",
    "file": "file_path",
}
PRIMARY_DIMENSIONS = ("author", "repo", "lang", "cluster", "file")
SECONDARY_DIMENSIONS = ("date", "age", "author", "repo", "lang", "cluster", "file")


def key_selector(
    name: str, day_buckets: Iterable[int] = DEFAULT_DAY_BUCKETS
) -> Callable[[AnnotatedRow], str]:
    """Return the function extracting dimension ``name`` from a row."""
    day_buckets = tuple(day_buckets)

    if name == "date":
        return lambda row: day_bucket_label(row.age_days, day_buckets)

    if name == "age":
        bins = [0, *day_buckets, AGE_BIN_CEILING]

        def select_age(row: AnnotatedRow) -> str:
            value = bucket(row.age_days, bins)
            return UNBUCKETED_LABEL if value == UNBUCKETED else str(value)

        return select_age

    if name not in DIMENSION_ATTRIBUTES:
        raise ValueError(f"Unknown dimension: {name}")
    attribute = DIMENSION_ATTRIBUTES[name]
    return lambda row: getattr(row, attribute)


class AggregatedCounts:
    """
    Two-level count: primary key -> secondary key -> number of lines.

    Counts only grow. ``incomplete`` is set when the run producing the rows
    was interrupted.
    """

    def __init__(self):
        self.counts: Dict[str, Counter] = defaultdict(Counter)
        self.incomplete = False

    def add(self, primary: str, secondary: str):
        self.counts[primary][secondary] += 1

    def get(self, primary: str, secondary: str) -> int:
        if primary not in self.counts:
            return 0
        return self.counts[primary][secondary]

    @property
    def total(self) -> int:
        return sum(sum(inner.values()) for inner in self.counts.values())

    def totals(self) -> Dict[str, int]:
        return {key: sum(inner.values()) for key, inner in self.counts.items()}

    def primary_keys(self) -> List[str]:
        """Primary keys by descending total."""
        totals = self.totals()
        return sorted(totals, key=lambda key: -totals[key])

    def secondary_keys(self) -> List[str]:
        """Secondary keys in first-seen order."""
        seen = {}
        for inner in self.counts.values():
            for key in inner:
                seen.setdefault(key, None)
        return list(seen)

    def rows(self) -> Iterator[Tuple[str, str, int]]:
        for primary, inner in self.counts.items():
            for secondary, count in inner.items():
                yield primary, secondary, count

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {key: dict(inner) for key, inner in self.counts.items()}

    def __len__(self):
        return len(self.counts)


def aggregate(
    rows: Iterable,
    primary_key: Callable,
    secondary_key: Callable,
    token: Optional["CancellationToken"] = None,
) -> AggregatedCounts:
    """
    Count rows by (primary_key(row), secondary_key(row)).

    Rows are pulled one at a time and never retained. If ``token`` is
    cancelled, no further row is pulled and the result is marked incomplete.
    """
    counts = AggregatedCounts()
    if token is not None and token.cancelled:
        counts.incomplete = True
        return counts

    for row in rows:
        counts.add(primary_key(row), secondary_key(row))
        if token is not None and token.cancelled:
            counts.incomplete = True
            break
    return counts


def count_distinct(items: Iterable[Tuple]) -> Iterator[Tuple]:
    """Yield each distinct tuple once, with its occurrence count appended."""
    counter = Counter(items)
    for item, count in counter.items():
        yield tuple(item) + (count,)


def secondary_order(
    name: str, keys: Iterable[str], day_buckets: Iterable[int] = DEFAULT_DAY_BUCKETS
) -> List[str]:
    """Display order for the secondary keys of a report."""
    keys = list(keys)
    if name == "date":
        labels = day_bucket_labels(day_buckets)
        return [label for label in labels if label in keys] + [
            key for key in keys if key not in labels
        ]
    if keys and all(str(key).lstrip("-").isdigit() for key in keys):
        return sorted(keys, key=int)
    return sorted(keys, key=str)


# ============================================================================
# CANCELLATION
# ============================================================================


class CancellationToken:
    """Cooperative stop request, checked at file and row boundaries."""

    def __init__(self):
        self.cancelled = False
        self.requests = 0

    def cancel(self):
        self.requests += 1
        self.cancelled = True


def install_interrupt_handler(token: CancellationToken, reporter: "ProgressReporter"):
    """
    Route SIGINT to ``token``: the first signal drains, the second exits 130.

    Returns the previous handler so the caller can restore it.
    """

    def handle_interrupt(signum, frame):
        if token.cancelled:
            reporter.error("Forcing exit.")
            sys.exit(130)
        token.cancel()
        reporter.warning(
            "Signal received. Finishing current file then stopping. "
            "Press Ctrl+C again to exit immediately."
        )

    return signal.signal(signal.SIGINT, handle_interrupt)


# ============================================================================
# PERFORMANCE MONITORING
# ============================================================================


class MemoryMonitor:
    """
    Resident set size of the blame run, sampled every ``interval`` files.

    Only the aggregated counts outlive a file, so growth tracks the number of
    distinct keys (``--group-by file`` on a large monorepo is the usual case).
    """

    def __init__(self, limit_mb: Optional[float] = None, interval: int = 50):
        self.limit_mb = limit_mb
        self.interval = interval
        self.peak_mb = 0.0
        self.samples = 0

    def check_memory(self) -> float:
        """Sample now; raise MemoryError above ``limit_mb``."""
        rss_mb = psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
        self.samples += 1
        if rss_mb > self.peak_mb:
            self.peak_mb = rss_mb

        if self.limit_mb is not None and rss_mb > self.limit_mb:
            raise MemoryError(
                f"blame run uses {rss_mb:.1f} MB, above --memory-limit {self.limit_mb} MB"
            )
        return rss_mb

    def after_file(self, files_done: int) -> Optional[float]:
        if files_done % self.interval:
            return None
        return self.check_memory()


@dataclass
class RunMetrics:
    repositories: int = 0
    files_listed: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    rows_emitted: int = 0
    clusters: int = 0
    memory_peak_mb: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "repositories": self.repositories,
            "files_listed": self.files_listed,
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "rows_emitted": self.rows_emitted,
            "clusters": self.clusters,
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
        }


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================

CONFIG_NAMES = (".blame-strata.yaml", ".blame-strata.yml", ".blame-strata.json")
CONFIG_ALIASES = {"format": "output_format", "filename": "include", "exclude-filename": "exclude"}

PRESETS = {
    "ownership": {"group_by": "author", "then_by": "date"},
    "languages": {"group_by": "lang", "then_by": "author"},
    "clusters": {"group_by": "cluster", "then_by": "author", "show_clusters": True},
    "quick": {"shuffle": True, "days": [30, 365]},
}


CONFIG_LOADERS = {".yaml": yaml.safe_load, ".yml": yaml.safe_load, ".json": json.load}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Read option defaults from a .blame-strata file.

    Keys are option names, kebab or snake case (``group-by: lang``,
    ``days: [30, 90]``). An empty YAML file is an empty config; anything but
    a mapping at the top level is rejected.
    """
    extension = os.path.splitext(config_path)[1].lower()
    loader = CONFIG_LOADERS.get(extension)
    if loader is None:
        raise ValueError(f"Unsupported config file format: {extension or config_path}")
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        options = loader(f)
    if options is None:
        return {}
    if not isinstance(options, dict):
        raise ValueError(
            f"{config_path}: expected a mapping of options, got {type(options).__name__}"
        )
    return options


def find_config_file(search_path: str) -> Optional[str]:
    """
    Look for .blame-strata.{yaml,yml,json} next to the target, then in the
    current directory.
    """
    if os.path.isfile(search_path):
        search_path = os.path.dirname(search_path) or "."

    for search_dir in (search_path, os.getcwd()):
        for config_name in CONFIG_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """
    Resolve settings with precedence: CLI > config file > preset > defaults.
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        search_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.source = None

        if config_path:
            self.config = load_config_file(config_path)
            self.source = config_path
        else:
            auto_path = find_config_file(search_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.source = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        self.config = {
            CONFIG_ALIASES.get(k, k.replace("-", "_")): v for k, v in self.config.items()
        }

        final_preset_name = preset_name or self.config.get("preset")
        self.preset = PRESETS.get(final_preset_name, {}) if final_preset_name else {}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Run status for one blame-strata invocation.

    Everything goes to stderr because stdout may carry the CSV or JSON lines
    output. ``quiet`` keeps errors only; ``verbose`` adds per-stage counters
    and the files that were skipped.
    """

    RULE_WIDTH = 70

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times: Dict[str, float] = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def _emit(self, text: str = ""):
        print(text, file=sys.stderr)

    def _line(self, icon: str, message: str, color: str, always: bool = False):
        if self.quiet and not always:
            return
        self._emit(f"{self._colorize(icon, color)} {message}")

    def _banner(self, title: str, color: str):
        rule = self._colorize("=" * self.RULE_WIDTH, Fore.CYAN)
        self._emit(f"\n{rule}")
        self._emit(self._colorize(title, color + Style.BRIGHT))
        self._emit(rule)

    def _counters(self, stats: Dict[str, Any]):
        for key, value in stats.items():
            self._emit(f"   {key}: {value}")

    def stage_start(self, stage_name: str, message: str = ""):
        self.stage_times[stage_name] = time.time()
        if self.quiet:
            return
        self._banner(f"🔄 {stage_name}", Fore.BLUE)
        if message:
            self._emit(f"   {message}")

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        elapsed = time.time() - self.stage_times.pop(stage_name, time.time())
        self._line("✅", f"{stage_name} complete ({elapsed:.2f}s)", Fore.GREEN)
        if stats and self.verbose and not self.quiet:
            self._counters(stats)

    def create_progress_bar(self, total: int, desc: str = "Blaming") -> Optional[tqdm]:
        """One tick per blamed file; None when quiet."""
        if self.quiet:
            return None
        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" files",
            ncols=100,
            file=sys.stderr,
            bar_format="{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
        )

    def info(self, message: str):
        self._line("ℹ️ ", message, Fore.BLUE)

    def warning(self, message: str):
        self._line("⚠️ ", message, Fore.YELLOW + Style.BRIGHT)

    def error(self, message: str):
        self._line("❌", f"ERROR: {message}", Fore.RED + Style.BRIGHT, always=True)

    def success(self, message: str):
        self._line("✨", message, Fore.GREEN + Style.BRIGHT)

    def summary(self, stats: Dict[str, Any]):
        """Ownership totals of the run, then the wall-clock time."""
        if self.quiet:
            return
        self._banner("📊 OWNERSHIP SUMMARY", Fore.MAGENTA)
        self._counters(stats)
        elapsed = time.time() - self.start_time
        self._emit(self._colorize(f"\n⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW))
        self._emit(self._colorize("=" * self.RULE_WIDTH, Fore.CYAN) + "\n")


# ============================================================================
# GIT COLLABORATORS
# ============================================================================

IGNORED_DIRS = {".git", "node_modules"}


def run_git(args: List[str], cwd: str) -> str:
    result = subprocess.run(
        ["git"] + list(args),
        cwd=cwd,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        check=True,
    )
    return result.stdout


def find_repo_root(path: str) -> str:
    """Top-level directory of the repository containing ``path``."""
    path = os.path.abspath(path)
    cwd = path if os.path.isdir(path) else os.path.dirname(path)
    try:
        return run_git(["rev-parse", "--show-toplevel"], cwd=cwd).strip()
    except (subprocess.CalledProcessError, OSError) as e:
        raise RepositoryNotFoundError(
            f"Could not find a git repository at or above: {cwd}"
        ) from e


def find_repositories(path: str, depth: int = 3) -> List[str]:
    """Repositories at ``path`` or nested up to ``depth`` levels below it."""
    if depth <= 0 or not os.path.isdir(path):
        return []
    if os.path.exists(os.path.join(path, ".git")):
        return [os.path.abspath(path)]

    found = []
    try:
        entries = sorted(os.scandir(path), key=lambda entry: entry.name)
    except OSError:
        return []
    for entry in entries:
        if entry.is_dir() and entry.name not in IGNORED_DIRS:
            found.extend(find_repositories(entry.path, depth - 1))
    return sorted(set(found))


def _matches_filters(path: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    name = os.path.basename(path)

    def matches(pattern):
        return fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern)

    include = list(include)
    if include and not any(matches(pattern) for pattern in include):
        return False
    return not any(matches(pattern) for pattern in exclude)


def list_tracked_files(
    repo_root: str,
    target: Optional[str] = None,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> List[str]:
    """Tracked files under ``target`` (default: whole repo), repo-relative."""
    pathspec = "."
    if target:
        pathspec = os.path.relpath(os.path.realpath(target), os.path.realpath(repo_root))
    output = run_git(["ls-files", "-z", "--", pathspec], cwd=repo_root)
    files = [path for path in output.split("\0") if path]
    return [path for path in files if _matches_filters(path, include, exclude)]


def blame_file(
    repo_root: str,
    file_path: str,
    since: Optional[str] = None,
    revision: Optional[str] = None,
) -> List[str]:
    """Raw `git blame --line-porcelain` output lines for one file."""
    args = ["blame", "--line-porcelain"]
    if since:
        args.append(f"--since={since}")
    if revision:
        args.append(revision)
    args += ["--", file_path]

    try:
        return run_git(args, cwd=repo_root).split("\n")
    except subprocess.CalledProcessError as e:
        raise BlameError(f"git blame failed for {file_path}: {e.stderr.strip()}") from e


def detect_language(file_path: str) -> str:
    return os.path.splitext(file_path)[1] or "Other"


# ============================================================================
# ANALYZER
# ============================================================================


class BlameStatsAnalyzer:
    """
    Blame every tracked file of one repository and stream annotated rows.
    """

    def __init__(
        self,
        repo_root: str,
        target: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
        include: Iterable[str] = (),
        exclude: Iterable[str] = (),
        cluster_max: Optional[int] = None,
        cluster_min: Optional[int] = None,
        cluster_strategy: str = "peel",
        since: Optional[str] = None,
        revision: Optional[str] = None,
        shuffle: bool = False,
        memory_limit_mb: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        metrics: Optional[RunMetrics] = None,
        now: Optional[float] = None,
    ):
        self.repo_root = repo_root
        self.repository = os.path.basename(os.path.normpath(repo_root))
        self.target = target
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.include = list(include)
        self.exclude = list(exclude)
        self.cluster_max = cluster_max
        self.cluster_min = cluster_min
        self.cluster_strategy = cluster_strategy
        self.since = since
        self.revision = revision
        self.shuffle = shuffle
        self.token = token or CancellationToken()
        self.metrics = metrics or RunMetrics()
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)
        self.now = time.time() if now is None else now

        self.files: List[str] = []
        self.clusters: List[FileTreeCluster] = []
        self.cluster_paths: Dict[str, str] = {}
        self.errors: List[str] = []
        self.discovered = False

    def cluster_bounds(self) -> Tuple[int, int]:
        """
        Effective ``(max_size, min_size)``.

        A bound given alone drags the scaled default of the other one along,
        so ``--cluster-max 3`` or ``--cluster-min 50`` never yield max < min.
        """
        max_size, min_size = default_cluster_bounds(len(self.files))
        if self.cluster_min is not None:
            min_size = self.cluster_min
        if self.cluster_max is not None:
            max_size = self.cluster_max
            if self.cluster_min is None:
                min_size = min(min_size, max_size)
        else:
            max_size = max(max_size, min_size)
        return max_size, min_size

    def discover(self) -> List[str]:
        """List tracked files and assign each one to a cluster."""
        self.files = list_tracked_files(
            self.repo_root, self.target, self.include, self.exclude
        )
        max_size, min_size = self.cluster_bounds()
        self.clusters = cluster_files(
            self.files, max_size, min_size, strategy=self.cluster_strategy
        )
        self.cluster_paths = cluster_lookup(self.clusters)
        self.discovered = True

        self.metrics.files_listed += len(self.files)
        self.metrics.clusters += len(self.clusters)
        return self.files

    def blame(self, file_path: str) -> List[BlameRow]:
        """Blame rows for one file; empty and non-regular files give none."""
        abs_path = os.path.join(self.repo_root, file_path)
        if not os.path.isfile(abs_path) or os.path.getsize(abs_path) == 0:
            return []
        lines = blame_file(self.repo_root, file_path, self.since, self.revision)
        return list(iter_blame_rows(lines))

    def annotate(self, row: BlameRow, file_path: str) -> AnnotatedRow:
        return AnnotatedRow.from_blame(
            row,
            file_path=file_path,
            cluster_path=self.cluster_paths.get(file_path, ""),
            language=detect_language(file_path),
            repository=self.repository,
            age_days=days_ago(row.committer_time, self.now),
        )

    def iter_rows(self) -> Iterator[AnnotatedRow]:
        """
        Stream annotated rows, one file at a time.

        Failing files are skipped and recorded in ``errors``. When the token
        is cancelled the current file is finished and no new file is started.
        """
        if not self.discovered:
            self.discover()

        order = list(self.files)
        if self.shuffle:
            random.shuffle(order)

        progress_bar = self.reporter.create_progress_bar(
            total=len(order), desc=f"Blaming {self.repository}"
        )
        try:
            for index, file_path in enumerate(order, 1):
                if self.token.cancelled:
                    break

                try:
                    rows = self.blame(file_path)
                except (BlameError, OSError) as e:
                    self.errors.append(str(e))
                    self.metrics.files_skipped += 1
                    if self.reporter.verbose:
                        self.reporter.warning(f"Skipped {file_path}: {e}")
                    rows = None

                if progress_bar:
                    progress_bar.update(1)
                self.memory_monitor.after_file(index)
                if rows is None:
                    continue

                self.metrics.files_processed += 1
                for row in rows:
                    self.metrics.rows_emitted += 1
                    yield self.annotate(row, file_path)
        finally:
            if progress_bar:
                progress_bar.close()
            self.metrics.memory_peak_mb = max(
                self.metrics.memory_peak_mb, self.memory_monitor.peak_mb
            )


def resolve_repositories(paths: Iterable[str]) -> List[Tuple[str, Optional[str]]]:
    """
    Pair every path with the repository that analyzes it.

    A path inside a repository is analyzed as a sub-target of that repository;
    any other directory is searched for nested repositories, each analyzed in
    full.
    """
    resolved = []
    for path in paths:
        try:
            resolved.append((find_repo_root(path), path))
        except RepositoryNotFoundError:
            for repo in find_repositories(path):
                resolved.append((find_repo_root(repo), None))

    unique = []
    for item in resolved:
        if item not in unique:
            unique.append(item)
    return unique


# ============================================================================
# OUTPUT
# ============================================================================


def write_csv(fieldnames: List[str], rows: Iterable[Iterable], stream):
    """Header then one line per row; values with , " or newlines are quoted."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(fieldnames)
    for row in rows:
        writer.writerow(row)


def write_jsonl(rows: Iterable[Iterable], stream):
    for row in rows:
        stream.write(json.dumps(list(row), ensure_ascii=False) + "\n")


HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>__TITLE__</title>
    <script src="https://cdn.jsdelivr.net/npm/chart.js"></script>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif; margin: 0; background-color: #f8f9fa; color: #212529; }
        .container { max-width: 1200px; margin: 20px auto; padding: 20px; background-color: #fff; border-radius: 8px; }
        .notice { padding: 10px; background-color: #fff3cd; border: 1px solid #ffe69c; }
        table { width: 100%; border-collapse: collapse; margin-top: 30px; }
        th, td { padding: 8px; border: 1px solid #dee2e6; text-align: left; }
        td.num, th.num { text-align: right; }
        thead { background-color: #e9ecef; }
    </style>
</head>
<body>
    <div class="container">
        <h1>__TITLE__</h1>
        __NOTICE__
        <canvas id="chart"></canvas>
        <table>
            <thead><tr><th>__PRIMARY_HEADER__</th>__TABLE_HEADERS__</tr></thead>
            <tbody>__TABLE_ROWS__</tbody>
        </table>
    </div>
    <script>
        const labels = __CHART_LABELS_JSON__;
        const datasets = __CHART_DATASETS_JSON__;
        new Chart(document.getElementById('chart').getContext('2d'), {
            type: 'bar',
            data: { labels: labels, datasets: datasets },
            options: { indexAxis: 'y', scales: { x: { stacked: true }, y: { stacked: true } } }
        });
    </script>
</body>
</html>
"""

BUCKET_COLORS = [
    "rgba(214, 40, 40, 0.7)",
    "rgba(247, 127, 0, 0.7)",
    "rgba(252, 191, 73, 0.7)",
    "rgba(168, 218, 142, 0.7)",
    "rgba(75, 192, 192, 0.7)",
    "rgba(54, 162, 235, 0.7)",
    "rgba(153, 102, 255, 0.7)",
    "rgba(201, 203, 207, 0.7)",
]


def _inline_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False).replace("</", "<\\/")


def render_html_report(
    counts: AggregatedCounts,
    primary_label: str = "author",
    secondary_label: str = "date",
    secondary_keys: Optional[List[str]] = None,
    top_n: int = 20,
) -> str:
    """Standalone HTML report: stacked bar chart of the top N plus a table."""
    primary_keys = counts.primary_keys()
    chart_keys = primary_keys[:top_n]
    if secondary_keys is None:
        secondary_keys = secondary_order(secondary_label, counts.secondary_keys())
    totals = counts.totals()

    datasets = [
        {
            "label": str(key),
            "data": [counts.get(primary, key) for primary in chart_keys],
            "backgroundColor": BUCKET_COLORS[i % len(BUCKET_COLORS)],
        }
        for i, key in enumerate(secondary_keys)
    ]

    headers = '<th class="num">Total</th>' + "".join(
        f'<th class="num">{html.escape(str(key))}</th>' for key in secondary_keys
    )
    rows = []
    for primary in primary_keys:
        cells = "".join(
            f'<td class="num">{counts.get(primary, key):,}</td>' for key in secondary_keys
        )
        rows.append(
            f"<tr><td>{html.escape(str(primary))}</td>"
            f'<td class="num">{totals[primary]:,}</td>{cells}</tr>'
        )

    notice = ""
    if counts.incomplete:
        notice = '<p class="notice">The run was interrupted; these numbers may be incomplete.</p>'

    title = (
        f"Lines by {primary_label} (top {top_n}), grouped by {secondary_label}"
    )
    replacements = {
        "__TITLE__": html.escape(title),
        "__NOTICE__": notice,
        "__PRIMARY_HEADER__": html.escape(primary_label),
        "__TABLE_HEADERS__": headers,
        "__TABLE_ROWS__": "\n".join(rows),
        "__CHART_LABELS_JSON__": _inline_json(chart_keys),
        "__CHART_DATASETS_JSON__": _inline_json(datasets),
    }
    content = HTML_TEMPLATE
    for placeholder, value in replacements.items():
        content = content.replace(placeholder, value)
    return content


# ============================================================================
# CLI INTERFACE
# ============================================================================


def _unique(items: Iterable[str]) -> List[str]:
    result = []
    for item in items:
        if item not in result:
            result.append(item)
    return result


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("target_path", required=False, default=".", type=click.Path())
@click.option(
    "--path",
    "extra_paths",
    multiple=True,
    type=click.Path(),
    help="Additional repository or directory to analyze (repeatable)",
)
@click.option(
    "--filename",
    "include",
    multiple=True,
    metavar="GLOB",
    help="Only analyze files matching GLOB (repeatable)",
)
@click.option(
    "--exclude-filename",
    "exclude",
    multiple=True,
    metavar="GLOB",
    help="Skip files matching GLOB (repeatable)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["csv", "html", "jsonl"]),
    help="Output format (default: csv)",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    help="Output file (default: stdout, or blame-strata-report.html for html)",
)
@click.option("--config", type=click.Path(exists=True, dir_okay=False))
@click.option("--preset", type=click.Choice(sorted(PRESETS)))
# Grouping
@click.option("--group-by", type=click.Choice(PRIMARY_DIMENSIONS), help="Primary dimension")
@click.option(
    "--then-by", type=click.Choice(SECONDARY_DIMENSIONS), help="Secondary dimension"
)
@click.option("--days", help="Comma-separated day-bucket boundaries (default 7,30,180,365)")
# Clustering
@click.option("--cluster-max", type=click.IntRange(min=1), help="Maximum files per cluster")
@click.option("--cluster-min", type=click.IntRange(min=1), help="Minimum files per cluster")
@click.option("--cluster-strategy", type=click.Choice(STRATEGIES))
@click.option("--show-clusters", is_flag=True, default=None, help="Print the file clusters")
# Extraction
@click.option("--since", help="Passed to git blame --since")
@click.option("--revision", help="Blame at this revision instead of the working tree")
@click.option(
    "--shuffle",
    is_flag=True,
    default=None,
    help="Blame files in random order so an interrupted run is a fair sample",
)
@click.option("--memory-limit", type=float, help="Memory limit in MB")
# Output control
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, default=None, help="Show skipped files and stage stats")
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option("--dry-run", is_flag=True, help="Show what would be analyzed and exit")
@click.version_option(version=VERSION)
def main(target_path, extra_paths, include, exclude, config, preset, **kwargs):
    """
    Code ownership statistics from git blame.

    Counts the lines of TARGET_PATH (default: current directory) by a primary
    and a secondary dimension, for example author x age bucket.
    """
    kwargs["include"] = list(include) or None
    kwargs["exclude"] = list(exclude) or None
    resolver = ConfigResolver(kwargs, config, preset, target_path)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    reporter = ProgressReporter(
        quiet=quiet, verbose=verbose, use_colors=not resolver.get("no_color", False)
    )
    if resolver.source and not quiet:
        reporter.info(f"Using configuration: {resolver.source}")

    output_format = resolver.get("output_format", "csv")
    output = resolver.get("output")
    if output_format == "html" and not output:
        output = "blame-strata-report.html"

    group_by = resolver.get("group_by", "author")
    then_by = resolver.get("then_by", "date")
    if group_by not in PRIMARY_DIMENSIONS:
        raise click.BadParameter(f"invalid dimension {group_by!r}", param_hint="group_by")
    if then_by not in SECONDARY_DIMENSIONS:
        raise click.BadParameter(f"invalid dimension {then_by!r}", param_hint="then_by")
    try:
        day_buckets = parse_day_buckets(resolver.get("days"))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--days")

    cluster_max = resolver.get("cluster_max")
    cluster_min = resolver.get("cluster_min")
    if cluster_max is not None and cluster_min is not None and cluster_max < cluster_min:
        raise click.BadParameter(
            f"--cluster-max ({cluster_max}) must be >= --cluster-min ({cluster_min})"
        )
    cluster_strategy = resolver.get("cluster_strategy", "peel")
    if cluster_strategy not in STRATEGIES:
        raise click.BadParameter(
            f"invalid strategy {cluster_strategy!r}", param_hint="cluster_strategy"
        )

    paths = [target_path] + list(extra_paths)
    for path in paths:
        if not os.path.exists(path):
            reporter.error(f"Path does not exist: {os.path.abspath(path)}")
            sys.exit(1)

    repositories = resolve_repositories(paths)
    if not repositories:
        reporter.error(f"No git repositories found at or under: {', '.join(paths)}")
        sys.exit(1)

    if resolver.get("dry_run", False):
        reporter.info("DRY RUN MODE - No blame will be run")
        for repo_root, target in repositories:
            reporter.info(f"Repository: {repo_root} (target: {target or 'all files'})")
        reporter.info(f"Grouping: {group_by} x {then_by}")
        reporter.info(f"Day buckets: {', '.join(str(day) for day in day_buckets)}")
        reporter.info(f"Cluster strategy: {cluster_strategy}")
        reporter.info(f"Output: {output_format} -> {output or 'stdout'}")
        return

    token = CancellationToken()
    previous_handler = install_interrupt_handler(token, reporter)
    metrics = RunMetrics(repositories=len(repositories))
    start_time = time.time()

    try:
        reporter.stage_start("Discovery", f"Listing files in {len(repositories)} repositories")
        analyzers = []
        for repo_root, target in repositories:
            analyzer = BlameStatsAnalyzer(
                repo_root,
                target=target,
                reporter=reporter,
                include=resolver.get("include") or (),
                exclude=resolver.get("exclude") or (),
                cluster_max=cluster_max,
                cluster_min=cluster_min,
                cluster_strategy=cluster_strategy,
                since=resolver.get("since"),
                revision=resolver.get("revision"),
                shuffle=resolver.get("shuffle", False),
                memory_limit_mb=resolver.get("memory_limit"),
                token=token,
                metrics=metrics,
            )
            analyzer.discover()
            analyzers.append(analyzer)
            reporter.info(
                f"Found {len(analyzer.files):,} files in '{analyzer.repository}' "
                f"({len(analyzer.clusters)} clusters)"
            )
            if resolver.get("show_clusters", False):
                for cluster in analyzer.clusters:
                    suffix = "/*" if cluster.is_leftovers else ""
                    reporter.info(f"   {cluster.path or '.'}{suffix} ({cluster.weight})")
        reporter.stage_complete(
            "Discovery",
            {"Files": f"{metrics.files_listed:,}", "Clusters": metrics.clusters},
        )

        reporter.stage_start("Blame", "Streaming line attribution...")
        rows = itertools.chain.from_iterable(analyzer.iter_rows() for analyzer in analyzers)

        if output_format == "jsonl":
            fields = _unique([group_by, then_by, "lang", "cluster", "repo"])
            selectors = [key_selector(name, day_buckets) for name in fields]
            records = list(
                count_distinct(tuple(select(row) for select in selectors) for row in rows)
            )
            incomplete = token.cancelled
        else:
            counts = aggregate(
                rows,
                key_selector(group_by, day_buckets),
                key_selector(then_by, day_buckets),
            )
            counts.incomplete = counts.incomplete or token.cancelled
            incomplete = counts.incomplete
        reporter.stage_complete(
            "Blame",
            {
                "Files blamed": f"{metrics.files_processed:,}",
                "Files skipped": f"{metrics.files_skipped:,}",
                "Lines": f"{metrics.rows_emitted:,}",
            },
        )

        stream = open(output, "w", encoding="utf-8", newline="") if output else sys.stdout
        try:
            if output_format == "jsonl":
                write_jsonl(records, stream)
            elif output_format == "html":
                stream.write(
                    render_html_report(
                        counts,
                        primary_label=group_by,
                        secondary_label=then_by,
                        secondary_keys=secondary_order(
                            then_by, counts.secondary_keys(), day_buckets
                        ),
                    )
                )
            else:
                write_csv([group_by, then_by, "lines"], counts.rows(), stream)
        finally:
            if output:
                stream.close()
            else:
                stream.flush()

        errors = [error for analyzer in analyzers for error in analyzer.errors]
        if errors:
            reporter.warning(f"{len(errors)} files skipped (use -v for details)")

        metrics.total_time = time.time() - start_time
        summary_stats = {
            "Repositories": metrics.repositories,
            "Files blamed": f"{metrics.files_processed:,}",
            "Files skipped": f"{metrics.files_skipped:,}",
            "Lines attributed": f"{metrics.rows_emitted:,}",
            "Clusters": metrics.clusters,
            "Output": output or "stdout",
        }
        if metrics.memory_peak_mb:
            summary_stats["Peak memory"] = f"{metrics.memory_peak_mb:.1f} MB"
        reporter.summary(summary_stats)

        if incomplete:
            reporter.warning("Interrupted: output may be incomplete.")
        else:
            reporter.success(f"Analysis complete! Results written to: {output or 'stdout'}")

    except BlameStrataError as e:
        reporter.error(str(e))
        sys.exit(1)
    except Exception as e:
        reporter.error(f"Analysis failed: {str(e)}")
        if verbose:
            traceback.print_exc()
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    main()
