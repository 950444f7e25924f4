#!/usr/bin/env python3
"""
Repository Timeline Builder (v1.0.0)

Replays a repository's commit history into a sequence of file-tree
snapshots ("frames"), one per day, week or month. Each frame carries the
cumulative tree as of the end of its bucket, the commits that landed in
the bucket, aggregate statistics and the set of files that were added,
modified or deleted since the previous frame.

Components:
- GitCommitLog / StaticCommitLog: ordered commit sources
- IntervalBucketer: contiguous UTC-aligned day/week/month buckets
- TreeStateAccumulator: the single mutable working tree
- FrameBuilder: immutable per-bucket snapshots with stats and diffs
- TreeToNodeConverter: deterministic, parent-linked node lists
- MetadataAggregator: date range and contributor list
- GitHistoryTimeline: orchestration and the public operations
- Export, manifest and the click command line interface
"""

import fnmatch
import hashlib
import json
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import click
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)


# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

CONFIG_FILE_NAMES = [
    ".repo-timeline.yaml",
    ".repo-timeline.yml",
    ".repo-timeline.json",
]

# Extensions kept by --source-only
SOURCE_EXTENSIONS = (
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".pyx", ".pyi",
    ".java", ".kt", ".scala", ".groovy",
    ".go", ".rs", ".c", ".cpp", ".cc", ".cxx", ".h", ".hpp", ".hxx",
    ".cs", ".vb", ".fs", ".xaml",
    ".swift", ".m", ".mm",
    ".rb", ".rake",
    ".php",
    ".vue", ".svelte",
    ".html", ".htm", ".xml", ".json", ".yaml", ".yml", ".toml",
    ".css", ".scss", ".sass", ".less",
    ".sh", ".bash", ".zsh", ".fish",
    ".sql", ".graphql", ".proto", ".thrift",
    ".md", ".markdown",
)

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


# ============================================================================
# ERRORS
# ============================================================================


class RepositoryError(Exception):
    """The commit log could not be produced (not a repository, git missing, ...)"""


class MalformedChangeWarning(UserWarning):
    """
    A single file change that could not be applied to the working tree.

    Raised internally by the accumulator and recorded in its diagnostics;
    it never aborts a build.
    """

    def __init__(self, path: Any, reason: str, commit_hash: Optional[str] = None):
        self.path = path
        self.reason = reason
        self.commit_hash = commit_hash
        commit_ref = commit_hash[:8] if commit_hash else "unknown"
        super().__init__(f"[{commit_ref}] {path!r}: {reason}")


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.
    Supports .repo-timeline.yaml, .repo-timeline.yml, .repo-timeline.json
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            return yaml.safe_load(f) or {}
        elif file_ext == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")


def find_config_file(repo_path: str) -> Optional[str]:
    """Auto-discover a configuration file in the repository or current directory."""
    for search_dir in [repo_path, os.getcwd()]:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


def build_path_filter(
    source_only: bool = False, exclude: Optional[Iterable[str]] = None
) -> Optional[Callable[[str], bool]]:
    """
    Build the predicate deciding which paths enter the timeline.
    Returns None when every path is kept.
    """
    patterns = list(exclude or [])
    if not source_only and not patterns:
        return None

    def path_filter(path: str) -> bool:
        if source_only and not path.endswith(SOURCE_EXTENSIONS):
            return False
        return not any(fnmatch.fnmatchcase(path, pattern) for pattern in patterns)

    return path_filter


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Preset > Defaults
    """

    PRESETS = {
        "standard": {"interval": "week"},
        "daily": {"interval": "day"},
        "overview": {"interval": "month"},
        "source": {"interval": "week", "source_only": True},
        "quick": {"interval": "month", "max_commits": 1000, "max_frames": 120},
    }

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        repo_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.preset = {}
        self.config_source = None

        if config_path:
            self.config = load_config_file(config_path)
            self.config_source = config_path
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_source = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        # kebab-case to snake_case
        self.config = {k.replace("-", "_"): v for k, v in (self.config or {}).items()}

        final_preset_name = preset_name or self.config.get("preset")
        self.preset = self._get_preset(final_preset_name)

    def _get_preset(self, name: Optional[str]) -> Dict[str, Any]:
        """Return configuration dictionary for a named preset"""
        if not name:
            return {}
        return dict(self.PRESETS.get(name, {}))

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
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
    Console progress reporting
    - Color-coded output (colorama)
    - Progress bars with ETA (tqdm)
    - Errors always reach stderr, even when quiet
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)

        print(f"\n{separator}")
        print(stage_text)
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Mark completion of a processing stage"""
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        complete_text = self._colorize(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        print(complete_text)

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " commits"
    ) -> Optional[tqdm]:
        """Create a progress bar with ETA, or None when quiet"""
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        if not self.quiet:
            info_text = self._colorize("ℹ️  ", Fore.BLUE)
            print(f"{info_text}{message}")

    def warning(self, message: str):
        if not self.quiet:
            warning_text = self._colorize("⚠️  ", Fore.YELLOW + Style.BRIGHT)
            print(f"{warning_text}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        error_text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(error_text, file=sys.stderr)

    def success(self, message: str):
        if not self.quiet:
            success_text = self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT)
            print(success_text)

    def summary(self, stats: Dict[str, Any]):
        """Display final summary"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        header = self._colorize("📊 TIMELINE SUMMARY", Fore.MAGENTA + Style.BRIGHT)

        print(f"\n{separator}")
        print(header)
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")

        time_text = self._colorize(f"⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW)
        print(f"\n{time_text}")
        print(f"{separator}\n")


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class Interval(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @classmethod
    def parse(cls, value: Any) -> "Interval":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unsupported interval: {value!r} (expected day, week or month)"
            ) from None


@dataclass(frozen=True)
class FileChange:
    """One file-level edit inside a commit"""

    path: str
    kind: ChangeKind
    lines_added: int = 0
    lines_removed: int = 0

    def __post_init__(self):
        object.__setattr__(self, "kind", ChangeKind(self.kind))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "kind": self.kind.value,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
        }


@dataclass(frozen=True)
class Commit:
    """A commit as read from the log. Timestamps are normalized to UTC."""

    hash: str
    author: str
    timestamp: datetime
    message: str = ""
    email: str = ""
    changes: Tuple[FileChange, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        object.__setattr__(self, "changes", tuple(self.changes))

    @property
    def short_hash(self) -> str:
        return self.hash[:7]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "short_hash": self.short_hash,
            "author": self.author,
            "email": self.email,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "changes": [change.to_dict() for change in self.changes],
        }


@dataclass
class FileTreeNode:
    """
    Mutable node of the working tree. Directories keep no line counts of
    their own; aggregates are computed when a tree is flattened.
    """

    path: str
    name: str
    is_directory: bool
    lines: int = 0
    last_author: Optional[str] = None
    last_modified_at: Optional[datetime] = None
    added_at: Optional[datetime] = None
    change_count: int = 0
    children: Dict[str, "FileTreeNode"] = field(default_factory=dict)

    def copy(self) -> "FileTreeNode":
        clone = FileTreeNode(
            path=self.path,
            name=self.name,
            is_directory=self.is_directory,
            lines=self.lines,
            last_author=self.last_author,
            last_modified_at=self.last_modified_at,
            added_at=self.added_at,
            change_count=self.change_count,
        )
        for name, child in self.children.items():
            clone.children[name] = child.copy()
        return clone


class FileTree:
    """Rooted hierarchy of FileTreeNode. The root itself is never emitted."""

    def __init__(self, root: Optional[FileTreeNode] = None):
        self.root = root or FileTreeNode(path="", name="", is_directory=True)

    def get(self, path: str) -> Optional[FileTreeNode]:
        node = self.root
        for part in path.split("/"):
            node = node.children.get(part)
            if node is None:
                return None
        return node

    def iter_files(self) -> Iterator[FileTreeNode]:
        stack = [self.root]
        while stack:
            node = stack.pop()
            for child in node.children.values():
                if child.is_directory:
                    stack.append(child)
                else:
                    yield child

    def file_paths(self) -> Set[str]:
        return {node.path for node in self.iter_files()}

    def file_count(self) -> int:
        return sum(1 for _ in self.iter_files())

    def copy(self) -> "FileTree":
        """Deep, independent copy"""
        return FileTree(self.root.copy())


@dataclass(frozen=True)
class Bucket:
    """Half-open time window [start, end)"""

    start: datetime
    end: datetime
    label: str

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= to_utc(timestamp) < self.end


@dataclass(frozen=True)
class FrameStats:
    total_files: int
    total_lines: int
    total_commits: int
    total_contributors: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_files": self.total_files,
            "total_lines": self.total_lines,
            "total_commits": self.total_commits,
            "total_contributors": self.total_contributors,
        }


@dataclass(frozen=True)
class TimelineFrame:
    """Snapshot of the repository at the end of one bucket"""

    index: int
    label: str
    start: datetime
    end: datetime
    tree: FileTree
    commits: Tuple[Commit, ...]
    stats: FrameStats
    new_files: Tuple[str, ...] = ()
    modified_files: Tuple[str, ...] = ()
    deleted_files: Tuple[str, ...] = ()

    def to_dict(self, include_nodes: bool = False) -> Dict[str, Any]:
        data = {
            "index": self.index,
            "label": self.label,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "commits": [commit.to_dict() for commit in self.commits],
            "stats": self.stats.to_dict(),
            "new_files": list(self.new_files),
            "modified_files": list(self.modified_files),
            "deleted_files": list(self.deleted_files),
        }
        if include_nodes:
            nodes = TreeToNodeConverter().flatten(
                self.tree, self.new_files, self.modified_files
            )
            data["nodes"] = [node.to_dict() for node in nodes]
        return data


@dataclass(frozen=True)
class NodeDescriptor:
    """Flattened, render-ready description of one tree node"""

    id: str
    path: str
    parent_id: Optional[str]
    name: str
    is_directory: bool
    depth: int
    file_count: int
    line_count: int
    last_author: Optional[str]
    added_at: Optional[datetime]
    modified_at: Optional[datetime]
    change_count: Optional[int]
    is_new: bool = False
    is_modified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "parent_id": self.parent_id,
            "name": self.name,
            "is_directory": self.is_directory,
            "depth": self.depth,
            "file_count": self.file_count,
            "line_count": self.line_count,
            "last_author": self.last_author,
            "added_at": _isoformat(self.added_at),
            "modified_at": _isoformat(self.modified_at),
            "change_count": self.change_count,
            "is_new": self.is_new,
            "is_modified": self.is_modified,
        }


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


# ============================================================================
# COMMIT LOG SOURCES
# ============================================================================


C_ESCAPES = {
    "a": 0x07, "b": 0x08, "t": 0x09, "n": 0x0A,
    "v": 0x0B, "f": 0x0C, "r": 0x0D, '"': 0x22, "\\": 0x5C,
}


def unquote_path(path: str) -> str:
    """
    Undo git's C-style path quoting.

    Even with core.quotepath=off git wraps a path in double quotes and
    backslash-escapes it when it contains '"', '\\', or control characters.
    Octal escapes are raw bytes of the UTF-8 encoded name.
    """
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path

    body = path[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        char = body[i]
        if char != "\\" or i + 1 == len(body):
            out.extend(char.encode("utf-8"))
            i += 1
            continue

        escape = body[i + 1]
        octal = body[i + 1:i + 4]
        if len(octal) == 3 and all(c in "01234567" for c in octal):
            out.append(int(octal, 8) & 0xFF)
            i += 4
        elif escape in C_ESCAPES:
            out.append(C_ESCAPES[escape])
            i += 2
        else:
            out.extend(("\\" + escape).encode("utf-8"))
            i += 2
    return out.decode("utf-8", errors="replace")


class StaticCommitLog:
    """Commit source backed by an already-extracted list of commits"""

    def __init__(self, commits: Iterable[Commit]):
        self.commits = list(commits)

    def read_commits(self, errors: Optional[List[str]] = None) -> List[Commit]:
        return list(self.commits)


class GitCommitLog:
    """
    Extract commits from a local git repository.

    Runs `git log --raw --numstat` and joins, per path, the change kind from
    the raw lines with the line counts from the numstat lines. Renames are
    disabled so a move shows up as a delete plus an add. Commits come back
    oldest first, stably sorted by author timestamp.

    Lines that cannot be parsed are appended to the `errors` list passed
    to `read_commits`; nothing is kept on the instance between reads.
    """

    LOG_FORMAT = "%H%x00%at%x00%an%x00%ae%x00%s"
    STATUS_KINDS = {
        "A": ChangeKind.ADDED,
        "M": ChangeKind.MODIFIED,
        "T": ChangeKind.MODIFIED,
        "D": ChangeKind.DELETED,
    }

    def __init__(
        self,
        repo_path: str,
        max_commits: Optional[int] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.repo_path = os.path.abspath(repo_path)
        self.max_commits = max_commits
        self.reporter = reporter or ProgressReporter(quiet=True)

    def _git_command(self, *args: str) -> List[str]:
        return ["git", "-C", self.repo_path, "-c", "core.quotepath=off", *args]

    def _run_git(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                self._git_command(*args),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise RepositoryError("git executable not found on PATH") from e

    def has_commits(self) -> bool:
        """Validate the repository and report whether HEAD exists"""
        check = self._run_git("rev-parse", "--git-dir")
        if check.returncode != 0:
            raise RepositoryError(f"Not a git repository: {self.repo_path}")

        head = self._run_git("rev-parse", "--verify", "--quiet", "HEAD")
        return head.returncode == 0

    def read_commits(self, errors: Optional[List[str]] = None) -> List[Commit]:
        if not self.has_commits():
            return []

        cmd = ["log", "--reverse", "--no-renames", "--raw", "--numstat"]
        if self.max_commits:
            cmd.append(f"--max-count={int(self.max_commits)}")
        cmd.append(f"--format={self.LOG_FORMAT}")

        try:
            process = subprocess.Popen(
                self._git_command(*cmd),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise RepositoryError("git executable not found on PATH") from e

        commits = self.parse_log(process.stdout, errors)

        process.wait()
        if process.returncode != 0:
            stderr = process.stderr.read()
            raise RepositoryError(f"git log failed: {stderr.strip()}")

        commits.sort(key=lambda commit: commit.timestamp)
        return commits

    def parse_log(
        self, lines: Iterable[str], errors: Optional[List[str]] = None
    ) -> List[Commit]:
        """Parse the streamed log output into Commit objects"""
        if errors is None:
            errors = []
        commits = []
        header = None
        kinds = []
        numstats = {}

        def flush():
            if header is None:
                return
            changes = []
            for path, kind in kinds:
                added, removed = numstats.get(path, (0, 0))
                changes.append(FileChange(path, kind, added, removed))
            commits.append(
                Commit(
                    hash=header["hash"],
                    author=header["author"],
                    email=header["email"],
                    timestamp=header["timestamp"],
                    message=header["message"],
                    changes=tuple(changes),
                )
            )

        for line in lines:
            line = line.rstrip("\n")
            if not line:
                continue

            if "\x00" in line:
                flush()
                header = self._parse_commit_line(line, errors)
                kinds = []
                numstats = {}
            elif header is None:
                continue
            elif line.startswith(":"):
                entry = self._parse_raw_line(line, errors)
                if entry:
                    kinds.append(entry)
            else:
                entry = self._parse_numstat_line(line, errors)
                if entry:
                    path, added, removed = entry
                    numstats[path] = (added, removed)

        flush()
        return commits

    def _parse_commit_line(
        self, line: str, errors: List[str]
    ) -> Optional[Dict[str, Any]]:
        """Parse a commit header; None when it cannot be read"""
        parts = line.split("\x00")
        if len(parts) < 4:
            errors.append(f"Malformed commit header: {line[:50]}")
            return None
        try:
            timestamp = datetime.fromtimestamp(int(parts[1]), tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as e:
            errors.append(f"Failed to parse commit timestamp: {str(e)}")
            return None

        return {
            "hash": parts[0],
            "timestamp": timestamp,
            "author": parts[2],
            "email": parts[3],
            "message": parts[4] if len(parts) > 4 else "",
        }

    def _parse_raw_line(
        self, line: str, errors: List[str]
    ) -> Optional[Tuple[str, ChangeKind]]:
        """
        Parse a --raw line, e.g. ":100644 100644 abc1234 def5678 M\tsrc/app.py"
        """
        meta, _, path = line.partition("\t")
        fields = meta.split()
        if not path or len(fields) < 5:
            errors.append(f"Malformed raw line: {line[:50]}")
            return None

        path = unquote_path(path)
        status = fields[-1][:1]
        kind = self.STATUS_KINDS.get(status)
        if kind is None:
            errors.append(f"Unsupported change status {status!r} for {path}")
            return None
        return path, kind

    def _parse_numstat_line(
        self, line: str, errors: List[str]
    ) -> Optional[Tuple[str, int, int]]:
        """
        Parse a --numstat line, e.g. "10\t5\tsrc/app.py".
        Binary files report "-" and count as zero lines.
        """
        parts = line.split("\t", 2)
        if len(parts) != 3:
            errors.append(f"Malformed numstat line: {line[:50]}")
            return None

        added_str, removed_str, path = parts
        try:
            added = int(added_str) if added_str != "-" else 0
            removed = int(removed_str) if removed_str != "-" else 0
        except ValueError:
            errors.append(f"Malformed numstat line: {line[:50]}")
            return None
        return unquote_path(path), added, removed


# ============================================================================
# INTERVAL BUCKETING
# ============================================================================


class IntervalBucketer:
    """
    Partition a commit sequence into contiguous day/week/month buckets.

    Boundaries are aligned in UTC: days start at midnight, weeks on ISO
    Monday, months on the first. Empty buckets between the first and last
    commit are kept so the resulting timeline has no gaps.

    Every bucket spans a whole calendar period, the last one included: its
    `end` is the next boundary after the final commit, not the commit's
    own timestamp.
    """

    @staticmethod
    def interval_start(timestamp: datetime, interval: Interval) -> datetime:
        day = to_utc(timestamp).replace(hour=0, minute=0, second=0, microsecond=0)
        if interval is Interval.DAY:
            return day
        if interval is Interval.WEEK:
            return day - timedelta(days=day.weekday())
        return day.replace(day=1)

    @staticmethod
    def next_start(start: datetime, interval: Interval) -> datetime:
        if interval is Interval.DAY:
            return start + timedelta(days=1)
        if interval is Interval.WEEK:
            return start + timedelta(weeks=1)
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)

    @staticmethod
    def format_label(start: datetime, interval: Interval) -> str:
        month = MONTH_NAMES[start.month - 1]
        if interval is Interval.DAY:
            return f"{month} {start.day}, {start.year}"
        if interval is Interval.WEEK:
            return f"Week of {month} {start.day}, {start.year}"
        return f"{month} {start.year}"

    def buckets(self, commits: List[Commit], interval: Any) -> List[Bucket]:
        """Ordered buckets covering the first through the last commit"""
        interval = Interval.parse(interval)
        if not commits:
            return []

        first = min(commit.timestamp for commit in commits)
        last = max(commit.timestamp for commit in commits)

        buckets = []
        start = self.interval_start(first, interval)
        while start <= last:
            end = self.next_start(start, interval)
            buckets.append(Bucket(start, end, self.format_label(start, interval)))
            start = end
        return buckets


# ============================================================================
# TREE STATE ACCUMULATOR
# ============================================================================


class TreeStateAccumulator:
    """
    The single mutable working tree replayed forward through history.

    Commits must be applied in chronological order; nothing is re-sorted
    here. A change that cannot be applied is skipped and recorded in
    `diagnostics`, the rest of the commit still applies.
    """

    def __init__(self, path_filter: Optional[Callable[[str], bool]] = None):
        self.tree = FileTree()
        self.path_filter = path_filter
        self.diagnostics: List[MalformedChangeWarning] = []
        self.commits_applied = 0
        self.changes_applied = 0
        self.changes_filtered = 0
        self._deleted_since_snapshot: Set[str] = set()

    def apply(self, commit: Commit):
        """Apply every change of a commit. Deletions go first."""
        ordered = sorted(
            commit.changes, key=lambda change: change.kind is not ChangeKind.DELETED
        )
        for change in ordered:
            try:
                parts = self._split_path(change.path, commit)
                if self.path_filter is not None and not self.path_filter(change.path):
                    self.changes_filtered += 1
                    continue
                if change.kind is ChangeKind.DELETED:
                    self._remove(parts, change, commit)
                else:
                    self._upsert(parts, change, commit)
                self.changes_applied += 1
            except MalformedChangeWarning as warning:
                self.diagnostics.append(warning)
        self.commits_applied += 1

    def drain_deleted(self) -> Set[str]:
        """Paths deleted since the previous call"""
        deleted = self._deleted_since_snapshot
        self._deleted_since_snapshot = set()
        return deleted

    @staticmethod
    def _split_path(path: Any, commit: Commit) -> List[str]:
        if not isinstance(path, str) or not path:
            raise MalformedChangeWarning(path, "empty path", commit.hash)
        if path.startswith("/"):
            raise MalformedChangeWarning(path, "absolute path", commit.hash)
        if "\x00" in path:
            raise MalformedChangeWarning(path, "NUL byte in path", commit.hash)

        parts = path.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise MalformedChangeWarning(path, "invalid path segment", commit.hash)
        return parts

    def _upsert(self, parts: List[str], change: FileChange, commit: Commit):
        if change.lines_added < 0 or change.lines_removed < 0:
            raise MalformedChangeWarning(change.path, "negative line count", commit.hash)
        self._check_collision(parts, change, commit)

        current = self.tree.root
        for depth, name in enumerate(parts[:-1]):
            child = current.children.get(name)
            if child is None:
                child = FileTreeNode(
                    path="/".join(parts[: depth + 1]),
                    name=name,
                    is_directory=True,
                    added_at=commit.timestamp,
                )
                current.children[name] = child
            child.last_author = commit.author
            child.last_modified_at = commit.timestamp
            current = child

        node = current.children.get(parts[-1])
        if node is None:
            node = FileTreeNode(
                path=change.path,
                name=parts[-1],
                is_directory=False,
                added_at=commit.timestamp,
            )
            current.children[parts[-1]] = node

        node.lines = max(0, node.lines + change.lines_added - change.lines_removed)
        node.last_author = commit.author
        node.last_modified_at = commit.timestamp
        node.change_count += 1

    def _check_collision(self, parts: List[str], change: FileChange, commit: Commit):
        # Checked up front so a rejected change leaves no half-created directories
        current = self.tree.root
        for name in parts[:-1]:
            current = current.children.get(name)
            if current is None:
                return
            if not current.is_directory:
                raise MalformedChangeWarning(
                    change.path, f"parent {current.path!r} is a file", commit.hash
                )
        existing = current.children.get(parts[-1])
        if existing is not None and existing.is_directory:
            raise MalformedChangeWarning(change.path, "path is a directory", commit.hash)

    def _remove(self, parts: List[str], change: FileChange, commit: Commit):
        lineage = [self.tree.root]
        current = self.tree.root
        for name in parts:
            current = current.children.get(name)
            if current is None:
                raise MalformedChangeWarning(
                    change.path, "deleted path is not tracked", commit.hash
                )
            lineage.append(current)

        if current.is_directory:
            raise MalformedChangeWarning(change.path, "path is a directory", commit.hash)

        del lineage[-2].children[parts[-1]]
        self._deleted_since_snapshot.add(change.path)

        # Prune directories left empty, never the root
        for depth in range(len(parts) - 2, -1, -1):
            directory = lineage[depth + 1]
            if directory.children:
                break
            del lineage[depth].children[parts[depth]]


# ============================================================================
# FRAME BUILDER
# ============================================================================


class FrameBuilder:
    """Capture immutable frames from the accumulator at bucket boundaries"""

    def snapshot(
        self,
        accumulator: TreeStateAccumulator,
        bucket: Bucket,
        previous_frame: Optional[TimelineFrame],
        cumulative_commit_count: int,
        cumulative_contributor_count: int,
        commits: Iterable[Commit] = (),
        index: Optional[int] = None,
    ) -> TimelineFrame:
        """
        Build the frame closing `bucket`.

        Diff sets are relative to `previous_frame`. A file both created and
        deleted inside this bucket is reported as deleted. A file deleted and
        re-created inside the bucket is reported as modified.
        """
        tree = accumulator.tree.copy()
        deleted_during = accumulator.drain_deleted()

        current = {node.path: node for node in tree.iter_files()}
        previous = {}
        if previous_frame is not None:
            previous = {node.path: node for node in previous_frame.tree.iter_files()}

        new_files = sorted(path for path in current if path not in previous)

        deleted_files = {path for path in previous if path not in current}
        deleted_files.update(
            path
            for path in deleted_during
            if path not in current and path not in previous
        )

        modified_files = sorted(
            path
            for path, node in current.items()
            if path in previous
            and (
                node.change_count > previous[path].change_count
                or path in deleted_during
            )
        )

        stats = FrameStats(
            total_files=len(current),
            total_lines=sum(node.lines for node in current.values()),
            total_commits=cumulative_commit_count,
            total_contributors=cumulative_contributor_count,
        )

        if index is None:
            index = previous_frame.index + 1 if previous_frame is not None else 0

        return TimelineFrame(
            index=index,
            label=bucket.label,
            start=bucket.start,
            end=bucket.end,
            tree=tree,
            commits=tuple(commits),
            stats=stats,
            new_files=tuple(new_files),
            modified_files=tuple(modified_files),
            deleted_files=tuple(sorted(deleted_files)),
        )


# ============================================================================
# TREE TO NODE CONVERSION
# ============================================================================


class TreeToNodeConverter:
    """
    Flatten a tree into render-ready node descriptors.

    Order is depth-first with directories before files at each level and
    names sorted by code point, so identical trees always produce identical
    lists. Top-level entries have depth 0 and parent_id None.
    """

    def flatten(
        self,
        tree: FileTree,
        new_files: Iterable[str] = (),
        modified_files: Iterable[str] = (),
    ) -> List[NodeDescriptor]:
        totals: Dict[str, Tuple[int, int]] = {}
        self._aggregate(tree.root, totals)

        nodes = []
        self._emit(
            tree.root, None, 0, totals, set(new_files), set(modified_files), nodes
        )
        return nodes

    def _aggregate(
        self, node: FileTreeNode, totals: Dict[str, Tuple[int, int]]
    ) -> Tuple[int, int]:
        """Bottom-up (files, lines) per directory"""
        if not node.is_directory:
            return 1, node.lines

        files = 0
        lines = 0
        for child in node.children.values():
            child_files, child_lines = self._aggregate(child, totals)
            files += child_files
            lines += child_lines
        totals[node.path] = (files, lines)
        return files, lines

    @staticmethod
    def _sort_key(node: FileTreeNode) -> Tuple[int, str]:
        return (0 if node.is_directory else 1, node.name)

    def _emit(
        self,
        directory: FileTreeNode,
        parent_id: Optional[str],
        depth: int,
        totals: Dict[str, Tuple[int, int]],
        new_files: Set[str],
        modified_files: Set[str],
        nodes: List[NodeDescriptor],
    ):
        for child in sorted(directory.children.values(), key=self._sort_key):
            if child.is_directory:
                file_count, line_count = totals[child.path]
            else:
                file_count, line_count = 1, child.lines

            nodes.append(
                NodeDescriptor(
                    id=child.path,
                    path=child.path,
                    parent_id=parent_id,
                    name=child.name,
                    is_directory=child.is_directory,
                    depth=depth,
                    file_count=file_count,
                    line_count=line_count,
                    last_author=child.last_author,
                    added_at=child.added_at,
                    modified_at=child.last_modified_at,
                    change_count=None if child.is_directory else child.change_count,
                    is_new=child.path in new_files,
                    is_modified=child.path in modified_files,
                )
            )

            if child.is_directory:
                self._emit(
                    child,
                    child.path,
                    depth + 1,
                    totals,
                    new_files,
                    modified_files,
                    nodes,
                )


# ============================================================================
# METADATA
# ============================================================================


class MetadataAggregator:
    """Repository-wide facts derived from the full log, independent of bucketing"""

    @staticmethod
    def date_range(commits: List[Commit]) -> Optional[DateRange]:
        if not commits:
            return None
        return DateRange(start=commits[0].timestamp, end=commits[-1].timestamp)

    @staticmethod
    def contributors(commits: Iterable[Commit]) -> List[str]:
        """Unique authors in order of first appearance"""
        seen = set()
        ordered = []
        for commit in commits:
            if commit.author not in seen:
                seen.add(commit.author)
                ordered.append(commit.author)
        return ordered


# ============================================================================
# ORCHESTRATION
# ============================================================================


@dataclass(frozen=True)
class TimelineBuild:
    """Everything produced by one build, as an immutable value"""

    interval: Interval
    frames: Tuple[TimelineFrame, ...]
    commits: Tuple[Commit, ...]
    diagnostics: Tuple[MalformedChangeWarning, ...]
    date_range: Optional[DateRange]
    contributors: Tuple[str, ...]
    changes_filtered: int = 0
    log_errors: Tuple[str, ...] = ()

    def to_dict(self, include_nodes: bool = True) -> Dict[str, Any]:
        return {
            "interval": self.interval.value,
            "date_range": self.date_range.to_dict() if self.date_range else None,
            "contributors": list(self.contributors),
            "frame_count": len(self.frames),
            "frames": [frame.to_dict(include_nodes=include_nodes) for frame in self.frames],
        }


class GitHistoryTimeline:
    """
    Public entry point: build frames from a commit log and answer the
    metadata queries used by the presentation layer.
    """

    def __init__(
        self,
        log,
        reporter: Optional[ProgressReporter] = None,
        path_filter: Optional[Callable[[str], bool]] = None,
        max_frames: Optional[int] = None,
    ):
        self.log = log
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.path_filter = path_filter
        self.max_frames = max_frames
        self.bucketer = IntervalBucketer()
        self.frame_builder = FrameBuilder()
        self.converter = TreeToNodeConverter()
        self.metadata = MetadataAggregator()

        # Most recently adopted build
        self.commits: List[Commit] = []
        self.diagnostics: List[MalformedChangeWarning] = []
        self.last_build: Optional[TimelineBuild] = None

    @classmethod
    def for_repository(
        cls, repo_path: str, max_commits: Optional[int] = None, **kwargs
    ) -> "GitHistoryTimeline":
        reporter = kwargs.get("reporter")
        log = GitCommitLog(repo_path, max_commits=max_commits, reporter=reporter)
        return cls(log, **kwargs)

    def build(self, interval: Any = Interval.WEEK) -> TimelineBuild:
        """
        Read the log and replay it into frames without touching this
        instance's state. Raises RepositoryError when the log is unavailable.
        """
        interval = Interval.parse(interval)
        self.reporter.stage_start("Timeline Build", f"Replaying history by {interval.value}")

        log_errors: List[str] = []
        try:
            commits = list(self.log.read_commits(errors=log_errors))
        except RepositoryError as e:
            self.reporter.error(f"Failed to read commit log: {str(e)}")
            raise

        if not commits:
            self.reporter.info("No commits found")

        accumulator = TreeStateAccumulator(path_filter=self.path_filter)
        frames = self._replay(commits, interval, accumulator)

        result = TimelineBuild(
            interval=interval,
            frames=tuple(frames),
            commits=tuple(commits),
            diagnostics=tuple(accumulator.diagnostics),
            date_range=self.metadata.date_range(commits),
            contributors=tuple(self.metadata.contributors(commits)),
            changes_filtered=accumulator.changes_filtered,
            log_errors=tuple(log_errors),
        )

        for warning in accumulator.diagnostics[:20]:
            self.reporter.warning(f"Skipped change {warning}")

        self.reporter.stage_complete(
            "Timeline Build",
            {
                "Commits replayed": f"{accumulator.commits_applied:,}",
                "Frames": f"{len(frames):,}",
                "Changes applied": f"{accumulator.changes_applied:,}",
                "Changes filtered": f"{accumulator.changes_filtered:,}",
                "Skipped changes": f"{len(accumulator.diagnostics):,}",
            },
        )
        return result

    def _replay(
        self,
        commits: List[Commit],
        interval: Interval,
        accumulator: TreeStateAccumulator,
    ) -> List[TimelineFrame]:
        buckets = self.bucketer.buckets(commits, interval)
        frames: List[TimelineFrame] = []
        contributors = set()
        previous = None
        position = 0

        progress_bar = self.reporter.create_progress_bar(
            total=len(commits), desc="Replaying commits"
        )

        for bucket in buckets:
            window = []
            while position < len(commits) and commits[position].timestamp < bucket.end:
                commit = commits[position]
                accumulator.apply(commit)
                window.append(commit)
                contributors.add(commit.author)
                position += 1
                if progress_bar:
                    progress_bar.update(1)

            frame = self.frame_builder.snapshot(
                accumulator,
                bucket,
                previous,
                position,
                len(contributors),
                commits=window,
                index=len(frames),
            )
            frames.append(frame)
            previous = frame

            if self.max_frames and len(frames) >= self.max_frames:
                break

        if progress_bar:
            progress_bar.close()

        return frames

    def build_timeline(self, interval: Any = Interval.WEEK) -> List[TimelineFrame]:
        """Build and adopt a timeline; returns the ordered frames"""
        result = self.build(interval)
        self.adopt(result)
        return list(result.frames)

    def adopt(self, result: TimelineBuild):
        self.last_build = result
        self.commits = list(result.commits)
        self.diagnostics = list(result.diagnostics)

    def get_date_range(self) -> Optional[DateRange]:
        return self.metadata.date_range(self.commits)

    def get_contributors(self) -> List[str]:
        return self.metadata.contributors(self.commits)

    def tree_to_nodes(self, tree: FileTree) -> List[NodeDescriptor]:
        return self.converter.flatten(tree)

    def frame_to_nodes(self, frame: TimelineFrame) -> List[NodeDescriptor]:
        """Nodes of a frame's tree with new/modified markers set"""
        return self.converter.flatten(frame.tree, frame.new_files, frame.modified_files)


# ============================================================================
# EXPORT & MANIFEST
# ============================================================================


def export_timeline(
    result: TimelineBuild,
    output_path: str,
    include_nodes: bool = True,
    repository_path: Optional[str] = None,
) -> Dict[str, Any]:
    """Write a build to a JSON document and return the document"""
    data = {
        "schema_version": SCHEMA_VERSION,
        "generator_version": VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository_path": repository_path,
    }
    data.update(result.to_dict(include_nodes=include_nodes))

    output_dir = os.path.dirname(output_path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    return data


def generate_manifest(
    output_dir: str, datasets: Dict[str, str], repository_path: Optional[str] = None
) -> Dict[str, Any]:
    """Generate manifest.json with dataset metadata"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": repository_path,
        "datasets": {},
    }

    for dataset_name, file_path in datasets.items():
        full_path = os.path.join(output_dir, file_path)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()

            manifest["datasets"][dataset_name] = {
                "file": file_path,
                "schema_version": SCHEMA_VERSION,
                "file_size_bytes": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }

    manifest_path = os.path.join(output_dir, "manifest.json")
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)

    return manifest


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "repo_path",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    required=False,
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: timeline_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(sorted(ConfigResolver.PRESETS)),
    help="Use predefined timeline configuration",
)
@click.option(
    "-i",
    "--interval",
    type=click.Choice([interval.value for interval in Interval]),
    help="Bucket size for frames (default: week)",
)
@click.option("--max-commits", type=int, help="Only replay the most recent N commits")
@click.option("--max-frames", type=int, help="Stop after N frames")
@click.option(
    "--source-only",
    is_flag=True,
    default=None,
    help="Only track source files (by extension)",
)
@click.option(
    "--exclude",
    multiple=True,
    help="Glob pattern of paths to ignore (repeatable)",
)
@click.option(
    "--no-nodes",
    is_flag=True,
    default=None,
    help="Do not embed flattened node lists in frames",
)
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress information",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show the resolved configuration without building",
)
@click.version_option(version=VERSION)
def main(repo_path, output, config, preset, **kwargs):
    """
    Repository Timeline Builder

    Replays REPO_PATH's history into day, week or month frames and writes
    them to timeline.json together with a manifest.
    """
    if not repo_path:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    kwargs["exclude"] = list(kwargs.get("exclude") or []) or None

    resolver = ConfigResolver(kwargs, config, preset, repo_path)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    dry_run = resolver.get("dry_run", False)

    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    if resolver.config_source:
        reporter.info(f"Using configuration: {resolver.config_source}")

    try:
        interval = Interval.parse(resolver.get("interval", Interval.WEEK.value))
    except ValueError as e:
        reporter.error(str(e))
        sys.exit(1)

    max_commits = resolver.get("max_commits")
    max_frames = resolver.get("max_frames")
    source_only = resolver.get("source_only", False)
    exclude = resolver.get("exclude") or []
    if isinstance(exclude, str):
        exclude = [exclude]
    include_nodes = resolver.get("include_nodes", True) and not resolver.get(
        "no_nodes", False
    )

    if dry_run:
        reporter.info("DRY RUN MODE - No timeline will be built")
        reporter.info(f"Repository: {repo_path}")
        reporter.info(f"Interval: {interval.value}")
        reporter.info(f"Max commits: {max_commits or 'all'}")
        reporter.info(f"Max frames: {max_frames or 'all'}")
        reporter.info(f"Source files only: {bool(source_only)}")
        if exclude:
            reporter.info(f"Excluded patterns: {', '.join(exclude)}")
        reporter.info("\nDatasets to generate:")
        reporter.info(
            "  ✓ timeline.json" + (" (with node lists)" if include_nodes else "")
        )
        reporter.info("  ✓ manifest.json")
        return

    if output:
        output_dir = output
    else:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_dir = f"timeline_output_{timestamp}"

    os.makedirs(output_dir, exist_ok=True)
    reporter.info(f"Output directory: {output_dir}")

    try:
        timeline = GitHistoryTimeline(
            GitCommitLog(repo_path, max_commits=max_commits, reporter=reporter),
            reporter=reporter,
            path_filter=build_path_filter(source_only, exclude),
            max_frames=max_frames,
        )
        result = timeline.build(interval)
        timeline.adopt(result)

        reporter.stage_start("Export", "Writing timeline data...")
        timeline_path = os.path.join(output_dir, "timeline.json")
        export_timeline(
            result, timeline_path, include_nodes=include_nodes, repository_path=repo_path
        )
        datasets = {"timeline": "timeline.json"}
        generate_manifest(output_dir, datasets, repository_path=repo_path)
        reporter.stage_complete(
            "Export",
            {"File": timeline_path, "Size": f"{os.path.getsize(timeline_path):,} bytes"},
        )

        errors = [str(warning) for warning in result.diagnostics]
        errors.extend(result.log_errors)
        if errors:
            with open(
                os.path.join(output_dir, "timeline_errors.txt"), "w", encoding="utf-8"
            ) as f:
                f.write("\n".join(errors))
            reporter.warning("Errors logged to timeline_errors.txt")

    except RepositoryError as e:
        reporter.error(str(e))
        sys.exit(1)
    except Exception as e:
        reporter.error(f"Timeline build failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)

    date_range = result.date_range
    summary_stats = {
        "Repository": repo_path,
        "Output directory": output_dir,
        "Interval": interval.value,
        "Commits": f"{len(result.commits):,}",
        "Frames": f"{len(result.frames):,}",
        "Contributors": f"{len(result.contributors):,}",
        "Date range": (
            f"{date_range.start.date()} → {date_range.end.date()}"
            if date_range
            else "empty history"
        ),
    }
    if result.frames:
        final = result.frames[-1].stats
        summary_stats["Final tree"] = (
            f"{final.total_files:,} files, {final.total_lines:,} lines"
        )

    reporter.summary(summary_stats)
    reporter.success(f"Timeline complete! Results saved to: {output_dir}")


if __name__ == "__main__":
    main()
