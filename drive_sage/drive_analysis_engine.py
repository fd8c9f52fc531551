#!/usr/bin/env python3
"""DriveSage analysis engine.

Inspects a local mirror of a cloud-drive folder and builds a structural
report of it:
- Per-folder profiles of loose files and subfolders
- Large file, OS clutter and protected-name classification
- Cheap duplicate detection keyed on (name, size)
- Per-entry error isolation so one unreadable file never loses a scan

The duplicate detector is intentionally a name+size heuristic. Callers that
need certainty should hash the reported candidates themselves.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Any, Iterable, Sequence

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "drive_sage"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "drive_sage.log"

LARGE_FILE_THRESHOLD = 100 * 1024 * 1024

SYSTEM_FILE_NAMES = frozenset({
    ".DS_Store",
    "Thumbs.db",
    ".Spotlight-V100",
    ".fseventsd",
})

DEFAULT_PROTECTED_PATTERNS = ("gemini", "ai", "assistant", "code", "project")

PROTECTED_REASON = "Name matches protected pattern '{pattern}'"


# -------------------------------- Errors ------------------------------------ #


class DriveSageError(Exception):
    """Base error for DriveSage."""


class PathNotFoundError(DriveSageError, FileNotFoundError):
    """The scan root does not exist."""


class ScanReadError(DriveSageError):
    """The scan root exists but could not be listed."""


class FolderProfileError(DriveSageError):
    """A single folder could not be profiled."""

    def __init__(self, path: str, detail: str):
        super().__init__(f"Cannot profile folder {path}: {detail}")
        self.path = path
        self.detail = detail


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def parse_size_to_bytes(value: str) -> int:
    text = value.strip().lower().replace(" ", "")
    units: list[tuple[str, int]] = [
        ("tb", 1024**4),
        ("gb", 1024**3),
        ("mb", 1024**2),
        ("kb", 1024),
        ("b", 1),
    ]
    for u, factor in units:
        if text.endswith(u):
            number = float(text[: -len(u)] or "0")
            return int(number * factor)
    return int(float(text))


def parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def mtime_to_datetime(epoch: float) -> dt.datetime:
    return dt.datetime.fromtimestamp(epoch, tz=dt.timezone.utc)


def setup_logger(log_file: Path = DEFAULT_LOG_FILE) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "drive_sage.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


# Filesystem hooks. Every directory listing and stat in this module goes
# through these two functions.


def list_directory(path: str) -> list[str]:
    """Child names of ``path`` in sorted order."""
    with os.scandir(path) as it:
        return sorted(entry.name for entry in it)


def stat_entry(path: str, follow_symlinks: bool = False) -> os.stat_result:
    return os.stat(path, follow_symlinks=follow_symlinks)


def resolve_entry(
    path: str,
    follow_symlinks: bool = False,
    logger: logging.Logger | None = None,
) -> os.stat_result | None:
    """Stat one walk entry, or return None when it is skipped.

    Without ``follow_symlinks`` a symlinked file is reported through its
    target. Symlinked directories and dangling links are skipped.
    """
    st = stat_entry(path, follow_symlinks=follow_symlinks)
    if follow_symlinks or not stat.S_ISLNK(st.st_mode):
        return st
    try:
        target = stat_entry(path, follow_symlinks=True)
    except FileNotFoundError:
        if logger is not None:
            logger.info("scan_skip_symlink path=%s reason=dangling", path)
        return None
    if stat.S_ISDIR(target.st_mode):
        if logger is not None:
            logger.info("scan_skip_symlink path=%s reason=directory", path)
        return None
    return target


# ------------------------------- Settings ----------------------------------- #


@dataclasses.dataclass(slots=True)
class AppSettings:
    """Caller-held settings. The engine reads these and never mutates them."""

    protected_patterns: list[str] = dataclasses.field(
        default_factory=lambda: list(DEFAULT_PROTECTED_PATTERNS)
    )
    large_file_threshold: int = LARGE_FILE_THRESHOLD
    dry_run: bool = True
    follow_symlinks: bool = False
    organize_rules: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def merged(self, overrides: dict[str, Any]) -> AppSettings:
        """Return a copy with ``overrides`` applied; unknown keys are rejected."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        data = self.to_dict()
        data.update(overrides)
        if isinstance(data["large_file_threshold"], str):
            data["large_file_threshold"] = parse_size_to_bytes(data["large_file_threshold"])
        patterns = data["protected_patterns"]
        if isinstance(patterns, str):
            patterns = patterns.split(",")
        data["protected_patterns"] = [str(p).strip() for p in patterns if str(p).strip()]
        return AppSettings(**data)


def load_settings(
    settings_file: str | None = None,
    environ: dict[str, str] | None = None,
) -> AppSettings:
    """Defaults, then an optional JSON file, then DRIVE_SAGE_* environment variables."""
    env = os.environ if environ is None else environ
    settings = AppSettings()

    path_s = settings_file or env.get("DRIVE_SAGE_SETTINGS")
    if path_s:
        path = Path(path_s).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Settings file must contain a JSON object")
        settings = settings.merged(data)

    overrides: dict[str, Any] = {}
    if env.get("DRIVE_SAGE_PROTECTED_PATTERNS") is not None:
        overrides["protected_patterns"] = env["DRIVE_SAGE_PROTECTED_PATTERNS"].split(",")
    if env.get("DRIVE_SAGE_LARGE_FILE_THRESHOLD"):
        overrides["large_file_threshold"] = parse_size_to_bytes(env["DRIVE_SAGE_LARGE_FILE_THRESHOLD"])
    if env.get("DRIVE_SAGE_DRY_RUN"):
        overrides["dry_run"] = parse_bool(env["DRIVE_SAGE_DRY_RUN"])
    if env.get("DRIVE_SAGE_FOLLOW_SYMLINKS"):
        overrides["follow_symlinks"] = parse_bool(env["DRIVE_SAGE_FOLLOW_SYMLINKS"])
    if env.get("DRIVE_SAGE_ORGANIZE_RULES"):
        overrides["organize_rules"] = env["DRIVE_SAGE_ORGANIZE_RULES"]
    if overrides:
        settings = settings.merged(overrides)
    return settings


# ------------------------------ Data Models --------------------------------- #


def _json_dict_factory(items: list[tuple[str, Any]]) -> dict[str, Any]:
    return {k: (v.isoformat() if isinstance(v, dt.datetime) else v) for k, v in items}


def to_json_dict(obj: Any) -> dict[str, Any]:
    return dataclasses.asdict(obj, dict_factory=_json_dict_factory)


@dataclasses.dataclass(frozen=True, slots=True)
class ScanError:
    path: str
    message: str


@dataclasses.dataclass(frozen=True, slots=True)
class LooseFile:
    name: str
    size: int
    modified: dt.datetime


@dataclasses.dataclass(frozen=True, slots=True)
class FileRecord:
    name: str
    path: str
    relative_path: str
    size: int
    modified: dt.datetime
    reason: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class FolderProfile:
    """One directory, one level deep. ``size`` never includes nested folders."""

    name: str
    path: str
    relative_path: str
    size: int
    file_count: int
    subfolders: tuple[str, ...]
    loose_files: tuple[LooseFile, ...]
    last_modified: dt.datetime | None


@dataclasses.dataclass(frozen=True, slots=True)
class DuplicateRecord:
    original: str
    duplicate: str
    relative_path: str
    size: int
    modified: dt.datetime


@dataclasses.dataclass(frozen=True, slots=True)
class TreeScan:
    """Aggregate produced by one Tree Walker pass."""

    total_size: int
    file_count: int
    folder_count: int
    folders: tuple[FolderProfile, ...]
    large_files: tuple[FileRecord, ...]
    system_files: tuple[FileRecord, ...]
    protected_files: tuple[FileRecord, ...]
    errors: tuple[ScanError, ...]


@dataclasses.dataclass(frozen=True, slots=True)
class AnalysisReport:
    drive_path: str
    scan_time: str
    total_size: int
    file_count: int
    folder_count: int
    folders: tuple[FolderProfile, ...]
    large_files: tuple[FileRecord, ...]
    system_files: tuple[FileRecord, ...]
    protected_files: tuple[FileRecord, ...]
    duplicates: tuple[DuplicateRecord, ...]
    errors: tuple[ScanError, ...]

    def to_dict(self) -> dict[str, Any]:
        data = to_json_dict(self)
        data["total_size_human"] = human_bytes(self.total_size)
        return data


# ---------------------------- Classification -------------------------------- #


def is_large_file(size: int, threshold: int = LARGE_FILE_THRESHOLD) -> bool:
    return size > threshold


def is_system_file(name: str) -> bool:
    return name in SYSTEM_FILE_NAMES


def protected_match(name: str, patterns: Iterable[str]) -> str | None:
    """First pattern found as a case-insensitive substring of ``name``.

    This is a plain substring test, not a word match: "aircraft.png" matches
    "ai". Over-matching is accepted because the list only ever protects.
    """
    lowered = name.lower()
    for pattern in patterns:
        p = pattern.lower()
        if p and p in lowered:
            return pattern
    return None


def is_protected_file(name: str, patterns: Iterable[str] = DEFAULT_PROTECTED_PATTERNS) -> bool:
    return protected_match(name, patterns) is not None


# ----------------------------- Folder Profiler ------------------------------ #


class FolderProfiler:
    """Shallow, all-or-nothing profile of a single directory."""

    def __init__(self, follow_symlinks: bool = False):
        self.follow_symlinks = follow_symlinks

    def profile(self, path: str, relative_path: str = "") -> FolderProfile:
        try:
            names = list_directory(path)
        except OSError as exc:
            raise FolderProfileError(path, str(exc)) from exc

        subfolders: list[str] = []
        loose_files: list[LooseFile] = []
        size = 0
        last_modified: dt.datetime | None = None

        for name in names:
            child = os.path.join(path, name)
            try:
                st = resolve_entry(child, follow_symlinks=self.follow_symlinks)
            except OSError as exc:
                raise FolderProfileError(path, f"{child}: {exc}") from exc

            if st is None:
                continue
            if stat.S_ISDIR(st.st_mode):
                subfolders.append(name)
                continue

            modified = mtime_to_datetime(st.st_mtime)
            loose_files.append(LooseFile(name=name, size=int(st.st_size), modified=modified))
            size += int(st.st_size)
            if last_modified is None or modified > last_modified:
                last_modified = modified

        return FolderProfile(
            name=os.path.basename(os.path.normpath(path)),
            path=path,
            relative_path=relative_path,
            size=size,
            file_count=len(loose_files),
            subfolders=tuple(subfolders),
            loose_files=tuple(loose_files),
            last_modified=last_modified,
        )


# ------------------------------- Tree Walker -------------------------------- #


class TreeWalker:
    """Depth-first, pre-order walk accumulating one TreeScan.

    Nested listing and stat failures are recorded and skipped. Only a failure
    to list the root itself is raised.
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        profiler: FolderProfiler | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings or AppSettings()
        self.profiler = profiler or FolderProfiler(follow_symlinks=self.settings.follow_symlinks)
        self.logger = logger or logging.getLogger(APP_NAME)
        self._reset()

    def _reset(self) -> None:
        self._total_size = 0
        self._file_count = 0
        self._folder_count = 0
        self._folders: list[FolderProfile] = []
        self._large: list[FileRecord] = []
        self._system: list[FileRecord] = []
        self._protected: list[FileRecord] = []
        self._errors: list[ScanError] = []
        self._visited: set[str] = set()

    def walk(self, root: str) -> TreeScan:
        self._reset()
        self._visited.add(os.path.realpath(root))
        try:
            names = list_directory(root)
        except OSError as exc:
            raise ScanReadError(f"read error: {exc}") from exc
        self._walk_entries(root, "", names)

        return TreeScan(
            total_size=self._total_size,
            file_count=self._file_count,
            folder_count=self._folder_count,
            folders=tuple(self._folders),
            large_files=tuple(self._large),
            system_files=tuple(self._system),
            protected_files=tuple(self._protected),
            errors=tuple(self._errors),
        )

    def _record_error(self, path: str, message: str) -> None:
        self._errors.append(ScanError(path=path, message=message))
        self.logger.warning("scan_entry_error path=%s err=%s", path, message)

    def _walk_directory(self, path: str, relative: str) -> None:
        try:
            names = list_directory(path)
        except OSError as exc:
            self._record_error(path, str(exc))
            return
        self._walk_entries(path, relative, names)

    def _walk_entries(self, path: str, relative: str, names: Sequence[str]) -> None:
        follow = self.settings.follow_symlinks
        for name in names:
            item_path = os.path.join(path, name)
            item_relative = os.path.join(relative, name) if relative else name

            try:
                st = resolve_entry(item_path, follow_symlinks=follow, logger=self.logger)
            except OSError as exc:
                self._record_error(item_path, str(exc))
                continue

            if st is None:
                continue

            if stat.S_ISDIR(st.st_mode):
                self._visit_folder(item_path, item_relative)
            else:
                self._visit_file(item_path, name, item_relative, st)

    def _visit_folder(self, path: str, relative: str) -> None:
        if self.settings.follow_symlinks:
            canonical = os.path.realpath(path)
            if canonical in self._visited:
                self._record_error(path, f"already visited as {canonical}")
                return
            self._visited.add(canonical)

        try:
            profile = self.profiler.profile(path, relative)
        except FolderProfileError as exc:
            self._record_error(path, exc.detail)
            return

        self._folder_count += 1
        self._folders.append(profile)
        self._walk_directory(path, relative)

    def _visit_file(self, path: str, name: str, relative: str, st: os.stat_result) -> None:
        size = int(st.st_size)
        self._file_count += 1
        self._total_size += size
        record = FileRecord(
            name=name,
            path=path,
            relative_path=relative,
            size=size,
            modified=mtime_to_datetime(st.st_mtime),
        )

        if is_large_file(size, self.settings.large_file_threshold):
            self._large.append(record)
        if is_system_file(name):
            self._system.append(record)
        pattern = protected_match(name, self.settings.protected_patterns)
        if pattern is not None:
            self._protected.append(
                dataclasses.replace(record, reason=PROTECTED_REASON.format(pattern=pattern))
            )


# ---------------------------- Duplicate Detector ---------------------------- #


class DuplicateDetector:
    """Index files by (name, size); every later repeat is a duplicate of the first."""

    def __init__(self, follow_symlinks: bool = False, logger: logging.Logger | None = None):
        self.follow_symlinks = follow_symlinks
        self.logger = logger or logging.getLogger(APP_NAME)
        self.errors: list[ScanError] = []

    def find_duplicates(self, root: str) -> tuple[DuplicateRecord, ...]:
        self.errors = []
        first_seen: dict[tuple[str, int], str] = {}
        duplicates: list[DuplicateRecord] = []
        visited = {os.path.realpath(root)}

        try:
            names = list_directory(root)
        except OSError as exc:
            raise ScanReadError(f"read error: {exc}") from exc

        # Explicit stack of (path, relative, names) keeps the walk depth-first
        # and pre-order without recursion.
        stack: list[tuple[str, str, list[str]]] = [(root, "", list(reversed(names)))]
        while stack:
            path, relative, pending = stack[-1]
            if not pending:
                stack.pop()
                continue
            name = pending.pop()
            item_path = os.path.join(path, name)
            item_relative = os.path.join(relative, name) if relative else name

            try:
                st = resolve_entry(item_path, follow_symlinks=self.follow_symlinks)
            except OSError as exc:
                self._record_error(item_path, str(exc))
                continue

            if st is None:
                continue

            if stat.S_ISDIR(st.st_mode):
                if self.follow_symlinks:
                    canonical = os.path.realpath(item_path)
                    if canonical in visited:
                        self._record_error(item_path, f"already visited as {canonical}")
                        continue
                    visited.add(canonical)
                try:
                    child_names = list_directory(item_path)
                except OSError as exc:
                    self._record_error(item_path, str(exc))
                    continue
                stack.append((item_path, item_relative, list(reversed(child_names))))
                continue

            key = (name, int(st.st_size))
            original = first_seen.get(key)
            if original is None:
                first_seen[key] = item_path
                continue
            duplicates.append(
                DuplicateRecord(
                    original=original,
                    duplicate=item_path,
                    relative_path=item_relative,
                    size=int(st.st_size),
                    modified=mtime_to_datetime(st.st_mtime),
                )
            )

        self.logger.info("duplicates_complete root=%s found=%s", root, len(duplicates))
        return tuple(duplicates)

    def _record_error(self, path: str, message: str) -> None:
        self.errors.append(ScanError(path=path, message=message))
        self.logger.warning("duplicate_scan_error path=%s err=%s", path, message)


# ------------------------- Drive Analysis Service --------------------------- #


class DriveAnalysisService:
    """Top-level scan request: tree walk plus duplicate detection, merged."""

    def __init__(self, settings: AppSettings | None = None, logger: logging.Logger | None = None):
        self.settings = settings or AppSettings()
        self.logger = logger or logging.getLogger(APP_NAME)

    def analyze(self, drive_path: str) -> AnalysisReport:
        root = str(Path(drive_path).expanduser())
        self.logger.info("analysis_start root=%s", root)
        if not os.path.exists(root):
            raise PathNotFoundError(f"Drive path does not exist: {root}")

        scan_time = now_utc_iso()
        walker = TreeWalker(self.settings, logger=self.logger)
        scan = walker.walk(root)
        detector = DuplicateDetector(follow_symlinks=self.settings.follow_symlinks, logger=self.logger)
        duplicates = detector.find_duplicates(root)

        report = AnalysisReport(
            drive_path=root,
            scan_time=scan_time,
            total_size=scan.total_size,
            file_count=scan.file_count,
            folder_count=scan.folder_count,
            folders=scan.folders,
            large_files=scan.large_files,
            system_files=scan.system_files,
            protected_files=scan.protected_files,
            duplicates=duplicates,
            errors=scan.errors,
        )
        self.logger.info(
            "analysis_complete root=%s files=%s folders=%s bytes=%s duplicates=%s errors=%s",
            root,
            report.file_count,
            report.folder_count,
            report.total_size,
            len(report.duplicates),
            len(report.errors),
        )
        return report


def analyze(drive_path: str, settings: AppSettings | None = None) -> AnalysisReport:
    return DriveAnalysisService(settings).analyze(drive_path)


__all__ = [
    "APP_NAME",
    "AnalysisReport",
    "AppSettings",
    "DriveAnalysisService",
    "DriveSageError",
    "DuplicateDetector",
    "DuplicateRecord",
    "FileRecord",
    "FolderProfile",
    "FolderProfileError",
    "FolderProfiler",
    "LARGE_FILE_THRESHOLD",
    "LooseFile",
    "PathNotFoundError",
    "ScanError",
    "ScanReadError",
    "TreeScan",
    "TreeWalker",
    "analyze",
    "human_bytes",
    "is_large_file",
    "is_protected_file",
    "is_system_file",
    "load_settings",
    "parse_size_to_bytes",
    "protected_match",
    "setup_logger",
]
