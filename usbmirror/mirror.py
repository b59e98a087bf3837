"""
Tree operations behind a mirror run.

- count_files: estimate how many files a run will copy
- prepare_destination: clear attributes, delete and recreate the destination
- copy_tree / copy_file: replicate the source tree, one file at a time

Symlinks, junctions and special files are never followed or copied; they are
logged and recorded in the CopyReport as skipped.
"""
from __future__ import annotations

import contextlib
import logging
import os
import shutil
import stat
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from usbmirror.utils import DEFAULT_EXCLUDED_DIRS, is_excluded, progress_bar

COPY_CHUNK_SIZE = 8 * 1024 * 1024
PART_SUFFIX = ".part"


class MirrorError(Exception):
    """A failure that aborts the current mirror run."""


class SourceNotFoundError(MirrorError):
    pass


class SourceUnreachableError(MirrorError):
    pass


class DestinationResetError(MirrorError):
    pass


class CopyCancelled(Exception):
    """Copying was interrupted by a stop request."""


class RunOutcome(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class BackupRun:
    total_files: int = 0
    copied_files: int = 0
    failed_files: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    outcome: RunOutcome = RunOutcome.PENDING
    reason: str = ""

    def succeed(self) -> None:
        self.outcome = RunOutcome.SUCCEEDED

    def fail(self, reason: str) -> None:
        self.outcome = RunOutcome.FAILED
        self.reason = reason


@dataclass(frozen=True)
class ProgressSample:
    file_name: str
    copied_files: int
    total_files: int

    @property
    def fraction(self) -> float:
        # total is an estimate from a separate walk; copied may overshoot it
        if self.total_files <= 0:
            return 0.0
        return min(1.0, self.copied_files / self.total_files)


@dataclass
class WalkFailure:
    path: Path
    error: str


@dataclass
class CopyReport:
    copied_files: int = 0
    copied_bytes: int = 0
    failures: list[WalkFailure] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    excluded: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


ProgressCallback = Callable[[ProgressSample], None]


def format_progress(sample: ProgressSample) -> str:
    if sample.total_files <= 0:
        return f"Copying {sample.file_name} ({sample.copied_files})"
    percent = int(round(sample.fraction * 100))
    return (
        f"{progress_bar(sample.fraction)} {percent}% | Copying {sample.file_name} "
        f"({sample.copied_files}/{sample.total_files})"
    )


def _is_link(entry: os.DirEntry) -> bool:
    if entry.is_symlink():
        return True
    # DirEntry.is_junction exists from Python 3.12
    is_junction = getattr(entry, "is_junction", None)
    return bool(is_junction and is_junction())


def _scan_dir(directory: Path) -> tuple[list[os.DirEntry], list[os.DirEntry], list[os.DirEntry]]:
    """List a directory as (files, subdirectories, skipped), each sorted by name."""
    files: list[os.DirEntry] = []
    subdirs: list[os.DirEntry] = []
    skipped: list[os.DirEntry] = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if _is_link(entry):
                skipped.append(entry)
            elif entry.is_dir(follow_symlinks=False):
                subdirs.append(entry)
            elif entry.is_file(follow_symlinks=False):
                files.append(entry)
            else:
                skipped.append(entry)

    def by_name(entry: os.DirEntry) -> str:
        return entry.name

    return sorted(files, key=by_name), sorted(subdirs, key=by_name), sorted(skipped, key=by_name)


def count_files(root: Path, exclusions: Iterable[str] = DEFAULT_EXCLUDED_DIRS) -> int:
    root = Path(root)
    if not root.is_dir():
        return 0

    exclusions = tuple(exclusions)
    total = 0
    pending = [root]
    while pending:
        directory = pending.pop()
        try:
            files, subdirs, _ = _scan_dir(directory)
        except OSError as exc:
            logging.debug("Skipping unreadable directory while counting: %s (%s)", directory, exc)
            continue
        total += len(files)
        for entry in reversed(subdirs):
            if is_excluded(entry.name, exclusions):
                continue
            pending.append(Path(entry.path))
    return total


def _make_writable(path: Path, is_dir: bool) -> None:
    mode = stat.S_IMODE(os.lstat(path).st_mode)
    extra = stat.S_IRWXU if is_dir else stat.S_IREAD | stat.S_IWRITE
    if mode & extra != extra:
        os.chmod(path, mode | extra)


def reset_attributes(root: Path) -> int:
    """Give the owner full access to every entry under root.

    Clears the read-only attribute on Windows and unlocks read-only
    directories on POSIX so the tree can be deleted. Returns the number of
    entries that could not be reset.
    """
    failures = 0
    pending = [Path(root)]
    while pending:
        directory = pending.pop()
        try:
            _make_writable(directory, is_dir=True)
            files, subdirs, _ = _scan_dir(directory)
        except OSError as exc:
            logging.warning("Could not reset attributes on directory %s: %s", directory, exc)
            failures += 1
            continue
        for entry in files:
            try:
                _make_writable(Path(entry.path), is_dir=False)
            except OSError as exc:
                logging.warning("Could not set normal attributes on file %s: %s", entry.path, exc)
                failures += 1
        pending.extend(Path(entry.path) for entry in reversed(subdirs))
    return failures


def prepare_destination(path: Path) -> None:
    path = Path(path)

    if path.is_symlink() or (path.exists() and not path.is_dir()):
        raise DestinationResetError(f"Destination exists and is not a directory: {path}")

    if path.exists():
        logging.warning("Clearing read-only attributes before deletion: %s", path)
        reset_attributes(path)

        logging.warning("Deleting existing destination folder: %s", path)
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise DestinationResetError(f"Failed to delete destination folder {path}: {exc}") from exc

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DestinationResetError(f"Failed to create destination folder {path}: {exc}") from exc
    logging.info("Destination folder recreated successfully: %s", path)


def resolve_source_root(source: Path) -> Path:
    """Return the mount point holding source, or its drive root as a fallback."""
    source = Path(source).absolute()
    for candidate in (source, *source.parents):
        if os.path.ismount(candidate):
            return candidate
    return Path(source.anchor)


def copy_file(
    source_file: Path,
    target_path: Path,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    """Copy one file over target_path and return the number of bytes written.

    Data goes to a ``.part`` sibling first so a failed or cancelled copy never
    leaves a truncated file under the final name.
    """
    temp_path = target_path.with_name(target_path.name + PART_SUFFIX)
    copied = 0

    def should_cancel() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    try:
        with source_file.open("rb") as src, temp_path.open("wb") as dst:
            while True:
                if should_cancel():
                    raise CopyCancelled(f"Copy cancelled: {source_file}")
                chunk = src.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                dst.write(chunk)
                copied += len(chunk)
        shutil.copystat(source_file, temp_path)
        # Windows refuses to replace a read-only file.
        if target_path.is_file():
            _make_writable(target_path, is_dir=False)
        os.replace(temp_path, target_path)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink()
        raise
    return copied


def copy_tree(
    source: Path,
    destination: Path,
    run: Optional[BackupRun] = None,
    on_progress: Optional[ProgressCallback] = None,
    exclusions: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
    cancel_event: Optional[threading.Event] = None,
) -> CopyReport:
    source = Path(source)
    destination = Path(destination)
    if not source.is_dir():
        raise SourceNotFoundError(f"Source directory not found: {source}")

    run = run if run is not None else BackupRun()
    exclusions = tuple(exclusions)
    report = CopyReport()
    pending = [(source, destination)]

    while pending:
        src_dir, dst_dir = pending.pop()
        try:
            files, subdirs, skipped = _scan_dir(src_dir)
            dst_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logging.error("Failed to mirror directory %s: %s", src_dir, exc)
            report.failures.append(WalkFailure(src_dir, str(exc)))
            continue

        for entry in skipped:
            logging.warning("Skipping link or special file: %s", entry.path)
            report.skipped.append(Path(entry.path))

        for entry in files:
            if cancel_event is not None and cancel_event.is_set():
                raise CopyCancelled(f"Copy cancelled before {entry.path}")
            source_file = Path(entry.path)
            try:
                size = copy_file(source_file, dst_dir / entry.name, cancel_event=cancel_event)
            except CopyCancelled:
                raise
            except Exception as exc:
                logging.exception("Failed to copy file: %s", source_file)
                report.failures.append(WalkFailure(source_file, str(exc)))
                run.failed_files += 1
                continue

            run.copied_files += 1
            report.copied_files += 1
            report.copied_bytes += size
            if on_progress:
                on_progress(ProgressSample(entry.name, run.copied_files, run.total_files))

        for entry in reversed(subdirs):
            if is_excluded(entry.name, exclusions):
                logging.debug("Skipping excluded directory: %s", entry.path)
                report.excluded.append(Path(entry.path))
                continue
            pending.append((Path(entry.path), dst_dir / entry.name))

    return report
