from __future__ import annotations

import argparse
import getpass
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_COUNTDOWN_SECONDS = 5
DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
CONFIG_KEYS = (
    "source_root",
    "destination_root",
    "target_volume_id",
    "mount_root",
    "countdown_seconds",
    "log_level",
)


@dataclass(frozen=True)
class BackupConfig:
    source_root: Path
    destination_root: Path
    target_volume_id: str
    mount_root: Optional[Path] = None
    countdown_seconds: int = DEFAULT_COUNTDOWN_SECONDS
    log_level: str = DEFAULT_LOG_LEVEL


def default_mount_root() -> Optional[Path]:
    """Pick the per-user directory where the automounter creates volume folders.

    Returns None when there is none; attached partitions are still polled.
    """
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ""
    candidates = []
    if user:
        candidates += [Path("/run/media") / user, Path("/media") / user]
    candidates.append(Path("/Volumes"))
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return None


def _paths_overlap(first: Path, second: Path) -> bool:
    first = first.resolve()
    second = second.resolve()
    return first == second or first in second.parents or second in first.parents


def load_config_file(path: Path) -> Dict[str, Any]:
    try:
        with Path(path).open("r", encoding="utf-8") as fp:
            data = json.load(fp)
    except FileNotFoundError:
        raise ValueError(f"Config file does not exist: {path}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Config file {path} is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    unknown = sorted(set(data) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return data


def build_config(values: Dict[str, Any]) -> BackupConfig:
    missing = [key for key in CONFIG_KEYS[:3] if not values.get(key)]
    if missing:
        raise ValueError(f"Missing required config: {', '.join(missing)}")

    try:
        countdown = int(values.get("countdown_seconds", DEFAULT_COUNTDOWN_SECONDS))
    except (TypeError, ValueError):
        raise ValueError("countdown_seconds must be an integer")
    if countdown < 0:
        raise ValueError("countdown_seconds must not be negative")

    log_level = str(values.get("log_level") or DEFAULT_LOG_LEVEL).upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"Unsupported log level: {log_level}")

    source = Path(values["source_root"]).expanduser()
    destination = Path(values["destination_root"]).expanduser()
    if _paths_overlap(source, destination):
        raise ValueError(
            f"Source and destination must not contain each other: {source} / {destination}"
        )

    mount_root = values.get("mount_root")
    return BackupConfig(
        source_root=source,
        destination_root=destination,
        target_volume_id=str(values["target_volume_id"]).strip(),
        mount_root=Path(mount_root).expanduser() if mount_root else default_mount_root(),
        countdown_seconds=countdown,
        log_level=log_level,
    )


def parse_args(argv: Optional[list[str]] = None) -> BackupConfig:
    parser = argparse.ArgumentParser(
        description=(
            "Wait for a specific removable volume to be attached, then wipe the "
            "destination folder and mirror the source tree into it."
        )
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="JSON file with source_root, destination_root, target_volume_id and optional settings.",
    )
    parser.add_argument("--source", type=Path, help="Folder to back up.")
    parser.add_argument(
        "--destination",
        type=Path,
        help="Folder that is deleted and rebuilt on every run (usually on the target volume).",
    )
    parser.add_argument(
        "--target-volume",
        help="Volume identifier to react to, e.g. a drive letter or mount folder name.",
    )
    parser.add_argument(
        "--mount-root",
        type=Path,
        help=(
            "Folder whose new subfolders are treated as attached volumes "
            "(default: autodetected, e.g. /media/$USER). Partitions are always polled."
        ),
    )
    parser.add_argument(
        "--countdown-seconds",
        type=int,
        help=f"Delay before touching the volume (default: {DEFAULT_COUNTDOWN_SECONDS}).",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help=f"Log verbosity (default: {DEFAULT_LOG_LEVEL}).",
    )
    args = parser.parse_args(argv)

    values: Dict[str, Any] = {}
    try:
        if args.config is not None:
            values.update(load_config_file(args.config))

        overrides = {
            "source_root": args.source,
            "destination_root": args.destination,
            "target_volume_id": args.target_volume,
            "mount_root": args.mount_root,
            "countdown_seconds": args.countdown_seconds,
            "log_level": args.log_level,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return build_config(values)
    except ValueError as exc:
        parser.error(str(exc))
