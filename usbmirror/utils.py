from __future__ import annotations

from typing import Iterable

DEFAULT_EXCLUDED_DIRS = (
    "node_modules",
    ".git",
    ".svn",
    "bin",
    "obj",
)
VOLUME_ID_SEPARATORS = (":", "/", "\\")
SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(num_bytes: int) -> str:
    """Render a byte count for the run summary, e.g. ``1536`` -> ``"1.5 KB"``."""
    exponent = 0
    value = float(max(num_bytes, 0))
    while value >= 1024 and exponent < len(SIZE_UNITS) - 1:
        value /= 1024
        exponent += 1
    return f"{value:.1f} {SIZE_UNITS[exponent]}"


def progress_bar(fraction: float, width: int = 20) -> str:
    fraction = min(max(fraction, 0.0), 1.0)
    filled = int(round(width * fraction))
    return "[" + "#" * filled + "." * (width - filled) + "]"


def is_excluded(dir_name: str, exclusions: Iterable[str] = DEFAULT_EXCLUDED_DIRS) -> bool:
    """Check whether a directory name is in the exclusion set, ignoring case."""
    lowered_name = dir_name.casefold()
    for name in exclusions:
        if lowered_name == name.casefold():
            return True
    return False


def normalize_volume_id(volume_id: str) -> str:
    """Strip whitespace and a single trailing separator, then casefold.

    ``"E:"``, ``"e:"`` and ``"E"`` all normalize to ``"e"``.
    """
    cleaned = (volume_id or "").strip()
    if len(cleaned) > 1 and cleaned[-1] in VOLUME_ID_SEPARATORS:
        cleaned = cleaned[:-1]
    return cleaned.casefold()


def volume_matches(detected: str, target: str) -> bool:
    normalized_target = normalize_volume_id(target)
    if not normalized_target:
        return False
    return normalize_volume_id(detected) == normalized_target
