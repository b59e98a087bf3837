"""
Tests for exclusion, volume matching and formatting helpers.
"""
import pytest

from usbmirror.utils import (
    DEFAULT_EXCLUDED_DIRS,
    format_size,
    is_excluded,
    normalize_volume_id,
    progress_bar,
    volume_matches,
)


@pytest.mark.parametrize("name", ["node_modules", "Node_Modules", ".GIT", "bin", "OBJ", ".svn"])
def test_default_exclusions_ignore_case(name):
    assert is_excluded(name)


@pytest.mark.parametrize("name", ["src", "node_modules2", "binaries", ""])
def test_non_excluded_names(name):
    assert not is_excluded(name)


def test_custom_exclusion_set():
    assert is_excluded("Build", ("build",))
    assert not is_excluded("node_modules", ("build",))
    assert "node_modules" in DEFAULT_EXCLUDED_DIRS


@pytest.mark.parametrize("detected", ["E:", "e:", "E", " e ", "E/", "E\\"])
def test_volume_matches_ignores_case_and_one_separator(detected):
    assert volume_matches(detected, "E")


def test_volume_matching_normalizes_target_too():
    assert volume_matches("e", "E:")
    assert normalize_volume_id("BACKUP/") == "backup"


@pytest.mark.parametrize("detected", ["F:", "EE", "E::", ""])
def test_volume_mismatch(detected):
    assert not volume_matches(detected, "E")


def test_empty_target_matches_nothing():
    assert not volume_matches("E:", "")
    assert not volume_matches("", "")


def test_progress_bar():
    assert progress_bar(0) == "[" + "." * 20 + "]"
    assert progress_bar(0.5) == "[" + "#" * 10 + "." * 10 + "]"
    assert progress_bar(1.7) == "[" + "#" * 20 + "]"
    assert progress_bar(0.5, width=4) == "[##..]"


def test_format_size():
    assert format_size(0) == "0.0 B"
    assert format_size(1536) == "1.5 KB"
    assert format_size(3 * 1024 ** 3) == "3.0 GB"
    assert format_size(5 * 1024 ** 5) == "5120.0 TB"
    assert format_size(-1) == "0.0 B"
