from __future__ import annotations

import logging

import pytest
from conftest import psd1_text, write_text

from modforge.errors import ConfigurationError
from modforge.versioning import (
    compare_versions,
    is_auto_version,
    next_auto_revision,
    parse_version,
    resolve_auto_version,
    sort_versions,
    step_version,
    version_sort_key,
)


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ("1.0.0", "1.0.0", 0),
        ("1.0", "1.0.0.0", 0),
        ("1.0.1", "1.0.0", 1),
        ("1.10.0", "1.9.0", 1),
        ("1.0.0-beta", "1.0.0", -1),
        ("1.0.0-alpha", "1.0.0-beta", -1),
        ("1.0.0-beta.2", "1.0.0-beta.10", -1),
        ("1.0.0-1", "1.0.0-alpha", -1),
        ("garbage", "0.0.1", -1),
    ],
)
def test_compare_versions(a, b, expected):
    assert compare_versions(a, b) == expected
    assert compare_versions(b, a) == -expected


def test_parse_version_keeps_label():
    v = parse_version(" 2.3.4-rc.1 ")
    assert v.parts == (2, 3, 4)
    assert v.prerelease == "rc.1"
    assert parse_version("2") is None
    assert parse_version("1.2.3.4.5") is None


def test_sort_versions_descending():
    assert sort_versions(["1.0.0", "1.0.0.2", "0.9", "1.0.0-beta"], descending=True) == [
        "1.0.0.2",
        "1.0.0",
        "1.0.0-beta",
        "0.9",
    ]


def test_version_sort_key_pads_and_ignores_label():
    assert version_sort_key("1.2") == (1, 2, 0, 0)
    assert version_sort_key("1.2.3.4-x") == (1, 2, 3, 4)


def test_next_auto_revision():
    assert next_auto_revision("3.0.0", ["3.0.0"]) == "3.0.0.1"
    assert next_auto_revision("3.0.0", ["3.0.0", "3.0.0.1", "3.0.0.4", "2.0.0"]) == "3.0.0.5"
    # 3.0.01 does not belong to the 3.0.0 family
    assert next_auto_revision("3.0.0", ["3.0.01"]) == "3.0.0.1"


def test_is_auto_version():
    assert is_auto_version(None)
    assert is_auto_version(" ")
    assert is_auto_version("AUTO")
    assert not is_auto_version("1.0.0")


def test_step_version_exact_is_unchanged():
    assert step_version("2.5.0", "9.9.9") == "2.5.0"


def test_step_version_increments_past_current():
    assert step_version("0.1.X", "0.1.5") == "0.1.6"
    assert step_version("1.X", "1.4") == "1.5"


def test_step_version_resets_when_prefix_moves_ahead():
    assert step_version("0.2.X", "0.1.7") == "0.2.0"


def test_step_version_without_current():
    assert step_version("0.1.X", None) == "0.1.0"


def test_step_version_rejects_unreachable_and_malformed():
    with pytest.raises(ConfigurationError):
        step_version("0.1.X", "1.0.0")
    with pytest.raises(ConfigurationError):
        step_version("a.b.c", None)
    with pytest.raises(ConfigurationError):
        step_version("", None)


def test_resolve_auto_version_reads_manifest(tmp_path):
    p = write_text(tmp_path / "M.psd1", psd1_text("4.2.0", name="M"))
    assert resolve_auto_version("auto", p) == "4.2.0"
    assert resolve_auto_version("1.0.0", p) == "1.0.0"


def test_resolve_auto_version_fallback_warns(tmp_path, caplog):
    caplog.set_level(logging.WARNING)
    assert resolve_auto_version("auto", tmp_path / "missing.psd1", "1.0.0") == "1.0.0"
    assert "Falling back to 1.0.0" in caplog.text

    with pytest.raises(ConfigurationError):
        resolve_auto_version(None, tmp_path / "missing.psd1")
