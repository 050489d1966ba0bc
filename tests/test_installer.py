from __future__ import annotations

import errno
import logging
import shutil
import tempfile
from pathlib import Path

import pytest
from conftest import psd1_text, read_text, write_text

from modforge import manifest
from modforge.errors import InstallError
from modforge.installer import (
    LOCK_FILE,
    QUARANTINE_DIR,
    TEMP_PREFIX,
    InstallOptions,
    ModuleInstaller,
    is_safe_segment,
)
from modforge.model import InstallStrategy, LegacyFlatHandling


@pytest.fixture
def staging(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    write_text(root / "Sample.psd1", psd1_text("1.0.0"))
    write_text(root / "Sample.psm1", "function Get-Sample { 'x' }\n")
    return root


@pytest.fixture
def modules(tmp_path: Path) -> Path:
    root = tmp_path / "Modules"
    root.mkdir()
    return root


def _versions(modules: Path) -> set[str]:
    module_root = modules / "Sample"
    return {p.name for p in module_root.iterdir() if p.is_dir() and p.name[0].isdigit()}


def _install(staging, modules, version="1.0.0", **kw):
    options = InstallOptions(roots=(str(modules),), **kw)
    return ModuleInstaller().install(staging, "Sample", version, options)


def test_fresh_install(staging, modules):
    res = _install(staging, modules)
    assert res.version == "1.0.0"
    target = modules / "Sample" / "1.0.0"
    assert res.installed_paths == (str(target),)
    assert (target / "Sample.psm1").is_file()
    assert (modules / "Sample" / LOCK_FILE).exists()
    assert not any(p.name.startswith(TEMP_PREFIX) for p in (modules / "Sample").iterdir())


def test_auto_revision_bumps_and_updates_manifest(staging, modules):
    _install(staging, modules)
    res = _install(staging, modules)
    assert res.version == "1.0.0.1"
    installed = modules / "Sample" / "1.0.0.1" / "Sample.psd1"
    assert manifest.get_top_level_string(installed, "ModuleVersion") == "1.0.0.1"
    assert _versions(modules) == {"1.0.0", "1.0.0.1"}


def test_auto_revision_can_leave_manifest_alone(staging, modules):
    _install(staging, modules)
    res = _install(staging, modules, update_manifest_to_resolved_version=False)
    assert res.version == "1.0.0.1"
    installed = modules / "Sample" / "1.0.0.1" / "Sample.psd1"
    assert manifest.get_top_level_string(installed, "ModuleVersion") == "1.0.0"


def test_exact_strategy_syncs_in_place(staging, modules):
    _install(staging, modules, strategy=InstallStrategy.EXACT)
    target = modules / "Sample" / "1.0.0"
    write_text(target / "stale.txt", "old\n")
    write_text(target / "Old" / "gone.ps1", "old\n")
    write_text(staging / "Sample.psm1", "function Get-Sample { 'new' }\n")

    res = _install(staging, modules, strategy=InstallStrategy.EXACT)
    assert res.version == "1.0.0"
    assert _versions(modules) == {"1.0.0"}
    assert not (target / "stale.txt").exists()
    assert not (target / "Old").exists()
    assert "'new'" in read_text(target / "Sample.psm1")


def test_prune_keeps_newest_and_preserved(staging, modules):
    for v in ("1.0.0", "1.0.1", "1.0.2"):
        write_text(modules / "Sample" / v / "Sample.psd1", psd1_text(v))

    res = _install(staging, modules, version="1.0.3", keep=2, preserve_versions=("1.0.0",))
    assert _versions(modules) == {"1.0.3", "1.0.2", "1.0.0"}
    assert res.pruned_paths == (str(modules / "Sample" / "1.0.1"),)


def test_keep_is_floored_at_one(staging, modules):
    write_text(modules / "Sample" / "0.9.0" / "Sample.psd1", psd1_text("0.9.0"))
    _install(staging, modules, keep=0)
    assert _versions(modules) == {"1.0.0"}


def test_final_version_survives_pruning_even_when_older(staging, modules):
    for v in ("5.0.0", "6.0.0"):
        write_text(modules / "Sample" / v / "Sample.psd1", psd1_text(v))
    _install(staging, modules, keep=1)
    assert _versions(modules) == {"6.0.0", "1.0.0"}


# ----- legacy flat installs -----

def _flat(modules: Path, version: str | None = "2.0.26") -> Path:
    module_root = modules / "Sample"
    text = psd1_text(version) if version else "@{\n    RootModule = 'Sample.psm1'\n}\n"
    write_text(module_root / "Sample.psd1", text)
    write_text(module_root / "Sample.psm1", "# legacy\n")
    return module_root


def test_legacy_flat_is_converted_and_preserved(staging, modules):
    module_root = _flat(modules)
    _install(staging, modules, version="3.0.0", keep=1, legacy_flat_handling=LegacyFlatHandling.CONVERT)
    assert _versions(modules) == {"2.0.26", "3.0.0"}
    assert (module_root / "2.0.26" / "Sample.psm1").is_file()
    assert not (module_root / "Sample.psd1").exists()


def test_legacy_flat_is_quarantined_when_version_exists(staging, modules):
    module_root = _flat(modules)
    write_text(module_root / "2.0.26" / "Sample.psd1", psd1_text("2.0.26"))

    _install(staging, modules, version="3.0.0", legacy_flat_handling=LegacyFlatHandling.CONVERT)
    quarantined = list((module_root / QUARANTINE_DIR).iterdir())
    assert len(quarantined) == 1
    assert quarantined[0].name.startswith("version-exists_")
    assert (quarantined[0] / "Sample.psm1").is_file()
    assert not (module_root / "Sample.psd1").exists()


def test_legacy_flat_without_version_is_quarantined(staging, modules):
    module_root = _flat(modules, version=None)
    _install(staging, modules, legacy_flat_handling=LegacyFlatHandling.CONVERT)
    quarantined = list((module_root / QUARANTINE_DIR).iterdir())
    assert quarantined[0].name.startswith("unreadable-version_")


def test_legacy_flat_warn_leaves_files(staging, modules, caplog):
    caplog.set_level(logging.WARNING)
    module_root = _flat(modules)
    _install(staging, modules)
    assert (module_root / "Sample.psd1").is_file()
    assert "Legacy flat install detected" in caplog.text


def test_legacy_flat_delete(staging, modules):
    module_root = _flat(modules)
    _install(staging, modules, legacy_flat_handling=LegacyFlatHandling.DELETE)
    assert not (module_root / "Sample.psd1").exists()
    assert not (module_root / "Sample.psm1").exists()
    assert _versions(modules) == {"1.0.0"}


# ----- atomic placement -----

def test_version_folder_appears_only_when_complete(staging, modules, monkeypatch):
    seen = {}

    def interrupted(self, temp_path, final_path):
        seen["final_exists"] = final_path.exists()
        seen["temp"] = temp_path
        seen["temp_complete"] = (temp_path / "Sample.psm1").is_file() and (temp_path / "Sample.psd1").is_file()
        raise KeyboardInterrupt

    monkeypatch.setattr(ModuleInstaller, "_move_into_place", interrupted)
    with pytest.raises(KeyboardInterrupt):
        _install(staging, modules)

    assert seen["final_exists"] is False
    assert seen["temp"].parent == (modules / "Sample").resolve()
    assert seen["temp"].name.startswith(TEMP_PREFIX)
    assert seen["temp_complete"] is True
    assert not (modules / "Sample" / "1.0.0").exists()
    assert not any(p.name.startswith(TEMP_PREFIX) for p in (modules / "Sample").iterdir())


def test_failed_rename_falls_back_to_copy(staging, modules, monkeypatch):
    real_rename = Path.rename
    sources = []

    def cross_device_once(self, target):
        sources.append(self.name)
        if len(sources) == 1:
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_rename(self, target)

    monkeypatch.setattr(Path, "rename", cross_device_once)
    res = _install(staging, modules)

    assert res.version == "1.0.0"
    assert read_text(modules / "Sample" / "1.0.0" / "Sample.psm1") == "function Get-Sample { 'x' }\n"
    assert len(sources) == 2
    assert all(s.startswith(TEMP_PREFIX) for s in sources)
    assert sources[0] != sources[1]
    assert not any(p.name.startswith(TEMP_PREFIX) for p in (modules / "Sample").iterdir())


def test_unwritable_module_root_stages_in_system_temp(staging, modules, tmp_path, monkeypatch, caplog):
    caplog.set_level(logging.WARNING)
    system_temp = tmp_path / "systemp"
    system_temp.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(system_temp))

    real_copytree = shutil.copytree
    module_root = (modules / "Sample").resolve()

    def no_copy_into_module_root(src, dst, *args, **kwargs):
        if Path(dst).parent == module_root and Path(dst).name.startswith(TEMP_PREFIX):
            raise PermissionError(errno.EACCES, "Permission denied", str(dst))
        return real_copytree(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, "copytree", no_copy_into_module_root)
    res = _install(staging, modules)

    assert res.version == "1.0.0"
    assert (modules / "Sample" / "1.0.0" / "Sample.psm1").is_file()
    assert "Cannot stage inside" in caplog.text
    assert list((system_temp / "modforge" / "install").iterdir()) == []


# ----- failures -----

def test_failing_root_does_not_stop_the_others(staging, modules, tmp_path):
    blocked = write_text(tmp_path / "not-a-dir", "file\n")
    options = InstallOptions(roots=(str(blocked), str(modules)))
    res = ModuleInstaller().install(staging, "Sample", "1.0.0", options)
    assert res.installed_paths == (str(modules / "Sample" / "1.0.0"),)


def test_every_root_failing_raises(staging, tmp_path):
    blocked = write_text(tmp_path / "not-a-dir", "file\n")
    with pytest.raises(InstallError) as excinfo:
        ModuleInstaller().install(staging, "Sample", "1.0.0", InstallOptions(roots=(str(blocked),)))
    assert str(blocked) in excinfo.value.failures


@pytest.mark.parametrize("name, version", [("../evil", "1.0.0"), ("Sample", "1.0/0"), ("", "1.0.0")])
def test_unsafe_names_are_rejected(staging, modules, name, version):
    with pytest.raises(InstallError):
        ModuleInstaller().install(staging, name, version, InstallOptions(roots=(str(modules),)))
    assert not (modules / "Sample").exists()


def test_missing_staging(tmp_path, modules):
    with pytest.raises(InstallError):
        ModuleInstaller().install(tmp_path / "nope", "Sample", "1.0.0", InstallOptions(roots=(str(modules),)))


@pytest.mark.parametrize(
    "value, ok",
    [("Sample", True), ("1.0.0", True), (".", False), ("..", False), ("a/b", False), ("C:", False), (" x", False)],
)
def test_is_safe_segment(value, ok):
    assert is_safe_segment(value) is ok


def test_resolve_target_version(modules):
    (modules / "Sample" / "2.0.0").mkdir(parents=True)
    roots = [str(modules)]
    assert ModuleInstaller.resolve_target_version(roots, "Sample", "2.0.0", InstallStrategy.EXACT) == "2.0.0"
    assert ModuleInstaller.resolve_target_version(roots, "Sample", "2.0.0", InstallStrategy.AUTO_REVISION) == "2.0.0.1"
    assert ModuleInstaller.resolve_target_version(roots, "Sample", "2.1.0", InstallStrategy.AUTO_REVISION) == "2.1.0"
