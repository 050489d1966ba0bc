from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import pytest

from modforge.collaborators import ModuleInfo


def write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        f.write(text)
    return path


def read_text(path: Path) -> str:
    with path.open("r", encoding="utf-8-sig", newline="") as f:
        return f.read()


def psd1_text(version: str = "1.0.0", name: str = "Sample", extra: str = "") -> str:
    return (
        "@{\n"
        f"    RootModule = '{name}.psm1'\n"
        f"    ModuleVersion = '{version}'\n"
        "    GUID = '11111111-2222-3333-4444-555555555555'\n"
        "    FunctionsToExport = @()\n"
        f"{extra}"
        "    PrivateData = @{\n"
        "        PSData = @{\n"
        "        }\n"
        "    }\n"
        "}\n"
    )


@dataclass
class FakeRepository:
    """In-memory ModuleRepository."""
    local: Dict[str, ModuleInfo] = field(default_factory=dict)
    online: Dict[str, ModuleInfo] = field(default_factory=dict)
    installed_calls: list = field(default_factory=list)
    online_calls: list = field(default_factory=list)

    def add_installed(self, name: str, version: str, guid: str | None = None, requires=()):
        self.local[name.lower()] = ModuleInfo(name=name, version=version, guid=guid, required_modules=tuple(requires))
        return self

    def add_online(self, name: str, version: str, guid: str | None = None):
        self.online[name.lower()] = ModuleInfo(name=name, version=version, guid=guid)
        return self

    def installed(self, name: str) -> Optional[ModuleInfo]:
        self.installed_calls.append(name)
        return self.local.get(name.lower())

    def find_latest(self, name: str, *, repository=None, prerelease=False) -> Optional[ModuleInfo]:
        self.online_calls.append(name)
        return self.online.get(name.lower())


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A small script module: Public/Private scripts, a loader psm1 and a manifest."""
    root = tmp_path / "Sample"
    write_text(root / "Sample.psd1", psd1_text("1.0.0"))
    write_text(root / "Sample.psm1", "Export-ModuleMember -Function * -Alias *\n")
    write_text(
        root / "Public" / "Get-Sample.ps1",
        "function Get-Sample {\n    'Version {ModuleVersion} of <ModuleName>'\n}\n",
    )
    write_text(root / "Public" / "Set-Sample.ps1", "function Set-Sample { param($Value) $Value }\n")
    write_text(root / "Private" / "helper.ps1", "function Get-Helper { 'help' }\n")
    write_text(root / ".git" / "HEAD", "ref: refs/heads/main\n")
    write_text(root / "bin" / "junk.txt", "junk\n")
    return root


@pytest.fixture
def quiet_logger() -> logging.Logger:
    return logging.getLogger("modforge.tests")
