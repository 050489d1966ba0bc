# defaults/builder.py
from __future__ import annotations

import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Iterable, List, Sequence

from .. import manifest
from ..collaborators import BuildRequest, BuildResult, ExportDetector
from ..step_workflows.dotnet import dotnet_publish, is_core_framework

logger = logging.getLogger(__name__)

_FUNCTION_RE = re.compile(r"^\s*function\s+([\w-]+)", re.IGNORECASE | re.MULTILINE)
_BINARY_SUFFIXES = (".dll", ".so", ".dylib")


def _dedupe(values: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for v in values:
        if v and v.lower() not in seen:
            seen.add(v.lower())
            out.append(v)
    return out


def detect_script_functions(folder: str | Path) -> List[str]:
    """
    Function names declared in `folder`/**/*.ps1. A script without any
    `function Name` declaration contributes its file name instead.
    """
    root = Path(folder)
    if not root.is_dir():
        return []
    names: List[str] = []
    for script in sorted(root.rglob("*.ps1")):
        try:
            text = script.read_text(encoding="utf-8-sig", errors="replace")
        except OSError as e:
            logger.warning("Cannot read %s: %s", script, e)
            continue
        found = _FUNCTION_RE.findall(text)
        names.extend(found or [script.stem])
    return sorted(_dedupe(names), key=str.lower)


def minimal_manifest_text(module_name: str, version: str, newline: str = "\n") -> str:
    lines = [
        "@{",
        f"    RootModule = '{module_name}.psm1'",
        f"    ModuleVersion = '{version}'",
        f"    GUID = '{uuid.uuid4()}'",
        "    FunctionsToExport = @()",
        "    CmdletsToExport = @()",
        "    AliasesToExport = @()",
        "    PrivateData = @{",
        "        PSData = @{",
        "        }",
        "    }",
        "}",
    ]
    return newline.join(lines) + newline


def _copy_binaries(source: Path, target: Path) -> List[str]:
    copied: List[str] = []
    for f in sorted(source.rglob("*")):
        if f.is_file() and f.suffix.lower() in _BINARY_SUFFIXES:
            dest = target / f.relative_to(source)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(f, dest)
            copied.append(str(dest))
    return copied


class ManifestModuleBuilder:
    """
    Default module builder.

    Publishes the optional .NET project into Lib/Core and Lib/Default,
    makes sure a manifest exists, stamps ModuleVersion, and writes the
    export lists it can detect.
    """

    def __init__(self, export_detector: ExportDetector | None = None, logger: logging.Logger | None = None):
        self.export_detector = export_detector
        self.log = logger or logging.getLogger(__name__)

    def build(self, request: BuildRequest) -> BuildResult:
        staging = Path(request.staging_path)
        psd1 = staging / f"{request.module_name}.psd1"

        binaries: List[str] = []
        if request.csproj_path:
            binaries = self._publish_libraries(staging, request)

        if not psd1.is_file():
            self.log.info("No manifest in staging; generating %s", psd1.name)
            with psd1.open("w", encoding="utf-8-sig", newline="") as f:
                f.write(minimal_manifest_text(request.module_name, request.version))

        manifest.set_top_level_module_version(psd1, request.version)

        functions = detect_script_functions(staging / (request.functions_folder or "Public"))
        if functions or manifest.get_export_list(psd1, "FunctionsToExport").is_absent:
            manifest.set_top_level_string_array(psd1, "FunctionsToExport", functions)

        self._write_binary_exports(staging, psd1, request)
        return BuildResult(staging_path=str(staging), manifest_path=str(psd1), binaries=tuple(binaries))

    # ----- binaries -----

    def _publish_libraries(self, staging: Path, request: BuildRequest) -> List[str]:
        lib = staging / "Lib"
        if lib.exists():
            shutil.rmtree(lib)
        core_dir = lib / "Core"
        default_dir = lib / "Default"
        core_dir.mkdir(parents=True)
        default_dir.mkdir(parents=True)

        published = dotnet_publish(
            request.csproj_path,
            request.configuration,
            request.frameworks,
            request.version,
        )
        copied: List[str] = []
        for tfm, folder in published.items():
            target = core_dir if is_core_framework(tfm) else default_dir
            copied.extend(_copy_binaries(folder, target))
        return copied

    def _assemblies(self, staging: Path, names: Sequence[str]) -> List[str]:
        wanted = {f"{n}.dll".lower() for n in names if n}
        if not wanted:
            return []
        return _dedupe(str(p) for p in sorted(staging.rglob("*.dll")) if p.name.lower() in wanted)

    def _write_binary_exports(self, staging: Path, psd1: Path, request: BuildRequest) -> None:
        if request.disable_binary_cmdlet_scan or self.export_detector is None:
            return
        assemblies = self._assemblies(staging, request.export_assemblies or (request.module_name,))
        if not assemblies:
            self.log.warning("No export assemblies found under staging; binary cmdlet detection skipped.")
            return
        detected = self.export_detector.detect_exports(assemblies)
        if detected.cmdlets:
            manifest.set_top_level_string_array(psd1, "CmdletsToExport", sorted(detected.cmdlets, key=str.lower))
        if detected.aliases:
            manifest.set_top_level_string_array(psd1, "AliasesToExport", sorted(detected.aliases, key=str.lower))
