# defaults/repository.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .. import manifest
from ..collaborators import ModuleInfo
from ..versioning import compare_versions, parse_version

logger = logging.getLogger(__name__)


class LocalModuleRepository:
    """
    Looks modules up in local module roots only.
    Online lookups belong to a gallery-backed repository; here they return None.
    """

    def __init__(self, roots: Sequence[str] | None = None):
        self._roots = list(roots) if roots is not None else None

    @property
    def roots(self) -> List[str]:
        if self._roots is None:
            from ..installer import default_module_roots

            return default_module_roots()
        return self._roots

    def _read(self, name: str, psd1: Path, fallback_version: str | None) -> Optional[ModuleInfo]:
        version = manifest.get_top_level_string(psd1, "ModuleVersion") or fallback_version
        if not version:
            return None
        required = manifest.get_required_modules(psd1) or []
        return ModuleInfo(
            name=name,
            version=version,
            guid=manifest.get_top_level_string(psd1, "GUID"),
            path=str(psd1.parent),
            required_modules=tuple(m.module_name for m in required),
        )

    def installed(self, name: str) -> Optional[ModuleInfo]:
        best: Optional[ModuleInfo] = None
        for root in self.roots:
            module_root = Path(root) / name
            if not module_root.is_dir():
                continue

            candidates: List[ModuleInfo] = []
            for d in module_root.iterdir():
                if d.is_dir() and parse_version(d.name) is not None:
                    info = self._read(name, d / f"{name}.psd1", d.name)
                    if info:
                        candidates.append(info)
            flat = module_root / f"{name}.psd1"
            if flat.is_file():
                info = self._read(name, flat, None)
                if info:
                    candidates.append(info)

            for info in candidates:
                if best is None or compare_versions(info.version, best.version) > 0:
                    best = info
        return best

    def find_latest(self, name: str, *, repository: str | None = None, prerelease: bool = False) -> Optional[ModuleInfo]:
        logger.debug("Online lookup for %s is not available in the local repository", name)
        return None
