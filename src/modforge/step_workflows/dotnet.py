# step_workflows/dotnet.py
from __future__ import annotations

import logging
import re
import sys
from pathlib import Path
from typing import Dict, Iterable

from .process import run_tool

logger = logging.getLogger(__name__)

_NET_FRAMEWORK_TFM = re.compile(r"^net\d{2,3}$", re.IGNORECASE)  # net472, net48 ...
_CORE_TFM = re.compile(r"^(netcoreapp|net[5-9]|net1\d)", re.IGNORECASE)


def is_core_framework(tfm: str) -> bool:
    return bool(_CORE_TFM.match(tfm.strip()))


def dotnet_publish(
    project_path: str | Path,
    configuration: str,
    frameworks: Iterable[str],
    version: str,
    *,
    timeout: int = 1800,
) -> Dict[str, Path]:
    """
    `dotnet publish` once per target framework.

    Returns {tfm: publish directory}. Classic .NET Framework targets are
    skipped with a warning off Windows.
    """
    project = Path(project_path).resolve()
    if not project.is_file():
        raise FileNotFoundError(f"Project file not found: {project}")

    requested = []
    seen = set()
    for f in frameworks:
        tfm = f.strip()
        if tfm and tfm.lower() not in seen:
            seen.add(tfm.lower())
            requested.append(tfm)

    if not sys.platform.startswith("win"):
        for tfm in [t for t in requested if _NET_FRAMEWORK_TFM.match(t)]:
            logger.warning("Skipping '%s' publish on non-Windows (.NET Framework targets require Windows).", tfm)
        requested = [t for t in requested if not _NET_FRAMEWORK_TFM.match(t)]

    out: Dict[str, Path] = {}
    for tfm in requested:
        publish_dir = project.parent / "bin" / configuration / tfm / "publish"
        run_tool(
            [
                "dotnet", "publish", str(project),
                "-c", configuration,
                "-f", tfm,
                "-o", str(publish_dir),
                f"/p:Version={version}",
            ],
            cwd=project.parent,
            timeout=timeout,
        )
        out[tfm] = publish_dir
    return out
