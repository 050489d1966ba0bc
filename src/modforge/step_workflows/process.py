# step_workflows/process.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Sequence

from ..errors import BuildToolError

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "pwsh": "Install PowerShell 7 (pwsh) or fix PATH.",
    "powershell": "Windows PowerShell is only available on Windows; install pwsh instead.",
    "dotnet": "Install the .NET SDK or fix PATH.",
}

# Keep only the tail of tool output; test runners can print megabytes.
OUTPUT_TAIL = 8000


def check_tool_available(tool: str) -> str:
    """Return the resolved executable path, raise BuildToolError with a hint if missing."""
    found = shutil.which(tool)
    if found is None:
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        raise BuildToolError(
            message=f"{tool} is not available",
            details={"hint": hint, "tool": tool},
        )
    return found


def run_tool(
    cmd: Sequence[str],
    *,
    cwd: str | Path | None = None,
    timeout: int | None = None,
    env: Dict[str, str] | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external tool synchronously.

    A timeout is a normal failure: it surfaces as BuildToolError like a
    non-zero exit code, carrying whatever output was captured.
    """
    cmd_parts: List[str] = [str(c) for c in cmd]
    check_tool_available(cmd_parts[0])

    merged_env = os.environ.copy()
    merged_env.update(env or {})

    logger.debug("Running %s (cwd=%s, timeout=%s)", " ".join(cmd_parts), cwd, timeout)
    try:
        proc = subprocess.run(
            cmd_parts,
            shell=False,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        out = (e.stdout or "") if isinstance(e.stdout, str) else ""
        raise BuildToolError(
            message=f"{cmd_parts[0]} timed out after {timeout}s",
            details={"cmd": " ".join(cmd_parts)},
            output=out[-OUTPUT_TAIL:],
        ) from e

    if check and proc.returncode != 0:
        raise BuildToolError(
            message=f"{cmd_parts[0]} failed (exit={proc.returncode})",
            details={"cmd": " ".join(cmd_parts)},
            output=((proc.stdout or "") + (proc.stderr or ""))[-OUTPUT_TAIL:],
        )
    return proc
