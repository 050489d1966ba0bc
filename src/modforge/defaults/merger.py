# defaults/merger.py
from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import List, Sequence

from ..collaborators import MergeRequest, MergeResult
from .builder import detect_script_functions

logger = logging.getLogger(__name__)

# Merge order matters: types must exist before the functions that use them.
MERGE_FOLDERS = ("Enums", "Classes", "Private", "Public")

# a dot-sourced variable, e.g. `. $import.FullName` inside a loader loop
_DOT_SOURCE_VARIABLE = re.compile(r"^\s*\.\s+\$[\w.]+\s*$")


def strip_loader_lines(text: str, folders: Sequence[str]) -> str:
    """
    Drop the lines of a loader .psm1 that dot-source scripts from `folders`.
    Once those folders are merged and removed, such lines would fail on import.
    """
    if not folders:
        return text
    names = "|".join(re.escape(f) for f in folders)
    dot_source = re.compile(rf"""^\s*\.\s+.*[\\/'"\s](?:{names})[\\/]""", re.IGNORECASE)
    listing = re.compile(rf"""Get-ChildItem\b.*[\\/'"\s](?:{names})\b""", re.IGNORECASE)
    kept = [
        line
        for line in text.splitlines()
        if not (dot_source.match(line) or listing.search(line) or _DOT_SOURCE_VARIABLE.match(line))
    ]
    return "\n".join(kept)


class ScriptSourceMerger:
    """
    Concatenates the script folders of a staged module into <name>.psm1 and
    removes the merged folders.

    Command analysis needs a PowerShell runspace, so this merger never
    reports missing commands.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or logging.getLogger(__name__)

    def merge(self, request: MergeRequest) -> MergeResult:
        staging = Path(request.staging_path)
        psm1 = staging / f"{request.module_name}.psm1"
        functions = detect_script_functions(staging / "Public")

        sources: List[Path] = []
        merged_folders: List[str] = []
        for folder in MERGE_FOLDERS:
            d = staging / folder
            if d.is_dir():
                merged_folders.append(folder)
                sources.extend(sorted(d.rglob("*.ps1")))

        if not sources:
            self.log.info("Nothing to merge for %s", request.module_name)
            return MergeResult(module_path=str(psm1), functions=tuple(functions))

        parts: List[str] = []
        for script in sources:
            text = script.read_text(encoding="utf-8-sig")
            parts.append(text.rstrip("\r\n"))

        # loader psm1 content (Export-ModuleMember etc.) goes last, minus its dot-sourcing
        if psm1.is_file():
            existing = strip_loader_lines(psm1.read_text(encoding="utf-8-sig"), merged_folders).strip()
            if existing:
                parts.append(existing)

        with psm1.open("w", encoding="utf-8-sig", newline="") as f:
            f.write("\n\n".join(parts) + "\n")

        for folder in MERGE_FOLDERS:
            d = staging / folder
            if d.is_dir():
                shutil.rmtree(d)

        rel = [str(p.relative_to(staging)).replace("\\", "/") for p in sources]
        self.log.info("Merged %d script(s) into %s", len(rel), psm1.name)
        return MergeResult(module_path=str(psm1), merged_files=tuple(rel), functions=tuple(functions))
