# defaults/artefact.py
from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path

from ..collaborators import ArtefactRequest, ArtefactResult
from ..errors import ConfigurationError
from ..placeholders import replace_path_tokens

logger = logging.getLogger(__name__)

PACKED = "packed"
UNPACKED = "unpacked"


def _iter_files(root: Path):
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def artefact_file_name(module_name: str, version: str, prerelease: str | None, include_tag_name: bool) -> str:
    if not include_tag_name:
        return f"{module_name}.zip"
    suffix = f"{version}-{prerelease}" if prerelease else version
    return f"{module_name}.v{suffix}.zip"


class ZipArtefactBuilder:
    """
    Packed: <out>/<name>[.v<version>[-pre]].zip with entries under <name>/.
    Unpacked: a copy of staging in <out>/<name>.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or logging.getLogger(__name__)

    def output_directory(self, request: ArtefactRequest) -> Path:
        seg = request.segment
        if seg.path:
            raw = replace_path_tokens(seg.path, request.module_name, request.version, request.prerelease)
            out = Path(raw)
            if not out.is_absolute():
                out = Path(request.project_root) / out
            return out
        return Path(request.project_root) / "Artefacts" / seg.artefact_type

    def build(self, request: ArtefactRequest) -> ArtefactResult:
        kind = (request.segment.artefact_type or "").strip().lower()
        if kind == PACKED:
            path = self._build_zip(request)
        elif kind == UNPACKED:
            path = self._build_directory(request)
        else:
            raise ConfigurationError(
                f"Unsupported artefact type '{request.segment.artefact_type}'",
                module=request.module_name,
                details={"supported": "Packed, Unpacked"},
            )
        return ArtefactResult(path=str(path), artefact_type=request.segment.artefact_type, id=request.segment.id)

    def _build_zip(self, request: ArtefactRequest) -> Path:
        seg = request.segment
        out_dir = self.output_directory(request)
        out_dir.mkdir(parents=True, exist_ok=True)

        if seg.artefact_name:
            name = replace_path_tokens(seg.artefact_name, request.module_name, request.version, request.prerelease)
            if not name.lower().endswith(".zip"):
                name += ".zip"
        else:
            name = artefact_file_name(request.module_name, request.version, request.prerelease, seg.include_tag_name)

        staging = Path(request.staging_path)
        target = out_dir / name
        tmp = target.with_suffix(".zip.tmp")
        try:
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for f in _iter_files(staging):
                    rel = f.relative_to(staging).as_posix()
                    zf.write(f, arcname=f"{request.module_name}/{rel}")
            tmp.replace(target)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        self.log.info("Created artefact %s", target)
        return target

    def _build_directory(self, request: ArtefactRequest) -> Path:
        out_dir = self.output_directory(request)
        target = out_dir / request.module_name
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(request.staging_path, target)
        self.log.info("Copied unpacked artefact to %s", target)
        return target
