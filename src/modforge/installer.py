# installer.py
from __future__ import annotations

import logging
import os
import shutil
import sys
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional, Sequence, Set, Tuple

import portalocker

from . import manifest
from .errors import InstallError, ModForgeError
from .model import InstallStrategy, LegacyFlatHandling, ModuleInstallerResult
from .versioning import next_auto_revision, parse_version, version_sort_key

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
#
#   <root>/<name>/
#     .modforge.lock          exclusive lock while one install touches the root
#     .tmp_install_<hex>/     fully materialized candidate, renamed into place
#     _legacy_flat/...        quarantined pre-versioned installs
#     1.0.0/ 1.0.1/ ...       installed versions
# ---------------------------------------------------------------------

LOCK_FILE = ".modforge.lock"
TEMP_PREFIX = ".tmp_install_"
QUARANTINE_DIR = "_legacy_flat"

_INVALID_SEGMENT_CHARS = set('<>:"/\\|?*')


@dataclass(frozen=True)
class InstallOptions:
    roots: Tuple[str, ...] = ()
    strategy: InstallStrategy = InstallStrategy.AUTO_REVISION
    keep: int = 3
    legacy_flat_handling: LegacyFlatHandling = LegacyFlatHandling.WARN
    preserve_versions: Tuple[str, ...] = ()
    update_manifest_to_resolved_version: bool = True


def default_module_roots() -> List[str]:
    """Per-user module directories for the current platform."""
    home = Path.home()
    if sys.platform.startswith("win"):
        docs = home / "Documents"
        roots = [docs / "PowerShell" / "Modules", docs / "WindowsPowerShell" / "Modules"]
    else:
        data_home = os.environ.get("XDG_DATA_HOME") or str(home / ".local" / "share")
        roots = [Path(data_home) / "powershell" / "Modules"]
    return [str(r) for r in roots]


def is_safe_segment(value: str | None) -> bool:
    """A single path component: no separators, no drive letters, not '.' or '..'."""
    if not value or not value.strip():
        return False
    if value in (".", ".."):
        return False
    if value != value.strip():
        return False
    for ch in value:
        if ch in _INVALID_SEGMENT_CHARS or ord(ch) < 32:
            return False
    return True


def _is_version_dir(p: Path) -> bool:
    n = p.name
    return p.is_dir() and bool(n) and n[0].isdigit() and parse_version(n) is not None


def _is_bookkeeping(p: Path) -> bool:
    n = p.name
    return n == LOCK_FILE or n.startswith(TEMP_PREFIX) or n == QUARANTINE_DIR


@contextmanager
def locked_module_root(module_root: Path) -> Generator[Path, None, None]:
    """Hold an exclusive lock on `module_root` for the duration of the block."""
    module_root.mkdir(parents=True, exist_ok=True)
    lock_path = module_root / LOCK_FILE
    with open(lock_path, "a", encoding="utf-8") as f:
        portalocker.lock(f, portalocker.LOCK_EX)
        try:
            yield module_root
        finally:
            portalocker.unlock(f)


def _remove_path(p: Path) -> None:
    if p.is_dir() and not p.is_symlink():
        shutil.rmtree(p)
    else:
        p.unlink(missing_ok=True)


def _sync_directory(src: Path, dst: Path) -> None:
    """
    Make `dst` match `src`: entries missing from `src` are removed first,
    then everything from `src` is copied over.
    """
    dst.mkdir(parents=True, exist_ok=True)
    src_names = {p.name for p in src.iterdir()}
    for existing in sorted(dst.iterdir()):
        source = src / existing.name
        if existing.name not in src_names:
            _remove_path(existing)
        elif source.is_dir() != existing.is_dir():
            _remove_path(existing)
        elif source.is_dir():
            _sync_directory(source, existing)

    for entry in sorted(src.iterdir()):
        target = dst / entry.name
        if entry.is_dir():
            shutil.copytree(entry, target, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target)


class ModuleInstaller:
    """
    Places a staged module under <root>/<name>/<version> for every root.

    A root that fails does not stop the others; InstallError is raised only
    when no root could be written.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or logging.getLogger(__name__)

    # ----- version selection -----

    @staticmethod
    def resolve_target_version(
        roots: Iterable[str],
        name: str,
        version: str,
        strategy: InstallStrategy,
    ) -> str:
        if strategy == InstallStrategy.EXACT:
            return version

        existing: List[str] = []
        for root in roots:
            module_root = Path(root) / name
            if module_root.is_dir():
                existing.extend(p.name for p in module_root.iterdir() if p.is_dir())

        if any(n.lower() == version.lower() for n in existing):
            return next_auto_revision(version, existing)
        return version

    # ----- public API -----

    def install(
        self,
        staging_path: str | Path,
        name: str,
        version: str,
        options: InstallOptions | None = None,
    ) -> ModuleInstallerResult:
        options = options or InstallOptions()
        staging = Path(staging_path)

        if not staging.is_dir():
            raise InstallError(message=f"Staging path not found: {staging}", module=name)
        if not is_safe_segment(name):
            raise InstallError(message=f"Unsafe module name: {name!r}", module=name)
        if not is_safe_segment(version):
            raise InstallError(message=f"Unsafe module version: {version!r}", module=name)

        roots = list(options.roots) or default_module_roots()
        keep = max(1, int(options.keep))
        target = self.resolve_target_version(roots, name, version, options.strategy)
        self.log.info("Install strategy: %s -> target version %s", options.strategy.value, target)

        installed: List[str] = []
        pruned: List[str] = []
        failures: Dict[str, str] = {}
        result_version: Optional[str] = None

        for root in roots:
            try:
                final_version, final_path, removed = self._install_into_root(
                    staging, Path(root), name, version, target, options, keep
                )
            except (OSError, ModForgeError, portalocker.LockException) as e:
                self.log.warning("Install into %s failed: %s", root, e)
                failures[root] = str(e)
                continue

            installed.append(str(final_path))
            pruned.extend(removed)
            if result_version is None:
                result_version = final_version
            elif final_version != result_version:
                self.log.warning(
                    "Root %s received version %s (first root got %s)", root, final_version, result_version
                )

        if not installed:
            raise InstallError(
                message=f"Install of {name} {version} failed for every destination root",
                module=name,
                failures=failures,
            )

        return ModuleInstallerResult(
            version=result_version or target,
            installed_paths=tuple(installed),
            pruned_paths=tuple(pruned),
        )

    # ----- per root -----

    def _install_into_root(
        self,
        staging: Path,
        root: Path,
        name: str,
        version: str,
        target: str,
        options: InstallOptions,
        keep: int,
    ) -> Tuple[str, Path, List[str]]:
        root_resolved = root.expanduser().resolve()
        module_root = (root_resolved / name).resolve()
        if module_root.parent != root_resolved:
            raise InstallError(message=f"Module path escapes root: {module_root}", module=name)

        with locked_module_root(module_root):
            preserved: Set[str] = {v.strip().lower() for v in options.preserve_versions if v and v.strip()}
            converted = self._handle_legacy_flat(module_root, name, options.legacy_flat_handling)
            if converted:
                preserved.add(converted.lower())

            final_version = target
            if options.strategy == InstallStrategy.AUTO_REVISION and (module_root / final_version).exists():
                final_version = next_auto_revision(version, [p.name for p in module_root.iterdir() if p.is_dir()])
                self.log.warning("Target exists in %s, using %s", module_root, final_version)
            if not is_safe_segment(final_version):
                raise InstallError(message=f"Unsafe resolved version: {final_version!r}", module=name)

            final_path = module_root / final_version
            temp_path = self._materialize(staging, module_root)
            try:
                if options.update_manifest_to_resolved_version:
                    manifest.set_top_level_module_version(temp_path / f"{name}.psd1", final_version)

                if final_path.exists() and options.strategy == InstallStrategy.EXACT:
                    self.log.info("Synchronizing existing %s in place", final_path)
                    _sync_directory(temp_path, final_path)
                else:
                    self._move_into_place(temp_path, final_path)
            finally:
                if temp_path.exists():
                    shutil.rmtree(temp_path, ignore_errors=True)

            removed = self._prune(module_root, keep, preserved | {final_version.lower()})
            self.log.info("Installed %s at %s (pruned %d)", name, final_path, len(removed))
            return final_version, final_path, removed

    def _materialize(self, staging: Path, module_root: Path) -> Path:
        name = f"{TEMP_PREFIX}{uuid.uuid4().hex}"
        temp_path = module_root / name
        try:
            shutil.copytree(staging, temp_path)
            return temp_path
        except PermissionError as e:
            self.log.warning("Cannot stage inside %s (%s); using the system temp directory", module_root, e)
            shutil.rmtree(temp_path, ignore_errors=True)

        fallback = Path(tempfile.gettempdir()) / "modforge" / "install" / name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(staging, fallback)
        return fallback

    def _move_into_place(self, temp_path: Path, final_path: Path) -> None:
        try:
            temp_path.rename(final_path)
            return
        except OSError as e:
            self.log.debug("Rename into %s failed (%s); copying instead", final_path, e)

        # the copy lands under a temp name first so final_path is never half-written
        partial = final_path.parent / f"{TEMP_PREFIX}{uuid.uuid4().hex}"
        try:
            shutil.copytree(temp_path, partial)
            partial.rename(final_path)
        finally:
            if partial.exists():
                shutil.rmtree(partial, ignore_errors=True)

    # ----- legacy flat installs -----

    def _handle_legacy_flat(self, module_root: Path, name: str, mode: LegacyFlatHandling) -> Optional[str]:
        """Returns the version a flat install was converted into, if any."""
        flat_manifest = module_root / f"{name}.psd1"
        if mode == LegacyFlatHandling.IGNORE or not flat_manifest.is_file():
            return None

        entries = [p for p in sorted(module_root.iterdir()) if not _is_bookkeeping(p) and not _is_version_dir(p)]

        if mode == LegacyFlatHandling.WARN:
            self.log.warning(
                "Legacy flat install detected in %s (%d entries). Set legacy handling to convert or delete.",
                module_root,
                len(entries),
            )
            return None

        if mode == LegacyFlatHandling.DELETE:
            for p in entries:
                try:
                    _remove_path(p)
                except OSError as e:
                    self.log.warning("Could not delete legacy entry %s: %s", p, e)
            self.log.info("Deleted legacy flat install in %s", module_root)
            return None

        legacy_version = manifest.get_top_level_string(flat_manifest, "ModuleVersion")
        reason: Optional[str] = None
        if not legacy_version or parse_version(legacy_version) is None:
            reason = "unreadable-version"
        elif not is_safe_segment(legacy_version):
            reason = "unsafe-version"
        elif (module_root / legacy_version).exists():
            reason = "version-exists"

        if reason:
            stamp = datetime.now().strftime("%Y%m%d%H%M%S")
            destination = module_root / QUARANTINE_DIR / f"{reason}_{stamp}"
            self.log.warning("Quarantining legacy flat install of %s to %s (%s)", name, destination, reason)
            self._move_entries(entries, destination)
            return None

        destination = module_root / legacy_version
        self.log.info("Converting legacy flat install of %s into %s", name, destination)
        self._move_entries(entries, destination)
        return legacy_version

    @staticmethod
    def _move_entries(entries: Sequence[Path], destination: Path) -> None:
        destination.mkdir(parents=True, exist_ok=True)
        for p in entries:
            shutil.move(str(p), str(destination / p.name))

    # ----- pruning -----

    def _prune(self, module_root: Path, keep: int, preserved: Set[str]) -> List[str]:
        candidates = [p for p in module_root.iterdir() if _is_version_dir(p)]
        candidates.sort(key=lambda p: version_sort_key(p.name), reverse=True)

        kept = {p.name.lower() for p in candidates[:keep]} | preserved
        removed: List[str] = []
        for p in candidates:
            if p.name.lower() in kept:
                continue
            try:
                shutil.rmtree(p)
                removed.append(str(p))
            except OSError as e:
                self.log.warning("Could not prune %s: %s", p, e)
        return removed
