# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from .model import (
    ArtefactSegment,
    BuildLibrariesSegment,
    BuildSegment,
    CommandSegment,
    DeliveryOptions,
    DependencyKind,
    ImportantLink,
    InstallSettings,
    InstallStrategy,
    ManifestSegment,
    ModuleSegment,
    ModuleSkipSegment,
    OptionsSegment,
    PlaceholderSegment,
    PublishSegment,
    RequiredModuleDraft,
    Segment,
    SigningOptions,
    Spec,
    TestSegment,
)


# ---------------------------------------------------------------------
# Segment helpers
# ---------------------------------------------------------------------

def manifest_fields(**fields) -> ManifestSegment:
    """manifest_fields(module_version="1.2.x", author="me", tags=["a", "b"])"""
    return ManifestSegment(**_tuples(fields))


def build_options(**fields) -> BuildSegment:
    return BuildSegment(**_tuples(fields))


def libraries(**fields) -> BuildLibrariesSegment:
    return BuildLibrariesSegment(**_tuples(fields))


def _module(
    kind: DependencyKind,
    name: str,
    module_version: str | None = None,
    *,
    required_version: str | None = None,
    maximum_version: str | None = None,
    guid: str | None = None,
) -> ModuleSegment:
    return ModuleSegment(
        dependency=kind,
        module=RequiredModuleDraft(
            name=name,
            module_version=module_version,
            required_version=required_version,
            maximum_version=maximum_version,
            guid=guid,
        ),
    )


def required(name: str, module_version: str | None = None, **kw) -> ModuleSegment:
    """A runtime + packaging dependency. Versions may be "auto" or "latest"."""
    return _module(DependencyKind.REQUIRED, name, module_version, **kw)


def external(name: str, module_version: str | None = None, **kw) -> ModuleSegment:
    return _module(DependencyKind.EXTERNAL, name, module_version, **kw)


def approved(name: str) -> ModuleSegment:
    return _module(DependencyKind.APPROVED, name)


def commands(module_name: str, *names: str) -> CommandSegment:
    return CommandSegment(module_name=module_name, command_names=tuple(names))


def skip(
    *,
    modules: Sequence[str] = (),
    functions: Sequence[str] = (),
    force: bool = False,
    fail_on_missing_commands: bool = False,
) -> ModuleSkipSegment:
    return ModuleSkipSegment(
        ignore_module_names=tuple(modules),
        ignore_function_names=tuple(functions),
        force=force,
        fail_on_missing_commands=fail_on_missing_commands,
    )


def placeholder(find: str, replace_with: str) -> PlaceholderSegment:
    return PlaceholderSegment(find=find, replace=replace_with)


def tests(path: str, *, timeout_seconds: int = 600, force: bool = False) -> TestSegment:
    return TestSegment(tests_path=path, timeout_seconds=timeout_seconds, force=force)


def artefact(artefact_type: str = "Packed", *, path: str | None = None, id: str | None = None, **kw) -> ArtefactSegment:
    return ArtefactSegment(artefact_type=artefact_type, path=path, id=id, **kw)


def publish(destination: str = "PowerShellGallery", **kw) -> PublishSegment:
    return PublishSegment(destination=destination, **kw)


def delivery(*, links: Optional[Dict[str, str]] = None, **kw) -> OptionsSegment:
    """delivery(links={"Docs": "https://..."}, include_root_readme=True)"""
    important = tuple(ImportantLink(title=t, url=u) for t, u in (links or {}).items())
    return OptionsSegment(delivery=DeliveryOptions(enable=True, important_links=important, **kw))


def signing(**kw) -> OptionsSegment:
    return OptionsSegment(signing=SigningOptions(**_tuples(kw)))


def _tuples(fields: dict) -> dict:
    return {k: tuple(v) if isinstance(v, list) else v for k, v in fields.items()}


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class SpecBuilder:
    def __init__(self, name: str, source: str = "."):
        self.name = name
        self.source = source
        self._version = "auto"
        self._staging: Optional[str] = None
        self._keep_staging = False
        self._fields: dict = {}
        self._install: Optional[InstallSettings] = None
        self._segments: List[Segment] = []

    def version(self, version: str):
        self._version = version
        return self

    def staging(self, path: str, *, keep: bool = False):
        self._staging = path
        self._keep_staging = keep
        return self

    def keep_staging(self, keep: bool = True):
        self._keep_staging = keep
        return self

    def csproj(self, path: str, *, configuration: str = "Release", frameworks: Sequence[str] = ()):
        self._fields["csproj_path"] = path
        self._fields["configuration"] = configuration
        if frameworks:
            self._fields["frameworks"] = tuple(frameworks)
        return self

    def metadata(self, **fields):
        # author, company_name, description, tags, icon_uri, project_uri ...
        self._fields.update(_tuples(fields))
        return self

    def exclude(self, *, directories: Sequence[str] = (), files: Sequence[str] = ()):
        if directories:
            current = self._fields.get("exclude_directories", Spec.__dataclass_fields__["exclude_directories"].default)
            self._fields["exclude_directories"] = tuple(current) + tuple(directories)
        if files:
            self._fields["exclude_files"] = tuple(self._fields.get("exclude_files", ())) + tuple(files)
        return self

    def install_to(
        self,
        *roots: str,
        strategy: InstallStrategy | None = None,
        keep: int | None = None,
        enabled: bool = True,
    ):
        self._install = InstallSettings(enabled=enabled, strategy=strategy, keep=keep, roots=tuple(roots))
        return self

    def no_install(self):
        self._install = InstallSettings(enabled=False)
        return self

    def add(self, *segments: Segment):
        self._segments.extend(segments)
        return self

    def requires(self, name: str, module_version: str | None = None, **kw):
        return self.add(required(name, module_version, **kw))

    def build(self) -> Spec:
        if not self.name or not self.name.strip():
            raise ValueError("Spec needs a module name")
        return Spec(
            name=self.name,
            source_path=self.source,
            version=self._version,
            staging_path=self._staging,
            keep_staging=self._keep_staging,
            install=self._install,
            segments=tuple(self._segments),
            **self._fields,
        )


def spec(name: str, source: str = ".", *segments: Segment, version: str = "auto", **fields) -> Spec:
    """
    Functional form:
        spec("Sample", "./src", required("Util", "1.0.0"), artefact(), version="1.0.0")
    """
    s = Spec(name=name, source_path=source, version=version, segments=tuple(segments))
    return replace(s, **_tuples(fields)) if fields else s
