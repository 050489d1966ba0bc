# config.py
from __future__ import annotations

import json
import logging
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .model import (
    DEFAULT_COMPATIBLE_EDITIONS,
    DEFAULT_EXCLUDE_DIRECTORIES,
    DEFAULT_FRAMEWORKS,
    ArtefactSegment,
    BuildLibrariesSegment,
    BuildSegment,
    CommandSegment,
    CompatibilitySegment,
    DeliveryOptions,
    DependencyKind,
    DocumentationSegment,
    FileConsistencySegment,
    FormattingSegment,
    ImportantLink,
    ImportModulesSegment,
    InformationSegment,
    InstallSettings,
    InstallStrategy,
    LegacyFlatHandling,
    ManifestSegment,
    ModuleSegment,
    ModuleSkipSegment,
    OptionsSegment,
    PlaceholderOptionSegment,
    PlaceholderSegment,
    PublishSegment,
    RequiredModuleDraft,
    Severity,
    SigningOptions,
    Spec,
    TestSegment,
    ValidationSegment,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAMES = ("modforge.yml", "modforge.yaml", "modforge.json")


def _tuples(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: tuple(v) if isinstance(v, list) else v for k, v in values.items()}


# ---------------------------------------------------------------------
# Segment models
#
# One pydantic model per segment kind, selected by `type`. Each converts
# itself into the frozen dataclass the planner consumes.
# ---------------------------------------------------------------------

class _Segment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    segment_cls: ClassVar[type]

    # enum values are lowercase; accept "Error", "AutoRevision" etc.
    @field_validator("severity", "install_strategy", "legacy_flat_handling", "dependency", mode="before", check_fields=False)
    @classmethod
    def _lower_enums(cls, value):
        if isinstance(value, str):
            return value.strip().lower().replace("autorevision", "auto_revision")
        return value

    def to_segment(self):
        return self.segment_cls(**_tuples(self.model_dump(exclude={"type"})))


class ManifestModel(_Segment):
    type: Literal["manifest"]
    segment_cls: ClassVar[type] = ManifestSegment

    module_version: Optional[str] = None
    compatible_editions: List[str] = []
    guid: Optional[str] = None
    author: Optional[str] = None
    company_name: Optional[str] = None
    copyright: Optional[str] = None
    description: Optional[str] = None
    powershell_version: Optional[str] = None
    dotnet_framework_version: Optional[str] = None
    tags: List[str] = []
    icon_uri: Optional[str] = None
    project_uri: Optional[str] = None
    license_uri: Optional[str] = None
    require_license_acceptance: Optional[bool] = None
    prerelease: Optional[str] = None
    functions_to_export: List[str] = []
    cmdlets_to_export: List[str] = []
    aliases_to_export: List[str] = []
    formats_to_process: List[str] = []


class BuildModel(_Segment):
    type: Literal["build"]
    segment_cls: ClassVar[type] = BuildSegment

    merge: Optional[bool] = None
    merge_missing: Optional[bool] = None
    sign_merged: Optional[bool] = None
    refresh_psd1_only: Optional[bool] = None
    local_version: Optional[bool] = None
    install_strategy: Optional[InstallStrategy] = None
    install_keep: Optional[int] = Field(default=None, ge=0)
    legacy_flat_handling: Optional[LegacyFlatHandling] = None
    preserve_install_versions: List[str] = []
    install_missing_modules: Optional[bool] = None
    install_missing_modules_force: Optional[bool] = None
    install_missing_modules_prerelease: Optional[bool] = None
    install_missing_modules_repository: Optional[str] = None
    resolve_missing_modules_online: Optional[bool] = None
    warn_if_required_modules_outdated: Optional[bool] = None
    binary_conflicts_project_name: Optional[str] = None


class BuildLibrariesModel(_Segment):
    type: Literal["build_libraries"]
    segment_cls: ClassVar[type] = BuildLibrariesSegment

    configuration: Optional[str] = None
    frameworks: List[str] = []
    project_name: Optional[str] = None
    net_project_path: Optional[str] = None
    export_assemblies: List[str] = []
    disable_binary_cmdlet_scan: Optional[bool] = None


class ModuleModel(_Segment):
    type: Literal["module"]
    segment_cls: ClassVar[type] = ModuleSegment

    dependency: DependencyKind = DependencyKind.REQUIRED
    name: str
    module_version: Optional[str] = None
    required_version: Optional[str] = None
    maximum_version: Optional[str] = None
    guid: Optional[str] = None

    def to_segment(self):
        return ModuleSegment(
            dependency=self.dependency,
            module=RequiredModuleDraft(
                name=self.name,
                module_version=self.module_version,
                required_version=self.required_version,
                maximum_version=self.maximum_version,
                guid=self.guid,
            ),
        )


class CommandModel(_Segment):
    type: Literal["command"]
    segment_cls: ClassVar[type] = CommandSegment

    module_name: str
    command_names: List[str] = []


class ModuleSkipModel(_Segment):
    type: Literal["module_skip"]
    segment_cls: ClassVar[type] = ModuleSkipSegment

    ignore_module_names: List[str] = []
    ignore_function_names: List[str] = []
    force: bool = False
    fail_on_missing_commands: bool = False


class InformationModel(_Segment):
    type: Literal["information"]
    segment_cls: ClassVar[type] = InformationSegment

    functions_to_export_folder: Optional[str] = None
    aliases_to_export_folder: Optional[str] = None
    exclude_from_package: List[str] = []
    include_root: List[str] = []
    include_all: List[str] = []


class DocumentationModel(_Segment):
    type: Literal["documentation"]
    segment_cls: ClassVar[type] = DocumentationSegment

    enabled: Optional[bool] = None
    path: Optional[str] = None
    readme_path: Optional[str] = None
    external_help: Optional[bool] = None
    external_help_culture: Optional[str] = None


class FormattingModel(_Segment):
    type: Literal["formatting"]
    segment_cls: ClassVar[type] = FormattingSegment

    enabled: Optional[bool] = None
    update_project_root: Optional[bool] = None
    options: Dict[str, Any] = {}


class CompatibilityModel(_Segment):
    type: Literal["compatibility"]
    segment_cls: ClassVar[type] = CompatibilitySegment

    enabled: Optional[bool] = None
    severity: Optional[Severity] = None
    options: Dict[str, Any] = {}


class FileConsistencyModel(_Segment):
    type: Literal["file_consistency"]
    segment_cls: ClassVar[type] = FileConsistencySegment

    enabled: Optional[bool] = None
    severity: Optional[Severity] = None
    include_project_root: Optional[bool] = None
    options: Dict[str, Any] = {}


class ValidationModel(_Segment):
    type: Literal["validation"]
    segment_cls: ClassVar[type] = ValidationSegment

    enabled: Optional[bool] = None
    severity: Optional[Severity] = None
    options: Dict[str, Any] = {}


class ImportModulesModel(_Segment):
    type: Literal["import_modules"]
    segment_cls: ClassVar[type] = ImportModulesSegment

    import_self: Optional[bool] = None
    required_modules: Optional[bool] = None
    verbose: Optional[bool] = None


class PlaceholderModel(_Segment):
    type: Literal["placeholder"]
    segment_cls: ClassVar[type] = PlaceholderSegment

    find: str = ""
    replace: str = ""


class PlaceholderOptionModel(_Segment):
    type: Literal["placeholder_option"]
    segment_cls: ClassVar[type] = PlaceholderOptionSegment

    skip_builtin_replacements: bool = False


class ImportantLinkModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str
    url: str


class DeliveryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enable: bool = False
    internals_path: str = "Internals"
    include_root_readme: bool = False
    include_root_changelog: bool = False
    include_root_license: bool = False
    readme_destination: str = "Internals"
    important_links: List[ImportantLinkModel] = []


class SigningModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    certificate_thumbprint: Optional[str] = None
    certificate_pfx_path: Optional[str] = None
    include: List[str] = []
    exclude_paths: List[str] = []
    overwrite_signed: bool = False


class OptionsModel(_Segment):
    type: Literal["options"]
    segment_cls: ClassVar[type] = OptionsSegment

    delivery: Optional[DeliveryModel] = None
    signing: Optional[SigningModel] = None

    def to_segment(self):
        delivery = None
        if self.delivery is not None:
            d = self.delivery
            delivery = DeliveryOptions(
                **_tuples(d.model_dump(exclude={"important_links"})),
                important_links=tuple(ImportantLink(title=l.title, url=l.url) for l in d.important_links),
            )
        signing = SigningOptions(**_tuples(self.signing.model_dump())) if self.signing is not None else None
        return OptionsSegment(delivery=delivery, signing=signing)


class TestModel(_Segment):
    type: Literal["test"]
    segment_cls: ClassVar[type] = TestSegment

    tests_path: Optional[str] = None
    timeout_seconds: int = Field(default=600, gt=0)
    force: bool = False


class ArtefactModel(_Segment):
    type: Literal["artefact"]
    segment_cls: ClassVar[type] = ArtefactSegment

    artefact_type: str = "Packed"
    enabled: bool = True
    path: Optional[str] = None
    artefact_name: Optional[str] = None
    include_tag_name: bool = False
    id: Optional[str] = None


class PublishModel(_Segment):
    type: Literal["publish"]
    segment_cls: ClassVar[type] = PublishSegment

    destination: str = "PowerShellGallery"
    enabled: bool = True
    api_key: Optional[str] = None
    repository_name: Optional[str] = None
    user_name: Optional[str] = None
    id: Optional[str] = None
    force: bool = False


SegmentModel = Annotated[
    Union[
        ManifestModel,
        BuildModel,
        BuildLibrariesModel,
        ModuleModel,
        CommandModel,
        ModuleSkipModel,
        InformationModel,
        DocumentationModel,
        FormattingModel,
        CompatibilityModel,
        FileConsistencyModel,
        ValidationModel,
        ImportModulesModel,
        PlaceholderModel,
        PlaceholderOptionModel,
        OptionsModel,
        TestModel,
        ArtefactModel,
        PublishModel,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------
# Project file
# ---------------------------------------------------------------------

class InstallModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: Optional[bool] = None
    strategy: Optional[InstallStrategy] = None
    keep: Optional[int] = Field(default=None, ge=0)
    roots: List[str] = []

    @field_validator("strategy", mode="before")
    @classmethod
    def _lower(cls, value):
        if isinstance(value, str):
            return value.strip().lower().replace("autorevision", "auto_revision")
        return value


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    source: str = "."
    version: str = "auto"
    staging: Optional[str] = None
    keep_staging: bool = False

    csproj: Optional[str] = None
    configuration: str = "Release"
    frameworks: List[str] = list(DEFAULT_FRAMEWORKS)

    author: Optional[str] = None
    company_name: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = []
    icon_uri: Optional[str] = None
    project_uri: Optional[str] = None
    compatible_editions: List[str] = list(DEFAULT_COMPATIBLE_EDITIONS)

    exclude_directories: List[str] = list(DEFAULT_EXCLUDE_DIRECTORIES)
    exclude_files: List[str] = []

    install: Optional[InstallModel] = None
    segments: List[SegmentModel] = []

    def to_spec(self, base_dir: str | Path = ".") -> Spec:
        """Relative paths are taken relative to `base_dir` (the config file's folder)."""
        base = Path(base_dir)

        def resolve(p: Optional[str]) -> Optional[str]:
            if not p:
                return None
            path = Path(p).expanduser()
            return str(path if path.is_absolute() else (base / path).resolve())

        install = None
        if self.install is not None:
            install = InstallSettings(
                enabled=self.install.enabled,
                strategy=self.install.strategy,
                keep=self.install.keep,
                roots=tuple(resolve(r) for r in self.install.roots),
            )

        return Spec(
            name=self.name,
            source_path=resolve(self.source),
            version=self.version,
            staging_path=resolve(self.staging),
            keep_staging=self.keep_staging,
            csproj_path=resolve(self.csproj),
            configuration=self.configuration,
            frameworks=tuple(self.frameworks),
            author=self.author,
            company_name=self.company_name,
            description=self.description,
            tags=tuple(self.tags),
            icon_uri=self.icon_uri,
            project_uri=self.project_uri,
            compatible_editions=tuple(self.compatible_editions),
            exclude_directories=tuple(self.exclude_directories),
            exclude_files=tuple(self.exclude_files),
            install=install,
            segments=tuple(s.to_segment() for s in self.segments),
        )


def find_config(start: str | Path = ".") -> Path:
    """Look for a default-named project file in `start`."""
    folder = Path(start)
    for name in DEFAULT_CONFIG_NAMES:
        candidate = folder / name
        if candidate.is_file():
            return candidate
    raise ConfigurationError(
        f"No project file found in {folder.resolve()}",
        details={"hint": "Create modforge.yml or pass --config."},
    )


def parse_config(data: Any, *, source: str = "<memory>") -> ProjectConfig:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Project file must contain a mapping at the top level: {source}")
    try:
        return ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid project file {source}:\n{e}") from e


def load_config(path: str | Path) -> ProjectConfig:
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"Project file not found: {p}")

    text = p.read_text(encoding="utf-8-sig")
    try:
        if p.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not parse {p}: {e}") from e

    logger.debug("Loaded project file %s", p)
    return parse_config(data, source=str(p))


def load_python_spec(path: str | Path) -> Spec:
    """
    Load a Spec from a python file.

    The file must define either:
      - build_spec() -> Spec   (use modforge.dsl to build it)
      - SPEC = Spec(...)
    """
    p = Path(path)
    globals_dict = runpy.run_path(str(p), run_name=f"modforge_project_{p.stem}")

    result = None
    if "build_spec" in globals_dict and callable(globals_dict["build_spec"]):
        result = globals_dict["build_spec"]()
    elif "SPEC" in globals_dict:
        result = globals_dict["SPEC"]

    if not isinstance(result, Spec):
        raise ConfigurationError(
            f"{p.name} must define build_spec() -> Spec or SPEC = Spec(...)",
            details={"hint": "from modforge.dsl import SpecBuilder"},
        )
    source = Path(result.source_path).expanduser()
    if not source.is_absolute():
        result = replace(result, source_path=str((p.parent / source).resolve()))
    return result


def load_spec(path: str | Path) -> Spec:
    """Read a modforge.yml/.yaml/.json (or .py) file and return the Spec it describes."""
    p = Path(path).expanduser().resolve()
    if p.suffix.lower() == ".py":
        if not p.is_file():
            raise ConfigurationError(f"Project file not found: {p}")
        return load_python_spec(p)
    return load_config(p).to_spec(p.parent)
