# model.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Mapping, Tuple, Union

from .manifest import RequiredModule

DEFAULT_EXCLUDE_DIRECTORIES: Tuple[str, ...] = (
    ".git", ".vs", "bin", "obj", "packages", "node_modules", ".vscode", "Artefacts", "Ignore",
)
DEFAULT_FRAMEWORKS: Tuple[str, ...] = ("net472", "net8.0")
DEFAULT_COMPATIBLE_EDITIONS: Tuple[str, ...] = ("Desktop", "Core")
DEFAULT_VERSION_FALLBACK = "1.0.0"


class InstallStrategy(str, Enum):
    EXACT = "exact"
    AUTO_REVISION = "auto_revision"


class LegacyFlatHandling(str, Enum):
    IGNORE = "ignore"
    WARN = "warn"
    CONVERT = "convert"
    DELETE = "delete"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class CheckStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


class DependencyKind(str, Enum):
    REQUIRED = "required"
    EXTERNAL = "external"
    APPROVED = "approved"


# ---------------------------------------------------------------------
# Required modules
# ---------------------------------------------------------------------

SYMBOLIC_VERSIONS = ("auto", "latest")


@dataclass(frozen=True)
class RequiredModuleDraft:
    """
    A declared dependency before resolution.
    Version fields may hold the symbolic values "auto"/"latest", and guid may be "auto".
    """
    name: str
    module_version: str | None = None
    required_version: str | None = None
    maximum_version: str | None = None
    guid: str | None = None

    @property
    def key(self) -> str:
        return self.name.strip().lower()

    @property
    def is_symbolic(self) -> bool:
        for v in (self.module_version, self.required_version, self.maximum_version):
            if v and v.strip().lower() in SYMBOLIC_VERSIONS:
                return True
        return bool(self.guid and self.guid.strip().lower() == "auto")


# ---------------------------------------------------------------------
# Segments
#
# One frozen dataclass per kind. Scalars left as None mean "not set here",
# so a later segment only overrides what it actually sets.
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ManifestSegment:
    kind: ClassVar[str] = "manifest"

    module_version: str | None = None
    compatible_editions: Tuple[str, ...] = ()
    guid: str | None = None
    author: str | None = None
    company_name: str | None = None
    copyright: str | None = None
    description: str | None = None
    powershell_version: str | None = None
    dotnet_framework_version: str | None = None
    tags: Tuple[str, ...] = ()
    icon_uri: str | None = None
    project_uri: str | None = None
    license_uri: str | None = None
    require_license_acceptance: bool | None = None
    prerelease: str | None = None
    functions_to_export: Tuple[str, ...] = ()
    cmdlets_to_export: Tuple[str, ...] = ()
    aliases_to_export: Tuple[str, ...] = ()
    formats_to_process: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BuildSegment:
    kind: ClassVar[str] = "build"

    merge: bool | None = None
    merge_missing: bool | None = None
    sign_merged: bool | None = None
    refresh_psd1_only: bool | None = None
    local_version: bool | None = None
    install_strategy: InstallStrategy | None = None
    install_keep: int | None = None
    legacy_flat_handling: LegacyFlatHandling | None = None
    preserve_install_versions: Tuple[str, ...] = ()
    install_missing_modules: bool | None = None
    install_missing_modules_force: bool | None = None
    install_missing_modules_prerelease: bool | None = None
    install_missing_modules_repository: str | None = None
    resolve_missing_modules_online: bool | None = None
    warn_if_required_modules_outdated: bool | None = None
    binary_conflicts_project_name: str | None = None


@dataclass(frozen=True)
class BuildLibrariesSegment:
    kind: ClassVar[str] = "build_libraries"

    configuration: str | None = None
    frameworks: Tuple[str, ...] = ()
    project_name: str | None = None
    net_project_path: str | None = None
    export_assemblies: Tuple[str, ...] = ()
    disable_binary_cmdlet_scan: bool | None = None


@dataclass(frozen=True)
class ModuleSegment:
    kind: ClassVar[str] = "module"

    dependency: DependencyKind
    module: RequiredModuleDraft


@dataclass(frozen=True)
class CommandSegment:
    """Which commands of `module_name` the built module calls (CommandModuleDependencies)."""
    kind: ClassVar[str] = "command"

    module_name: str
    command_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ModuleSkipSegment:
    kind: ClassVar[str] = "module_skip"

    ignore_module_names: Tuple[str, ...] = ()
    ignore_function_names: Tuple[str, ...] = ()
    force: bool = False
    fail_on_missing_commands: bool = False


@dataclass(frozen=True)
class InformationSegment:
    kind: ClassVar[str] = "information"

    functions_to_export_folder: str | None = None
    aliases_to_export_folder: str | None = None
    exclude_from_package: Tuple[str, ...] = ()
    include_root: Tuple[str, ...] = ()
    include_all: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentationSegment:
    kind: ClassVar[str] = "documentation"

    enabled: bool | None = None
    path: str | None = None
    readme_path: str | None = None
    external_help: bool | None = None
    external_help_culture: str | None = None


@dataclass(frozen=True)
class FormattingSegment:
    kind: ClassVar[str] = "formatting"

    enabled: bool | None = None
    update_project_root: bool | None = None
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class CompatibilitySegment:
    kind: ClassVar[str] = "compatibility"

    enabled: bool | None = None
    severity: Severity | None = None
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class FileConsistencySegment:
    kind: ClassVar[str] = "file_consistency"

    enabled: bool | None = None
    severity: Severity | None = None
    include_project_root: bool | None = None
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationSegment:
    kind: ClassVar[str] = "validation"

    enabled: bool | None = None
    severity: Severity | None = None
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ImportModulesSegment:
    kind: ClassVar[str] = "import_modules"

    import_self: bool | None = None
    required_modules: bool | None = None
    verbose: bool | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.import_self or self.required_modules)


@dataclass(frozen=True)
class PlaceholderSegment:
    kind: ClassVar[str] = "placeholder"

    find: str = ""
    replace: str = ""


@dataclass(frozen=True)
class PlaceholderOptionSegment:
    kind: ClassVar[str] = "placeholder_option"

    skip_builtin_replacements: bool = False


@dataclass(frozen=True)
class ImportantLink:
    title: str
    url: str


@dataclass(frozen=True)
class DeliveryOptions:
    enable: bool = False
    internals_path: str = "Internals"
    include_root_readme: bool = False
    include_root_changelog: bool = False
    include_root_license: bool = False
    readme_destination: str = "Internals"
    important_links: Tuple[ImportantLink, ...] = ()


@dataclass(frozen=True)
class SigningOptions:
    certificate_thumbprint: str | None = None
    certificate_pfx_path: str | None = None
    include: Tuple[str, ...] = ()
    exclude_paths: Tuple[str, ...] = ()
    overwrite_signed: bool = False


@dataclass(frozen=True)
class OptionsSegment:
    kind: ClassVar[str] = "options"

    delivery: DeliveryOptions | None = None
    signing: SigningOptions | None = None


@dataclass(frozen=True)
class TestSegment:
    kind: ClassVar[str] = "test"
    __test__: ClassVar[bool] = False  # not a pytest class

    tests_path: str | None = None
    timeout_seconds: int = 600
    force: bool = False


@dataclass(frozen=True)
class ArtefactSegment:
    kind: ClassVar[str] = "artefact"

    artefact_type: str = "Packed"
    enabled: bool = True
    path: str | None = None
    artefact_name: str | None = None
    include_tag_name: bool = False
    id: str | None = None


@dataclass(frozen=True)
class PublishSegment:
    kind: ClassVar[str] = "publish"

    destination: str = "PowerShellGallery"
    enabled: bool = True
    api_key: str | None = None
    repository_name: str | None = None
    user_name: str | None = None
    id: str | None = None
    force: bool = False


Segment = Union[
    ManifestSegment,
    BuildSegment,
    BuildLibrariesSegment,
    ModuleSegment,
    CommandSegment,
    ModuleSkipSegment,
    InformationSegment,
    DocumentationSegment,
    FormattingSegment,
    CompatibilitySegment,
    FileConsistencySegment,
    ValidationSegment,
    ImportModulesSegment,
    PlaceholderSegment,
    PlaceholderOptionSegment,
    OptionsSegment,
    TestSegment,
    ArtefactSegment,
    PublishSegment,
]


# ---------------------------------------------------------------------
# Spec (input)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InstallSettings:
    enabled: bool | None = None
    strategy: InstallStrategy | None = None
    keep: int | None = None
    roots: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Spec:
    """What the caller asks for: one module, its source tree, and ordered segments."""
    name: str
    source_path: str
    version: str = "auto"
    staging_path: str | None = None
    keep_staging: bool = False

    csproj_path: str | None = None
    configuration: str = "Release"
    frameworks: Tuple[str, ...] = DEFAULT_FRAMEWORKS

    author: str | None = None
    company_name: str | None = None
    description: str | None = None
    tags: Tuple[str, ...] = ()
    icon_uri: str | None = None
    project_uri: str | None = None
    compatible_editions: Tuple[str, ...] = DEFAULT_COMPATIBLE_EDITIONS

    exclude_directories: Tuple[str, ...] = DEFAULT_EXCLUDE_DIRECTORIES
    exclude_files: Tuple[str, ...] = ()

    install: InstallSettings | None = None
    segments: Tuple[Segment, ...] = ()


# ---------------------------------------------------------------------
# Plan (compiled, read-only)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Plan:
    module_name: str
    project_root: str
    expected_version: str
    resolved_version: str
    prerelease: str | None

    build_spec: Spec
    manifest: ManifestSegment | None = None
    information: InformationSegment | None = None

    required_modules: Tuple[RequiredModule, ...] = ()
    required_modules_for_packaging: Tuple[RequiredModule, ...] = ()
    external_module_dependencies: Tuple[str, ...] = ()
    approved_modules: Tuple[str, ...] = ()
    dependent_modules: Tuple[str, ...] = ()
    command_module_dependencies: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    module_skip: ModuleSkipSegment | None = None

    documentation: DocumentationSegment | None = None
    formatting: FormattingSegment | None = None
    compatibility: CompatibilitySegment | None = None
    file_consistency: FileConsistencySegment | None = None
    validation: ValidationSegment | None = None
    import_modules: ImportModulesSegment | None = None
    placeholders: Tuple[PlaceholderSegment, ...] = ()
    placeholder_option: PlaceholderOptionSegment | None = None
    delivery: DeliveryOptions | None = None
    signing: SigningOptions | None = None

    tests: Tuple[TestSegment, ...] = ()
    artefacts: Tuple[ArtefactSegment, ...] = ()
    publishes: Tuple[PublishSegment, ...] = ()

    install_enabled: bool = True
    install_strategy: InstallStrategy = InstallStrategy.AUTO_REVISION
    install_keep: int = 3
    install_roots: Tuple[str, ...] = ()
    install_legacy_flat_handling: LegacyFlatHandling = LegacyFlatHandling.WARN
    install_preserve_versions: Tuple[str, ...] = ()
    install_missing_modules: bool = False
    install_missing_modules_force: bool = False
    install_missing_modules_prerelease: bool = False
    install_missing_modules_repository: str | None = None
    resolve_missing_modules_online: bool = False
    warn_if_required_modules_outdated: bool = False

    merge_module: bool = True
    merge_missing: bool = False
    sign_module: bool = False
    refresh_manifest_only: bool = False

    export_assemblies: Tuple[str, ...] = ()
    disable_binary_cmdlet_scan: bool = False

    staging_was_generated: bool = True
    delete_generated_staging_after_run: bool = True

    warnings: Tuple[str, ...] = ()

    @property
    def version_with_prerelease(self) -> str:
        if self.prerelease:
            return f"{self.resolved_version}-{self.prerelease}"
        return self.resolved_version

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.project_root, f"{self.module_name}.psd1")


@dataclass(frozen=True)
class ModuleInstallerResult:
    version: str
    installed_paths: Tuple[str, ...] = ()
    pruned_paths: Tuple[str, ...] = ()

