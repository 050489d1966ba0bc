# collaborators.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .errors import ConfigurationError
from .manifest import RequiredModule
from .model import (
    ArtefactSegment,
    CheckStatus,
    DocumentationSegment,
    PublishSegment,
    SigningOptions,
)

# ---------------------------------------------------------------------
# Everything the pipeline cannot (or should not) do itself sits behind one
# of these narrow request -> result contracts. Implementations may shell out
# to external tools; the executor only sees the dataclasses below.
# ---------------------------------------------------------------------


# ----- build -----

@dataclass(frozen=True)
class BuildRequest:
    staging_path: str
    module_name: str
    version: str
    csproj_path: str | None = None
    configuration: str = "Release"
    frameworks: Tuple[str, ...] = ()
    export_assemblies: Tuple[str, ...] = ()
    disable_binary_cmdlet_scan: bool = False
    functions_folder: str = "Public"


@dataclass(frozen=True)
class BuildResult:
    staging_path: str
    manifest_path: str
    binaries: Tuple[str, ...] = ()
    output: str = ""


class ModuleBuilder(Protocol):
    def build(self, request: BuildRequest) -> BuildResult: ...


# ----- merge -----

@dataclass(frozen=True)
class MergeRequest:
    staging_path: str
    module_name: str
    approved_modules: Tuple[str, ...] = ()
    ignore_function_names: Tuple[str, ...] = ()
    known_commands: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MergeResult:
    module_path: str
    merged_files: Tuple[str, ...] = ()
    functions: Tuple[str, ...] = ()
    missing_commands: Tuple[str, ...] = ()


class SourceMerger(Protocol):
    def merge(self, request: MergeRequest) -> MergeResult: ...


# ----- documentation -----

@dataclass(frozen=True)
class DocumentationRequest:
    staging_path: str
    project_root: str
    module_name: str
    settings: DocumentationSegment


@dataclass(frozen=True)
class DocumentationResult:
    files: Tuple[str, ...] = ()
    commands: Tuple[str, ...] = ()


class DocumentationGenerator(Protocol):
    def extract(self, request: DocumentationRequest) -> DocumentationResult: ...

    def write(self, request: DocumentationRequest, extracted: DocumentationResult) -> DocumentationResult: ...

    def external_help(self, request: DocumentationRequest, written: DocumentationResult) -> DocumentationResult: ...


# ----- formatting -----

@dataclass(frozen=True)
class FormatRequest:
    root: str
    scope: str  # "staging" | "project"
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class FormatResult:
    scope: str
    changed_files: Tuple[str, ...] = ()


class Formatter(Protocol):
    def format(self, request: FormatRequest) -> FormatResult: ...


# ----- signing -----

@dataclass(frozen=True)
class SignRequest:
    root: str
    signing: SigningOptions


@dataclass(frozen=True)
class SignResult:
    signed: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()


class Signer(Protocol):
    def sign(self, request: SignRequest) -> SignResult: ...


# ----- quality checks (file consistency, compatibility, module validation) -----

@dataclass(frozen=True)
class CheckRequest:
    root: str
    module_name: str
    scope: str = "staging"
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckResult:
    status: CheckStatus
    summary: str = ""
    issues: Tuple[str, ...] = ()


class QualityCheck(Protocol):
    def check(self, request: CheckRequest) -> CheckResult: ...


FileConsistencyChecker = QualityCheck
CompatibilityChecker = QualityCheck
ModuleValidator = QualityCheck


# ----- tests -----

@dataclass(frozen=True)
class TestRunRequest:
    __test__ = False

    staging_path: str
    module_name: str
    tests_path: str | None = None
    timeout_seconds: int = 600
    import_self: bool = False
    import_required_modules: bool = False
    required_modules: Tuple[str, ...] = ()
    verbose: bool = False


@dataclass(frozen=True)
class TestRunResult:
    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    output: str = ""


class TestRunner(Protocol):
    __test__ = False

    def run_tests(self, request: TestRunRequest) -> TestRunResult: ...

    def import_modules(self, request: TestRunRequest) -> TestRunResult: ...


# ----- artefacts / publishing -----

@dataclass(frozen=True)
class ArtefactRequest:
    segment: ArtefactSegment
    staging_path: str
    project_root: str
    module_name: str
    version: str
    prerelease: str | None = None
    required_modules: Tuple[RequiredModule, ...] = ()


@dataclass(frozen=True)
class ArtefactResult:
    path: str
    artefact_type: str
    id: str | None = None


class ArtefactBuilder(Protocol):
    def build(self, request: ArtefactRequest) -> ArtefactResult: ...


@dataclass(frozen=True)
class PublishRequest:
    segment: PublishSegment
    staging_path: str
    module_name: str
    version: str
    prerelease: str | None = None
    artefacts: Tuple[ArtefactResult, ...] = ()


@dataclass(frozen=True)
class PublishResult:
    success: bool
    destination: str
    url: str | None = None
    message: str = ""


class Publisher(Protocol):
    def publish(self, request: PublishRequest) -> PublishResult: ...


# ----- build dependencies -----

@dataclass(frozen=True)
class DependencyInstallRequest:
    modules: Tuple[RequiredModule, ...]
    repository: str | None = None
    prerelease: bool = False
    force: bool = False


@dataclass(frozen=True)
class DependencyInstallResult:
    installed: Tuple[str, ...] = ()
    satisfied: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()
    output: str = ""


class DependencyInstaller(Protocol):
    def install(self, request: DependencyInstallRequest) -> DependencyInstallResult: ...


# ----- exports from binaries -----

@dataclass(frozen=True)
class DetectedExports:
    cmdlets: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()


class ExportDetector(Protocol):
    def detect_exports(self, assembly_paths: Sequence[str]) -> DetectedExports: ...


# ----- module lookup (installed + online) -----

@dataclass(frozen=True)
class ModuleInfo:
    name: str
    version: str
    guid: str | None = None
    path: str | None = None
    required_modules: Tuple[str, ...] = ()


@runtime_checkable
class ModuleRepository(Protocol):
    def installed(self, name: str) -> Optional[ModuleInfo]: ...

    def find_latest(self, name: str, *, repository: str | None = None, prerelease: bool = False) -> Optional[ModuleInfo]: ...


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------

@dataclass
class Collaborators:
    """The set of implementations a PipelineRunner calls into."""
    builder: ModuleBuilder | None = None
    merger: SourceMerger | None = None
    documentation: DocumentationGenerator | None = None
    formatter: Formatter | None = None
    signer: Signer | None = None
    file_consistency: QualityCheck | None = None
    compatibility: QualityCheck | None = None
    validator: QualityCheck | None = None
    test_runner: TestRunner | None = None
    artefact_builder: ArtefactBuilder | None = None
    publisher: Publisher | None = None
    export_detector: ExportDetector | None = None
    dependency_installer: DependencyInstaller | None = None
    repository: ModuleRepository | None = None

    def require(self, name: str) -> Any:
        impl = getattr(self, name)
        if impl is None:
            raise ConfigurationError(
                f"No '{name}' collaborator is configured, but the plan enables a step that needs it."
            )
        return impl

    @classmethod
    def defaults(cls, **overrides: Any) -> "Collaborators":
        """Built-in implementations for builder, merger, artefacts and module lookup."""
        from .defaults import LocalModuleRepository, ManifestModuleBuilder, ScriptSourceMerger, ZipArtefactBuilder

        values: dict[str, Any] = {
            "builder": ManifestModuleBuilder(),
            "merger": ScriptSourceMerger(),
            "artefact_builder": ZipArtefactBuilder(),
            "repository": LocalModuleRepository(),
        }
        values.update(overrides)
        return cls(**values)
