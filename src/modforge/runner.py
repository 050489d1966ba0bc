# runner.py
from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import manifest
from .collaborators import (
    ArtefactRequest,
    ArtefactResult,
    BuildRequest,
    BuildResult,
    CheckRequest,
    CheckResult,
    Collaborators,
    DependencyInstallRequest,
    DependencyInstallResult,
    DocumentationRequest,
    DocumentationResult,
    FormatRequest,
    FormatResult,
    MergeRequest,
    MergeResult,
    PublishRequest,
    PublishResult,
    SignRequest,
    SignResult,
    TestRunRequest,
    TestRunResult,
)
from .errors import (
    BuildToolError,
    ConfigurationError,
    MissingDependencyError,
    ModForgeError,
    PublishError,
    ValidationFailure,
)
from .installer import InstallOptions, ModuleInstaller
from .manifest import ExportList, RequiredModule
from .model import CheckStatus, ModuleInstallerResult, Plan, Severity, SigningOptions, Spec
from .placeholders import apply_placeholders
from .progress import NullProgressReporter, ProgressReporter
from .steps import Failed, Ok, PipelineStep, StepKind, StepResult, StepStatus, create_steps

logger = logging.getLogger(__name__)

EXPORT_KEYS = ("FunctionsToExport", "CmdletsToExport", "AliasesToExport")


# ---------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------

@dataclass
class PipelineResult:
    plan: Plan
    staging_path: str
    dependency_result: Optional[DependencyInstallResult] = None
    build_result: Optional[BuildResult] = None
    exports: Dict[str, ExportList] = field(default_factory=dict)
    merge_result: Optional[MergeResult] = None
    documentation_result: Optional[DocumentationResult] = None
    format_results: List[FormatResult] = field(default_factory=list)
    sign_result: Optional[SignResult] = None
    validation_results: Dict[str, CheckResult] = field(default_factory=dict)
    test_results: Dict[str, TestRunResult] = field(default_factory=dict)
    artefact_results: List[ArtefactResult] = field(default_factory=list)
    publish_results: List[PublishResult] = field(default_factory=list)
    install_result: Optional[ModuleInstallerResult] = None
    step_statuses: Dict[str, StepStatus] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(s == StepStatus.DONE for s in self.step_statuses.values())


@dataclass
class _Run:
    spec: Spec
    plan: Plan
    staging: Path
    reporter: ProgressReporter
    result: PipelineResult
    extracted_docs: Optional[DocumentationResult] = None

    @property
    def staged_manifest(self) -> Path:
        return self.staging / f"{self.plan.module_name}.psd1"


# ---------------------------------------------------------------------
# Manifest refresh
# ---------------------------------------------------------------------

def refresh_manifest_from_plan(plan: Plan, manifest_path: str | Path) -> bool:
    """
    Write everything the plan knows about the module into `manifest_path`.
    Returns True when the file changed.
    """
    path = Path(manifest_path)
    if not path.is_file():
        raise BuildToolError(message=f"Manifest not found: {path}", module=plan.module_name)

    bs = plan.build_spec
    man = plan.manifest
    changed: List[bool] = [
        manifest.set_top_level_module_version(path, plan.resolved_version),
        manifest.set_top_level_string(path, "RootModule", f"{plan.module_name}.psm1"),
    ]

    def set_or_remove(key: str, value: str | None) -> None:
        if value:
            changed.append(manifest.set_top_level_string(path, key, value))
        else:
            changed.append(manifest.remove_top_level_key(path, key))

    def set_if(key: str, value: str | None) -> None:
        if value:
            changed.append(manifest.set_top_level_string(path, key, value))

    def psdata_if(key: str, value) -> None:
        if not value:
            return
        if isinstance(value, str):
            changed.append(manifest.set_nested_string(path, None, key, value))
        else:
            changed.append(manifest.set_nested_string_array(path, None, key, list(value)))

    if man is not None:
        set_or_remove("GUID", man.guid)
        set_or_remove("Author", bs.author)
        set_or_remove("CompanyName", bs.company_name)
        set_or_remove("Copyright", man.copyright)
        set_or_remove("Description", bs.description)
        set_or_remove("PowerShellVersion", man.powershell_version)
        set_or_remove("DotNetFrameworkVersion", man.dotnet_framework_version)
        if plan.prerelease:
            changed.append(manifest.set_nested_string(path, None, "Prerelease", plan.prerelease))
        else:
            changed.append(manifest.remove_nested_key(path, None, "Prerelease"))

        if bs.compatible_editions:
            changed.append(manifest.set_top_level_string_array(path, "CompatiblePSEditions", bs.compatible_editions))
        if man.formats_to_process:
            changed.append(manifest.set_top_level_string_array(path, "FormatsToProcess", man.formats_to_process))
        for key, values in zip(EXPORT_KEYS, (man.functions_to_export, man.cmdlets_to_export, man.aliases_to_export)):
            if values:
                changed.append(manifest.set_top_level_string_array(path, key, values))

        psdata_if("Tags", bs.tags)
        psdata_if("IconUri", bs.icon_uri)
        psdata_if("ProjectUri", bs.project_uri)
        psdata_if("LicenseUri", man.license_uri)
        if man.require_license_acceptance is not None:
            changed.append(
                manifest.set_nested_bool(path, None, "RequireLicenseAcceptance", man.require_license_acceptance)
            )
    else:
        set_if("Author", bs.author)
        set_if("CompanyName", bs.company_name)
        set_if("Description", bs.description)
        psdata_if("Tags", bs.tags)
        psdata_if("IconUri", bs.icon_uri)
        psdata_if("ProjectUri", bs.project_uri)

    # approved modules get merged in, so they are not dependencies any more
    required = list(plan.required_modules_for_packaging)
    if plan.merge_missing and plan.approved_modules:
        approved = {a.lower() for a in plan.approved_modules}
        required = [m for m in required if m.module_name.lower() not in approved]
    changed.append(manifest.set_required_modules(path, required))

    if plan.external_module_dependencies:
        changed.append(
            manifest.set_nested_string_array(
                path, None, "ExternalModuleDependencies", list(plan.external_module_dependencies)
            )
        )
    else:
        changed.append(manifest.remove_nested_key(path, None, "ExternalModuleDependencies"))

    if plan.command_module_dependencies:
        changed.append(
            manifest.set_top_level_hashtable_string_array(path, "CommandModuleDependencies", plan.command_module_dependencies)
        )
    else:
        changed.append(manifest.remove_top_level_key(path, "CommandModuleDependencies"))

    d = plan.delivery
    if d is not None:
        changed.append(manifest.set_nested_bool(path, "Delivery", "Enable", d.enable))
        changed.append(manifest.set_nested_string(path, "Delivery", "InternalsPath", d.internals_path))
        changed.append(manifest.set_nested_bool(path, "Delivery", "IncludeRootReadme", d.include_root_readme))
        changed.append(manifest.set_nested_bool(path, "Delivery", "IncludeRootChangelog", d.include_root_changelog))
        changed.append(manifest.set_nested_bool(path, "Delivery", "IncludeRootLicense", d.include_root_license))
        changed.append(manifest.set_nested_string(path, "Delivery", "ReadmeDestination", d.readme_destination))
        if d.important_links:
            changed.append(
                manifest.set_nested_hashtable_array(
                    path,
                    "Delivery",
                    "ImportantLinks",
                    [{"Title": link.title, "Url": link.url} for link in d.important_links],
                )
            )
    return any(changed)


def _split_command(name: str) -> tuple[str | None, str]:
    # Module\Command or a bare command
    if "\\" in name:
        module, _, command = name.rpartition("\\")
        return module, command
    return None, name


# ---------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------

class PipelineRunner:
    """
    Executes a compiled Plan step by step.

    Steps run strictly in order and stop at the first failure; the error is
    re-raised unchanged after the remaining steps are reported as skipped.
    Generated staging is removed afterwards either way.
    """

    def __init__(
        self,
        collaborators: Collaborators | None = None,
        installer: ModuleInstaller | None = None,
        logger: logging.Logger | None = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.collaborators = collaborators or Collaborators()
        self.installer = installer or ModuleInstaller(logger=self.log)

    # ----- public API -----

    def run(self, spec: Spec, plan: Plan, reporter: ProgressReporter | None = None) -> PipelineResult:
        staging = self._staging_path(spec, plan)
        steps = create_steps(plan)
        result = PipelineResult(
            plan=plan,
            staging_path=str(staging),
            step_statuses={s.key: StepStatus.PENDING for s in steps},
        )
        run = _Run(
            spec=spec,
            plan=plan,
            staging=staging,
            reporter=reporter or NullProgressReporter(),
            result=result,
        )

        cleanup = next((s for s in steps if s.kind == StepKind.CLEANUP), None)
        work = [s for s in steps if s.kind != StepKind.CLEANUP]
        self.log.info("Running %d steps for %s %s", len(steps), plan.module_name, plan.version_with_prerelease)

        try:
            for i, step in enumerate(work):
                try:
                    self._execute(run, step)
                except BaseException:
                    for rest in work[i + 1:]:
                        result.step_statuses[rest.key] = StepStatus.SKIPPED
                        run.reporter.step_skipped(rest)
                    raise
        finally:
            if cleanup is not None:
                try:
                    self._execute(run, cleanup)
                except (OSError, ModForgeError) as e:
                    self.log.warning("Failed to delete staging %s: %s", staging, e)

        return result

    # ----- step wrapper -----

    def _execute(self, run: _Run, step: PipelineStep) -> Any:
        run.result.step_statuses[step.key] = StepStatus.RUNNING
        run.reporter.step_starting(step)

        outcome = self._attempt(run, step)
        if isinstance(outcome, Ok):
            run.result.step_statuses[step.key] = StepStatus.DONE
            run.reporter.step_completed(step)
            return outcome.value

        run.result.step_statuses[step.key] = StepStatus.FAILED
        run.reporter.step_failed(step, outcome.error)
        raise outcome.error

    def _attempt(self, run: _Run, step: PipelineStep) -> StepResult:
        handler = self._handler_for(step)
        self.log.debug("Step %s", step.key)
        try:
            return Ok(handler(run, step))
        except BaseException as e:
            # Ctrl-C too, so the step is marked failed before it propagates
            return Failed(e)

    def _handler_for(self, step: PipelineStep) -> Callable[[_Run, PipelineStep], Any]:
        by_key: Dict[str, Callable[[_Run, PipelineStep], Any]] = {
            "build:stage": self._stage,
            "build:dependencies": self._install_dependencies,
            "build:build": self._build,
            "build:merge": self._merge,
            "build:manifest": self._refresh_manifest,
            "docs:extract": self._docs_extract,
            "docs:write": self._docs_write,
            "docs:maml": self._docs_maml,
            "format:staging": self._format_staging,
            "format:project": self._format_project,
            "sign": self._sign,
            "validate:fileconsistency": self._file_consistency,
            "validate:fileconsistency-project": self._file_consistency_project,
            "validate:compatibility": self._compatibility,
            "validate:module": self._validate_module,
            "tests:import-modules": self._import_modules,
            "install": self._install,
            "cleanup": self._cleanup,
        }
        if step.key in by_key:
            return by_key[step.key]
        if step.kind == StepKind.TEST:
            return self._tests
        if step.kind == StepKind.ARTEFACT:
            return self._artefact
        if step.kind == StepKind.PUBLISH:
            return self._publish
        raise ConfigurationError(f"No handler for step '{step.key}'")

    # ----- staging -----

    @staticmethod
    def _staging_path(spec: Spec, plan: Plan) -> Path:
        if spec.staging_path:
            return Path(spec.staging_path).expanduser().resolve()
        return Path(tempfile.gettempdir()) / "modforge" / "build" / f"{plan.module_name}_{uuid.uuid4().hex}"

    def _stage(self, run: _Run, step: PipelineStep) -> Path:
        source = Path(run.plan.project_root).resolve()
        staging = run.staging.resolve()
        if not source.is_dir():
            raise ConfigurationError(f"Source path not found: {source}", module=run.plan.module_name)
        if staging == source or source in staging.parents:
            raise ConfigurationError(
                "Staging path must not be inside the source tree",
                module=run.plan.module_name,
                details={"staging": str(staging), "source": str(source)},
            )
        if staging.exists() and any(staging.iterdir()):
            raise ConfigurationError(
                f"Staging directory is not empty: {staging}",
                module=run.plan.module_name,
                details={"hint": "Pass an empty or non-existent staging path."},
            )

        skip_dirs = {d.lower() for d in run.spec.exclude_directories}
        skip_files = {f.lower() for f in run.spec.exclude_files}

        def ignore(directory: str, names: List[str]) -> List[str]:
            out = []
            for n in names:
                full = Path(directory) / n
                if full.is_dir() and n.lower() in skip_dirs:
                    out.append(n)
                elif not full.is_dir() and n.lower() in skip_files:
                    out.append(n)
            return out

        staging.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, staging, ignore=ignore, dirs_exist_ok=True)
        self.log.info("Staged %s -> %s", source, staging)
        return staging

    def _cleanup(self, run: _Run, step: PipelineStep) -> None:
        if run.staging.exists():
            shutil.rmtree(run.staging)
            self.log.info("Deleted staging %s", run.staging)

    # ----- build -----

    def _install_dependencies(self, run: _Run, step: PipelineStep) -> DependencyInstallResult:
        plan = run.plan
        modules: List[RequiredModule] = []
        seen: set[str] = set()
        for m in plan.required_modules:
            if m.module_name.lower() not in seen:
                seen.add(m.module_name.lower())
                modules.append(m)
        for name in plan.external_module_dependencies:
            if name.lower() not in seen:
                seen.add(name.lower())
                modules.append(RequiredModule(name))

        if plan.module_skip:
            ignored = {m.lower() for m in plan.module_skip.ignore_module_names}
            modules = [m for m in modules if m.module_name.lower() not in ignored]

        if not modules:
            self.log.info("Install missing modules is enabled, but no required modules were found.")
            res = DependencyInstallResult()
            run.result.dependency_result = res
            return res

        installer = self.collaborators.require("dependency_installer")
        self.log.info("Installing missing modules (%d): %s", len(modules), ", ".join(m.module_name for m in modules))
        res = installer.install(
            DependencyInstallRequest(
                modules=tuple(modules),
                repository=plan.install_missing_modules_repository,
                prerelease=plan.install_missing_modules_prerelease,
                force=plan.install_missing_modules_force,
            )
        )
        run.result.dependency_result = res
        if res.failed:
            raise MissingDependencyError(
                message=f"Dependency installation failed for {len(res.failed)} module(s)",
                module=plan.module_name,
                missing=list(res.failed),
            )
        self.log.info(
            "Dependency install summary: %d installed, %d satisfied", len(res.installed), len(res.satisfied)
        )
        return res

    def _build(self, run: _Run, step: PipelineStep) -> BuildResult:
        plan = run.plan
        bs = plan.build_spec
        builder = self.collaborators.require("builder")
        functions_folder = "Public"
        if plan.information and plan.information.functions_to_export_folder:
            functions_folder = plan.information.functions_to_export_folder

        res = builder.build(
            BuildRequest(
                staging_path=str(run.staging),
                module_name=plan.module_name,
                version=plan.resolved_version,
                csproj_path=bs.csproj_path,
                configuration=bs.configuration,
                frameworks=tuple(bs.frameworks),
                export_assemblies=plan.export_assemblies,
                disable_binary_cmdlet_scan=plan.disable_binary_cmdlet_scan,
                functions_folder=functions_folder,
            )
        )
        run.result.build_result = res
        run.result.exports = {key: manifest.get_export_list(res.manifest_path, key) for key in EXPORT_KEYS}
        return res

    def _merge(self, run: _Run, step: PipelineStep) -> MergeResult:
        plan = run.plan
        skip = plan.module_skip
        merger = self.collaborators.require("merger")

        known: List[str] = []
        for commands in plan.command_module_dependencies.values():
            known.extend(commands)

        res = merger.merge(
            MergeRequest(
                staging_path=str(run.staging),
                module_name=plan.module_name,
                approved_modules=plan.approved_modules if plan.merge_missing else (),
                ignore_function_names=skip.ignore_function_names if skip else (),
                known_commands=tuple(known),
            )
        )
        run.result.merge_result = res

        apply_placeholders(
            res.module_path,
            module_name=plan.module_name,
            version=plan.resolved_version,
            prerelease=plan.prerelease,
            custom=plan.placeholders,
            skip_builtin=bool(plan.placeholder_option and plan.placeholder_option.skip_builtin_replacements),
        )

        if res.missing_commands:
            # commands of declared dependencies are expected to be absent at merge time
            allowed_modules = {m.lower() for m in plan.approved_modules}
            allowed_modules |= {m.module_name.lower() for m in plan.required_modules}
            allowed_modules |= {m.lower() for m in plan.external_module_dependencies}
            allowed_modules |= {m.lower() for m in plan.dependent_modules}
            ignored_functions: set[str] = set()
            if skip:
                allowed_modules |= {m.lower() for m in skip.ignore_module_names}
                ignored_functions = {f.lower() for f in skip.ignore_function_names}

            missing = []
            for name in res.missing_commands:
                module, command = _split_command(name)
                if command.lower() in ignored_functions:
                    continue
                if module and module.lower() in allowed_modules:
                    continue
                missing.append(name)

            if missing and skip and skip.fail_on_missing_commands and not skip.force:
                raise MissingDependencyError(
                    message=f"{len(missing)} command(s) used by the module are not available",
                    module=plan.module_name,
                    missing=sorted(missing, key=str.lower),
                )
            if missing:
                self.log.warning("Commands not resolved during merge: %s", ", ".join(sorted(missing, key=str.lower)))
        return res

    def _refresh_manifest(self, run: _Run, step: PipelineStep) -> bool:
        return refresh_manifest_from_plan(run.plan, run.staged_manifest)

    # ----- docs -----

    def _docs_request(self, run: _Run) -> DocumentationRequest:
        return DocumentationRequest(
            staging_path=str(run.staging),
            project_root=run.plan.project_root,
            module_name=run.plan.module_name,
            settings=run.plan.documentation,
        )

    def _docs_extract(self, run: _Run, step: PipelineStep) -> DocumentationResult:
        docs = self.collaborators.require("documentation")
        run.extracted_docs = docs.extract(self._docs_request(run))
        run.result.documentation_result = run.extracted_docs
        return run.extracted_docs

    def _docs_write(self, run: _Run, step: PipelineStep) -> DocumentationResult:
        docs = self.collaborators.require("documentation")
        written = docs.write(self._docs_request(run), run.extracted_docs or DocumentationResult())
        run.result.documentation_result = written
        return written

    def _docs_maml(self, run: _Run, step: PipelineStep) -> DocumentationResult:
        docs = self.collaborators.require("documentation")
        res = docs.external_help(self._docs_request(run), run.result.documentation_result or DocumentationResult())
        run.result.documentation_result = res
        return res

    # ----- format / sign -----

    def _format_staging(self, run: _Run, step: PipelineStep) -> FormatResult:
        formatter = self.collaborators.require("formatter")
        res = formatter.format(
            FormatRequest(root=str(run.staging), scope="staging", options=dict(run.plan.formatting.options))
        )
        run.result.format_results.append(res)

        # formatting may rewrite the manifest, so put the plan's values back
        try:
            refresh_manifest_from_plan(run.plan, run.staged_manifest)
        except (OSError, ModForgeError) as e:
            self.log.warning("Manifest patch after formatting failed: %s", e)
        return res

    def _format_project(self, run: _Run, step: PipelineStep) -> FormatResult:
        formatter = self.collaborators.require("formatter")
        res = formatter.format(
            FormatRequest(root=run.plan.project_root, scope="project", options=dict(run.plan.formatting.options))
        )
        run.result.format_results.append(res)
        return res

    def _sign(self, run: _Run, step: PipelineStep) -> SignResult:
        signer = self.collaborators.require("signer")
        res = signer.sign(SignRequest(root=str(run.staging), signing=run.plan.signing or SigningOptions()))
        run.result.sign_result = res
        if res.failed:
            raise BuildToolError(
                message=f"Signing failed for {len(res.failed)} file(s)",
                module=run.plan.module_name,
                details={"files": ", ".join(res.failed)},
            )
        self.log.info("Signed %d file(s)", len(res.signed))
        return res

    # ----- checks -----

    def _check(self, run: _Run, step: PipelineStep, collaborator: str, segment, root: str, scope: str) -> CheckResult:
        check = self.collaborators.require(collaborator)
        res = check.check(
            CheckRequest(root=root, module_name=run.plan.module_name, scope=scope, options=dict(segment.options))
        )
        run.result.validation_results[step.key] = res

        severity = segment.severity or Severity.WARNING
        if res.status == CheckStatus.FAIL and severity == Severity.ERROR:
            raise ValidationFailure(
                message=f"{step.title} failed: {res.summary}" if res.summary else f"{step.title} failed",
                module=run.plan.module_name,
                details={"issues": len(res.issues)},
                check=step.key,
                severity=severity.value,
            )
        if res.status != CheckStatus.PASS:
            self.log.warning("%s: %s %s", step.title, res.status.value, res.summary)
            for issue in res.issues:
                self.log.warning("  %s", issue)
        return res

    def _file_consistency(self, run: _Run, step: PipelineStep) -> CheckResult:
        return self._check(run, step, "file_consistency", run.plan.file_consistency, str(run.staging), "staging")

    def _file_consistency_project(self, run: _Run, step: PipelineStep) -> CheckResult:
        return self._check(run, step, "file_consistency", run.plan.file_consistency, run.plan.project_root, "project")

    def _compatibility(self, run: _Run, step: PipelineStep) -> CheckResult:
        return self._check(run, step, "compatibility", run.plan.compatibility, str(run.staging), "staging")

    def _validate_module(self, run: _Run, step: PipelineStep) -> CheckResult:
        return self._check(run, step, "validator", run.plan.validation, str(run.staging), "staging")

    # ----- tests -----

    def _raise_on_test_failures(self, run: _Run, step: PipelineStep, res: TestRunResult) -> None:
        if res.failed > 0:
            raise BuildToolError(
                message=f"{step.title}: {res.failed} failed, {res.passed} passed",
                module=run.plan.module_name,
                output=res.output,
            )

    def _import_modules(self, run: _Run, step: PipelineStep) -> TestRunResult:
        runner = self.collaborators.require("test_runner")
        im = run.plan.import_modules
        res = runner.import_modules(
            TestRunRequest(
                staging_path=str(run.staging),
                module_name=run.plan.module_name,
                import_self=bool(im.import_self),
                import_required_modules=bool(im.required_modules),
                required_modules=tuple(m.module_name for m in run.plan.required_modules),
                verbose=bool(im.verbose),
            )
        )
        run.result.test_results[step.key] = res
        self._raise_on_test_failures(run, step, res)
        return res

    def _tests(self, run: _Run, step: PipelineStep) -> TestRunResult:
        runner = self.collaborators.require("test_runner")
        index = int(step.key.split(":")[1]) - 1
        segment = run.plan.tests[index]
        tests_path = Path(segment.tests_path)
        if not tests_path.is_absolute():
            tests_path = Path(run.plan.project_root) / tests_path

        res = runner.run_tests(
            TestRunRequest(
                staging_path=str(run.staging),
                module_name=run.plan.module_name,
                tests_path=str(tests_path),
                timeout_seconds=segment.timeout_seconds,
            )
        )
        run.result.test_results[step.key] = res
        self._raise_on_test_failures(run, step, res)
        return res

    # ----- artefacts / publish -----

    def _artefact(self, run: _Run, step: PipelineStep) -> ArtefactResult:
        builder = self.collaborators.require("artefact_builder")
        res = builder.build(
            ArtefactRequest(
                segment=step.artefact_segment,
                staging_path=str(run.staging),
                project_root=run.plan.project_root,
                module_name=run.plan.module_name,
                version=run.plan.resolved_version,
                prerelease=run.plan.prerelease,
                required_modules=run.plan.required_modules_for_packaging,
            )
        )
        run.result.artefact_results.append(res)
        self.log.info("Artefact %s -> %s", res.artefact_type, res.path)
        return res

    def _publish(self, run: _Run, step: PipelineStep) -> PublishResult:
        publisher = self.collaborators.require("publisher")
        segment = step.publish_segment
        res = publisher.publish(
            PublishRequest(
                segment=segment,
                staging_path=str(run.staging),
                module_name=run.plan.module_name,
                version=run.plan.resolved_version,
                prerelease=run.plan.prerelease,
                artefacts=tuple(run.result.artefact_results),
            )
        )
        run.result.publish_results.append(res)
        if not res.success:
            raise PublishError(
                message=res.message or f"Publishing to {segment.destination} failed",
                module=run.plan.module_name,
                details={"destination": res.destination},
            )
        return res

    # ----- install -----

    def _install(self, run: _Run, step: PipelineStep) -> ModuleInstallerResult:
        plan = run.plan
        package_root = Path(tempfile.mkdtemp(prefix="modforge_install_"))
        package = package_root / plan.module_name
        try:
            shutil.copytree(run.staging, package)
            options = InstallOptions(
                roots=plan.install_roots,
                strategy=plan.install_strategy,
                keep=plan.install_keep,
                legacy_flat_handling=plan.install_legacy_flat_handling,
                preserve_versions=plan.install_preserve_versions,
            )
            res = self.installer.install(package, plan.module_name, plan.resolved_version, options)
        finally:
            shutil.rmtree(package_root, ignore_errors=True)

        run.result.install_result = res
        return res
