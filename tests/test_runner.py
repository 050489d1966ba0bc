from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

import pytest
from conftest import psd1_text, read_text, write_text

from modforge import manifest
from modforge.collaborators import (
    CheckResult,
    Collaborators,
    DependencyInstallResult,
    FormatResult,
    MergeResult,
    PublishResult,
    SignResult,
    TestRunResult,
)
from modforge.dsl import (
    approved,
    artefact,
    build_options,
    commands,
    delivery,
    external,
    manifest_fields,
    placeholder,
    publish,
    required,
    skip,
    spec,
    tests as pester,
)
from modforge.errors import (
    BuildToolError,
    ConfigurationError,
    MissingDependencyError,
    PublishError,
    ValidationFailure,
)
from modforge.manifest import RequiredModule
from modforge.model import CheckStatus, FormattingSegment, InstallSettings, Severity, ValidationSegment
from modforge.planner import compile_plan
from modforge.runner import PipelineRunner, refresh_manifest_from_plan
from modforge.steps import StepStatus


# ----- fakes -----

@dataclass
class RecordingReporter:
    events: List[Tuple[str, str]] = field(default_factory=list)

    def step_starting(self, step):
        self.events.append(("start", step.key))

    def step_completed(self, step):
        self.events.append(("done", step.key))

    def step_failed(self, step, error):
        self.events.append(("failed", step.key))

    def step_skipped(self, step):
        self.events.append(("skipped", step.key))

    def keys(self, kind: str) -> List[str]:
        return [k for e, k in self.events if e == kind]


@dataclass
class FakeTestRunner:
    failed: int = 0

    def run_tests(self, request):
        return TestRunResult(passed=3, failed=self.failed, output="pester output")

    def import_modules(self, request):
        return TestRunResult(passed=1)


@dataclass
class FakeCheck:
    status: CheckStatus
    calls: list = field(default_factory=list)

    def check(self, request):
        self.calls.append(request)
        return CheckResult(status=self.status, summary="2 issues", issues=("a.ps1: tab", "b.ps1: tab"))


@dataclass
class FakeMerger:
    missing: Tuple[str, ...] = ()
    requests: list = field(default_factory=list)

    def merge(self, request):
        self.requests.append(request)
        return MergeResult(
            module_path=str(Path(request.staging_path) / f"{request.module_name}.psm1"),
            missing_commands=self.missing,
        )


@dataclass
class FakeDependencyInstaller:
    failed: Tuple[str, ...] = ()
    requests: list = field(default_factory=list)

    def install(self, request):
        self.requests.append(request)
        names = [m.module_name for m in request.modules]
        return DependencyInstallResult(
            installed=tuple(n for n in names if n not in self.failed),
            failed=tuple(n for n in names if n in self.failed),
        )


class InterruptingMerger:
    def merge(self, request):
        raise KeyboardInterrupt


class ManifestScrubbingFormatter:
    """Reformats by dropping Author, the way an aggressive formatter might."""

    def format(self, request):
        psd1 = Path(request.root) / "Sample.psd1"
        manifest.remove_top_level_key(psd1, "Author")
        return FormatResult(scope=request.scope, changed_files=(str(psd1),))


class ManifestDeletingFormatter:
    def format(self, request):
        (Path(request.root) / "Sample.psd1").unlink()
        return FormatResult(scope=request.scope)


class FailingSigner:
    def sign(self, request):
        return SignResult(signed=("a.ps1",), failed=("b.ps1",))


class RejectingPublisher:
    def publish(self, request):
        return PublishResult(success=False, destination=request.segment.destination, message="401 Unauthorized")


def _run(root: Path, *segments, collaborators=None, reporter=None, **fields):
    fields.setdefault("version", "1.2.0")
    s = spec("Sample", str(root), *segments, **fields)
    plan = compile_plan(s)
    runner = PipelineRunner(collaborators or Collaborators.defaults())
    return runner.run(s, plan, reporter=reporter)


@pytest.fixture
def modules(tmp_path: Path) -> Path:
    return tmp_path / "Modules"


def _no_install() -> InstallSettings:
    return InstallSettings(enabled=False)


# ----- end to end -----

def test_end_to_end_with_default_collaborators(sample_project, modules):
    res = _run(
        sample_project,
        required("Util", "1.0.0"),
        artefact("Packed"),
        placeholder("'help'", "'helped'"),
        author="Me",
        install=InstallSettings(roots=(str(modules),)),
    )

    assert res.succeeded
    assert set(res.step_statuses) >= {"build:stage", "build:merge", "install", "cleanup"}
    assert not Path(res.staging_path).exists()

    installed = modules / "Sample" / "1.2.0"
    assert res.install_result.version == "1.2.0"
    psm1 = read_text(installed / "Sample.psm1")
    assert "Version 1.2.0 of Sample" in psm1
    assert "'helped'" in psm1
    assert psm1.index("Get-Helper") < psm1.index("Get-Sample")
    assert psm1.rstrip().endswith("Export-ModuleMember -Function * -Alias *")
    assert not (installed / "Public").exists()
    assert not (installed / ".git").exists()
    assert not (installed / "bin").exists()

    psd1 = installed / "Sample.psd1"
    assert manifest.get_top_level_string(psd1, "ModuleVersion") == "1.2.0"
    assert manifest.get_top_level_string(psd1, "Author") == "Me"
    assert manifest.get_top_level_string_array(psd1, "FunctionsToExport") == ["Get-Sample", "Set-Sample"]
    assert manifest.get_required_modules(psd1) == [RequiredModule("Util", module_version="1.0.0")]
    assert res.exports["FunctionsToExport"].values == ("Get-Sample", "Set-Sample")

    zip_path = sample_project / "Artefacts" / "Packed" / "Sample.zip"
    assert res.artefact_results[0].path == str(zip_path)
    with zipfile.ZipFile(zip_path) as zf:
        names = set(zf.namelist())
    assert {"Sample/Sample.psd1", "Sample/Sample.psm1"} <= names
    assert not any(n.startswith("Sample/Public/") for n in names)


def test_explicit_staging_is_kept(sample_project, tmp_path):
    stage = tmp_path / "stage"
    res = _run(sample_project, install=_no_install(), staging_path=str(stage))
    assert res.succeeded
    assert "cleanup" not in res.step_statuses
    assert (stage / "Sample.psm1").is_file()
    assert manifest.get_top_level_string(stage / "Sample.psd1", "ModuleVersion") == "1.2.0"


# ----- staging guards -----

def test_staging_inside_source_is_rejected(sample_project):
    with pytest.raises(ConfigurationError):
        _run(sample_project, install=_no_install(), staging_path=str(sample_project / "out"))


def test_non_empty_staging_is_rejected(sample_project, tmp_path):
    stage = write_text(tmp_path / "stage" / "leftover.txt", "x").parent
    with pytest.raises(ConfigurationError):
        _run(sample_project, install=_no_install(), staging_path=str(stage))


def test_missing_collaborator_fails_the_step(sample_project, tmp_path):
    reporter = RecordingReporter()
    with pytest.raises(ConfigurationError):
        _run(
            sample_project,
            install=_no_install(),
            staging_path=str(tmp_path / "stage"),
            collaborators=Collaborators(),
            reporter=reporter,
        )
    assert reporter.keys("done") == ["build:stage"]
    assert reporter.keys("failed") == ["build:build"]
    assert reporter.keys("skipped") == ["build:merge", "build:manifest"]


# ----- fail fast -----

def test_failure_skips_remaining_steps_and_still_cleans_up(sample_project, modules):
    reporter = RecordingReporter()
    with pytest.raises(BuildToolError) as excinfo:
        _run(
            sample_project,
            pester("Tests"),
            artefact("Packed"),
            install=InstallSettings(roots=(str(modules),)),
            collaborators=Collaborators.defaults(test_runner=FakeTestRunner(failed=2)),
            reporter=reporter,
        )
    assert "2 failed, 3 passed" in str(excinfo.value)
    assert reporter.keys("failed") == ["tests:01"]
    assert reporter.keys("skipped") == ["artefact:01:Packed:", "install"]
    assert reporter.keys("done")[-1] == "cleanup"
    assert not modules.exists()
    assert not (sample_project / "Artefacts").exists()


def test_tests_receive_paths_relative_to_project(sample_project, tmp_path):
    calls = []

    class Runner(FakeTestRunner):
        def run_tests(self, request):
            calls.append(request)
            return super().run_tests(request)

    res = _run(
        sample_project,
        pester("Tests", timeout_seconds=30),
        install=_no_install(),
        collaborators=Collaborators.defaults(test_runner=Runner()),
    )
    assert calls[0].tests_path == str(sample_project / "Tests")
    assert calls[0].timeout_seconds == 30
    assert res.test_results["tests:01"].passed == 3


# ----- checks -----

def test_failed_check_is_a_warning_by_default(sample_project, caplog):
    caplog.set_level(logging.WARNING)
    validator = FakeCheck(CheckStatus.FAIL)
    res = _run(
        sample_project,
        ValidationSegment(),
        install=_no_install(),
        collaborators=Collaborators.defaults(validator=validator),
    )
    assert res.succeeded
    assert res.validation_results["validate:module"].status == CheckStatus.FAIL
    assert "a.ps1: tab" in caplog.text


def test_failed_check_with_error_severity_stops_the_run(sample_project):
    with pytest.raises(ValidationFailure) as excinfo:
        _run(
            sample_project,
            ValidationSegment(severity=Severity.ERROR),
            install=_no_install(),
            collaborators=Collaborators.defaults(validator=FakeCheck(CheckStatus.FAIL)),
        )
    assert excinfo.value.check == "validate:module"
    assert "2 issues" in str(excinfo.value)


def test_warning_status_never_fails(sample_project):
    res = _run(
        sample_project,
        ValidationSegment(severity=Severity.ERROR),
        install=_no_install(),
        collaborators=Collaborators.defaults(validator=FakeCheck(CheckStatus.WARNING)),
    )
    assert res.succeeded


# ----- formatting -----

def test_manifest_is_patched_again_after_formatting(sample_project, tmp_path):
    stage = tmp_path / "stage"
    res = _run(
        sample_project,
        FormattingSegment(),
        author="Me",
        install=_no_install(),
        staging_path=str(stage),
        collaborators=Collaborators.defaults(formatter=ManifestScrubbingFormatter()),
    )
    assert res.format_results[0].scope == "staging"
    assert manifest.get_top_level_string(stage / "Sample.psd1", "Author") == "Me"


def test_failed_post_format_patch_is_only_logged(sample_project, caplog):
    caplog.set_level(logging.WARNING)
    res = _run(
        sample_project,
        FormattingSegment(),
        install=_no_install(),
        collaborators=Collaborators.defaults(formatter=ManifestDeletingFormatter()),
    )
    assert res.succeeded
    assert "Manifest patch after formatting failed" in caplog.text


# ----- merge -----

def test_missing_commands_fail_when_asked(sample_project):
    merger = FakeMerger(missing=("Other\\Get-Thing", "Invoke-X", "Skipped-Fn"))
    with pytest.raises(MissingDependencyError) as excinfo:
        _run(
            sample_project,
            skip(modules=["Other"], functions=["skipped-fn"], fail_on_missing_commands=True),
            install=_no_install(),
            collaborators=Collaborators.defaults(merger=merger),
        )
    assert excinfo.value.missing == ["Invoke-X"]


def test_missing_commands_are_logged_otherwise(sample_project, caplog):
    caplog.set_level(logging.WARNING)
    res = _run(
        sample_project,
        install=_no_install(),
        collaborators=Collaborators.defaults(merger=FakeMerger(missing=("Invoke-X",))),
    )
    assert res.succeeded
    assert "Commands not resolved during merge: Invoke-X" in caplog.text


def test_force_turns_missing_commands_into_a_warning(sample_project, caplog):
    caplog.set_level(logging.WARNING)
    res = _run(
        sample_project,
        skip(force=True, fail_on_missing_commands=True),
        install=_no_install(),
        collaborators=Collaborators.defaults(merger=FakeMerger(missing=("Invoke-X",))),
    )
    assert res.succeeded
    assert "Commands not resolved during merge: Invoke-X" in caplog.text


def test_commands_of_declared_modules_are_not_missing(sample_project, caplog):
    caplog.set_level(logging.WARNING)
    merger = FakeMerger(missing=("Util\\Get-Thing", "Ext\\Get-Ext"))
    res = _run(
        sample_project,
        required("Util", "1.0.0"),
        external("Ext"),
        skip(fail_on_missing_commands=True),
        install=_no_install(),
        collaborators=Collaborators.defaults(merger=merger),
    )
    assert res.succeeded
    assert "Commands not resolved" not in caplog.text


def test_commands_of_dependent_modules_are_not_missing(sample_project, repo):
    repo.add_installed("Util", "1.0.0", requires=["Core"])
    s = spec(
        "Sample",
        str(sample_project),
        required("Util", "1.0.0"),
        skip(fail_on_missing_commands=True),
        version="1.2.0",
        install=_no_install(),
    )
    plan = compile_plan(s, repository=repo)
    assert plan.dependent_modules == ("Core",)

    merger = FakeMerger(missing=("Core\\Get-Core",))
    res = PipelineRunner(Collaborators.defaults(merger=merger)).run(s, plan)
    assert res.succeeded


def test_interrupt_marks_the_running_step_failed(sample_project):
    reporter = RecordingReporter()
    with pytest.raises(KeyboardInterrupt):
        _run(
            sample_project,
            install=_no_install(),
            collaborators=Collaborators.defaults(merger=InterruptingMerger()),
            reporter=reporter,
        )
    assert reporter.keys("failed") == ["build:merge"]
    assert reporter.keys("skipped") == ["build:manifest"]
    assert reporter.keys("done")[-1] == "cleanup"


def test_merge_request_carries_approved_modules_and_known_commands(sample_project):
    merger = FakeMerger()
    _run(
        sample_project,
        approved("Helpers"),
        commands("Mod", "Get-A"),
        install=_no_install(),
        collaborators=Collaborators.defaults(merger=merger),
    )
    request = merger.requests[0]
    assert request.approved_modules == ("Helpers",)
    assert request.known_commands == ("Get-A",)


# ----- build dependencies -----

def test_missing_modules_are_installed_before_the_build(sample_project):
    installer = FakeDependencyInstaller()
    reporter = RecordingReporter()
    res = _run(
        sample_project,
        required("Util", "1.0.0"),
        external("Ext"),
        build_options(
            install_missing_modules=True,
            install_missing_modules_force=True,
            install_missing_modules_repository="Internal",
        ),
        install=_no_install(),
        collaborators=Collaborators.defaults(dependency_installer=installer),
        reporter=reporter,
    )
    assert reporter.keys("done")[:3] == ["build:stage", "build:dependencies", "build:build"]

    (request,) = installer.requests
    by_name = {m.module_name: m for m in request.modules}
    assert sorted(by_name) == ["Ext", "Util"]
    assert by_name["Util"].module_version == "1.0.0"
    assert request.repository == "Internal"
    assert request.force is True
    assert request.prerelease is False
    assert sorted(res.dependency_result.installed) == ["Ext", "Util"]


def test_failed_dependency_install_stops_the_run(sample_project):
    reporter = RecordingReporter()
    with pytest.raises(MissingDependencyError) as excinfo:
        _run(
            sample_project,
            required("Util", "1.0.0"),
            build_options(install_missing_modules=True),
            install=_no_install(),
            collaborators=Collaborators.defaults(dependency_installer=FakeDependencyInstaller(failed=("Util",))),
            reporter=reporter,
        )
    assert excinfo.value.missing == ["Util"]
    assert reporter.keys("failed") == ["build:dependencies"]
    assert "build:build" in reporter.keys("skipped")


def test_skipped_modules_are_not_installed(sample_project, caplog):
    caplog.set_level(logging.INFO)
    res = _run(
        sample_project,
        required("Util", "1.0.0"),
        skip(modules=["util"]),
        build_options(install_missing_modules=True),
        install=_no_install(),
    )
    assert res.step_statuses["build:dependencies"] == StepStatus.DONE
    assert "no required modules were found" in caplog.text


# ----- sign / publish -----

def test_signing_failures_raise(sample_project):
    with pytest.raises(BuildToolError) as excinfo:
        _run(
            sample_project,
            build_options(sign_merged=True),
            install=_no_install(),
            collaborators=Collaborators.defaults(signer=FailingSigner()),
        )
    assert "b.ps1" in str(excinfo.value)


def test_rejected_publish_raises(sample_project):
    with pytest.raises(PublishError) as excinfo:
        _run(
            sample_project,
            publish("PowerShellGallery", api_key="k"),
            install=_no_install(),
            collaborators=Collaborators.defaults(publisher=RejectingPublisher()),
        )
    assert "401 Unauthorized" in str(excinfo.value)


# ----- manifest refresh -----

def test_refresh_manifest_from_plan_writes_everything(sample_project, tmp_path):
    s = spec(
        "Sample",
        str(sample_project),
        manifest_fields(
            guid="abc",
            prerelease="preview1",
            copyright="(c) Me",
            license_uri="https://example.org/license",
            require_license_acceptance=True,
            tags=["one", "two"],
        ),
        required("Util", "1.0.0"),
        required("Helpers", "2.0.0"),
        approved("Helpers"),
        external("Ext"),
        commands("Mod", "Get-A", "Get-B"),
        delivery(links={"Docs": "https://example.org/docs"}, include_root_readme=True),
        version="2.0.0",
    )
    plan = compile_plan(s)
    psd1 = write_text(tmp_path / "Sample.psd1", psd1_text("0.1.0"))

    assert refresh_manifest_from_plan(plan, psd1) is True
    assert manifest.get_top_level_string(psd1, "ModuleVersion") == "2.0.0"
    assert manifest.get_top_level_string(psd1, "GUID") == "abc"
    assert manifest.get_top_level_string(psd1, "Copyright") == "(c) Me"
    assert manifest.get_nested_string(psd1, None, "Prerelease") == "preview1"
    assert manifest.get_nested_string_array(psd1, None, "Tags") == ["one", "two"]
    assert manifest.get_nested_bool(psd1, None, "RequireLicenseAcceptance") is True
    assert manifest.get_nested_string_array(psd1, None, "ExternalModuleDependencies") == ["Ext"]
    assert manifest.get_required_modules(psd1) == [RequiredModule("Util", module_version="1.0.0")]
    assert manifest.get_nested_bool(psd1, "Delivery", "IncludeRootReadme") is True
    assert "CommandModuleDependencies" in read_text(psd1)
    assert "https://example.org/docs" in read_text(psd1)

    # a second pass has nothing left to change
    assert refresh_manifest_from_plan(plan, psd1) is False


def test_refresh_removes_prerelease_when_manifest_segment_has_none(sample_project, tmp_path):
    psd1 = write_text(tmp_path / "Sample.psd1", psd1_text("1.0.0"))
    manifest.set_nested_string(psd1, None, "Prerelease", "old")
    plan = compile_plan(spec("Sample", str(sample_project), manifest_fields(author="Me"), version="1.0.0"))
    refresh_manifest_from_plan(plan, psd1)
    assert manifest.get_nested_string(psd1, None, "Prerelease") is None
    assert manifest.get_top_level_string(psd1, "Author") == "Me"


def test_refresh_requires_the_manifest(sample_project, tmp_path):
    plan = compile_plan(spec("Sample", str(sample_project), version="1.0.0"))
    with pytest.raises(BuildToolError):
        refresh_manifest_from_plan(plan, tmp_path / "missing.psd1")


def test_step_statuses_are_all_done_on_success(sample_project):
    res = _run(sample_project, install=_no_install())
    assert set(res.step_statuses.values()) == {StepStatus.DONE}
