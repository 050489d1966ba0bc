from __future__ import annotations

from modforge.dsl import artefact, build_options, publish, spec
from modforge.dsl import tests as pester
from modforge.model import (
    DocumentationSegment,
    FileConsistencySegment,
    FormattingSegment,
    ImportModulesSegment,
    ValidationSegment,
)
from modforge.planner import compile_plan
from modforge.steps import StepKind, create_steps


def _keys(*segments, **fields):
    plan = compile_plan(spec("Sample", "/tmp/Sample", *segments, version="1.0.0", **fields))
    return [s.key for s in create_steps(plan)]


def test_minimal_plan():
    assert _keys() == [
        "build:stage",
        "build:build",
        "build:merge",
        "build:manifest",
        "install",
        "cleanup",
    ]


def test_merge_off_and_kept_staging():
    keys = _keys(build_options(merge=False), keep_staging=True)
    assert "build:merge" not in keys
    assert "cleanup" not in keys


def test_full_order():
    keys = _keys(
        DocumentationSegment(path="Docs", external_help=True),
        FormattingSegment(update_project_root=True),
        build_options(sign_merged=True),
        FileConsistencySegment(include_project_root=True),
        ValidationSegment(),
        ImportModulesSegment(import_self=True),
        pester("Tests"),
        pester("More"),
        artefact("Packed", id="main"),
        artefact("Unpacked"),
        publish("PowerShellGallery", id="psg"),
        staging_path="/tmp/stage",
    )
    assert keys == [
        "build:stage",
        "build:build",
        "build:merge",
        "build:manifest",
        "docs:extract",
        "docs:write",
        "docs:maml",
        "format:staging",
        "format:project",
        "sign",
        "validate:fileconsistency",
        "validate:fileconsistency-project",
        "validate:module",
        "tests:import-modules",
        "tests:01",
        "tests:02",
        "artefact:01:Packed:main",
        "artefact:02:Unpacked:",
        "publish:01:PowerShellGallery:psg",
        "install",
    ]


def test_disabled_segments_produce_no_steps():
    keys = _keys(
        DocumentationSegment(enabled=False),
        FormattingSegment(enabled=False),
        ValidationSegment(enabled=False),
        ImportModulesSegment(import_self=False),
    )
    assert not any(k.split(":")[0] in ("docs", "format", "validate", "tests") for k in keys)


def test_artefact_steps_carry_their_segment():
    plan = compile_plan(spec("Sample", "/tmp/Sample", artefact("Packed", id="a"), version="1.0.0"))
    step = next(s for s in create_steps(plan) if s.kind == StepKind.ARTEFACT)
    assert step.artefact_segment.id == "a"
    assert step.title == "Pack Packed (a)"


def test_install_title_and_refresh_only():
    plan = compile_plan(spec("Sample", "/tmp/Sample", version="1.0.0"))
    install = next(s for s in create_steps(plan) if s.key == "install")
    assert install.title == "Install (auto_revision, keep 3)"

    keys = _keys(build_options(refresh_psd1_only=True), artefact("Packed"))
    assert keys == ["build:stage", "build:build", "build:manifest", "cleanup"]


def test_dependency_install_step_runs_before_the_build():
    keys = _keys(build_options(install_missing_modules=True))
    assert keys[:3] == ["build:stage", "build:dependencies", "build:build"]

    keys = _keys(build_options(install_missing_modules=True, refresh_psd1_only=True))
    assert "build:dependencies" not in keys
