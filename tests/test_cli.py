from __future__ import annotations

import pytest
from click.testing import CliRunner
from conftest import psd1_text, write_text

from modforge import manifest
from modforge.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _project(tmp_path, sample_project, extra: str = "") -> str:
    text = (
        "name: Sample\n"
        f"source: {sample_project}\n"
        "version: '1.1.0'\n"
        "install:\n"
        "  enabled: false\n"
        "segments:\n"
        "  - type: artefact\n"
        "    artefact_type: Packed\n"
        f"{extra}"
    )
    return str(write_text(tmp_path / "modforge.yml", text))


def test_plan_prints_steps(runner, tmp_path, sample_project):
    result = runner.invoke(cli, ["plan", "--config", _project(tmp_path, sample_project)])
    assert result.exit_code == 0, result.output
    assert "Module: Sample" in result.output
    assert "Version: 1.1.0" in result.output
    assert "build:merge" in result.output
    assert "artefact:01:Packed:" in result.output
    assert "Install: disabled" in result.output


def test_run_executes_the_pipeline(runner, tmp_path, sample_project):
    result = runner.invoke(cli, ["run", "--config", _project(tmp_path, sample_project)])
    assert result.exit_code == 0, result.output
    assert "RESULTS" in result.output
    assert "build:stage: SUCCESS" in result.output
    assert (sample_project / "Artefacts" / "Packed" / "Sample.zip").is_file()


def test_run_reports_configuration_errors(runner, tmp_path, sample_project):
    config = _project(tmp_path, sample_project, "  - type: validation\n    severity: fatal\n")
    result = runner.invoke(cli, ["run", "--config", config])
    assert result.exit_code == 1
    assert "configuration" in result.output


def test_missing_config_file(runner, tmp_path):
    result = runner.invoke(cli, ["plan", "--config", str(tmp_path / "nope.yml")])
    assert result.exit_code == 1
    assert "Project file not found" in result.output


def test_no_config_in_current_directory(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "modforge.yml" in result.output


def test_install_command(runner, tmp_path):
    staging = tmp_path / "staging"
    write_text(staging / "Sample.psd1", psd1_text("1.0.0"))
    write_text(staging / "Sample.psm1", "\n")
    roots = tmp_path / "Modules"

    args = ["install", str(staging), "--name", "Sample", "--version", "1.0.0", "--root", str(roots)]
    first = runner.invoke(cli, args)
    second = runner.invoke(cli, args)
    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert "Version: 1.0.0.1" in second.output
    assert (roots / "Sample" / "1.0.0.1" / "Sample.psm1").is_file()


def test_install_command_failure(runner, tmp_path):
    staging = tmp_path / "staging"
    write_text(staging / "Sample.psd1", psd1_text("1.0.0"))
    result = runner.invoke(cli, ["install", str(staging), "--name", "..", "--version", "1.0.0"])
    assert result.exit_code == 1
    assert "Unsafe module name" in result.output


def test_manifest_get_and_set(runner, tmp_path):
    p = str(write_text(tmp_path / "Sample.psd1", psd1_text("1.0.0")))

    result = runner.invoke(cli, ["manifest", "get", p, "ModuleVersion"])
    assert result.exit_code == 0
    assert result.output.strip() == "1.0.0"

    result = runner.invoke(cli, ["manifest", "set", p, "ModuleVersion", "1.2.0"])
    assert result.exit_code == 0
    assert "ModuleVersion = 1.2.0" in result.output
    assert manifest.get_top_level_string(p, "ModuleVersion") == "1.2.0"

    result = runner.invoke(cli, ["manifest", "set", p, "ModuleVersion", "1.2.0"])
    assert "ModuleVersion already 1.2.0" in result.output


def test_manifest_get_array_and_missing_key(runner, tmp_path):
    extra = "    AliasesToExport = @('gs', 'ss')\n"
    p = str(write_text(tmp_path / "Sample.psd1", psd1_text("1.0.0", extra=extra)))

    result = runner.invoke(cli, ["manifest", "get", p, "AliasesToExport"])
    assert result.output.split() == ["gs", "ss"]

    result = runner.invoke(cli, ["manifest", "get", p, "Nope"])
    assert result.exit_code == 1
    assert "Key not found" in result.output
