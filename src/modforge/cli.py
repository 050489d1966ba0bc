# cli.py
from __future__ import annotations

import logging
import sys
from dataclasses import replace
from pathlib import Path

import click

from modforge import manifest
from modforge.collaborators import Collaborators
from modforge.config import find_config, load_spec
from modforge.errors import ModForgeError
from modforge.installer import InstallOptions, ModuleInstaller
from modforge.model import InstallStrategy, LegacyFlatHandling
from modforge.planner import compile_plan
from modforge.progress import ConsoleProgressReporter
from modforge.runner import PipelineRunner
from modforge.step_workflows.pwsh import PesterTestRunner, PowerShellGetInstaller, ScriptAnalyzerCheck
from modforge.steps import create_steps
from modforge.ui.console import Console, get_console, set_console


def discover_config(config_arg: str | None) -> Path:
    """Explicit --config wins; otherwise look for modforge.yml/.yaml/.json in the current directory."""
    console = get_console()

    if config_arg:
        path = Path(config_arg)
        if not path.exists():
            console.print_error(
                "Project file not found",
                f"Could not find project file: {config_arg}",
                suggestion="Create a project file or specify a different path:\n  modforge run --config modforge.yml",
            )
            sys.exit(1)
        return path

    try:
        return find_config(".")
    except ModForgeError:
        console.print_error(
            "No project file found",
            "Could not find a project file.",
            details=["Looked for:", "  modforge.yml", "  modforge.yaml", "  modforge.json"],
            suggestion="Create modforge.yml or specify one explicitly:\n  modforge run --config path/to/modforge.yml",
        )
        sys.exit(1)


def _fail(ctx, e: BaseException) -> None:
    console = get_console()
    if isinstance(e, ModForgeError):
        details = [f"{k}: {v}" for k, v in e.details.items() if k != "hint"]
        console.print_error(e.kind, e.message, details=details or None, suggestion=e.details.get("hint"))
        if ctx.obj.get("debug", False):
            console.print_exception(e)
    else:
        console.print_exception(e)
    sys.exit(1)


def _plan_summary(plan) -> dict:
    return {
        "Module": plan.module_name,
        "Version": plan.version_with_prerelease,
        "Project": plan.project_root,
        "Required modules": ", ".join(m.module_name for m in plan.required_modules) or "-",
        "Approved modules": ", ".join(plan.approved_modules) or "-",
        "Merge": plan.merge_module,
        "Install": (
            f"{plan.install_strategy.value}, keep {plan.install_keep}" if plan.install_enabled else "disabled"
        ),
    }


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """modforge: build, package and install PowerShell modules."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config_path", default=None, help="Project file (defaults to modforge.yml if present)")
@click.pass_context
def plan(ctx, config_path):
    """Compile the project file and print the resulting plan."""
    console = get_console()
    path = discover_config(config_path)
    try:
        spec = load_spec(path)
        compiled = compile_plan(spec, repository=Collaborators.defaults().repository)
        console.print_plan(_plan_summary(compiled), [s.key for s in create_steps(compiled)], compiled.warnings)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@click.option("--config", "config_path", default=None, help="Project file (defaults to modforge.yml if present)")
@click.option("--staging", default=None, help="Staging directory (default: a fresh temp directory)")
@click.option("--keep-staging", is_flag=True, default=False, help="Keep generated staging after the run")
@click.pass_context
def run(ctx, config_path, staging, keep_staging):
    """Run the packaging pipeline."""
    console = get_console()
    path = discover_config(config_path)

    try:
        spec = load_spec(path)
        if staging:
            spec = replace(spec, staging_path=str(Path(staging).resolve()))
        if keep_staging:
            spec = replace(spec, keep_staging=True)

        collaborators = Collaborators.defaults(
            test_runner=PesterTestRunner(),
            validator=ScriptAnalyzerCheck(),
            dependency_installer=PowerShellGetInstaller(),
        )
        compiled = compile_plan(spec, repository=collaborators.repository)
        steps = create_steps(compiled)
        console.print_run_started(
            module=compiled.module_name,
            version=compiled.version_with_prerelease,
            project_root=compiled.project_root,
            step_count=len(steps),
        )

        result = PipelineRunner(collaborators).run(spec, compiled, reporter=ConsoleProgressReporter(console))

        console.print_results({k: v.value for k, v in result.step_statuses.items()})
        if result.install_result is not None:
            console.print_install_result(
                result.install_result.version,
                result.install_result.installed_paths,
                result.install_result.pruned_paths,
            )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@click.argument("staging", type=click.Path(exists=True, file_okay=False))
@click.option("--name", required=True, help="Module name")
@click.option("--version", "version", required=True, help="Module version")
@click.option("--root", "roots", multiple=True, help="Module root (repeatable; default: per-user roots)")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in InstallStrategy]),
    default=InstallStrategy.AUTO_REVISION.value,
    show_default=True,
)
@click.option("--keep", default=3, type=int, show_default=True, help="Versions to keep per root")
@click.option(
    "--legacy-flat",
    type=click.Choice([h.value for h in LegacyFlatHandling]),
    default=LegacyFlatHandling.WARN.value,
    show_default=True,
    help="What to do with a pre-versioned flat install",
)
@click.option("--preserve", "preserve", multiple=True, help="Version never pruned (repeatable)")
@click.pass_context
def install(ctx, staging, name, version, roots, strategy, keep, legacy_flat, preserve):
    """Install a staged module into versioned module roots."""
    console = get_console()
    try:
        options = InstallOptions(
            roots=tuple(roots),
            strategy=InstallStrategy(strategy),
            keep=keep,
            legacy_flat_handling=LegacyFlatHandling(legacy_flat),
            preserve_versions=tuple(preserve),
        )
        res = ModuleInstaller().install(staging, name, version, options)
        console.print_install_result(res.version, res.installed_paths, res.pruned_paths)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail(ctx, e)


@cli.group(name="manifest")
def manifest_group():
    """Read and edit .psd1 manifests in place."""


@manifest_group.command(name="get")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.argument("key")
@click.pass_context
def manifest_get(ctx, path, key):
    """Print a top-level value (string or string array)."""
    console = get_console()
    value = manifest.get_top_level_string(path, key)
    if value is not None:
        console.print_info(value)
        return
    values = manifest.get_top_level_string_array(path, key)
    if values is None:
        console.print_error("Key not found", f"{key} is not set in {path}")
        sys.exit(1)
    for v in values:
        console.print_info(v)


@manifest_group.command(name="set")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.argument("key")
@click.argument("value")
@click.pass_context
def manifest_set(ctx, path, key, value):
    """Set a top-level string value."""
    console = get_console()
    if key.lower() == "moduleversion":
        changed = manifest.set_top_level_module_version(path, value)
    else:
        changed = manifest.set_top_level_string(path, key, value)
    if changed:
        console.print_info(f"{key} = {value}")
    elif manifest.get_top_level_string(path, key) == value:
        console.print_info(f"{key} already {value}")
    else:
        console.print_error("Manifest not updated", f"Could not set {key} in {path}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
