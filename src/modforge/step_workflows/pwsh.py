# step_workflows/pwsh.py
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import List

from ..collaborators import (
    CheckRequest,
    CheckResult,
    DependencyInstallRequest,
    DependencyInstallResult,
    TestRunRequest,
    TestRunResult,
)
from ..manifest import RequiredModule
from ..model import CheckStatus
from .process import run_tool

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Collaborators backed by a PowerShell child process (pwsh).
# Only the contract matters to the pipeline; these are the stock ones the
# CLI wires in when test/validation segments are configured.
# ---------------------------------------------------------------------

_RESULT_MARKER = "MODFORGE_RESULT:"


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _invoke(script: str, *, cwd: str | None, timeout: int | None, shell: str = "pwsh"):
    return run_tool(
        [shell, "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", script],
        cwd=cwd,
        timeout=timeout,
        check=False,
    )


def _parse_marker(output: str) -> dict:
    for line in reversed(output.splitlines()):
        if line.startswith(_RESULT_MARKER):
            try:
                return json.loads(line[len(_RESULT_MARKER):])
            except json.JSONDecodeError:
                break
    return {}


class PesterTestRunner:
    """Runs Pester tests and import smoke tests in a fresh pwsh process."""

    __test__ = False

    def __init__(self, shell: str = "pwsh"):
        self.shell = shell

    def run_tests(self, request: TestRunRequest) -> TestRunResult:
        tests_path = Path(request.tests_path or "Tests")
        if not tests_path.is_absolute():
            tests_path = Path(request.staging_path) / tests_path

        module_psd1 = Path(request.staging_path) / f"{request.module_name}.psd1"
        script = "; ".join([
            "$ErrorActionPreference = 'Stop'",
            f"Import-Module {_ps_quote(str(module_psd1))} -Force",
            f"$r = Invoke-Pester -Path {_ps_quote(str(tests_path))} -PassThru -Output None",
            "$o = @{ passed = $r.PassedCount; failed = $r.FailedCount; skipped = $r.SkippedCount }",
            f"Write-Output ('{_RESULT_MARKER}' + ($o | ConvertTo-Json -Compress))",
        ])
        proc = _invoke(script, cwd=request.staging_path, timeout=request.timeout_seconds, shell=self.shell)
        output = (proc.stdout or "") + (proc.stderr or "")
        data = _parse_marker(proc.stdout or "")
        if not data:
            # no marker means Pester itself never ran to completion
            return TestRunResult(failed=1, output=output)
        return TestRunResult(
            passed=int(data.get("passed") or 0),
            failed=int(data.get("failed") or 0),
            skipped=int(data.get("skipped") or 0),
            output=output,
        )

    def import_modules(self, request: TestRunRequest) -> TestRunResult:
        lines: List[str] = ["$ErrorActionPreference = 'Stop'", "$ok = 0"]
        verbose = " -Verbose" if request.verbose else ""
        if request.import_required_modules:
            for name in request.required_modules:
                lines.append(f"Import-Module {_ps_quote(name)} -Force{verbose}; $ok++")
        if request.import_self:
            module_psd1 = Path(request.staging_path) / f"{request.module_name}.psd1"
            lines.append(f"Import-Module {_ps_quote(str(module_psd1))} -Force{verbose}; $ok++")
        lines.append(f"Write-Output ('{_RESULT_MARKER}' + (@{{ passed = $ok }} | ConvertTo-Json -Compress))")

        proc = _invoke("; ".join(lines), cwd=request.staging_path, timeout=request.timeout_seconds, shell=self.shell)
        output = (proc.stdout or "") + (proc.stderr or "")
        data = _parse_marker(proc.stdout or "")
        failed = 0 if proc.returncode == 0 and data else 1
        return TestRunResult(passed=int(data.get("passed") or 0), failed=failed, output=output)


class ScriptAnalyzerCheck:
    """
    Module validation through PSScriptAnalyzer.
    Any Error-severity finding fails the check; warnings only downgrade it.
    """

    _LINE = re.compile(r"^(?P<severity>\w+)\t(?P<rule>[^\t]+)\t(?P<file>[^\t]*)\t(?P<line>\d*)\t(?P<message>.*)$")

    def __init__(self, shell: str = "pwsh", timeout: int = 900):
        self.shell = shell
        self.timeout = timeout

    def check(self, request: CheckRequest) -> CheckResult:
        excluded = [str(r) for r in (request.options.get("exclude_rules") or [])]
        exclude_arg = ""
        if excluded:
            exclude_arg = " -ExcludeRule " + ",".join(_ps_quote(r) for r in excluded)
        script = "; ".join([
            "$ErrorActionPreference = 'Stop'",
            f"$r = Invoke-ScriptAnalyzer -Path {_ps_quote(request.root)} -Recurse{exclude_arg}",
            "$r | ForEach-Object { \"$($_.Severity)`t$($_.RuleName)`t$($_.ScriptName)`t$($_.Line)`t$($_.Message)\" }",
        ])
        proc = _invoke(script, cwd=request.root, timeout=self.timeout, shell=self.shell)
        if proc.returncode != 0:
            return CheckResult(
                status=CheckStatus.FAIL,
                summary="PSScriptAnalyzer did not complete",
                issues=((proc.stderr or proc.stdout or "").strip()[-2000:],),
            )

        issues: List[str] = []
        has_error = False
        for line in (proc.stdout or "").splitlines():
            m = self._LINE.match(line.strip())
            if not m:
                continue
            if m.group("severity").lower() in ("error", "parseerror"):
                has_error = True
            issues.append(f"{m.group('file')}:{m.group('line')} [{m.group('rule')}] {m.group('message')}")

        if has_error:
            status = CheckStatus.FAIL
        elif issues:
            status = CheckStatus.WARNING
        else:
            status = CheckStatus.PASS
        return CheckResult(status=status, summary=f"{len(issues)} finding(s)", issues=tuple(issues))


class PowerShellGetInstaller:
    """
    Installs build dependencies with Install-Module, one module per pwsh call.
    A module already available in a matching version is left alone unless
    the request forces a reinstall.
    """

    def __init__(self, shell: str = "pwsh", timeout: int = 900):
        self.shell = shell
        self.timeout = timeout

    @staticmethod
    def _script(module: RequiredModule, request: DependencyInstallRequest) -> str:
        name = _ps_quote(module.module_name)
        conditions: List[str] = []
        args = [f"-Name {name}", "-Scope CurrentUser", "-AllowClobber"]
        if module.required_version:
            conditions.append(f"$_.Version -eq [version]{_ps_quote(module.required_version)}")
            args.append(f"-RequiredVersion {_ps_quote(module.required_version)}")
        else:
            if module.module_version:
                conditions.append(f"$_.Version -ge [version]{_ps_quote(module.module_version)}")
                args.append(f"-MinimumVersion {_ps_quote(module.module_version)}")
            if module.maximum_version:
                conditions.append(f"$_.Version -le [version]{_ps_quote(module.maximum_version)}")
                args.append(f"-MaximumVersion {_ps_quote(module.maximum_version)}")
        if request.repository:
            args.append(f"-Repository {_ps_quote(request.repository)}")
        if request.prerelease:
            args.append("-AllowPrerelease")
        if request.force:
            args.append("-Force")

        where = " -and ".join(conditions) or "$true"
        force = "$true" if request.force else "$false"
        return "; ".join([
            "$ErrorActionPreference = 'Stop'",
            f"$have = Get-Module -ListAvailable -Name {name} | Where-Object {{ {where} }} | Select-Object -First 1",
            f"if ($have -and -not {force}) {{ $s = 'satisfied' }} "
            f"else {{ Install-Module {' '.join(args)}; $s = 'installed' }}",
            f"Write-Output ('{_RESULT_MARKER}' + (@{{ status = $s }} | ConvertTo-Json -Compress))",
        ])

    def install(self, request: DependencyInstallRequest) -> DependencyInstallResult:
        installed: List[str] = []
        satisfied: List[str] = []
        failed: List[str] = []
        outputs: List[str] = []
        for module in request.modules:
            proc = _invoke(self._script(module, request), cwd=None, timeout=self.timeout, shell=self.shell)
            outputs.append((proc.stdout or "") + (proc.stderr or ""))
            status = _parse_marker(proc.stdout or "").get("status")
            if proc.returncode != 0 or status not in ("installed", "satisfied"):
                logger.warning("Installing %s failed", module.module_name)
                failed.append(module.module_name)
            elif status == "installed":
                logger.info("Installed %s", module.module_name)
                installed.append(module.module_name)
            else:
                satisfied.append(module.module_name)
        return DependencyInstallResult(
            installed=tuple(installed),
            satisfied=tuple(satisfied),
            failed=tuple(failed),
            output="\n".join(outputs),
        )
