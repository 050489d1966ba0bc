"""Console output formatting utilities for modforge."""

from __future__ import annotations

import sys
from typing import Iterable, Mapping, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        module: str,
        version: str,
        project_root: str,
        step_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Module: {module}")
        print(f"Version: {version}")
        print(f"Project: {project_root}")
        print(f"Steps: {step_count}")
        print()

    def print_step(self, name: str) -> None:
        """Print step start message."""
        print(f"STEP: {name}")

    def print_success(self, name: str) -> None:
        print("STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step title
            reason: Failure reason/error message
            hint: Optional hint for user
        """
        print(f"STEP FAILED: {name}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_step_skipped(self, name: str, reason: str) -> None:
        print(f"STEP: {name}")
        print(f"STATUS: skipped ({reason})")

    def print_plan(self, summary: Mapping[str, object], steps: Iterable[str], warnings: Iterable[str] = ()) -> None:
        """Print a compiled plan: key facts, then the step keys in run order."""
        self.print_header("PLAN")
        for key, value in summary.items():
            print(f"{key}: {value}")
        print("\nSteps:")
        for s in steps:
            print(f"  {s}")
        warnings = list(warnings)
        if warnings:
            print("\nWarnings:")
            for w in warnings:
                print(f"  {w}")

    def print_results(self, results: Mapping[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for step, status in results.items():
            status_display = status.upper() if status != "done" else "SUCCESS"
            print(f"  {step}: {status_display}")

    def print_install_result(self, version: str, installed: Iterable[str], pruned: Iterable[str]) -> None:
        print("\nINSTALLED")
        print(f"Version: {version}")
        for p in installed:
            print(f"  -> {p}")
        pruned = list(pruned)
        if pruned:
            print(f"Pruned: {len(pruned)}")
            for p in pruned:
                print(f"  x {p}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
