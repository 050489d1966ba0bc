# progress.py
from __future__ import annotations

from typing import Protocol

from .steps import PipelineStep
from .ui.console import Console, get_console


class ProgressReporter(Protocol):
    def step_starting(self, step: PipelineStep) -> None: ...

    def step_completed(self, step: PipelineStep) -> None: ...

    def step_failed(self, step: PipelineStep, error: BaseException) -> None: ...

    def step_skipped(self, step: PipelineStep) -> None: ...


class NullProgressReporter:
    def step_starting(self, step: PipelineStep) -> None:
        pass

    def step_completed(self, step: PipelineStep) -> None:
        pass

    def step_failed(self, step: PipelineStep, error: BaseException) -> None:
        pass

    def step_skipped(self, step: PipelineStep) -> None:
        pass


class ConsoleProgressReporter:
    """Step lines on the CLI console."""

    def __init__(self, console: Console | None = None):
        self.console = console or get_console()

    def step_starting(self, step: PipelineStep) -> None:
        self.console.print_step(step.title)

    def step_completed(self, step: PipelineStep) -> None:
        self.console.print_success(step.title)

    def step_failed(self, step: PipelineStep, error: BaseException) -> None:
        self.console.print_failure(step.title, str(error), hint=getattr(error, "details", {}).get("hint"))

    def step_skipped(self, step: PipelineStep) -> None:
        self.console.print_step_skipped(step.title, "earlier step failed")
