# steps.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar, Union

from .model import ArtefactSegment, Plan, PublishSegment

T = TypeVar("T")


class StepKind(str, Enum):
    STAGE = "stage"
    BUILD = "build"
    DOCS = "docs"
    FORMAT = "format"
    SIGN = "sign"
    VALIDATE = "validate"
    TEST = "test"
    ARTEFACT = "artefact"
    PUBLISH = "publish"
    INSTALL = "install"
    CLEANUP = "cleanup"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PipelineStep:
    """One planned unit of work. `key` is stable within a run and safe to map UI rows on."""
    key: str
    kind: StepKind
    title: str
    artefact_segment: Optional[ArtefactSegment] = None
    publish_segment: Optional[PublishSegment] = None


# ----- step outcomes -----

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None  # type: ignore[assignment]


@dataclass(frozen=True)
class Failed:
    error: BaseException


StepResult = Union[Ok[Any], Failed]


def _on(segment) -> bool:
    return segment is not None and getattr(segment, "enabled", None) is not False


def create_steps(plan: Plan) -> List[PipelineStep]:
    """The ordered step list for a plan. Only steps whose feature is active are included."""
    steps: List[PipelineStep] = [
        PipelineStep("build:stage", StepKind.STAGE, "Stage sources"),
    ]
    if plan.install_missing_modules:
        steps.append(PipelineStep("build:dependencies", StepKind.BUILD, "Install missing modules"))
    steps.append(PipelineStep("build:build", StepKind.BUILD, "Build module"))
    if plan.merge_module:
        steps.append(PipelineStep("build:merge", StepKind.BUILD, "Merge sources"))
    steps.append(PipelineStep("build:manifest", StepKind.BUILD, "Refresh manifest"))

    if _on(plan.documentation):
        steps.append(PipelineStep("docs:extract", StepKind.DOCS, "Extract help"))
        steps.append(PipelineStep("docs:write", StepKind.DOCS, "Write docs"))
        if plan.documentation.external_help:
            steps.append(PipelineStep("docs:maml", StepKind.DOCS, "Generate external help"))

    if _on(plan.formatting):
        steps.append(PipelineStep("format:staging", StepKind.FORMAT, "Format staging"))
        if plan.formatting.update_project_root:
            steps.append(PipelineStep("format:project", StepKind.FORMAT, "Format project root"))

    if plan.sign_module:
        steps.append(PipelineStep("sign", StepKind.SIGN, "Sign module"))

    if _on(plan.file_consistency):
        steps.append(PipelineStep("validate:fileconsistency", StepKind.VALIDATE, "File consistency (staging)"))
        if plan.file_consistency.include_project_root:
            steps.append(
                PipelineStep("validate:fileconsistency-project", StepKind.VALIDATE, "File consistency (project)")
            )
    if _on(plan.compatibility):
        steps.append(PipelineStep("validate:compatibility", StepKind.VALIDATE, "Compatibility"))
    if _on(plan.validation):
        steps.append(PipelineStep("validate:module", StepKind.VALIDATE, "Module validation"))

    if plan.import_modules is not None and plan.import_modules.enabled:
        steps.append(PipelineStep("tests:import-modules", StepKind.TEST, "Import modules"))
    for i, t in enumerate(plan.tests, start=1):
        steps.append(PipelineStep(f"tests:{i:02d}", StepKind.TEST, f"Tests ({t.tests_path})"))

    for i, a in enumerate(plan.artefacts, start=1):
        title = f"Pack {a.artefact_type}"
        if a.id:
            title += f" ({a.id})"
        steps.append(
            PipelineStep(f"artefact:{i:02d}:{a.artefact_type}:{a.id or ''}", StepKind.ARTEFACT, title, artefact_segment=a)
        )

    for i, p in enumerate(plan.publishes, start=1):
        title = f"Publish {p.destination}"
        if p.repository_name:
            title += f" ({p.repository_name})"
        if p.id:
            title += f" [{p.id}]"
        steps.append(
            PipelineStep(f"publish:{i:02d}:{p.destination}:{p.id or ''}", StepKind.PUBLISH, title, publish_segment=p)
        )

    if plan.install_enabled:
        steps.append(
            PipelineStep(
                "install",
                StepKind.INSTALL,
                f"Install ({plan.install_strategy.value}, keep {plan.install_keep})",
            )
        )
    if plan.delete_generated_staging_after_run:
        steps.append(PipelineStep("cleanup", StepKind.CLEANUP, "Cleanup staging"))
    return steps
