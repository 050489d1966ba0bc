from .dsl import (
    SpecBuilder,
    approved,
    artefact,
    build_options,
    commands,
    external,
    libraries,
    manifest_fields,
    placeholder,
    publish,
    required,
    skip,
    spec,
    tests,
)
from .model import Plan, Spec
from .planner import compile_plan
from .runner import PipelineResult, PipelineRunner

__all__ = [
    "SpecBuilder",
    "spec",
    "manifest_fields",
    "build_options",
    "libraries",
    "required",
    "external",
    "approved",
    "commands",
    "skip",
    "placeholder",
    "tests",
    "artefact",
    "publish",
    "compile_plan",
    "PipelineRunner",
    "PipelineResult",
    "Plan",
    "Spec",
]
