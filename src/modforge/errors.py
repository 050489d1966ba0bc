# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(eq=False)
class ModForgeError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - naming the offending module/command/path
      - debugging without full tracebacks
    """
    message: str
    module: str | None = None
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.module:
            lines.append(f"module={self.module}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class ConfigurationError(ModForgeError):
    kind: ClassVar[str] = "configuration"


@dataclass(eq=False)
class MissingDependencyError(ModForgeError):
    missing: list[str] = field(default_factory=list)

    kind: ClassVar[str] = "missing-dependency"

    def __str__(self) -> str:
        text = super().__str__()
        if self.missing:
            text += "\nmissing=" + ", ".join(self.missing)
        return text


@dataclass(eq=False)
class BuildToolError(ModForgeError):
    output: str = ""

    kind: ClassVar[str] = "build-tool"

    def __str__(self) -> str:
        text = super().__str__()
        if self.output:
            # keep the tail, tool output can be huge
            text += "\n" + self.output[-4000:]
        return text


@dataclass(eq=False)
class ValidationFailure(ModForgeError):
    check: str = ""
    severity: str = "error"

    kind: ClassVar[str] = "validation"


@dataclass(eq=False)
class InstallError(ModForgeError):
    failures: dict[str, str] = field(default_factory=dict)

    kind: ClassVar[str] = "install"

    def __str__(self) -> str:
        lines = [super().__str__()]
        for root, reason in self.failures.items():
            lines.append(f"  {root}: {reason}")
        return "\n".join(lines)


@dataclass(eq=False)
class PublishError(ModForgeError):
    kind: ClassVar[str] = "publish"
