# versioning.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import cmp_to_key
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from . import manifest
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

AUTO = "auto"

_CORE_RE = re.compile(r"^\d+(\.\d+){1,3}$")


@dataclass(frozen=True)
class ParsedVersion:
    parts: Tuple[int, ...]          # 2..4 numeric components, as written
    prerelease: str | None = None

    @property
    def padded(self) -> Tuple[int, int, int, int]:
        p = list(self.parts) + [0] * (4 - len(self.parts))
        return (p[0], p[1], p[2], p[3])


def parse_version(text: str | None) -> Optional[ParsedVersion]:
    """
    Parse "1.2.3", "1.2.3.4" or "1.2.3-beta.1".
    The pre-release label is everything after the first '-'.
    """
    if text is None:
        return None
    raw = text.strip()
    if not raw:
        return None
    core, sep, pre = raw.partition("-")
    if not _CORE_RE.match(core):
        return None
    pre = pre.strip() if sep else ""
    return ParsedVersion(parts=tuple(int(p) for p in core.split(".")), prerelease=pre or None)


def _compare_labels(a: str, b: str) -> int:
    sa = a.split(".")
    sb = b.split(".")
    for x, y in zip(sa, sb):
        if x.isdigit() and y.isdigit():
            xi, yi = int(x), int(y)
            if xi != yi:
                return -1 if xi < yi else 1
            continue
        if x.isdigit() != y.isdigit():
            # numeric identifiers sort below alphanumeric ones
            return -1 if x.isdigit() else 1
        xl, yl = x.lower(), y.lower()
        if xl != yl:
            return -1 if xl < yl else 1
    if len(sa) != len(sb):
        return -1 if len(sa) < len(sb) else 1
    return 0


def compare_versions(a: str | None, b: str | None) -> int:
    """
    Order release identifiers.

    Numeric core first; on a tie, a release (no label) beats a pre-release;
    labels compare dot-segment by dot-segment. Unparseable strings sort
    below every parseable version.
    """
    pa, pb = parse_version(a), parse_version(b)
    if pa is None or pb is None:
        if pa is not None:
            return 1
        if pb is not None:
            return -1
        la, lb = (a or "").strip().lower(), (b or "").strip().lower()
        return (la > lb) - (la < lb)

    if pa.padded != pb.padded:
        return -1 if pa.padded < pb.padded else 1
    if pa.prerelease is None and pb.prerelease is None:
        return 0
    if pa.prerelease is None:
        return 1
    if pb.prerelease is None:
        return -1
    return _compare_labels(pa.prerelease, pb.prerelease)


version_key = cmp_to_key(compare_versions)


def sort_versions(versions: Iterable[str], *, descending: bool = False) -> List[str]:
    return sorted(versions, key=version_key, reverse=descending)


def version_sort_key(text: str) -> Tuple[int, int, int, int]:
    """Four padded numeric parts of the dotted base; unparseable parts count as 0."""
    base = text.strip().partition("-")[0]
    out: List[int] = []
    for part in base.split(".")[:4]:
        out.append(int(part) if part.isdigit() else 0)
    while len(out) < 4:
        out.append(0)
    return (out[0], out[1], out[2], out[3])


# ---------------------------------------------------------------------
# Auto revision
# ---------------------------------------------------------------------

def next_auto_revision(base: str, existing: Iterable[str]) -> str:
    """
    Given base "1.0.0" and siblings ["1.0.0", "1.0.0.2"], return "1.0.0.3".
    With no numbered sibling the answer is "base.1".
    """
    pattern = re.compile(r"^" + re.escape(base) + r"(?:\.(\d+))?$", re.IGNORECASE)
    highest = 0
    for name in existing:
        m = pattern.match(name)
        if m and m.group(1):
            highest = max(highest, int(m.group(1)))
    return f"{base}.{highest + 1}"


# ---------------------------------------------------------------------
# Stepping ("0.1.X")
# ---------------------------------------------------------------------

def is_auto_version(value: str | None) -> bool:
    return value is None or not value.strip() or value.strip().lower() == AUTO


def is_exact_version(value: str) -> bool:
    return bool(_CORE_RE.match(value.strip()))


def _cmp_dotnet(a: List[int], b: List[int]) -> int:
    # undefined components rank below 0, so 1.2 < 1.2.0
    pa = a + [-1] * (4 - len(a))
    pb = b + [-1] * (4 - len(b))
    return (pa > pb) - (pa < pb)


def step_version(expected: str, current: str | None) -> str:
    """
    Resolve an expected version against the current one.

    An exact version is returned unchanged. A pattern such as "0.1.X" puts
    the current value of the X component in place, resets it to 0 if that
    already overshoots, then increments until the result is strictly
    greater than `current`.
    """
    if not expected or not expected.strip():
        raise ConfigurationError("Expected version is required.")
    expected = expected.strip()
    if is_exact_version(expected):
        return expected

    segs = expected.split(".")
    if len(segs) > 4:
        raise ConfigurationError(f"Expected version '{expected}' has more than four parts.")
    step_index = next((i for i, s in enumerate(segs) if s.strip().lower() == "x"), -1)
    if step_index < 0:
        raise ConfigurationError(
            f"Expected version '{expected}' must contain an 'X' placeholder (or be an exact version)."
        )

    prepared: List[int] = []
    for i, s in enumerate(segs):
        if i == step_index:
            prepared.append(0)
            continue
        if not s.strip().isdigit():
            raise ConfigurationError(f"Expected version segment '{s}' is not a number.")
        prepared.append(int(s))

    parsed = parse_version(current) if current else None
    baseline = list(parsed.parts) if parsed else [0, 0, 0, 0]
    if parsed is None:
        step_value = 1
    else:
        step_value = parsed.parts[step_index] if step_index < len(parsed.parts) else 0

    prefix = prepared[:step_index]
    if prefix < baseline[:step_index] + [0] * (step_index - len(baseline[:step_index])):
        raise ConfigurationError(
            f"Expected version '{expected}' can never exceed the current version '{current}'."
        )

    prepared[step_index] = step_value
    if _cmp_dotnet(prepared, baseline) > 0:
        prepared[step_index] = 0
    while _cmp_dotnet(prepared, baseline) <= 0:
        prepared[step_index] += 1

    return ".".join(str(p) for p in prepared)


# ---------------------------------------------------------------------
# "auto" from a manifest
# ---------------------------------------------------------------------

def read_manifest_version(manifest_path: str | Path) -> Optional[str]:
    value = manifest.get_top_level_string(manifest_path, "ModuleVersion")
    if value and value.strip():
        return value.strip()
    return None


def resolve_auto_version(
    version: str | None,
    manifest_path: str | Path,
    fallback: str | None = None,
    *,
    log: logging.Logger | None = None,
) -> str:
    """
    Return `version` unless it is blank/"auto", in which case ModuleVersion is
    read from `manifest_path`. Falls back to `fallback` with a warning, or
    raises ConfigurationError when there is no fallback.
    """
    log = log or logger
    if not is_auto_version(version):
        return version.strip()

    found = read_manifest_version(manifest_path)
    if found:
        log.debug("Resolved ModuleVersion from manifest: %s -> %s", manifest_path, found)
        return found

    if fallback:
        log.warning(
            "Version was 'auto' but ModuleVersion could not be read from: %s. Falling back to %s.",
            manifest_path,
            fallback,
        )
        return fallback

    raise ConfigurationError(
        f"Version was 'auto' but ModuleVersion could not be read from: {manifest_path}. "
        "Provide the version explicitly."
    )
