# placeholders.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Tuple

from .model import PlaceholderSegment

logger = logging.getLogger(__name__)


def builtin_tokens(module_name: str, version: str, prerelease: str | None = None) -> Dict[str, str]:
    """
    Tokens understood in merged sources and artefact paths. Each is accepted
    in both {Curly} and <Angle> form.
    """
    with_pre = f"{version}-{prerelease}" if prerelease else version
    values = {
        "ModuleName": module_name,
        "ModuleVersion": version,
        "ModuleVersionWithPreRelease": with_pre,
        "TagName": f"v{version}",
        "TagModuleVersionWithPreRelease": f"v{with_pre}",
    }
    tokens: Dict[str, str] = {}
    for name, value in values.items():
        tokens["{" + name + "}"] = value
        tokens["<" + name + ">"] = value
    return tokens


def replace_tokens(text: str, tokens: Dict[str, str]) -> str:
    # longest first so {ModuleVersion} never eats part of {ModuleVersionWithPreRelease}
    for find in sorted(tokens, key=len, reverse=True):
        text = text.replace(find, tokens[find])
    return text


def replace_path_tokens(path: str, module_name: str, version: str, prerelease: str | None = None) -> str:
    return replace_tokens(path or "", builtin_tokens(module_name, version, prerelease))


def apply_placeholders(
    file_path: str | Path,
    *,
    module_name: str,
    version: str,
    prerelease: str | None,
    custom: Iterable[PlaceholderSegment] = (),
    skip_builtin: bool = False,
) -> bool:
    """Rewrite `file_path` in place. Returns True when something was replaced."""
    p = Path(file_path)
    if not p.is_file():
        return False

    with p.open("r", encoding="utf-8-sig", newline="") as f:
        original = f.read()
    text = original

    if not skip_builtin:
        text = replace_tokens(text, builtin_tokens(module_name, version, prerelease))

    pairs: Tuple[PlaceholderSegment, ...] = tuple(custom)
    for ph in pairs:
        if ph.find:
            text = text.replace(ph.find, ph.replace)

    if text == original:
        return False

    with p.open("w", encoding="utf-8-sig", newline="") as f:
        f.write(text)
    logger.debug("Applied placeholders to %s", p)
    return True
