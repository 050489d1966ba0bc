# manifest/editor.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

from .parser import (
    ArrayNode,
    BoolNode,
    Entry,
    HashtableNode,
    ManifestSyntaxError,
    Node,
    StringNode,
    parse,
)

logger = logging.getLogger(__name__)

PRIVATE_DATA = "PrivateData"
PSDATA = "PSData"
DEFAULT_INDENT = "    "


# ---------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RequiredModule:
    """One RequiredModules entry: a bare name or a module specification table."""
    module_name: str
    module_version: str | None = None
    required_version: str | None = None
    maximum_version: str | None = None
    guid: str | None = None

    @property
    def is_bare(self) -> bool:
        return not (self.module_version or self.required_version or self.maximum_version or self.guid)


ExportState = Literal["absent", "wildcard", "explicit"]


@dataclass(frozen=True)
class ExportList:
    """
    Result of reading an export-style key (FunctionsToExport, ...).

    `wildcard` means "exports everything" ('*'), which callers must not
    confuse with a key that is simply not declared.
    """
    state: ExportState
    values: Tuple[str, ...] = ()

    @property
    def is_wildcard(self) -> bool:
        return self.state == "wildcard"

    @property
    def is_absent(self) -> bool:
        return self.state == "absent"


# ---------------------------------------------------------------------
# Literal rendering
# ---------------------------------------------------------------------

def quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_string_array(values: Iterable[str]) -> str:
    return "@(" + ", ".join(quote(v) for v in values) + ")"


def render_bool(value: bool) -> str:
    return "$true" if value else "$false"


def render_required_modules(modules: Sequence[RequiredModule]) -> str:
    items: List[str] = []
    for m in modules:
        if m.is_bare:
            items.append(quote(m.module_name))
            continue
        parts = [f"ModuleName = {quote(m.module_name)}"]
        if m.module_version:
            parts.append(f"ModuleVersion = {quote(m.module_version)}")
        if m.required_version:
            parts.append(f"RequiredVersion = {quote(m.required_version)}")
        if m.maximum_version:
            parts.append(f"MaximumVersion = {quote(m.maximum_version)}")
        if m.guid:
            parts.append(f"Guid = {quote(m.guid)}")
        items.append("@{ " + "; ".join(parts) + " }")
    return "@(" + ", ".join(items) + ")"


def render_hashtable_array(items: Iterable[Mapping[str, str]]) -> str:
    rendered = []
    for item in items:
        pairs = "; ".join(f"{k} = {quote(v)}" for k, v in item.items())
        rendered.append("@{ " + pairs + " }")
    return "@(" + ", ".join(rendered) + ")"


# ---------------------------------------------------------------------
# Value extraction
# ---------------------------------------------------------------------

def _string_of(node: Node) -> Optional[str]:
    return node.value if isinstance(node, StringNode) else None


def _flatten_strings(node: Node, out: List[str]) -> bool:
    if isinstance(node, StringNode):
        out.append(node.value)
        return True
    if isinstance(node, ArrayNode):
        return all(_flatten_strings(item, out) for item in node.items)
    return False


def _string_array_of(node: Node) -> Optional[List[str]]:
    out: List[str] = []
    if not _flatten_strings(node, out):
        return None
    return out


def _required_module_of(node: Node) -> Optional[RequiredModule]:
    if isinstance(node, StringNode):
        return RequiredModule(module_name=node.value)
    if not isinstance(node, HashtableNode):
        return None

    fields: Dict[str, Optional[str]] = {}
    for key in ("ModuleName", "ModuleVersion", "RequiredVersion", "MaximumVersion", "Guid"):
        entry = node.get(key)
        fields[key] = _string_of(entry.value) if entry else None
    name = fields["ModuleName"]
    if not name or not name.strip():
        return None
    return RequiredModule(
        module_name=name,
        module_version=fields["ModuleVersion"],
        required_version=fields["RequiredVersion"],
        maximum_version=fields["MaximumVersion"],
        guid=fields["Guid"],
    )


def _required_modules_of(node: Node) -> List[RequiredModule]:
    items: List[Node] = []

    def walk(n: Node) -> None:
        if isinstance(n, ArrayNode):
            for child in n.items:
                walk(child)
        else:
            items.append(n)

    walk(node)
    modules = []
    for item in items:
        mod = _required_module_of(item)
        if mod is not None:
            modules.append(mod)
    return modules


# ---------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------

@dataclass
class _Edit:
    start: int
    end: int
    text: str


@dataclass
class ManifestDocument:
    """
    A parsed manifest plus pending text edits.

    Edits are collected against the current parse and applied together in
    descending offset order by `commit()`, which then re-parses. Nothing
    touches the disk until `save()`.
    """
    text: str
    path: Path | None = None
    root: HashtableNode = field(init=False)
    _edits: List[_Edit] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.root = parse(self.text)

    # ----- loading / saving -----

    @classmethod
    def load(cls, path: str | Path) -> Optional["ManifestDocument"]:
        """Return the parsed document, or None if missing/unreadable/malformed."""
        p = Path(path)
        if not p.is_file():
            return None
        try:
            with p.open("r", encoding="utf-8-sig", newline="") as f:
                text = f.read()
            return cls(text=text, path=p)
        except (OSError, UnicodeDecodeError, ManifestSyntaxError) as e:
            logger.debug("Cannot parse manifest %s: %s", p, e)
            return None

    def save(self, path: str | Path | None = None) -> None:
        self.commit()
        target = Path(path) if path is not None else self.path
        if target is None:
            raise ValueError("ManifestDocument has no path to save to")
        # Always written with a BOM for older consumers of the format.
        with target.open("w", encoding="utf-8-sig", newline="") as f:
            f.write(self.text)

    @property
    def newline(self) -> str:
        return "\r\n" if "\r\n" in self.text else "\n"

    # ----- navigation -----

    def column(self, offset: int) -> int:
        return offset - (self.text.rfind("\n", 0, offset) + 1)

    def line_indent(self, offset: int) -> str:
        line_start = self.text.rfind("\n", 0, offset) + 1
        i = line_start
        while i < len(self.text) and self.text[i] in " \t":
            i += 1
        return self.text[line_start:i]

    def entry(self, key: str, table: HashtableNode | None = None) -> Optional[Entry]:
        return (table or self.root).get(key)

    def table(self, *keys: str) -> Optional[HashtableNode]:
        """Follow nested hashtable keys from the root. None if any hop is missing."""
        current = self.root
        for key in keys:
            entry = current.get(key)
            if entry is None or not isinstance(entry.value, HashtableNode):
                return None
            current = entry.value
        return current

    # ----- edits -----

    def replace(self, node: Node, literal: str) -> None:
        self._edits.append(_Edit(node.start, node.end, literal))

    def insert(self, table: HashtableNode, key: str, literal: str) -> None:
        """Queue a new `key = literal` line just before the table's closing brace."""
        nl = self.newline
        close = table.end - 1
        if table.entries:
            indent = " " * self.column(table.entries[0].key_start)
        else:
            indent = self.line_indent(table.start) + DEFAULT_INDENT

        line_start = self.text.rfind("\n", 0, close) + 1
        if self.text[line_start:close].strip() == "":
            # closing brace sits on its own line
            self._edits.append(_Edit(line_start, line_start, f"{indent}{key} = {literal}{nl}"))
        else:
            tail = f"{nl}{self.line_indent(table.start)}"
            self._edits.append(_Edit(close, close, f"{nl}{indent}{key} = {literal}{tail}"))

    def remove(self, entry: Entry) -> None:
        text = self.text
        line_start = text.rfind("\n", 0, entry.start) + 1
        end = entry.end
        while end < len(text) and text[end] in " \t":
            end += 1
        if end < len(text) and text[end] == ";":
            end += 1
            while end < len(text) and text[end] in " \t":
                end += 1

        own_line = text[line_start:entry.start].strip() == ""
        at_eol = end >= len(text) or text[end] in "\r\n"
        if own_line and at_eol:
            if text.startswith("\r\n", end):
                end += 2
            elif end < len(text) and text[end] == "\n":
                end += 1
            self._edits.append(_Edit(line_start, end, ""))
        else:
            self._edits.append(_Edit(entry.start, end, ""))

    def set_value(self, key: str, literal: str, table: HashtableNode | None = None) -> None:
        target = table or self.root
        entry = target.get(key)
        if entry is None:
            self.insert(target, key, literal)
        else:
            self.replace(entry.value, literal)

    def commit(self) -> bool:
        """Apply pending edits (descending offsets) and re-parse. True if text changed."""
        if not self._edits:
            return False
        edits = sorted(self._edits, key=lambda e: (e.start, e.end), reverse=True)
        self._edits = []

        text = self.text
        floor = len(text) + 1
        for e in edits:
            if e.end > floor:
                raise ValueError("overlapping manifest edits")
            text = text[:e.start] + e.text + text[e.end:]
            floor = e.start

        changed = text != self.text
        self.text = text
        self.root = parse(text)
        return changed

    # ----- PSData -----

    def ensure_psdata(self, parent_key: str | None = None) -> Optional[HashtableNode]:
        """
        Return PrivateData.PSData (or its `parent_key` sub-table), creating
        missing hashtables. None when an existing hop is not a hashtable.
        """
        nl = self.newline

        private = self.root.get(PRIVATE_DATA)
        if private is None:
            indent = self._child_indent(self.root)
            self.insert(
                self.root,
                PRIVATE_DATA,
                "@{" + nl + indent + DEFAULT_INDENT + f"{PSDATA} = @{{}}" + nl + indent + "}",
            )
            self.commit()
            private = self.root.get(PRIVATE_DATA)
        if private is None or not isinstance(private.value, HashtableNode):
            return None

        psdata = private.value.get(PSDATA)
        if psdata is None:
            self.insert(private.value, PSDATA, "@{}")
            self.commit()
            private = self.root.get(PRIVATE_DATA)
            psdata = private.value.get(PSDATA) if isinstance(private.value, HashtableNode) else None
        if psdata is None or not isinstance(psdata.value, HashtableNode):
            return None

        if parent_key is None:
            return psdata.value

        sub = psdata.value.get(parent_key)
        if sub is None:
            self.insert(psdata.value, parent_key, "@{}")
            self.commit()
            return self.table(PRIVATE_DATA, PSDATA, parent_key)
        if not isinstance(sub.value, HashtableNode):
            return None
        return sub.value

    def psdata(self, parent_key: str | None = None) -> Optional[HashtableNode]:
        keys = [PRIVATE_DATA, PSDATA] + ([parent_key] if parent_key else [])
        return self.table(*keys)

    def _child_indent(self, table: HashtableNode) -> str:
        if table.entries:
            return " " * self.column(table.entries[0].key_start)
        return self.line_indent(table.start) + DEFAULT_INDENT


# ---------------------------------------------------------------------
# File-level API
#
# Reads return None when the file is missing, malformed, or the value has
# a different shape. Writes return True only when the file changed, and
# never raise for a bad document: callers probe manifests speculatively.
# ---------------------------------------------------------------------

def _write(path: str | Path, mutate) -> bool:
    doc = ManifestDocument.load(path)
    if doc is None:
        return False
    original = doc.text
    try:
        if mutate(doc) is False:
            return False
        doc.commit()
        if doc.text == original:
            return False
        doc.save()
        return True
    except (ManifestSyntaxError, ValueError, OSError) as e:
        logger.warning("Manifest edit failed for %s: %s", path, e)
        return False


# ----- top level: reads -----

def get_top_level_string(path: str | Path, key: str) -> Optional[str]:
    doc = ManifestDocument.load(path)
    if doc is None:
        return None
    entry = doc.entry(key)
    return _string_of(entry.value) if entry else None


def get_top_level_string_array(path: str | Path, key: str) -> Optional[List[str]]:
    doc = ManifestDocument.load(path)
    if doc is None:
        return None
    entry = doc.entry(key)
    return _string_array_of(entry.value) if entry else None


def get_export_list(path: str | Path, key: str) -> ExportList:
    values = get_top_level_string_array(path, key)
    if values is None:
        return ExportList(state="absent")
    if values == ["*"]:
        return ExportList(state="wildcard", values=("*",))
    return ExportList(state="explicit", values=tuple(values))


def get_required_modules(path: str | Path) -> Optional[List[RequiredModule]]:
    doc = ManifestDocument.load(path)
    if doc is None:
        return None
    entry = doc.entry("RequiredModules")
    if entry is None:
        return []
    return _required_modules_of(entry.value)


# ----- top level: writes -----

def set_top_level_string(path: str | Path, key: str, value: str) -> bool:
    return _write(path, lambda doc: doc.set_value(key, quote(value)))


def set_top_level_module_version(path: str | Path, version: str) -> bool:
    return set_top_level_string(path, "ModuleVersion", version)


def set_top_level_string_array(path: str | Path, key: str, values: Sequence[str]) -> bool:
    return _write(path, lambda doc: doc.set_value(key, render_string_array(values)))


def add_to_top_level_string_array(path: str | Path, key: str, item: str) -> bool:
    current = get_top_level_string_array(path, key) or []
    if any(v.lower() == item.lower() for v in current):
        return False
    return set_top_level_string_array(path, key, [*current, item])


def remove_from_top_level_string_array(path: str | Path, key: str, item: str) -> bool:
    current = get_top_level_string_array(path, key)
    if current is None:
        return False
    kept = [v for v in current if v.lower() != item.lower()]
    if len(kept) == len(current):
        return False
    return set_top_level_string_array(path, key, kept)


def remove_top_level_key(path: str | Path, key: str) -> bool:
    def mutate(doc: ManifestDocument):
        entry = doc.entry(key)
        if entry is None:
            return False
        doc.remove(entry)

    return _write(path, mutate)


def set_top_level_hashtable_string_array(
    path: str | Path,
    key: str,
    values: Mapping[str, Sequence[str]],
) -> bool:
    """Write `key = @{ 'Name' = @('a', 'b') ... }`, one name per line, sorted."""
    def mutate(doc: ManifestDocument):
        nl = doc.newline
        indent = doc._child_indent(doc.root)
        inner = indent + DEFAULT_INDENT
        lines = ["@{"]
        for name in sorted(values, key=str.lower):
            items = list(values[name])
            literal = quote("*") if items == ["*"] else render_string_array(items)
            lines.append(f"{inner}{quote(name)} = {literal}")
        lines.append(indent + "}")
        doc.set_value(key, nl.join(lines))

    return _write(path, mutate)


def set_required_modules(path: str | Path, modules: Sequence[RequiredModule]) -> bool:
    return _write(path, lambda doc: doc.set_value("RequiredModules", render_required_modules(modules)))


def upsert_required_module(path: str | Path, module: RequiredModule) -> bool:
    current = get_required_modules(path)
    if current is None:
        return False
    wanted = module.module_name.lower()
    replaced = False
    updated: List[RequiredModule] = []
    for m in current:
        if m.module_name.lower() == wanted:
            if not replaced:
                updated.append(module)
                replaced = True
            continue
        updated.append(m)
    if not replaced:
        updated.append(module)
    return set_required_modules(path, updated)


def remove_required_module(path: str | Path, module_name: str) -> bool:
    current = get_required_modules(path)
    if current is None:
        return False
    kept = [m for m in current if m.module_name.lower() != module_name.lower()]
    if len(kept) == len(current):
        return False
    return set_required_modules(path, kept)


# ----- PrivateData.PSData -----

def get_nested_string(path: str | Path, parent_key: str | None, key: str) -> Optional[str]:
    doc = ManifestDocument.load(path)
    if doc is None:
        return None
    table = doc.psdata(parent_key)
    entry = table.get(key) if table else None
    return _string_of(entry.value) if entry else None


def get_nested_string_array(path: str | Path, parent_key: str | None, key: str) -> Optional[List[str]]:
    doc = ManifestDocument.load(path)
    if doc is None:
        return None
    table = doc.psdata(parent_key)
    entry = table.get(key) if table else None
    return _string_array_of(entry.value) if entry else None


def get_nested_bool(path: str | Path, parent_key: str | None, key: str) -> Optional[bool]:
    doc = ManifestDocument.load(path)
    if doc is None:
        return None
    table = doc.psdata(parent_key)
    entry = table.get(key) if table else None
    if entry is None or not isinstance(entry.value, BoolNode):
        return None
    return entry.value.value


def _set_nested(path: str | Path, parent_key: str | None, key: str, literal: str) -> bool:
    def mutate(doc: ManifestDocument):
        table = doc.ensure_psdata(parent_key)
        if table is None:
            return False
        doc.set_value(key, literal, table)

    return _write(path, mutate)


def set_nested_string(path: str | Path, parent_key: str | None, key: str, value: str) -> bool:
    return _set_nested(path, parent_key, key, quote(value))


def set_nested_string_array(path: str | Path, parent_key: str | None, key: str, values: Sequence[str]) -> bool:
    return _set_nested(path, parent_key, key, render_string_array(values))


def set_nested_bool(path: str | Path, parent_key: str | None, key: str, value: bool) -> bool:
    return _set_nested(path, parent_key, key, render_bool(value))


def set_nested_hashtable_array(
    path: str | Path,
    parent_key: str | None,
    key: str,
    items: Iterable[Mapping[str, str]],
) -> bool:
    return _set_nested(path, parent_key, key, render_hashtable_array(items))


def remove_nested_key(path: str | Path, parent_key: str | None, key: str) -> bool:
    def mutate(doc: ManifestDocument):
        table = doc.psdata(parent_key)
        entry = table.get(key) if table else None
        if entry is None:
            return False
        doc.remove(entry)

    return _write(path, mutate)
