# planner.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .collaborators import ModuleInfo, ModuleRepository
from .errors import ConfigurationError
from .manifest import RequiredModule
from .model import (
    DEFAULT_VERSION_FALLBACK,
    SYMBOLIC_VERSIONS,
    ArtefactSegment,
    BuildLibrariesSegment,
    BuildSegment,
    CommandSegment,
    CompatibilitySegment,
    DeliveryOptions,
    DependencyKind,
    DocumentationSegment,
    FileConsistencySegment,
    FormattingSegment,
    ImportModulesSegment,
    InformationSegment,
    InstallStrategy,
    LegacyFlatHandling,
    ManifestSegment,
    ModuleSegment,
    ModuleSkipSegment,
    OptionsSegment,
    PlaceholderOptionSegment,
    PlaceholderSegment,
    Plan,
    PublishSegment,
    RequiredModuleDraft,
    SigningOptions,
    Spec,
    TestSegment,
    ValidationSegment,
)
from .versioning import compare_versions, is_auto_version, read_manifest_version, step_version

logger = logging.getLogger(__name__)


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    seen: Set[str] = set()
    out: List[str] = []
    for v in values:
        v = (v or "").strip()
        if v and v.lower() not in seen:
            seen.add(v.lower())
            out.append(v)
    return tuple(out)


def _is_symbolic(value: str | None) -> bool:
    return bool(value) and value.strip().lower() in SYMBOLIC_VERSIONS


def _is_auto_guid(value: str | None) -> bool:
    return bool(value) and value.strip().lower() == "auto"


def _overlay(current, incoming):
    """
    Field-by-field merge of two frozen segments of the same type.
    Incoming values win when they are set (not None, not an empty string,
    not an empty tuple/mapping).
    """
    if current is None:
        return incoming
    changes = {}
    for f in fields(incoming):
        value = getattr(incoming, f.name)
        if value is None or value == "" or value == () or value == {}:
            continue
        changes[f.name] = value
    return replace(current, **changes)


# ---------------------------------------------------------------------
# Compiler state
# ---------------------------------------------------------------------

@dataclass
class CompilerContext:
    """Everything accumulated while scanning segments, in one place."""
    spec: Spec
    log: logging.Logger

    manifest: Optional[ManifestSegment] = None
    build: BuildSegment = field(default_factory=BuildSegment)
    libraries: BuildLibrariesSegment = field(default_factory=BuildLibrariesSegment)
    preserve_versions: List[str] = field(default_factory=list)

    merge_set: bool = False
    merge_missing_set: bool = False
    resolve_online_set: bool = False

    required: List[RequiredModuleDraft] = field(default_factory=list)
    packaging: List[RequiredModuleDraft] = field(default_factory=list)
    external: List[str] = field(default_factory=list)
    approved: List[str] = field(default_factory=list)
    commands: Dict[str, List[str]] = field(default_factory=dict)

    skip_modules: List[str] = field(default_factory=list)
    skip_functions: List[str] = field(default_factory=list)
    skip_force: bool = False
    skip_fail_on_missing: bool = False
    skip_seen: bool = False

    information: Optional[InformationSegment] = None
    documentation: Optional[DocumentationSegment] = None
    formatting: Optional[FormattingSegment] = None
    compatibility: Optional[CompatibilitySegment] = None
    file_consistency: Optional[FileConsistencySegment] = None
    validation: Optional[ValidationSegment] = None
    import_modules: Optional[ImportModulesSegment] = None
    placeholders: List[PlaceholderSegment] = field(default_factory=list)
    skip_builtin_placeholders: bool = False
    delivery: Optional[DeliveryOptions] = None
    signing: Optional[SigningOptions] = None

    tests: List[TestSegment] = field(default_factory=list)
    artefacts: List[ArtefactSegment] = field(default_factory=list)
    publishes: List[PublishSegment] = field(default_factory=list)

    warnings: List[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.log.warning(message)
        self.warnings.append(message)


def _upsert(drafts: List[RequiredModuleDraft], draft: RequiredModuleDraft) -> None:
    # last declaration wins, keeping the first position
    for i, d in enumerate(drafts):
        if d.key == draft.key:
            drafts[i] = draft
            return
    drafts.append(draft)


# ---------------------------------------------------------------------
# Segment scan
# ---------------------------------------------------------------------

def _apply_segment(ctx: CompilerContext, seg) -> None:
    if isinstance(seg, ManifestSegment):
        ctx.manifest = _overlay(ctx.manifest, seg)

    elif isinstance(seg, BuildSegment):
        if seg.merge is not None:
            ctx.merge_set = True
        if seg.merge_missing is not None:
            ctx.merge_missing_set = True
        if seg.resolve_missing_modules_online is not None:
            ctx.resolve_online_set = True
        ctx.preserve_versions.extend(seg.preserve_install_versions)
        ctx.build = _overlay(ctx.build, replace(seg, preserve_install_versions=()))

    elif isinstance(seg, BuildLibrariesSegment):
        ctx.libraries = _overlay(ctx.libraries, seg)

    elif isinstance(seg, ModuleSegment):
        draft = seg.module
        name = (draft.name or "").strip()
        if not name:
            return
        draft = replace(draft, name=name)
        if seg.dependency == DependencyKind.APPROVED:
            ctx.approved.append(name)
        elif seg.dependency == DependencyKind.EXTERNAL:
            if name.lower() not in {e.lower() for e in ctx.external}:
                ctx.external.append(name)
            # imported at runtime, never bundled
            _upsert(ctx.required, draft)
        else:
            _upsert(ctx.required, draft)
            _upsert(ctx.packaging, draft)

    elif isinstance(seg, CommandSegment):
        module_name = (seg.module_name or "").strip()
        if not module_name or not seg.command_names:
            return
        key = next((k for k in ctx.commands if k.lower() == module_name.lower()), module_name)
        current = ctx.commands.setdefault(key, [])
        ctx.commands[key] = list(_dedupe([*current, *seg.command_names]))

    elif isinstance(seg, ModuleSkipSegment):
        ctx.skip_seen = True
        ctx.skip_modules.extend(seg.ignore_module_names)
        ctx.skip_functions.extend(seg.ignore_function_names)
        ctx.skip_force = ctx.skip_force or seg.force
        ctx.skip_fail_on_missing = ctx.skip_fail_on_missing or seg.fail_on_missing_commands

    elif isinstance(seg, InformationSegment):
        ctx.information = seg
    elif isinstance(seg, DocumentationSegment):
        ctx.documentation = seg
    elif isinstance(seg, CompatibilitySegment):
        ctx.compatibility = seg
    elif isinstance(seg, FileConsistencySegment):
        ctx.file_consistency = seg
    elif isinstance(seg, ValidationSegment):
        ctx.validation = seg
    elif isinstance(seg, ImportModulesSegment):
        ctx.import_modules = _overlay(ctx.import_modules, seg)
    elif isinstance(seg, FormattingSegment):
        ctx.formatting = _overlay(ctx.formatting, seg)

    elif isinstance(seg, PlaceholderSegment):
        if seg.find or seg.replace:
            ctx.placeholders.append(seg)
    elif isinstance(seg, PlaceholderOptionSegment):
        ctx.skip_builtin_placeholders = ctx.skip_builtin_placeholders or seg.skip_builtin_replacements

    elif isinstance(seg, OptionsSegment):
        if seg.delivery is not None and seg.delivery.enable:
            ctx.delivery = seg.delivery
        if seg.signing is not None:
            ctx.signing = seg.signing

    elif isinstance(seg, TestSegment):
        if seg.tests_path:
            ctx.tests.append(seg)
    elif isinstance(seg, ArtefactSegment):
        ctx.artefacts.append(seg)
    elif isinstance(seg, PublishSegment):
        ctx.publishes.append(seg)

    else:
        raise ConfigurationError(f"Unknown segment type: {type(seg).__name__}")


# ---------------------------------------------------------------------
# Required modules
# ---------------------------------------------------------------------

def _resolve_symbolic(value: str | None, available: str | None) -> str | None:
    if _is_symbolic(value):
        return available
    return value.strip() if value and value.strip() else None


def _draft_fingerprint(drafts: Sequence[RequiredModuleDraft]) -> List[Tuple[str, ...]]:
    def norm(v: str | None) -> str:
        return (v or "").strip().upper()

    return sorted(
        (norm(d.name), norm(d.module_version), norm(d.required_version), norm(d.maximum_version), norm(d.guid))
        for d in drafts
    )


def resolve_required_modules(
    drafts: Sequence[RequiredModuleDraft],
    repository: Optional[ModuleRepository],
    *,
    resolve_online: bool,
    warn_if_outdated: bool,
    prerelease: bool = False,
    repository_name: str | None = None,
    log: logging.Logger | None = None,
) -> Tuple[RequiredModule, ...]:
    """
    Turn drafts into concrete RequiredModule entries. auto/latest values take
    the installed version, or the latest online one when online resolution
    is on. Anything that stays unresolved is dropped with one warning.
    """
    log = log or logger
    if not drafts:
        return ()

    installed: Dict[str, Optional[ModuleInfo]] = {}
    online: Dict[str, Optional[ModuleInfo]] = {}
    for d in drafts:
        if d.key in installed:
            continue
        installed[d.key] = repository.installed(d.name) if repository else None
        wants_online = warn_if_outdated or (resolve_online and installed[d.key] is None and d.is_symbolic)
        if repository and wants_online:
            online[d.key] = repository.find_latest(d.name, repository=repository_name, prerelease=prerelease)

    unresolved_version: List[str] = []
    unresolved_guid: List[str] = []
    resolved_online: List[str] = []
    out: List[RequiredModule] = []

    for d in drafts:
        local = installed.get(d.key)
        remote = online.get(d.key)
        available_version = local.version if local else None
        available_guid = local.guid if local else None
        if resolve_online and remote is not None:
            if not available_version and remote.version:
                available_version = remote.version
                resolved_online.append(d.name)
            if not available_guid and remote.guid:
                available_guid = remote.guid

        required = _resolve_symbolic(d.required_version, available_version)
        module_version = _resolve_symbolic(d.module_version, available_version)
        maximum = _resolve_symbolic(d.maximum_version, available_version)
        guid = available_guid if _is_auto_guid(d.guid) else (d.guid.strip() if d.guid else None)

        if (_is_symbolic(d.required_version) and not required) or (
            _is_symbolic(d.module_version) and not module_version
        ) or (_is_symbolic(d.maximum_version) and not maximum):
            unresolved_version.append(d.name)
        if _is_auto_guid(d.guid) and not guid:
            unresolved_guid.append(d.name)

        # RequiredVersion is exact, so a minimum would be redundant
        if required:
            module_version = None

        out.append(
            RequiredModule(
                module_name=d.name,
                module_version=module_version,
                required_version=required,
                maximum_version=maximum,
                guid=guid,
            )
        )

    if resolved_online:
        log.info("Resolved RequiredModules from repository without installing: %s", ", ".join(sorted(resolved_online, key=str.lower)))

    if warn_if_outdated:
        outdated = []
        for d in drafts:
            local, remote = installed.get(d.key), online.get(d.key)
            declared = d.required_version or d.module_version
            latest = remote.version if remote else (local.version if local else None)
            if declared and not _is_symbolic(declared) and latest and compare_versions(latest, declared) > 0:
                outdated.append(f"{d.name} ({declared} -> {latest})")
        if outdated:
            log.warning("RequiredModules outdated: %s", ", ".join(sorted(set(outdated), key=str.lower)))

    if unresolved_version:
        hint = (
            "Online resolution did not return a version."
            if resolve_online
            else "The module is not installed and online resolution is disabled."
        )
        log.warning(
            "RequiredModules use auto/latest but no version could be resolved for: %s. %s",
            ", ".join(sorted(set(unresolved_version), key=str.lower)),
            hint,
        )
    if unresolved_guid:
        log.warning(
            "RequiredModules use Guid=auto but the module is not installed: %s",
            ", ".join(sorted(set(unresolved_guid), key=str.lower)),
        )
    return tuple(out)


def walk_dependent_modules(
    required: Sequence[RequiredModule],
    approved: Sequence[str],
    repository: Optional[ModuleRepository],
) -> Tuple[str, ...]:
    """Modules required by the required modules, transitively. Each name is visited once."""
    if repository is None:
        return ()
    covered = {m.module_name.lower() for m in required} | {a.lower() for a in approved}
    visited: Set[str] = set()
    found: List[str] = []
    stack = [m.module_name for m in reversed(required)]

    while stack:
        name = stack.pop()
        if name.lower() in visited:
            continue
        visited.add(name.lower())
        info = repository.installed(name)
        if info is None:
            continue
        for dep in info.required_modules:
            key = dep.lower()
            if key in visited:
                continue
            if key not in covered and key not in {f.lower() for f in found}:
                found.append(dep)
            stack.append(dep)
    return tuple(found)


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def compile_plan(
    spec: Spec,
    *,
    repository: ModuleRepository | None = None,
    logger: logging.Logger | None = None,
) -> Plan:
    log = logger or logging.getLogger(__name__)

    name = (spec.name or "").strip()
    if not name:
        raise ConfigurationError("Module name is required")
    source = (spec.source_path or "").strip()
    if not source:
        raise ConfigurationError("Source path is required", module=name)
    project_root = os.path.abspath(source)

    ctx = CompilerContext(spec=spec, log=log)
    for seg in spec.segments:
        if seg is not None:
            _apply_segment(ctx, seg)

    b = ctx.build
    lib = ctx.libraries
    man = ctx.manifest
    psd1 = os.path.join(project_root, f"{name}.psd1")

    # ----- version -----
    expected = (man.module_version if man and man.module_version else None) or spec.version
    if is_auto_version(expected):
        found = read_manifest_version(psd1)
        if found:
            expected = found
        else:
            ctx.warn(
                f"Version is 'auto' but ModuleVersion could not be read from {psd1}; "
                f"falling back to {DEFAULT_VERSION_FALLBACK}"
            )
            expected = DEFAULT_VERSION_FALLBACK
    expected = expected.strip()
    baseline = read_manifest_version(psd1) if b.local_version else None
    resolved = step_version(expected, baseline)
    prerelease = man.prerelease if man and man.prerelease else None

    # ----- binaries -----
    export_assemblies = _dedupe(lib.export_assemblies)
    if not export_assemblies:
        inferred = (b.binary_conflicts_project_name or lib.project_name or "").strip()
        if inferred:
            export_assemblies = (inferred,)

    csproj = spec.csproj_path
    if not csproj and lib.net_project_path:
        project_name = lib.project_name or name
        candidate = lib.net_project_path
        if not candidate.lower().endswith(".csproj"):
            candidate = os.path.join(candidate, f"{project_name}.csproj")
        csproj = candidate if os.path.isabs(candidate) else os.path.join(project_root, candidate)

    # ----- install policy -----
    inst = spec.install
    install_enabled = inst.enabled if inst and inst.enabled is not None else True
    strategy = (inst.strategy if inst and inst.strategy else None) or b.install_strategy or InstallStrategy.AUTO_REVISION
    keep = inst.keep if inst and inst.keep is not None else (b.install_keep if b.install_keep is not None else 3)
    keep = max(1, int(keep))
    legacy = b.legacy_flat_handling or LegacyFlatHandling.WARN
    preserve = _dedupe(ctx.preserve_versions)
    roots = _dedupe(inst.roots) if inst else ()

    # ----- required modules -----
    resolve_online = bool(b.resolve_missing_modules_online)
    if not ctx.resolve_online_set and any(d.is_symbolic for d in ctx.required):
        resolve_online = True
        log.info("Online module resolution not set; enabling because RequiredModules use auto/latest or Guid=auto.")

    resolve_kwargs = dict(
        resolve_online=resolve_online,
        warn_if_outdated=bool(b.warn_if_required_modules_outdated),
        prerelease=bool(b.install_missing_modules_prerelease),
        repository_name=b.install_missing_modules_repository,
        log=log,
    )
    required = resolve_required_modules(ctx.required, repository, **resolve_kwargs)
    if _draft_fingerprint(ctx.required) == _draft_fingerprint(ctx.packaging):
        packaging = required
    else:
        packaging = resolve_required_modules(ctx.packaging, repository, **resolve_kwargs)

    approved = _dedupe(ctx.approved)
    dependent = walk_dependent_modules(required, approved, repository)

    module_skip = None
    if ctx.skip_seen:
        module_skip = ModuleSkipSegment(
            ignore_module_names=_dedupe(ctx.skip_modules),
            ignore_function_names=_dedupe(ctx.skip_functions),
            force=ctx.skip_force,
            fail_on_missing_commands=ctx.skip_fail_on_missing,
        )

    # ----- feature switches -----
    refresh_only = bool(b.refresh_psd1_only)
    merge = bool(b.merge)
    merge_missing = bool(b.merge_missing)
    sign = bool(b.sign_merged)
    install_missing = bool(b.install_missing_modules)
    documentation = ctx.documentation
    compatibility = ctx.compatibility
    file_consistency = ctx.file_consistency
    validation = ctx.validation
    import_modules = ctx.import_modules
    tests = tuple(ctx.tests)
    artefacts = tuple(a for a in ctx.artefacts if a.enabled)
    publishes = tuple(p for p in ctx.publishes if p.enabled)

    if refresh_only:
        for label, active in (
            ("merge", merge),
            ("merge missing", merge_missing),
            ("signing", sign),
            ("install", install_enabled),
            ("install missing modules", install_missing),
            ("documentation", documentation is not None),
            ("compatibility", compatibility is not None),
            ("file consistency", file_consistency is not None),
            ("validation", validation is not None),
            ("import modules", import_modules is not None),
            ("tests", bool(tests)),
            ("artefacts", bool(artefacts)),
            ("publishing", bool(publishes)),
        ):
            if active:
                log.info("Refresh-only mode: disabling %s for this run.", label)
        merge = merge_missing = sign = install_enabled = install_missing = False
        documentation = compatibility = file_consistency = validation = import_modules = None
        tests = artefacts = publishes = ()
        csproj = None
    else:
        if not ctx.merge_set:
            merge = True
            log.info("Merge not set; enabling by default.")
        if not ctx.merge_missing_set and not merge_missing and approved:
            merge_missing = True
            log.info("Merge missing not set; enabling because approved modules are configured.")

    staging_generated = spec.staging_path is None

    build_spec = replace(
        spec,
        name=name,
        source_path=project_root,
        version=resolved,
        csproj_path=csproj,
        configuration=lib.configuration or spec.configuration or "Release",
        frameworks=lib.frameworks or spec.frameworks,
        author=(man.author if man and man.author else spec.author),
        company_name=(man.company_name if man and man.company_name else spec.company_name),
        description=(man.description if man and man.description else spec.description),
        tags=(man.tags if man and man.tags else spec.tags),
        icon_uri=(man.icon_uri if man and man.icon_uri else spec.icon_uri),
        project_uri=(man.project_uri if man and man.project_uri else spec.project_uri),
        compatible_editions=(man.compatible_editions if man and man.compatible_editions else spec.compatible_editions),
    )

    return Plan(
        module_name=name,
        project_root=project_root,
        expected_version=expected,
        resolved_version=resolved,
        prerelease=prerelease,
        build_spec=build_spec,
        manifest=man,
        information=ctx.information,
        required_modules=required,
        required_modules_for_packaging=packaging,
        external_module_dependencies=_dedupe(ctx.external),
        approved_modules=approved,
        dependent_modules=dependent,
        command_module_dependencies={k: tuple(v) for k, v in ctx.commands.items() if v},
        module_skip=module_skip,
        documentation=documentation,
        formatting=ctx.formatting,
        compatibility=compatibility,
        file_consistency=file_consistency,
        validation=validation,
        import_modules=import_modules,
        placeholders=tuple(ctx.placeholders),
        placeholder_option=PlaceholderOptionSegment(skip_builtin_replacements=True) if ctx.skip_builtin_placeholders else None,
        delivery=ctx.delivery,
        signing=ctx.signing,
        tests=tests,
        artefacts=artefacts,
        publishes=publishes,
        install_enabled=install_enabled,
        install_strategy=strategy,
        install_keep=keep,
        install_roots=roots,
        install_legacy_flat_handling=legacy,
        install_preserve_versions=preserve,
        install_missing_modules=install_missing,
        install_missing_modules_force=bool(b.install_missing_modules_force) and install_missing,
        install_missing_modules_prerelease=bool(b.install_missing_modules_prerelease) and not refresh_only,
        install_missing_modules_repository=b.install_missing_modules_repository,
        resolve_missing_modules_online=resolve_online,
        warn_if_required_modules_outdated=bool(b.warn_if_required_modules_outdated),
        merge_module=merge,
        merge_missing=merge_missing,
        sign_module=sign,
        refresh_manifest_only=refresh_only,
        export_assemblies=export_assemblies,
        disable_binary_cmdlet_scan=bool(lib.disable_binary_cmdlet_scan),
        staging_was_generated=staging_generated,
        delete_generated_staging_after_run=staging_generated and not spec.keep_staging,
        warnings=tuple(ctx.warnings),
    )
