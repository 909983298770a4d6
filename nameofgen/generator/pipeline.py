"""One generation pass: markers in, emission units and diagnostics out."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum

from dataclasses_json import DataClassJsonMixin

from .accessibility import is_exposed
from .containers import build_containers
from .csharp import CORE_HINT_NAME, hint_name, render, render_core, type_identity
from .identifiers import is_valid_identifier
from .markers import MarkerError, parse_marker
from .members import extract_member_names
from .resolver import BoundTarget, SymbolResolver
from .source import SourceProgram
from .types import (
    AccessModifier,
    Diagnostic,
    EmissionUnit,
    Exposure,
    ResolvedType,
    Severity,
    TargetDescriptor,
    Tier,
    TypeKind,
)

logger = logging.getLogger(__name__)

UNSUPPORTED_SHAPE = "NAMEOF001"
RESOLUTION_EXHAUSTED = "NAMEOF002"
SYNTHESIS_FAILURE = "NAMEOF003"

# Arity markers, nested separators, array/pointer/by-ref syntax and type arguments
_UNSUPPORTED_CHARACTERS = frozenset("`+[]*&,<>")

# Kinds that assembly-wide markers enable
_ENABLED_KINDS = frozenset([TypeKind.CLASS, TypeKind.STRUCT])

_ATTRIBUTE_BRACKETS = re.compile(r"^\s*\[\s*(?:assembly\s*:\s*)?(.*?)\s*\]\s*$", re.DOTALL)

_CORE_KEY = "<core>"


class TargetStatus(StrEnum):
    EMITTED = "emitted"
    EMPTY = "empty"
    DUPLICATE = "duplicate"
    UNSUPPORTED = "unsupported"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


def is_supported_full_name(full_name: str) -> bool:
    """Check if a textual request names a plain top-level type, e.g. Ns.Type."""
    if not full_name or _UNSUPPORTED_CHARACTERS.intersection(full_name):
        return False
    return all(is_valid_identifier(part) for part in full_name.split("."))


@dataclass
class GeneratorOptions:
    """Settings shared by every target of a pass."""

    access: AccessModifier = AccessModifier.PUBLIC
    exposure: Exposure = Exposure.CHAIN
    jobs: int = 1
    emit_core: bool = True


@dataclass(frozen=True)
class TargetReport(DataClassJsonMixin):
    """What happened to one descriptor."""

    target: str
    status: TargetStatus
    tier: Tier | None = None
    module: str | None = None
    member_count: int = 0
    container_count: int = 0
    hint_name: str | None = None


@dataclass
class PassResult:
    units: list[EmissionUnit] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    reports: list[TargetReport] = field(default_factory=list)


class EmissionRegistry:
    """Targets and unit identities already taken, shared by concurrent passes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: set[str] = set()
        self._identities: set[str] = set()

    def claim(self, key: str) -> bool:
        """Insert key if absent. Returns False when someone else has it."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def claim_identity(self, identity: str) -> str:
        """Reserve a unit identity, appending _2, _3, ... on collisions."""
        with self._lock:
            candidate = identity
            index = 2
            while candidate in self._identities:
                candidate = f"{identity}_{index}"
                index += 1
            self._identities.add(candidate)
            return candidate


@dataclass
class _Job:
    position: int
    descriptor: TargetDescriptor
    target: BoundTarget | None = None
    resolved: ResolvedType | None = None
    error: Exception | None = None


def _unresolved_message(descriptor: TargetDescriptor) -> str:
    if descriptor.is_textual:
        where = descriptor.anchor if descriptor.anchor is not None else descriptor.module
        return (
            f'Could not resolve runtime type "{descriptor.full_name}" using inAssemblyOf '
            f'"{where}". No members were generated.'
        )
    return f'Could not resolve type "{descriptor.type_ref}". No members were generated.'


class GenerationPass:
    """Runs every descriptor through resolution and synthesis.

    Descriptors are independent: one failing only produces a diagnostic for
    itself. Units, diagnostics and reports come back in descriptor order.
    """

    def __init__(
        self,
        resolver: SymbolResolver,
        options: GeneratorOptions | None = None,
        registry: EmissionRegistry | None = None,
    ):
        self.resolver = resolver
        self.options = options or GeneratorOptions()
        self.registry = registry or EmissionRegistry()

    def run(self, descriptors: Iterable[TargetDescriptor]) -> PassResult:
        result = PassResult()
        if self.options.emit_core and self.registry.claim(_CORE_KEY):
            result.units.append(EmissionUnit(CORE_HINT_NAME, render_core(), "Nameof"))

        jobs = [_Job(position, d) for position, d in enumerate(descriptors)]
        outcomes: dict[int, tuple[Diagnostic | None, TargetReport]] = {}

        pending = []
        for job in jobs:
            outcome = self._bind(job)
            if outcome is not None:
                outcomes[job.position] = outcome
            else:
                pending.append(job)

        if self.options.jobs > 1 and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=self.options.jobs) as executor:
                resolved = list(executor.map(self._resolve, pending))
        else:
            resolved = [self._resolve(job) for job in pending]
        for job, value in zip(pending, resolved, strict=True):
            job.resolved = value

        for job in pending:
            unit, outcome = self._synthesize(job)
            if unit is not None:
                result.units.append(unit)
            outcomes[job.position] = outcome

        for position in sorted(outcomes):
            diagnostic, report = outcomes[position]
            if diagnostic is not None:
                result.diagnostics.append(diagnostic)
            result.reports.append(report)
        return result

    def _failure(self, job: _Job, error: Exception) -> tuple[Diagnostic, TargetReport]:
        target = str(job.descriptor)
        logger.debug("Generation failed for %s", target, exc_info=error)
        diagnostic = Diagnostic(
            SYNTHESIS_FAILURE,
            Severity.WARNING,
            f"Failed generating nameof extension for '{target}': {error}",
            target,
        )
        return diagnostic, TargetReport(target, TargetStatus.FAILED)

    def _bind(self, job: _Job) -> tuple[Diagnostic | None, TargetReport] | None:
        descriptor = job.descriptor
        target = str(descriptor)

        if descriptor.full_name is not None and not is_supported_full_name(descriptor.full_name):
            diagnostic = Diagnostic(
                UNSUPPORTED_SHAPE,
                Severity.WARNING,
                f'GenerateNameof("{descriptor.full_name}") is not supported. '
                "Only non-generic, non-nested full type names are supported",
                target,
            )
            return diagnostic, TargetReport(target, TargetStatus.UNSUPPORTED)

        try:
            job.target = self.resolver.bind(descriptor)
        except Exception as e:  # pylint: disable=broad-except
            return self._failure(job, e)

        if not self.registry.claim(job.target.key):
            logger.debug("Skipping duplicate target %s", job.target.key)
            return None, TargetReport(target, TargetStatus.DUPLICATE, module=job.target.module)
        return None

    def _resolve(self, job: _Job) -> ResolvedType | None:
        assert job.target is not None
        try:
            return self.resolver.resolve(job.target)
        except Exception as e:  # pylint: disable=broad-except
            job.error = e
            return None

    def _synthesize(
        self, job: _Job
    ) -> tuple[EmissionUnit | None, tuple[Diagnostic | None, TargetReport]]:
        descriptor = job.descriptor
        target = str(descriptor)
        resolved = job.resolved

        if job.error is not None:
            return None, self._failure(job, job.error)
        if resolved is None:
            diagnostic = Diagnostic(
                RESOLUTION_EXHAUSTED, Severity.INFO, _unresolved_message(descriptor), target
            )
            module = job.target.module if job.target is not None else None
            return None, (diagnostic, TargetReport(target, TargetStatus.UNRESOLVED, module=module))
        if resolved.in_source and not is_exposed(resolved.type):
            diagnostic = Diagnostic(
                UNSUPPORTED_SHAPE,
                Severity.WARNING,
                f"'{resolved.type.full_name}' is not accessible outside its enclosing type. "
                "Its members are named through the enclosing type's nameof extension",
                target,
            )
            report = TargetReport(target, TargetStatus.UNSUPPORTED, module=resolved.module)
            return None, (diagnostic, report)

        access = descriptor.access or self.options.access
        exposure = self.options.exposure
        try:
            identity = type_identity(resolved.type)
            source = render(resolved, access, exposure, identity)
            if source is not None:
                claimed = self.registry.claim_identity(identity)
                if claimed != identity:
                    identity = claimed
                    source = render(resolved, access, exposure, identity)
            members = extract_member_names(resolved.type)
            containers = build_containers(resolved.type, not resolved.in_source, exposure)
        except Exception as e:  # pylint: disable=broad-except
            return None, self._failure(job, e)

        report = TargetReport(
            target,
            TargetStatus.EMITTED if source is not None else TargetStatus.EMPTY,
            tier=resolved.tier,
            module=resolved.module,
            member_count=len(members),
            container_count=len(containers),
            hint_name=hint_name(identity) if source is not None else None,
        )
        if source is None:
            logger.debug("Nothing to generate for %s", target)
            return None, (None, report)

        unit = EmissionUnit(hint_name(identity), source, target, resolved.tier)
        return unit, (None, report)


def _source_markers(program: SourceProgram) -> list[TargetDescriptor]:
    descriptors: list[TargetDescriptor] = []
    for found in program.markers:
        declared = found.declared_type.type_ref() if found.declared_type is not None else None
        try:
            marker = parse_marker(found.text, declared)
        except MarkerError as e:
            logger.warning("%s:%d: skipping marker: %s", found.path, found.line, e)
            continue
        if marker is None:
            continue

        if marker.descriptor is not None:
            descriptors.append(marker.descriptor)
            continue

        # Assembly-wide: every accessible class and struct of the program
        for t in program.types():
            if t.kind in _ENABLED_KINDS and is_exposed(t):
                descriptors.append(TargetDescriptor.direct(t.type_ref(), access=marker.access))
    return descriptors


def parse_extra_marker(text: str) -> TargetDescriptor:
    """Parse a marker given outside the sources, e.g. on the command line."""
    match = _ATTRIBUTE_BRACKETS.match(text)
    body = match.group(1) if match else text
    marker = parse_marker(body)
    if marker is None:
        raise MarkerError(f"{text!r} is not a GenerateNameof attribute")
    if marker.descriptor is None:
        raise MarkerError(f"{text!r} does not name a type")
    return marker.descriptor


def collect_targets(
    program: SourceProgram, extra_markers: Iterable[str] = ()
) -> list[TargetDescriptor]:
    """Descriptors from the program's markers followed by the extra ones.

    Markers accumulate; repeats are left for the pass to deduplicate.
    """
    descriptors = _source_markers(program)
    descriptors.extend(parse_extra_marker(text) for text in extra_markers)
    return descriptors
