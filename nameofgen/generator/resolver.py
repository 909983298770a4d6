"""Symbol resolution across the static, loaded-module and raw-metadata tiers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .metadata import AssemblyLocator, MetadataReader, ReferenceSet, find_type
from .runtime import ModuleLoader
from .source import SourceProgram, SourceType
from .types import ARITY_MARKER, ResolvedType, TargetDescriptor, Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundTarget:
    """A descriptor tied to what it names, before any module is touched.

    key identifies the target for deduplication. A target bound to a source
    type needs nothing else; otherwise full_name and module say where the
    binary tiers should look.
    """

    key: str
    descriptor: TargetDescriptor
    source_type: SourceType | None = None
    full_name: str | None = None
    module: str | None = None


class ResolutionTier(ABC):
    """One way of introspecting a target type."""

    tier: Tier

    @abstractmethod
    def resolve(self, target: BoundTarget) -> ResolvedType | None:
        """Describe the target, or return None if this tier cannot."""


class StaticTier(ResolutionTier):
    tier = Tier.STATIC

    def __init__(self, program: SourceProgram):
        self.program = program

    def resolve(self, target: BoundTarget) -> ResolvedType | None:
        if target.source_type is None:
            return None
        return ResolvedType(Tier.STATIC, target.source_type, self.program.assembly_name)


class LoadedModuleTier(ResolutionTier):
    tier = Tier.LOADED

    def __init__(self, loader: ModuleLoader):
        self.loader = loader

    def resolve(self, target: BoundTarget) -> ResolvedType | None:
        if target.module is None or target.full_name is None:
            return None
        module = self.loader.load(target.module)
        if module is None:
            return None
        t = module.find_type(target.full_name)
        if t is None:
            logger.debug("%s has no type %s", target.module, target.full_name)
            return None
        return ResolvedType(Tier.LOADED, t, target.module)


class MetadataTier(ResolutionTier):
    tier = Tier.METADATA

    def __init__(self, locator: AssemblyLocator, reader: MetadataReader):
        self.locator = locator
        self.reader = reader

    def resolve(self, target: BoundTarget) -> ResolvedType | None:
        if target.module is None or target.full_name is None:
            return None
        path = self.locator.locate(target.module)
        if path is None:
            logger.debug("No file found for module %s", target.module)
            return None
        t = find_type(self.reader.read(path), target.full_name)
        if t is None:
            logger.debug("%s has no type %s", path, target.full_name)
            return None
        return ResolvedType(Tier.METADATA, t, target.module)


class SymbolResolver:
    """Binds descriptors and resolves them through an ordered chain of tiers."""

    def __init__(
        self,
        program: SourceProgram,
        tiers: Iterable[ResolutionTier],
        references: ReferenceSet | None = None,
    ):
        self.program = program
        self.tiers = list(tiers)
        self.references = references

    @classmethod
    def create(
        cls,
        program: SourceProgram,
        loader: ModuleLoader,
        references: Iterable[Path] = (),
        search_paths: Iterable[Path] = (),
        assembly: Path | None = None,
    ) -> SymbolResolver:
        """The standard tier chain.

        assembly is the built file of the program itself, for textual
        requests naming program types that are not declared in its sources.
        """
        reader = MetadataReader()
        files = [Path(p) for p in references]
        if assembly is not None:
            files.append(Path(assembly))
        locator = AssemblyLocator(search_paths=search_paths, references=files, loader=loader)
        return cls(
            program,
            [StaticTier(program), LoadedModuleTier(loader), MetadataTier(locator, reader)],
            ReferenceSet(files, reader),
        )

    def _key(self, module: str, full_name: str) -> str:
        return f"{module}|{full_name}"

    def _source_bound(self, descriptor: TargetDescriptor, t: SourceType) -> BoundTarget:
        return BoundTarget(
            key=self._key(self.program.assembly_name, t.full_name),
            descriptor=descriptor,
            source_type=t,
            full_name=t.full_name,
            module=self.program.assembly_name,
        )

    def _find_reference(self, descriptor: TargetDescriptor) -> tuple[str, str] | None:
        if self.references is None:
            return None
        ref = descriptor.type_ref if descriptor.type_ref is not None else descriptor.anchor
        return self.references.find(ref) if ref is not None else None

    def bind(self, descriptor: TargetDescriptor) -> BoundTarget:
        """Work out what a descriptor names and compute its deduplication key."""
        if descriptor.type_ref is not None:
            ref = descriptor.type_ref
            source_type = self.program.find_type(ref)
            if source_type is not None:
                return self._source_bound(descriptor, source_type)

            found = self._find_reference(descriptor)
            if found is not None:
                module, full_name = found
                return BoundTarget(self._key(module, full_name), descriptor, None, full_name, module)

            full_name = ref.dotted + (f"{ARITY_MARKER}{ref.arity}" if ref.arity else "")
            return BoundTarget(str(ref), descriptor, None, full_name, None)

        assert descriptor.full_name is not None
        full_name = descriptor.full_name
        module = descriptor.module
        if module is None and descriptor.anchor is not None:
            if self.program.find_type(descriptor.anchor) is not None:
                module = self.program.assembly_name
            else:
                found = self._find_reference(descriptor)
                module = found[0] if found else None

        if module == self.program.assembly_name:
            source_type = self.program.get_type_by_metadata_name(full_name)
            if source_type is not None:
                return self._source_bound(descriptor, source_type)

        if module is None:
            # Unknown anchor: key on what was written so repeats still collapse
            return BoundTarget(f"{descriptor.anchor}|{full_name}", descriptor, None, full_name)
        return BoundTarget(self._key(module, full_name), descriptor, None, full_name, module)

    def resolve(self, target: BoundTarget) -> ResolvedType | None:
        """Try every tier in order. Never raises."""
        for tier in self.tiers:
            try:
                resolved = tier.resolve(target)
            except Exception as e:  # pylint: disable=broad-except
                logger.debug("%s tier failed for %s: %r", tier.tier, target.key, e)
                continue
            if resolved is not None:
                logger.debug("Resolved %s with the %s tier", target.key, tier.tier)
                return resolved
        return None
