"""Raw-metadata tier: reads ECMA-335 tables of assemblies on disk with dnfile.

Nothing from the assembly is executed. The dnfile layer only copies the
handful of columns needed into plain rows; building type records from those
rows does not depend on dnfile at all.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import dnfile

from .types import (
    NESTED_SEPARATOR,
    BinaryType,
    MemberKind,
    MemberRecord,
    Tier,
    TypeInfo,
    TypeKind,
    TypeRecord,
    TypeRef,
    Visibility,
    match_type_ref,
    split_arity,
)

if TYPE_CHECKING:
    from .runtime import ModuleLoader

logger = logging.getLogger(__name__)

# TypeAttributes
TYPE_VISIBILITY_MASK = 0x7
TYPE_INTERFACE = 0x20

# FieldAttributes.FieldAccessMask and MethodAttributes.MemberAccessMask share a layout
MEMBER_ACCESS_MASK = 0x7
METHOD_SPECIAL_NAME = 0x800

MODULE_TYPE = "<Module>"

_TYPE_VISIBILITY = {
    0: Visibility.INTERNAL,  # NotPublic
    1: Visibility.PUBLIC,
    2: Visibility.PUBLIC,  # NestedPublic
    3: Visibility.PRIVATE,
    4: Visibility.PROTECTED,
    5: Visibility.INTERNAL,
    6: Visibility.PRIVATE_PROTECTED,
    7: Visibility.PROTECTED_INTERNAL,
}

_MEMBER_ACCESS = {
    0: Visibility.PRIVATE,  # CompilerControlled
    1: Visibility.PRIVATE,
    2: Visibility.PRIVATE_PROTECTED,
    3: Visibility.INTERNAL,
    4: Visibility.PROTECTED,
    5: Visibility.PROTECTED_INTERNAL,
    6: Visibility.PUBLIC,
}

# Broadest first
_BREADTH = [
    Visibility.PUBLIC,
    Visibility.PROTECTED_INTERNAL,
    Visibility.INTERNAL,
    Visibility.PROTECTED,
    Visibility.PRIVATE_PROTECTED,
    Visibility.PRIVATE,
]

_BASE_KINDS = {
    "System.Enum": TypeKind.ENUM,
    "System.ValueType": TypeKind.STRUCT,
}

# Installation folders probed when DOTNET_ROOT and PATH give nothing
DEFAULT_DOTNET_ROOTS = [
    "/usr/share/dotnet",
    "/usr/lib/dotnet",
    "/usr/local/share/dotnet",
    "~/.dotnet",
    "C:/Program Files/dotnet",
]

ASSEMBLY_EXTENSIONS = (".dll", ".exe")


class MetadataError(RuntimeError):
    """Raised when a file is missing or carries no .NET metadata."""


@dataclass
class RawMember:
    name: str
    flags: int


@dataclass
class RawAccessorGroup:
    """A property or event together with the flags of its accessor methods."""

    name: str
    accessor_flags: list[int] = field(default_factory=list)


@dataclass
class RawTypeDef:
    """The columns of one TypeDef row that type records are built from."""

    index: int
    name: str
    namespace: str
    flags: int
    extends: str | None = None
    fields: list[RawMember] = field(default_factory=list)
    methods: list[RawMember] = field(default_factory=list)
    properties: list[RawAccessorGroup] = field(default_factory=list)
    events: list[RawAccessorGroup] = field(default_factory=list)


def type_visibility(flags: int) -> Visibility:
    return _TYPE_VISIBILITY[flags & TYPE_VISIBILITY_MASK]


def member_visibility(flags: int) -> Visibility:
    return _MEMBER_ACCESS.get(flags & MEMBER_ACCESS_MASK, Visibility.PRIVATE)


def broadest(visibilities: Iterable[Visibility]) -> Visibility:
    """The broadest of several accessor visibilities (private when there are none)."""
    found = set(visibilities)
    return next((v for v in _BREADTH if v in found), Visibility.PRIVATE)


def generic_parameter_names(arity: int) -> tuple[str, ...]:
    """Parameter names are not needed to address a type, so they are synthesized."""
    if arity == 0:
        return ()
    if arity == 1:
        return ("T",)
    return tuple(f"T{i}" for i in range(1, arity + 1))


def _type_kind(raw: RawTypeDef) -> TypeKind:
    if raw.flags & TYPE_INTERFACE:
        return TypeKind.INTERFACE
    if raw.extends in _BASE_KINDS and f"{raw.namespace}.{raw.name}" != "System.Enum":
        return _BASE_KINDS[raw.extends]
    return TypeKind.CLASS


def _members(raw: RawTypeDef) -> list[MemberRecord]:
    members = [
        MemberRecord(f.name, MemberKind.FIELD, member_visibility(f.flags)) for f in raw.fields
    ]
    members.extend(
        MemberRecord(
            m.name,
            MemberKind.METHOD,
            member_visibility(m.flags),
            special=bool(m.flags & METHOD_SPECIAL_NAME),
        )
        for m in raw.methods
    )
    for kind, groups in ((MemberKind.PROPERTY, raw.properties), (MemberKind.EVENT, raw.events)):
        members.extend(
            MemberRecord(g.name, kind, broadest(member_visibility(f) for f in g.accessor_flags))
            for g in groups
        )
    return members


def build_records(
    typedefs: Iterable[RawTypeDef], nesting: Iterable[tuple[int, int]]
) -> dict[str, TypeRecord]:
    """Assemble type records from TypeDef rows.

    nesting holds (nested index, enclosing index) pairs from the NestedClass
    table. The result is keyed by the metadata full name of every top-level
    type; nested types hang off their enclosing record.
    """
    rows = {raw.index: raw for raw in typedefs}
    enclosing = dict(nesting)

    records: dict[int, TypeRecord] = {}
    for index, raw in rows.items():
        _, arity = split_arity(raw.name)
        records[index] = TypeRecord(
            name=raw.name,
            namespace=raw.namespace or None,
            kind=_type_kind(raw),
            visibility=type_visibility(raw.flags),
            type_parameters=generic_parameter_names(arity),
            members=_members(raw),
        )

    top_level: dict[str, TypeRecord] = {}
    for index in sorted(rows):
        raw = rows[index]
        parent = enclosing.get(index)
        if parent is not None and parent in records:
            records[parent].nested.append(records[index])
        elif raw.name != MODULE_TYPE:
            name = f"{raw.namespace}.{raw.name}" if raw.namespace else raw.name
            top_level[name] = records[index]
    return top_level


def find_type(
    records: dict[str, TypeRecord], full_name: str, tier: Tier = Tier.METADATA
) -> TypeInfo | None:
    """Look up a metadata full name such as Ns.Outer+Inner`1."""
    outer, *nested = full_name.split(NESTED_SEPARATOR)
    record = records.get(outer)
    if record is None:
        return None
    return BinaryType(record, tier).find_nested(nested)


def _str(value: Any) -> str:
    value = getattr(value, "value", value)
    return "" if value is None else str(value)


def _flags(row: Any) -> int:
    return int(row.struct.Flags)


def _rows(indexes: Any) -> Iterator[Any]:
    for index in indexes or []:
        row = getattr(index, "row", None)
        if row is not None:
            yield row


def _key(index: Any) -> tuple[str, int] | None:
    table = getattr(index, "table", None)
    if table is None:
        return None
    return (table.name, index.row_index)


def _extends(row: Any) -> str | None:
    base = getattr(row.Extends, "row", None)
    if base is None or not hasattr(base, "TypeName"):
        return None
    namespace = _str(base.TypeNamespace)
    name = _str(base.TypeName)
    return f"{namespace}.{name}" if namespace else name


def _raw_tables(pe: dnfile.dnPE) -> tuple[list[RawTypeDef], list[tuple[int, int]]]:
    tables = pe.net.mdtables

    # Accessor method flags for every property and event row
    accessors: dict[tuple[str, int] | None, list[int]] = {}
    if tables.MethodSemantics is not None:
        for semantics in tables.MethodSemantics.rows:
            key = _key(semantics.Association)
            method = getattr(semantics.Method, "row", None)
            if key is not None and method is not None:
                accessors.setdefault(key, []).append(_flags(method))

    def groups(table_rows: Any, list_column: str) -> dict[int, list[RawAccessorGroup]]:
        by_parent: dict[int, list[RawAccessorGroup]] = {}
        for map_row in table_rows or []:
            by_parent.setdefault(map_row.Parent.row_index, []).extend(
                RawAccessorGroup(_str(index.row.Name), accessors.get(_key(index), []))
                for index in getattr(map_row, list_column) or []
                if index.row is not None
            )
        return by_parent

    properties = groups(tables.PropertyMap.rows if tables.PropertyMap else None, "PropertyList")
    events = groups(tables.EventMap.rows if tables.EventMap else None, "EventList")

    typedefs = []
    for position, row in enumerate(tables.TypeDef.rows if tables.TypeDef else [], start=1):
        typedefs.append(
            RawTypeDef(
                index=position,
                name=_str(row.TypeName),
                namespace=_str(row.TypeNamespace),
                flags=_flags(row),
                extends=_extends(row),
                fields=[RawMember(_str(f.Name), _flags(f)) for f in _rows(row.FieldList)],
                methods=[RawMember(_str(m.Name), _flags(m)) for m in _rows(row.MethodList)],
                properties=properties.get(position, []),
                events=events.get(position, []),
            )
        )

    nesting = [
        (nested.NestedClass.row_index, nested.EnclosingClass.row_index)
        for nested in (tables.NestedClass.rows if tables.NestedClass else [])
    ]
    return typedefs, nesting


class MetadataReader:
    """Reads and caches the type records of assembly files for one pass."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: dict[Path, dict[str, TypeRecord]] = {}

    def read(self, path: Path) -> dict[str, TypeRecord]:
        path = Path(path).resolve()
        with self._lock:
            cached = self._cache.get(path)
        if cached is not None:
            return cached

        records = self._read(path)
        with self._lock:
            return self._cache.setdefault(path, records)

    def _read(self, path: Path) -> dict[str, TypeRecord]:
        if not path.is_file():
            raise MetadataError(f"{path} does not exist")
        try:
            pe = dnfile.dnPE(str(path))
        except Exception as e:  # pylint: disable=broad-except
            raise MetadataError(f"Cannot read {path}: {e}") from e

        try:
            if pe.net is None or pe.net.mdtables is None:
                raise MetadataError(f"{path} is not a .NET assembly")
            typedefs, nesting = _raw_tables(pe)
        finally:
            pe.close()

        logger.debug("Read %d type definitions from %s", len(typedefs), path)
        return build_records(typedefs, nesting)


def _version_key(name: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", name))


def dotnet_roots() -> list[Path]:
    """Candidate .NET installation folders, most specific first."""
    candidates: list[str] = []
    if os.environ.get("DOTNET_ROOT"):
        candidates.append(os.environ["DOTNET_ROOT"])
    executable = shutil.which("dotnet")
    if executable:
        candidates.append(str(Path(executable).resolve().parent))
    candidates.extend(DEFAULT_DOTNET_ROOTS)

    roots: list[Path] = []
    for candidate in candidates:
        root = Path(candidate).expanduser()
        if root not in roots and (root / "shared").is_dir():
            roots.append(root)
    return roots


def shared_framework_dirs(root: Path) -> Iterator[Path]:
    """shared/<framework>/<version> folders under a .NET root, newest version first."""
    shared = root / "shared"
    if not shared.is_dir():
        return
    for framework in sorted(p for p in shared.iterdir() if p.is_dir()):
        versions = [p for p in framework.iterdir() if p.is_dir()]
        yield from sorted(versions, key=lambda p: _version_key(p.name), reverse=True)


class AssemblyLocator:
    """Finds the file of a module on disk, by its simple name."""

    def __init__(
        self,
        search_paths: Iterable[Path] = (),
        references: Iterable[Path] = (),
        loader: ModuleLoader | None = None,
        roots: Iterable[Path] | None = None,
    ):
        self.search_paths = [Path(p) for p in search_paths]
        self.references = [Path(p) for p in references]
        self.loader = loader
        self._roots = list(roots) if roots is not None else None

    @property
    def roots(self) -> list[Path]:
        if self._roots is None:
            self._roots = dotnet_roots()
        return self._roots

    def candidate_dirs(self, identity: str) -> Iterator[Path]:
        if self.loader is not None:
            location = self.loader.loaded_location(identity)
            if location is not None:
                yield Path(location).parent
        yield from self.search_paths

        # Folders of referenced assemblies usually hold their own dependencies too
        for reference in self.references:
            yield reference.parent

        runtime_dir = self.loader.runtime_directory() if self.loader is not None else None
        if runtime_dir is not None:
            runtime_dir = Path(runtime_dir)
            yield runtime_dir
            # shared/<framework>/<version>: the same version of sibling frameworks
            if len(runtime_dir.parents) >= 2:
                shared = runtime_dir.parents[1]
                if shared.is_dir():
                    for framework in sorted(p for p in shared.iterdir() if p.is_dir()):
                        yield framework / runtime_dir.name

        for root in self.roots:
            yield from shared_framework_dirs(root)

    def locate(self, identity: str) -> Path | None:
        for reference in self.references:
            if reference.stem == identity and reference.is_file():
                return reference

        seen: set[Path] = set()
        for directory in self.candidate_dirs(identity):
            if directory in seen:
                continue
            seen.add(directory)
            for extension in ASSEMBLY_EXTENSIONS:
                candidate = directory / f"{identity}{extension}"
                if candidate.is_file():
                    logger.debug("Located %s at %s", identity, candidate)
                    return candidate
        return None


class ReferenceSet:
    """The assemblies the program references, searchable by type."""

    def __init__(self, paths: Iterable[Path], reader: MetadataReader):
        self.paths = [Path(p) for p in paths]
        self.reader = reader

    def _types(self, path: Path) -> list[BinaryType]:
        try:
            records = self.reader.read(path)
        except MetadataError as e:
            logger.debug("Skipping reference %s: %s", path, e)
            return []

        found: list[BinaryType] = []
        pending = [BinaryType(r, Tier.METADATA) for r in records.values()]
        while pending:
            t = pending.pop()
            found.append(t)
            pending.extend(t.nested_types())
        return found

    def find(self, ref: TypeRef) -> tuple[str, str] | None:
        """Module name and metadata full name of the referenced type ref names."""
        partial_matches: list[tuple[str, str]] = []
        for path in self.paths:
            exact, partial = match_type_ref(self._types(path), ref)
            if exact:
                return path.stem, exact[0].full_name
            partial_matches.extend((path.stem, t.full_name) for t in partial)
        if len(partial_matches) == 1:
            return partial_matches[0]
        if partial_matches:
            logger.debug("%s is ambiguous among references: %s", ref, partial_matches)
        return None
