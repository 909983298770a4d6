"""Type definitions shared by the resolution tiers and the code generator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeVar

from dataclasses_json import DataClassJsonMixin

# Compiler-generated names (backing fields, state machines, closures) start with this
SYNTHETIC_MARKER = "<"

# Separates a metadata type name from its generic arity, e.g. "List`1"
ARITY_MARKER = "`"

# Separates nested type names in metadata full names, e.g. "Ns.Outer+Inner"
NESTED_SEPARATOR = "+"


class Visibility(StrEnum):
    """Declared accessibility of a type or member."""

    PUBLIC = "public"
    PROTECTED_INTERNAL = "protected internal"
    INTERNAL = "internal"
    PROTECTED = "protected"
    PRIVATE_PROTECTED = "private protected"
    PRIVATE = "private"


class TypeKind(StrEnum):
    """Kind of a type declaration, as far as placeholder emission cares."""

    CLASS = "class"
    STRUCT = "struct"
    INTERFACE = "interface"
    ENUM = "enum"


class MemberKind(StrEnum):
    FIELD = "field"
    PROPERTY = "property"
    EVENT = "event"
    METHOD = "method"


class Tier(StrEnum):
    """Resolution tier that produced a type description."""

    STATIC = "static"
    LOADED = "loaded"
    METADATA = "metadata"


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"


class Exposure(StrEnum):
    """How much of the nesting chain decides whether a type is exposed.

    CHAIN requires the type and every enclosing type to be broadly visible.
    DECLARED only looks at the type's own declared visibility.
    """

    CHAIN = "chain"
    DECLARED = "declared"


class AccessModifier(StrEnum):
    """Requested visibility of a generated accessor surface."""

    PUBLIC = "public"
    INTERNAL = "internal"


def split_arity(metadata_name: str) -> tuple[str, int]:
    """Split "Name`2" into ("Name", 2). Names without an arity suffix have arity 0."""
    name, marker, arity = metadata_name.partition(ARITY_MARKER)
    if not marker or not arity.isdigit():
        return metadata_name, 0
    return name, int(arity)


@dataclass(frozen=True)
class MemberRecord:
    """A single member as reported by one of the resolution tiers.

    special is set for methods the runtime treats as special names:
    constructors, property/event accessors, and operators.
    """

    name: str
    kind: MemberKind
    visibility: Visibility
    special: bool = False

    @property
    def synthesized(self) -> bool:
        return self.name.startswith(SYNTHETIC_MARKER)


@dataclass(frozen=True)
class TypeSegment:
    """One dotted segment of a type reference, with optional type arguments.

    An unbound generic such as Dictionary<,> has arguments (None, None).
    """

    name: str
    arguments: tuple[TypeRef | None, ...] = ()

    def __str__(self) -> str:
        if not self.arguments:
            return self.name
        args = ", ".join("" if a is None else str(a) for a in self.arguments)
        return f"{self.name}<{args}>"


@dataclass(frozen=True)
class TypeRef:
    """A type as written in source, e.g. global::Ns.Outer.Inner<T>."""

    segments: tuple[TypeSegment, ...]
    alias: str | None = None

    @property
    def dotted(self) -> str:
        """Dotted name without alias or type arguments."""
        return ".".join(s.name for s in self.segments)

    @property
    def arity(self) -> int:
        return len(self.segments[-1].arguments) if self.segments else 0

    def __str__(self) -> str:
        prefix = f"{self.alias}::" if self.alias else ""
        return prefix + ".".join(str(s) for s in self.segments)

    @classmethod
    def parse_dotted(cls, name: str) -> TypeRef:
        """Build a reference from a plain dotted name (no generics)."""
        alias = None
        if "::" in name:
            alias, name = name.split("::", 1)
        return cls(segments=tuple(TypeSegment(part) for part in name.split(".")), alias=alias)


@dataclass(frozen=True)
class TargetDescriptor:
    """A request to generate a name-accessor surface for one type.

    Exactly one form is populated: a direct type reference, or a textual
    full name together with an anchor (a type or an explicit module name)
    locating the binary module that owns it.
    """

    type_ref: TypeRef | None = None
    full_name: str | None = None
    anchor: TypeRef | None = None
    module: str | None = None
    access: AccessModifier | None = None

    def __post_init__(self) -> None:
        if (self.type_ref is None) == (self.full_name is None):
            raise ValueError("A target needs either a type reference or a full name")
        if self.full_name is not None and self.anchor is None and self.module is None:
            raise ValueError(f"Full name request {self.full_name!r} needs an anchor type or module")

    @classmethod
    def direct(cls, type_ref: TypeRef, access: AccessModifier | None = None) -> TargetDescriptor:
        return cls(type_ref=type_ref, access=access)

    @classmethod
    def textual(
        cls,
        full_name: str,
        anchor: TypeRef | None = None,
        module: str | None = None,
        access: AccessModifier | None = None,
    ) -> TargetDescriptor:
        return cls(full_name=full_name, anchor=anchor, module=module, access=access)

    @property
    def is_textual(self) -> bool:
        return self.full_name is not None

    def __str__(self) -> str:
        if self.type_ref is not None:
            return str(self.type_ref)
        where = str(self.anchor) if self.anchor is not None else self.module
        return f"{self.full_name} (in assembly of {where})"


class TypeInfo(ABC):
    """Uniform view over a type, whichever tier described it."""

    tier: Tier
    name: str
    namespace: str | None
    kind: TypeKind
    visibility: Visibility
    type_parameters: tuple[str, ...]
    containing: TypeInfo | None
    in_source: bool = False

    @abstractmethod
    def members(self) -> Iterable[MemberRecord]:
        """Declared members of this type (not inherited ones)."""

    @abstractmethod
    def nested_types(self) -> Iterable[TypeInfo]:
        """Types declared directly inside this type."""

    def type_constraints(self) -> dict[str, tuple[str, ...]]:
        """Constraints per declared type parameter name."""
        return {}

    @property
    def arity(self) -> int:
        return len(self.type_parameters)

    @property
    def metadata_name(self) -> str:
        return f"{self.name}{ARITY_MARKER}{self.arity}" if self.arity else self.name

    @property
    def full_name(self) -> str:
        """Metadata full name, e.g. Ns.Outer+Inner`1."""
        if self.containing is not None:
            return f"{self.containing.full_name}{NESTED_SEPARATOR}{self.metadata_name}"
        if self.namespace:
            return f"{self.namespace}.{self.metadata_name}"
        return self.metadata_name

    def chain(self) -> list[TypeInfo]:
        """Nesting chain from the outermost containing type down to this one."""
        result: list[TypeInfo] = []
        current: TypeInfo | None = self
        while current is not None:
            result.append(current)
            current = current.containing
        result.reverse()
        return result

    def ancestors(self) -> Iterator[TypeInfo]:
        current = self.containing
        while current is not None:
            yield current
            current = current.containing

    @property
    def outer_namespace(self) -> str | None:
        return self.chain()[0].namespace

    def path_segments(self) -> list[tuple[str, int]]:
        """(name, arity) pairs from the namespace down to this type."""
        namespace = self.outer_namespace
        segments = [(part, 0) for part in namespace.split(".")] if namespace else []
        segments.extend((t.name, t.arity) for t in self.chain())
        return segments

    def find_nested(self, metadata_names: Iterable[str]) -> TypeInfo | None:
        """Walk down nested types by metadata name, e.g. ["Inner`1", "Leaf"]."""
        current: TypeInfo = self
        for name in metadata_names:
            found = next((n for n in current.nested_types() if n.metadata_name == name), None)
            if found is None:
                return None
            current = found
        return current

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.full_name} ({self.tier})>"


TInfo = TypeVar("TInfo", bound=TypeInfo)


def match_type_ref(candidates: Iterable[TInfo], ref: TypeRef) -> tuple[list[TInfo], list[TInfo]]:
    """Split candidates into exact and suffix matches of a written reference.

    Suffix matches are only considered for unqualified references, where
    the written name may omit a namespace brought in by a using directive.
    """
    wanted = [(s.name, len(s.arguments)) for s in ref.segments]
    exact: list[TInfo] = []
    partial: list[TInfo] = []
    for candidate in candidates:
        segments = candidate.path_segments()
        if segments == wanted:
            exact.append(candidate)
        elif ref.alias is None and segments[-len(wanted) :] == wanted:
            partial.append(candidate)
    return exact, partial


@dataclass
class TypeRecord:
    """Tier-neutral description of a type read from a compiled module."""

    name: str
    namespace: str | None
    kind: TypeKind
    visibility: Visibility
    type_parameters: tuple[str, ...] = ()
    members: list[MemberRecord] = field(default_factory=list)
    nested: list[TypeRecord] = field(default_factory=list)


class BinaryType(TypeInfo):
    """A type described from a compiled module, by reflection or by metadata."""

    def __init__(self, record: TypeRecord, tier: Tier, containing: BinaryType | None = None):
        self.record = record
        self.tier = tier
        self.name, _ = split_arity(record.name)
        self.namespace = record.namespace if containing is None else None
        self.kind = record.kind
        self.visibility = record.visibility
        self.type_parameters = record.type_parameters
        self.containing = containing

    def members(self) -> list[MemberRecord]:
        return list(self.record.members)

    def nested_types(self) -> list[BinaryType]:
        return [BinaryType(nested, self.tier, containing=self) for nested in self.record.nested]


@dataclass(frozen=True)
class ResolvedType:
    """A target type together with the tier that described it."""

    tier: Tier
    type: TypeInfo
    module: str | None = None

    @property
    def in_source(self) -> bool:
        return self.type.in_source


@dataclass(frozen=True)
class Diagnostic(DataClassJsonMixin):
    """A recoverable problem reported for one target."""

    id: str
    severity: Severity
    message: str
    target: str


@dataclass(frozen=True)
class EmissionUnit(DataClassJsonMixin):
    """One generated C# source file."""

    hint_name: str
    source: str
    target: str
    tier: Tier | None = None
