"""Static view of the C# program being generated for, built with tree-sitter."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

import tree_sitter_c_sharp
from tree_sitter import Language, Node, Parser

from .identifiers import to_identifier
from .types import (
    MemberKind,
    MemberRecord,
    Tier,
    TypeInfo,
    TypeKind,
    TypeRef,
    TypeSegment,
    Visibility,
    match_type_ref,
)

logger = logging.getLogger(__name__)

_g_parser: Parser | None = None

_TYPE_NODES = {
    "class_declaration": TypeKind.CLASS,
    "struct_declaration": TypeKind.STRUCT,
    "interface_declaration": TypeKind.INTERFACE,
    "enum_declaration": TypeKind.ENUM,
    "record_declaration": TypeKind.CLASS,
    "record_struct_declaration": TypeKind.STRUCT,
    "delegate_declaration": TypeKind.CLASS,
}

_VARIABLE_MEMBER_NODES = {
    "field_declaration": MemberKind.FIELD,
    "event_field_declaration": MemberKind.EVENT,
}

_NAMED_MEMBER_NODES = {
    "property_declaration": MemberKind.PROPERTY,
    "event_declaration": MemberKind.EVENT,
    "method_declaration": MemberKind.METHOD,
}

# Build output folders never hold sources of the program itself
_SKIPPED_DIRS = frozenset(["bin", "obj", ".git"])

_ASSEMBLY_TARGET = re.compile(r"^\[\s*assembly\s*:")


class SourceError(RuntimeError):
    """Raised when a source file cannot be read."""


def _parser() -> Parser:
    global _g_parser

    if not _g_parser:
        _g_parser = Parser(Language(tree_sitter_c_sharp.language()))
    return _g_parser


def _text(node: Node, src: bytes) -> str:
    return src[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _identifier(node: Node, src: bytes) -> str:
    """Identifier text without the verbatim @ prefix."""
    return _text(node, src).removeprefix("@")


def _name_node(node: Node) -> Node | None:
    named = node.child_by_field_name("name")
    if named is not None:
        return named
    return next((c for c in node.named_children if c.type == "identifier"), None)


def _child_of_type(node: Node, *types: str) -> Node | None:
    return next((c for c in node.named_children if c.type in types), None)


def _modifiers(node: Node, src: bytes) -> set[str]:
    return {_text(c, src).strip() for c in node.children if c.type == "modifier"}


def _visibility(modifiers: set[str], default: Visibility) -> Visibility:
    """Map C# accessibility keywords to a declared visibility."""
    if "public" in modifiers:
        return Visibility.PUBLIC
    if "protected" in modifiers and "internal" in modifiers:
        return Visibility.PROTECTED_INTERNAL
    if "private" in modifiers and "protected" in modifiers:
        return Visibility.PRIVATE_PROTECTED
    if "internal" in modifiers or "file" in modifiers:
        return Visibility.INTERNAL
    if "protected" in modifiers:
        return Visibility.PROTECTED
    if "private" in modifiers:
        return Visibility.PRIVATE
    return default


_ACCESS_KEYWORDS = frozenset(["public", "protected", "internal", "private", "file"])

# Constraints that name no type
_CONSTRAINT_KEYWORDS = frozenset(
    ["class", "class?", "struct", "unmanaged", "notnull", "default", "new()"]
)

_DOTTED_NAME = re.compile(r"^(?:global::)?@?\w+(?:\.@?\w+)*$")


def _type_parameters(node: Node, src: bytes) -> tuple[str, ...]:
    params = node.child_by_field_name("type_parameters") or _child_of_type(
        node, "type_parameter_list"
    )
    if params is None:
        return ()
    names = []
    for param in params.named_children:
        if param.type != "type_parameter":
            continue
        name = _name_node(param)
        if name is not None:
            names.append(_identifier(name, src))
    return tuple(names)


def _constraint_text(node: Node, src: bytes) -> str:
    return re.sub(r"\s+", "", _text(node, src)).replace(",", ", ")


def _constraint_clauses(node: Node, src: bytes) -> dict[str, tuple[str, ...]]:
    """Constraints per type parameter, e.g. {"T": ("class", "new()")}."""
    clauses: dict[str, tuple[str, ...]] = {}
    for clause in node.named_children:
        if clause.type != "type_parameter_constraints_clause":
            continue
        target = clause.child_by_field_name("target") or _child_of_type(clause, "identifier")
        if target is None:
            continue
        parts = tuple(
            _constraint_text(c, src)
            for c in clause.named_children
            if c.type == "type_parameter_constraint"
        )
        if parts:
            clauses[_identifier(target, src)] = parts
    return clauses


def _type_kind(node: Node) -> TypeKind:
    kind = _TYPE_NODES[node.type]
    if node.type == "record_declaration" and any(c.type == "struct" for c in node.children):
        return TypeKind.STRUCT
    return kind


class SourceType(TypeInfo):
    """A type declared in the program's own sources (all partial parts merged)."""

    tier = Tier.STATIC
    in_source = True

    def __init__(
        self,
        name: str,
        namespace: str | None,
        kind: TypeKind,
        visibility: Visibility,
        type_parameters: tuple[str, ...] = (),
        containing: SourceType | None = None,
        constraints: dict[str, tuple[str, ...]] | None = None,
        program: SourceProgram | None = None,
    ):
        self.name = name
        self.namespace = namespace if containing is None else None
        self.kind = kind
        self.visibility = visibility
        self.type_parameters = type_parameters
        self.containing = containing
        self.constraints = constraints or {}
        self.program = program
        self._members: list[MemberRecord] = []
        self._nested: dict[str, SourceType] = {}

    def members(self) -> list[MemberRecord]:
        return list(self._members)

    def nested_types(self) -> list[SourceType]:
        return list(self._nested.values())

    def add_member(self, member: MemberRecord) -> None:
        self._members.append(member)

    def type_constraints(self) -> dict[str, tuple[str, ...]]:
        """Constraints with program-declared type names fully qualified."""
        return {
            name: tuple(self._qualify(part) for part in parts)
            for name, parts in self.constraints.items()
        }

    def _qualify(self, constraint: str) -> str:
        if (
            self.program is None
            or constraint in _CONSTRAINT_KEYWORDS
            or constraint in self.type_parameters
            or not _DOTTED_NAME.match(constraint)
        ):
            return constraint
        ref = TypeRef.parse_dotted(constraint.replace("@", ""))
        found = self.program.find_type(ref, self.outer_namespace)
        if found is None or found.arity:
            return constraint
        return "global::" + ".".join(to_identifier(name) for name, _ in found.path_segments())

    def type_ref(self) -> TypeRef:
        """A fully qualified reference to this type, generics left unbound."""
        return TypeRef(
            segments=tuple(
                TypeSegment(name, (None,) * arity) for name, arity in self.path_segments()
            ),
            alias="global",
        )


@dataclass(frozen=True)
class SourceMarker:
    """An attribute that may be a generation marker, with where it was found."""

    text: str
    declared_type: SourceType | None
    path: str
    line: int


class SourceProgram:
    """All types and generation markers declared in the program's sources."""

    def __init__(self, assembly_name: str = "Program"):
        self.assembly_name = assembly_name
        self.markers: list[SourceMarker] = []
        self._types: dict[str, SourceType] = {}

    @classmethod
    def from_paths(cls, paths: Iterable[Path], assembly_name: str = "Program") -> SourceProgram:
        """Parse every .cs file under the given files and directories."""
        program = cls(assembly_name)
        for path in _collect_sources(paths):
            try:
                text = path.read_text(encoding="utf-8-sig")
            except (OSError, UnicodeDecodeError) as e:
                raise SourceError(f"Cannot read {path}: {e}") from e
            program.add_source(text, str(path))
        return program

    def add_source(self, text: str, path: str = "<source>") -> None:
        src = text.encode("utf-8")
        tree = _parser().parse(src)
        self._visit_scope(tree.root_node, src, None, path)
        logger.debug("Parsed %s", path)

    def types(self) -> Iterator[SourceType]:
        yield from self._types.values()

    def get_type_by_metadata_name(self, full_name: str) -> SourceType | None:
        """Look up a type by metadata name, e.g. Ns.Outer+Inner`1."""
        return self._types.get(full_name)

    def find_type(self, ref: TypeRef, namespace: str | None = None) -> SourceType | None:
        """Bind a written type reference to a declared type.

        Fully qualified matches win. Otherwise the reference may name the
        tail of a type's path; a single candidate is taken, several are
        narrowed down by the namespace the reference was written in.
        """
        exact, partial = match_type_ref(self._types.values(), ref)
        if exact:
            return exact[0]
        if len(partial) == 1:
            return partial[0]
        if namespace is not None:
            scoped = [t for t in partial if t.outer_namespace == namespace]
            if len(scoped) == 1:
                return scoped[0]
        if partial:
            logger.debug("Ambiguous type reference %s: %s", ref, partial)
        return None

    def _visit_scope(self, node: Node, src: bytes, namespace: str | None, path: str) -> None:
        for child in node.named_children:
            if child.type == "namespace_declaration":
                inner = self._namespace(child, src, namespace)
                body = child.child_by_field_name("body") or _child_of_type(child, "declaration_list")
                if body is not None:
                    self._visit_scope(body, src, inner, path)
            elif child.type == "file_scoped_namespace_declaration":
                # Declarations after "namespace X;" belong to X wherever the grammar hangs them
                namespace = self._namespace(child, src, namespace)
                self._visit_scope(child, src, namespace, path)
            elif child.type in _TYPE_NODES:
                self._declare_type(child, src, namespace, None, path)
            elif child.type.startswith("global_attribute"):
                self._global_markers(child, src, path)
            elif child.type.startswith("preproc_") or child.type == "declaration_list":
                self._visit_scope(child, src, namespace, path)

    def _namespace(self, node: Node, src: bytes, outer: str | None) -> str:
        name_node = node.child_by_field_name("name")
        name = re.sub(r"\s+", "", _text(name_node, src)) if name_node is not None else ""
        return f"{outer}.{name}" if outer else name

    def _global_markers(self, node: Node, src: bytes, path: str) -> None:
        if not _ASSEMBLY_TARGET.match(_text(node, src)):
            if node.type == "global_attribute_list":
                for child in node.named_children:
                    self._global_markers(child, src, path)
            return
        for attribute in _descendants(node, "attribute"):
            self.markers.append(
                SourceMarker(_text(attribute, src), None, path, attribute.start_point[0] + 1)
            )

    def _declare_type(
        self,
        node: Node,
        src: bytes,
        namespace: str | None,
        containing: SourceType | None,
        path: str,
    ) -> None:
        name_node = _name_node(node)
        if name_node is None:
            return

        modifiers = _modifiers(node, src)
        if containing is None:
            default = Visibility.INTERNAL
        elif containing.kind == TypeKind.INTERFACE:
            default = Visibility.PUBLIC
        else:
            default = Visibility.PRIVATE

        declared = SourceType(
            name=_identifier(name_node, src),
            namespace=namespace,
            kind=_type_kind(node),
            visibility=_visibility(modifiers, default),
            type_parameters=_type_parameters(node, src),
            containing=containing,
            constraints=_constraint_clauses(node, src),
            program=self,
        )

        source_type = self._types.get(declared.full_name)
        if source_type is None:
            source_type = declared
            self._types[declared.full_name] = declared
            if containing is not None:
                containing._nested[declared.metadata_name] = declared
        elif modifiers & _ACCESS_KEYWORDS:
            # Another partial part; only one of them needs to state the accessibility
            source_type.visibility = declared.visibility
        if declared.constraints and not source_type.constraints:
            # Only one partial part needs to state the constraints
            source_type.constraints = declared.constraints

        for attribute_list in (c for c in node.named_children if c.type == "attribute_list"):
            for attribute in _descendants(attribute_list, "attribute"):
                self.markers.append(
                    SourceMarker(
                        _text(attribute, src), source_type, path, attribute.start_point[0] + 1
                    )
                )

        if source_type.kind == TypeKind.ENUM or node.type == "delegate_declaration":
            return
        body = node.child_by_field_name("body") or _child_of_type(node, "declaration_list")
        if body is not None:
            self._visit_body(body, src, source_type, path)

    def _visit_body(self, body: Node, src: bytes, owner: SourceType, path: str) -> None:
        default = Visibility.PUBLIC if owner.kind == TypeKind.INTERFACE else Visibility.PRIVATE

        for child in body.named_children:
            if child.type in _TYPE_NODES:
                self._declare_type(child, src, None, owner, path)
            elif child.type.startswith("preproc_"):
                self._visit_body(child, src, owner, path)
            elif child.type in _VARIABLE_MEMBER_NODES:
                visibility = _visibility(_modifiers(child, src), default)
                declaration = _child_of_type(child, "variable_declaration")
                if declaration is None:
                    continue
                for declarator in declaration.named_children:
                    if declarator.type != "variable_declarator":
                        continue
                    name = _name_node(declarator)
                    if name is not None:
                        kind = _VARIABLE_MEMBER_NODES[child.type]
                        owner.add_member(MemberRecord(_identifier(name, src), kind, visibility))
            elif child.type in _NAMED_MEMBER_NODES:
                # Explicit interface implementations are not reachable by simple name
                if _child_of_type(child, "explicit_interface_specifier") is not None:
                    continue
                name = child.child_by_field_name("name")
                if name is None:
                    continue
                owner.add_member(
                    MemberRecord(
                        _identifier(name, src),
                        _NAMED_MEMBER_NODES[child.type],
                        _visibility(_modifiers(child, src), default),
                    )
                )


def _descendants(node: Node, node_type: str) -> Iterator[Node]:
    for child in node.named_children:
        if child.type == node_type:
            yield child
        else:
            yield from _descendants(child, node_type)


def _collect_sources(paths: Iterable[Path]) -> list[Path]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(
                p
                for p in sorted(path.rglob("*.cs"))
                if not _SKIPPED_DIRS.intersection(p.relative_to(path).parts[:-1])
            )
        else:
            files.append(path)
    return files
