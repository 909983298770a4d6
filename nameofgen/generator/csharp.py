"""C# code generator for name accessor surfaces."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from jinja2 import Environment, PackageLoader

from .accessibility import is_exposed
from .containers import ContainerTree, build_containers
from .identifiers import IdentifierScope, make_id, string_literal, to_identifier
from .members import extract_member_names
from .types import AccessModifier, Exposure, ResolvedType, TypeInfo, TypeKind

env = Environment(
    loader=PackageLoader("nameofgen.generator", "templates"),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    line_comment_prefix="%%",
    line_statement_prefix="%",
)

unit_template = env.get_template("nameof.cs.j2")
core_template = env.get_template("core.cs.j2")

CORE_HINT_NAME = "Nameof.Core.g.cs"

# (keyword, sealed, private constructor) of placeholder types
_STUB_SHAPES = {
    TypeKind.CLASS: ("class", True, True),
    TypeKind.STRUCT: ("struct", False, False),
    TypeKind.INTERFACE: ("interface", False, False),
    TypeKind.ENUM: ("enum", False, False),
}


@dataclass
class Accessor:
    identifier: str
    value: str


@dataclass
class Forward:
    identifier: str
    container: str


@dataclass
class ContainerView:
    name: str
    display: str
    summary: str
    accessors: list[Accessor] = field(default_factory=list)
    forwards: list[Forward] = field(default_factory=list)


@dataclass
class StubView:
    keyword: str
    sealed: bool
    constructor: bool
    name: str
    type_parameters: str
    nested: StubView | None = None


@dataclass
class UnitView:
    namespace: str | None
    wrapper: str
    visibility: str
    display: str
    target: str
    type_parameters: str
    constraints: str
    accessors: list[Accessor]
    forwards: list[Forward]
    containers: list[ContainerView]
    stub: StubView | None = None


def type_identity(t: TypeInfo) -> str:
    """Namespace and nesting chain of metadata names, as one identifier token."""
    parts = t.outer_namespace.split(".") if t.outer_namespace else []
    parts.extend(x.metadata_name for x in t.chain())
    return make_id("_".join(parts))


def hint_name(identity: str) -> str:
    return f"Nameof.{identity}.g.cs"


def wrapper_name(identity: str) -> str:
    return f"Nameof_{identity}"


def _type_parameters(t: TypeInfo) -> list[list[str]]:
    """Type parameters of every type in the chain, unique across the chain."""
    scope = IdentifierScope()
    return [[scope.claim(p) for p in x.type_parameters] for x in t.chain()]


def _parameter_list(names: list[str]) -> str:
    return f"<{', '.join(names)}>" if names else ""


def _constraint_clauses(t: TypeInfo) -> str:
    """where clauses of every type in the chain, spelled with the unique parameter names."""
    clauses = []
    for x, params in zip(t.chain(), _type_parameters(t), strict=True):
        renames = dict(zip(x.type_parameters, params, strict=True))
        constraints = x.type_constraints()
        for declared, name in renames.items():
            parts = constraints.get(declared)
            if parts:
                spelled = ", ".join(_rename_parameters(p, renames) for p in parts)
                clauses.append(f" where {name} : {spelled}")
    return "".join(clauses)


def _rename_parameters(constraint: str, renames: dict[str, str]) -> str:
    return re.sub(r"\b\w+\b", lambda m: renames.get(m.group(0), m.group(0)), constraint)


def type_expression(t: TypeInfo) -> str:
    """Fully qualified C# spelling, e.g. global::Ns.Outer<T>.Inner."""
    chain = t.chain()
    parts = [
        to_identifier(x.name) + _parameter_list(params)
        for x, params in zip(chain, _type_parameters(t), strict=True)
    ]
    namespace = t.outer_namespace
    prefix = f"{namespace}." if namespace else ""
    return f"global::{prefix}{'.'.join(parts)}"


def needs_stub(resolved: ResolvedType, exposure: Exposure = Exposure.CHAIN) -> bool:
    """Check if the target needs a placeholder to be nameable at all."""
    return not resolved.in_source and not is_exposed(resolved.type, True, exposure)


def wrapper_visibility(
    resolved: ResolvedType,
    access: AccessModifier = AccessModifier.PUBLIC,
    exposure: Exposure = Exposure.CHAIN,
) -> AccessModifier:
    """Requested visibility, narrowed to internal unless the target is public."""
    if not is_exposed(resolved.type, True, exposure):
        return AccessModifier.INTERNAL
    return access


def _stub(t: TypeInfo) -> StubView:
    stub: StubView | None = None
    for x, params in reversed(list(zip(t.chain(), _type_parameters(t), strict=True))):
        keyword, sealed, constructor = _STUB_SHAPES[x.kind]
        stub = StubView(
            keyword=keyword,
            sealed=sealed,
            constructor=constructor,
            name=to_identifier(x.name),
            type_parameters=_parameter_list(params),
            nested=stub,
        )
    assert stub is not None
    return stub


def _container_views(tree: ContainerTree) -> list[ContainerView]:
    views = []
    for node in sorted(tree, key=lambda n: n.name):
        scope = IdentifierScope([node.name, "ToString"])
        view = ContainerView(
            name=node.name, display=string_literal(node.simple_name), summary=node.simple_name
        )
        view.accessors = [Accessor(scope.claim(m), string_literal(m)) for m in node.members]
        view.forwards = [
            Forward(scope.claim(child.simple_name), child.name) for child in tree.children(node)
        ]
        views.append(view)
    return views


def build_unit(
    resolved: ResolvedType,
    access: AccessModifier = AccessModifier.PUBLIC,
    exposure: Exposure = Exposure.CHAIN,
    identity: str | None = None,
) -> UnitView | None:
    """Model of the emission unit for a target, or None if it has nothing to expose."""
    t = resolved.type
    members = extract_member_names(t)
    wrapper = wrapper_name(identity or type_identity(t))
    tree = build_containers(t, not resolved.in_source, exposure, reserved=[wrapper])
    if not members and len(tree) == 0:
        return None

    scope = IdentifierScope([wrapper])
    accessors = [Accessor(scope.claim(name), string_literal(name)) for name in members]
    forwards = [Forward(scope.claim(root.simple_name), root.name) for root in tree.roots()]

    return UnitView(
        namespace=t.outer_namespace,
        wrapper=wrapper,
        visibility=wrapper_visibility(resolved, access, exposure).value,
        display=t.full_name,
        target=type_expression(t),
        type_parameters=_parameter_list([p for params in _type_parameters(t) for p in params]),
        constraints=_constraint_clauses(t),
        accessors=accessors,
        forwards=forwards,
        containers=_container_views(tree),
        stub=_stub(t) if needs_stub(resolved, exposure) else None,
    )


def render(
    resolved: ResolvedType,
    access: AccessModifier = AccessModifier.PUBLIC,
    exposure: Exposure = Exposure.CHAIN,
    identity: str | None = None,
) -> str | None:
    """Render the C# source for a resolved target."""
    unit = build_unit(resolved, access, exposure, identity)
    if unit is None:
        return None
    return unit_template.render(unit=unit)


def render_core() -> str:
    """Render the marker type and the GenerateNameof attributes."""
    return core_template.render()
