"""Container tree for restricted nested types."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from .accessibility import is_restricted
from .identifiers import IdentifierScope
from .members import extract_member_names
from .types import SYNTHETIC_MARKER, Exposure, TypeInfo

# Joins the simple names of a restricted chain into one canonical name
CHAIN_SEPARATOR = "_"

GENERIC_SUFFIX = "_Generated_"


@dataclass
class ContainerNode:
    """A synthetic type standing for one nested type of the target.

    Pass-through nodes (restricted only through an ancestor) carry no
    members; they exist so deeper restricted types stay reachable.
    """

    name: str
    identity: str
    simple_name: str
    restricted: bool
    depth: int
    members: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)


def chain_segment(t: TypeInfo) -> str:
    return f"{t.name}{GENERIC_SUFFIX}{t.arity}" if t.arity else t.name


def canonical_name(chain: Iterable[TypeInfo]) -> str:
    """Name of a container, from the first restricted type down to it."""
    return CHAIN_SEPARATOR.join(chain_segment(t) for t in chain)


class ContainerTree:
    """Arena of container nodes keyed by canonical name."""

    def __init__(self, reserved: Iterable[str] = ()):
        self.nodes: dict[str, ContainerNode] = {}
        self.root_keys: list[str] = []
        self._index: dict[str, str] = {}
        self._scope = IdentifierScope(reserved)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ContainerNode]:
        return iter(self.nodes.values())

    def __getitem__(self, key: str) -> ContainerNode:
        return self.nodes[key]

    def node_for(self, identity: str) -> ContainerNode | None:
        key = self._index.get(identity)
        return self.nodes[key] if key is not None else None

    def roots(self) -> list[ContainerNode]:
        return [self.nodes[key] for key in self.root_keys]

    def children(self, node: ContainerNode) -> list[ContainerNode]:
        return [self.nodes[key] for key in node.children]

    def add(
        self,
        t: TypeInfo,
        chain: list[TypeInfo],
        restricted: bool,
        parent: ContainerNode | None,
    ) -> ContainerNode:
        """Add a node for t, or return the one already made for it."""
        node = self.node_for(t.full_name)
        if node is None:
            key = self._scope.claim(canonical_name(chain))
            node = ContainerNode(
                name=key,
                identity=t.full_name,
                simple_name=t.name,
                restricted=restricted,
                depth=len(chain) - 1,
                members=extract_member_names(t) if restricted else [],
            )
            self.nodes[key] = node
            self._index[t.full_name] = key

        if parent is None:
            if node.name not in self.root_keys:
                self.root_keys.append(node.name)
        elif node.name not in parent.children:
            parent.children.append(node.name)
        return node


def _nested(t: TypeInfo) -> list[TypeInfo]:
    nested = (n for n in t.nested_types() if not n.name.startswith(SYNTHETIC_MARKER))
    return sorted(nested, key=lambda n: n.metadata_name)


def build_containers(
    target: TypeInfo,
    outside: bool = False,
    exposure: Exposure = Exposure.CHAIN,
    reserved: Iterable[str] = (),
) -> ContainerTree:
    """Walk the nested types of target and collect the restricted ones.

    outside is set when target lives in another assembly. reserved names
    are never handed out as canonical names.
    """
    tree = ContainerTree(reserved)

    def visit(t: TypeInfo, chain: list[TypeInfo], parent: ContainerNode | None) -> None:
        for nested in _nested(t):
            restricted = is_restricted(nested, outside, exposure)
            if parent is None and not restricted:
                visit(nested, [], None)
                continue
            path = [*chain, nested]
            node = tree.add(nested, path, restricted, parent)
            visit(nested, path, node)

    visit(target, [], None)
    return tree
