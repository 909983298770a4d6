"""GenerateNameof attribute parser using Lark."""

import os
import re
from dataclasses import dataclass
from typing import Any, TypeVar

from lark import Lark
from lark.exceptions import LarkError, VisitError
from lark.visitors import Transformer

from .types import AccessModifier, TargetDescriptor, TypeRef, TypeSegment

_g_parser: Lark | None = None

MARKER_NAMES = frozenset(["GenerateNameof", "GenerateNameofAttribute"])

# Named arguments accepted for the anchor type and the explicit module name
ANCHOR_ARGUMENTS = frozenset(["assemblyOf", "inAssemblyOf", "assemblyWhere"])
MODULE_ARGUMENTS = frozenset(["assemblyName"])
ACCESS_ARGUMENTS = frozenset(["accessModifier"])

_LEADING_NAME = re.compile(r"\s*(?:@?\w+\s*::\s*)?([\w.@]+)")


class MarkerError(RuntimeError):
    """Raised when a GenerateNameof attribute has an unsupported shape."""


@dataclass(frozen=True)
class Marker:
    """A parsed generation marker.

    A marker without a descriptor asks for every type declared in the sources.
    """

    descriptor: TargetDescriptor | None
    access: AccessModifier | None = None


@dataclass
class _Alias:
    value: str


@dataclass
class _AttributeName:
    alias: str | None
    parts: list[str]

    @property
    def simple(self) -> str:
        return self.parts[-1]


@dataclass
class _TypeArguments:
    refs: list[TypeRef | None]


@dataclass
class _Comma:
    pass


@dataclass
class _String:
    value: str


@dataclass
class _Constant:
    parts: list[str]


@dataclass
class _ArgumentName:
    value: str


@dataclass
class _Argument:
    name: str | None
    value: Any


@dataclass
class _Attribute:
    name: _AttributeName
    type_arguments: list[TypeRef | None]
    arguments: list[_Argument]


TFilter = TypeVar("TFilter", bound=object)


def _filter(args: list[Any], class_type: type[TFilter]) -> list[TFilter]:
    return [v for v in args if isinstance(v, class_type)]


def _find_one(args: list[Any], class_type: type[TFilter]) -> TFilter | None:
    filtered = _filter(args, class_type)
    if len(filtered) == 0:
        return None
    if len(filtered) > 1:
        raise MarkerError(f"Found more than one {class_type.__name__}")
    return filtered[0]


# Single-character escapes of regular string literals
_SIMPLE_ESCAPES = {
    "'": "'",
    '"': '"',
    "\\": "\\",
    "0": "\0",
    "a": "\a",
    "b": "\b",
    "e": "\x1b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}

_ESCAPE = re.compile(
    r"\\(?:u([0-9A-Fa-f]{4})|U([0-9A-Fa-f]{8})|x([0-9A-Fa-f]{1,4})|(.))", re.DOTALL
)


def _decode_escape(match: re.Match[str]) -> str:
    code = match.group(1) or match.group(2) or match.group(3)
    if code is not None:
        value = int(code, 16)
        if value > 0x10FFFF:
            raise MarkerError(f"Invalid escape sequence {match.group(0)}")
        return chr(value)
    simple = match.group(4)
    if simple not in _SIMPLE_ESCAPES:
        raise MarkerError(f"Invalid escape sequence {match.group(0)}")
    return _SIMPLE_ESCAPES[simple]


def _unquote(token: str) -> str:
    if token.startswith("@"):
        return token[2:-1].replace('""', '"')
    return _ESCAPE.sub(_decode_escape, token[1:-1])


class TreeTransformer(Transformer):
    """Transform a parse tree into marker building blocks."""

    def name(self, args: list[Any]) -> str:
        return str(args[0]).lstrip("@")

    def alias(self, args: list[Any]) -> _Alias:
        return _Alias(value=args[0])

    def comma(self, args: list[Any]) -> _Comma:
        return _Comma()

    def bound_arguments(self, args: list[Any]) -> _TypeArguments:
        return _TypeArguments(refs=_filter(args, TypeRef))

    def unbound_arguments(self, args: list[Any]) -> _TypeArguments:
        return _TypeArguments(refs=[None] * (len(_filter(args, _Comma)) + 1))

    def segment(self, args: list[Any]) -> TypeSegment:
        type_args = _find_one(args, _TypeArguments)
        return TypeSegment(name=args[0], arguments=tuple(type_args.refs) if type_args else ())

    def type_ref(self, args: list[Any]) -> TypeRef:
        alias = _find_one(args, _Alias)
        return TypeRef(
            segments=tuple(_filter(args, TypeSegment)),
            alias=alias.value if alias else None,
        )

    def typeof(self, args: list[Any]) -> TypeRef:
        return args[0]

    def string(self, args: list[Any]) -> _String:
        return _String(value=_unquote(str(args[0])))

    def constant(self, args: list[Any]) -> _Constant:
        return _Constant(parts=[a for a in args if isinstance(a, str)])

    def argument_name(self, args: list[Any]) -> _ArgumentName:
        return _ArgumentName(value=args[0])

    def argument(self, args: list[Any]) -> _Argument:
        name = _find_one(args, _ArgumentName)
        return _Argument(name=name.value if name else None, value=args[-1])

    def arguments(self, args: list[Any]) -> list[_Argument]:
        return _filter(args, _Argument)

    def attribute_name(self, args: list[Any]) -> _AttributeName:
        alias = _find_one(args, _Alias)
        return _AttributeName(
            alias=alias.value if alias else None,
            parts=[a for a in args if isinstance(a, str)],
        )

    def attribute(self, args: list[Any]) -> _Attribute:
        type_args = _find_one(args, _TypeArguments)
        arguments = next((a for a in args if isinstance(a, list)), [])
        return _Attribute(
            name=args[0],
            type_arguments=type_args.refs if type_args else [],
            arguments=arguments,
        )


def is_marker_name(text: str) -> bool:
    """Check if attribute text names GenerateNameof, without parsing it."""
    match = _LEADING_NAME.match(text)
    if not match:
        return False
    return match.group(1).split(".")[-1].lstrip("@") in MARKER_NAMES


def _access(constant: _Constant) -> AccessModifier:
    try:
        return AccessModifier(constant.parts[-1].lower())
    except ValueError:
        raise MarkerError(f"Unknown access modifier {'.'.join(constant.parts)}") from None


def _build(attribute: _Attribute, declared_type: TypeRef | None) -> Marker:
    if attribute.type_arguments:
        if len(attribute.type_arguments) != 1 or attribute.type_arguments[0] is None:
            raise MarkerError("GenerateNameof<T> takes exactly one type argument")
        return Marker(TargetDescriptor.direct(attribute.type_arguments[0]))

    access: AccessModifier | None = None
    positional: list[Any] = []
    anchor: TypeRef | None = None
    module: str | None = None

    for argument in attribute.arguments:
        value = argument.value
        if argument.name is None:
            if isinstance(value, _Constant):
                access = _access(value)
            else:
                positional.append(value)
        elif argument.name in ACCESS_ARGUMENTS and isinstance(value, _Constant):
            access = _access(value)
        elif argument.name in ANCHOR_ARGUMENTS and isinstance(value, TypeRef):
            anchor = value
        elif argument.name in MODULE_ARGUMENTS and isinstance(value, _String):
            module = value.value
        else:
            raise MarkerError(f"Unsupported argument {argument.name}")

    if not positional and anchor is None and module is None:
        if declared_type is not None:
            return Marker(TargetDescriptor.direct(declared_type, access=access), access)
        return Marker(None, access)

    if len(positional) == 1 and isinstance(positional[0], TypeRef) and anchor is None:
        return Marker(TargetDescriptor.direct(positional[0], access=access), access)

    if positional and isinstance(positional[0], _String):
        if len(positional) == 2 and isinstance(positional[1], TypeRef) and anchor is None:
            anchor = positional[1]
        elif len(positional) != 1:
            raise MarkerError("GenerateNameof(fullTypeName, ...) takes one anchor")
        if anchor is None and module is None:
            raise MarkerError("GenerateNameof(fullTypeName) needs assemblyOf or assemblyName")
        descriptor = TargetDescriptor.textual(
            positional[0].value, anchor=anchor, module=module, access=access
        )
        return Marker(descriptor, access)

    raise MarkerError("Unsupported GenerateNameof arguments")


def parse_marker(text: str, declared_type: TypeRef | None = None) -> Marker | None:
    """Parse the text of one attribute.

    declared_type is the type the attribute is applied to, for type-level
    usages. Returns None when the attribute is not a GenerateNameof marker.
    """
    global _g_parser

    if not is_marker_name(text):
        return None

    if not _g_parser:
        with open(f"{os.path.dirname(__file__)}/markers.lark", encoding="utf-8") as f:
            grammar = f.read()

        _g_parser = Lark(grammar)

    try:
        tree = _g_parser.parse(text)
    except LarkError as e:
        raise MarkerError(f"Cannot parse marker {text!r}: {e}") from e

    try:
        attribute = TreeTransformer().transform(tree).children[0]
    except VisitError as e:
        if isinstance(e.orig_exc, MarkerError):
            raise e.orig_exc from e
        raise
    return _build(attribute, declared_type)
