"""C# identifier sanitization for generated accessor names."""

import unicodedata
from collections.abc import Iterable

CSHARP_KEYWORDS = frozenset(
    [
        "abstract", "as", "base", "bool", "break", "byte", "case", "catch", "char",
        "checked", "class", "const", "continue", "decimal", "default", "delegate", "do",
        "double", "else", "enum", "event", "explicit", "extern", "false", "finally",
        "fixed", "float", "for", "foreach", "goto", "if", "implicit", "in", "int",
        "interface", "internal", "is", "lock", "long", "namespace", "new", "null",
        "object", "operator", "out", "override", "params", "private", "protected",
        "public", "readonly", "ref", "return", "sbyte", "sealed", "short", "sizeof",
        "stackalloc", "static", "string", "struct", "switch", "this", "throw", "true",
        "try", "typeof", "uint", "ulong", "unchecked", "unsafe", "ushort", "using",
        "virtual", "void", "volatile", "while",
    ]
)  # fmt: skip

CSHARP_CONTEXTUAL_KEYWORDS = frozenset(
    [
        "add", "alias", "allows", "and", "args", "ascending", "async", "await", "by",
        "descending", "dynamic", "equals", "extension", "field", "file", "from", "get",
        "global", "group", "init", "into", "join", "let", "managed", "nameof", "nint",
        "not", "notnull", "nuint", "on", "or", "orderby", "partial", "record", "remove",
        "required", "scoped", "select", "set", "unmanaged", "value", "var", "when",
        "where", "with", "yield",
    ]
)  # fmt: skip

VERBATIM_PREFIX = "@"

_START_CATEGORIES = frozenset(["Lu", "Ll", "Lt", "Lm", "Lo", "Nl"])
_PART_CATEGORIES = _START_CATEGORIES | frozenset(["Nd", "Pc", "Mn", "Mc", "Cf"])


def is_identifier_start(ch: str) -> bool:
    return ch == "_" or unicodedata.category(ch) in _START_CATEGORIES


def is_identifier_part(ch: str) -> bool:
    return ch == "_" or unicodedata.category(ch) in _PART_CATEGORIES


def is_keyword(name: str) -> bool:
    return name in CSHARP_KEYWORDS or name in CSHARP_CONTEXTUAL_KEYWORDS


def is_valid_identifier(name: str) -> bool:
    """Check if name is a bare C# identifier (keywords included)."""
    if not name or not is_identifier_start(name[0]):
        return False
    return all(is_identifier_part(ch) for ch in name[1:])


def _escape_keyword(name: str) -> str:
    return VERBATIM_PREFIX + name if is_keyword(name) else name


def to_identifier(name: str) -> str:
    """Turn an arbitrary member name into a usable C# identifier.

    Valid identifiers are kept, keywords get the verbatim prefix. Anything
    else has invalid characters replaced by underscores. Already escaped
    names come back unchanged.
    """
    if name.startswith(VERBATIM_PREFIX) and is_valid_identifier(name[1:]):
        return name
    if is_valid_identifier(name):
        return _escape_keyword(name)

    candidate = "".join(ch if is_identifier_part(ch) else "_" for ch in name)
    if not name or not is_identifier_start(name[0]):
        candidate = "_" + candidate
    return _escape_keyword(candidate)


def make_id(value: str) -> str:
    """Flatten a dotted or decorated name into a single identifier-safe token."""
    return "".join(ch if ch.isalnum() or ch == "_" else "_" for ch in value)


def string_literal(value: str) -> str:
    """Quote a value as a regular C# string literal."""
    escaped = []
    for ch in value:
        if ch == "\\":
            escaped.append("\\\\")
        elif ch == '"':
            escaped.append('\\"')
        elif ch == "\n":
            escaped.append("\\n")
        elif ch == "\r":
            escaped.append("\\r")
        elif ch == "\t":
            escaped.append("\\t")
        elif ord(ch) < 0x20:
            escaped.append(f"\\u{ord(ch):04x}")
        else:
            escaped.append(ch)
    return '"' + "".join(escaped) + '"'


class IdentifierScope:
    """Hands out identifiers that are unique within one declaration scope."""

    def __init__(self, reserved: Iterable[str] = ()):
        self._used: set[str] = {_plain(name) for name in reserved}

    def claim(self, name: str) -> str:
        """Sanitize name and make it unique by appending _2, _3, ..."""
        identifier = to_identifier(name)
        if self._take(identifier):
            return identifier

        index = 2
        while True:
            candidate = to_identifier(f"{_plain(identifier)}_{index}")
            if self._take(candidate):
                return candidate
            index += 1

    def _take(self, identifier: str) -> bool:
        plain = _plain(identifier)
        if plain in self._used:
            return False
        self._used.add(plain)
        return True


def _plain(identifier: str) -> str:
    return identifier[1:] if identifier.startswith(VERBATIM_PREFIX) else identifier
