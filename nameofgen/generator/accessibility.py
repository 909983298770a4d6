"""Accessibility rules deciding which types and members are restricted."""

from .types import Exposure, MemberKind, MemberRecord, TypeInfo, Visibility

# Visible to the whole declaring assembly
BROAD_VISIBILITY = frozenset([Visibility.PUBLIC, Visibility.INTERNAL])

# Only public survives the assembly boundary
OUTSIDE_VISIBILITY = frozenset([Visibility.PUBLIC])


def _broad(visibility: Visibility, outside: bool) -> bool:
    return visibility in (OUTSIDE_VISIBILITY if outside else BROAD_VISIBILITY)


def is_exposed(t: TypeInfo, outside: bool = False, exposure: Exposure = Exposure.CHAIN) -> bool:
    """Check if a type and every type enclosing it are broadly visible.

    With outside=True the type is judged from another assembly, where
    internal types are as unreachable as private ones.
    """
    if not _broad(t.visibility, outside):
        return False
    if exposure == Exposure.DECLARED:
        return True
    return all(_broad(parent.visibility, outside) for parent in t.ancestors())


def is_restricted(t: TypeInfo, outside: bool = False, exposure: Exposure = Exposure.CHAIN) -> bool:
    return not is_exposed(t, outside, exposure)


def is_eligible_member(member: MemberRecord) -> bool:
    """Check if a source-declared member is private and ordinary."""
    if member.visibility != Visibility.PRIVATE or member.synthesized:
        return False
    if member.kind == MemberKind.METHOD:
        return not member.special
    return True


def is_non_public_member(member: MemberRecord) -> bool:
    """Check if a compiled member is hidden from other assemblies."""
    if member.visibility == Visibility.PUBLIC or member.synthesized:
        return False
    return not member.special
