"""Member name extraction, per resolution tier."""

import logging
from collections.abc import Callable

from .accessibility import is_eligible_member, is_non_public_member
from .types import MemberRecord, Tier, TypeInfo

logger = logging.getLogger(__name__)

# Source types expose their private members, compiled types everything non-public
MEMBER_FILTERS: dict[Tier, Callable[[MemberRecord], bool]] = {
    Tier.STATIC: is_eligible_member,
    Tier.LOADED: is_non_public_member,
    Tier.METADATA: is_non_public_member,
}


def extract_member_names(t: TypeInfo) -> list[str]:
    """Distinct names of the unreachable members of t, in ordinal order."""
    accept = MEMBER_FILTERS[t.tier]
    names: set[str] = set()
    for member in t.members():
        if not accept(member):
            continue
        if member.name in names:
            logger.debug("Collapsing overloaded %s.%s", t.full_name, member.name)
        names.add(member.name)
    return sorted(names)
