"""capgate - Capability Vocabulary

Closed enumerations for capabilities, roles and context types, plus the
codec for the serialized capability list stored on each membership row.
"""

import json
from enum import Enum
from typing import Iterable, Optional


class Capability(str, Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    MANAGE_MEMBERS = "manage_members"
    MANAGE_SETTINGS = "manage_settings"


class Role(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    MEMBER = "member"
    VIEWER = "viewer"


class ContextType(str, Enum):
    WORKSPACE = "workspace"
    PROJECT = "project"


# Declaration order doubles as the canonical output order
CAPABILITY_ORDER = list(Capability)

OWNER_CAPABILITIES: frozenset[Capability] = frozenset(Capability)

# Seeded into the stored list when a membership is created without one
DEFAULT_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.OWNER: OWNER_CAPABILITIES,
    Role.MANAGER: frozenset({
        Capability.VIEW, Capability.CREATE, Capability.EDIT, Capability.MANAGE_MEMBERS,
    }),
    Role.MEMBER: frozenset({Capability.VIEW, Capability.CREATE, Capability.EDIT}),
    Role.VIEWER: frozenset({Capability.VIEW}),
}

_VALID_TOKENS = {c.value: c for c in Capability}


def parse_role(raw) -> Optional[Role]:
    """Map a stored role string onto Role. None if it is not one of ours."""
    try:
        return Role(raw)
    except ValueError:
        return None


def parse_capabilities(raw: Optional[str]) -> Optional[frozenset[Capability]]:
    """Decode a stored capability list.

    Accepts a JSON array of capability tokens. NULL or an empty string decodes
    to the empty set. Returns None when the data is malformed: invalid JSON,
    anything other than a list, a non-string element, or a token outside the
    Capability enumeration. A list with one bad token is rejected whole.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return frozenset()

    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return None

    if not isinstance(decoded, list):
        return None

    caps = set()
    for token in decoded:
        if not isinstance(token, str) or token not in _VALID_TOKENS:
            return None
        caps.add(_VALID_TOKENS[token])
    return frozenset(caps)


def ordered(caps: Iterable[Capability]) -> list[str]:
    """Capability values in canonical order, for API output and storage."""
    present = set(caps)
    return [c.value for c in CAPABILITY_ORDER if c in present]


def serialize_capabilities(caps: Iterable[Capability]) -> str:
    return json.dumps(ordered(caps))


def capability_flags(caps: Iterable[Capability]) -> dict[str, bool]:
    """Boolean view of a capability set, one flag per capability."""
    present = set(caps)
    return {f"can_{c.value}": c in present for c in CAPABILITY_ORDER}
