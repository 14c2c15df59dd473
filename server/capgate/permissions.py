"""capgate - Permission Enforcer

Stateless checks against a resolved capability set.
Raises HTTPException 403 if denied. Returns None if allowed.
"""

from typing import Iterable, Optional

from fastapi import HTTPException

from .capabilities import DEFAULT_ROLE_CAPABILITIES, OWNER_CAPABILITIES, Capability, Role


_DENIAL_MESSAGES = {
    Capability.VIEW: "You do not have access to this resource",
    Capability.CREATE: "You cannot create items here",
    Capability.EDIT: "You cannot edit items here",
    Capability.DELETE: "You cannot delete items here",
    Capability.MANAGE_MEMBERS: "You cannot manage members here",
    Capability.MANAGE_SETTINGS: "You cannot manage settings here",
}


def require_capability(caps: Iterable[Capability], capability: Capability, detail: str = None) -> None:
    """Check that ``capability`` is in the resolved set.

    Absence is always a 403, whether the user has a weaker membership or none
    at all; callers never distinguish "denied" from "unknown".
    """
    if capability not in set(caps):
        raise HTTPException(403, detail or _DENIAL_MESSAGES[Capability(capability)])


def _is_owner(caps: Iterable[Capability]) -> bool:
    return frozenset(caps) >= OWNER_CAPABILITIES


def require_grantable(
    caps: Iterable[Capability],
    role: Role,
    capabilities: Optional[Iterable[Capability]] = None,
    current_role: Optional[str] = None,
) -> None:
    """Check that the caller may write ``role`` (and ``capabilities``) onto a membership.

    Creating, changing or replacing an owner membership needs the full owner
    set. Any other grant is limited to capabilities the caller holds.
    """
    caps = frozenset(caps)
    if (role is Role.OWNER or current_role == Role.OWNER.value) and not _is_owner(caps):
        raise HTTPException(403, "Only an owner can grant or change ownership")

    granted = DEFAULT_ROLE_CAPABILITIES[role] if capabilities is None else frozenset(capabilities)
    if not granted <= caps:
        raise HTTPException(403, "You cannot grant capabilities you do not hold")


def require_removable(caps: Iterable[Capability], current_role: Optional[str]) -> None:
    """Only owners may remove an owner membership."""
    if current_role == Role.OWNER.value and not _is_owner(caps):
        raise HTTPException(403, "Only an owner can remove an owner")
