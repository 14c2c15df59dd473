"""capgate - Capability Resolver

Computes the effective capability set for (user, context).

Resolution is a fixed two-step strategy:
  1. the membership on the requested context itself
  2. for projects only, the membership on the owning workspace

Every "no access" outcome (no membership, no project, malformed stored data)
is the empty set. Store failures are not caught here.
"""

from typing import Optional, Protocol

from .capabilities import (
    OWNER_CAPABILITIES,
    Capability,
    ContextType,
    Role,
    parse_capabilities,
    parse_role,
)
from .logging_config import get_logger
from .models import Membership

logger = get_logger(__name__)

NO_CAPABILITIES: frozenset[Capability] = frozenset()


class MembershipSource(Protocol):
    """The two reads the resolver needs from the backing store."""

    def get_membership(
        self, user_id: str, context_type: ContextType, context_id: str
    ) -> Optional[Membership]: ...

    def get_project_workspace_id(self, project_id: str) -> Optional[str]: ...


def coerce_context_type(value) -> ContextType:
    """Accept ContextType or its string value. Anything else is a caller bug."""
    try:
        return ContextType(value)
    except ValueError:
        raise ValueError(
            f"Unknown context type {value!r}; expected 'workspace' or 'project'"
        ) from None


def capabilities_for(membership: Membership) -> frozenset[Capability]:
    """Effective capabilities granted by a single membership row."""
    role = parse_role(membership.role)
    if role is None:
        logger.warning(
            "Membership has unknown role; treating as no access",
            extra={
                "user_id": membership.user_id,
                "context_type": membership.context_type.value,
                "context_id": membership.context_id,
                "role": membership.role,
            },
        )
        return NO_CAPABILITIES

    # Stored list is ignored for owners
    if role is Role.OWNER:
        return OWNER_CAPABILITIES

    caps = parse_capabilities(membership.capabilities)
    if caps is None:
        logger.warning(
            "Malformed stored capabilities; treating as no access",
            extra={
                "user_id": membership.user_id,
                "context_type": membership.context_type.value,
                "context_id": membership.context_id,
            },
        )
        return NO_CAPABILITIES
    return caps


class CapabilityResolver:
    """Stateless resolver over a MembershipSource. Safe to share across requests."""

    def __init__(self, store: MembershipSource):
        self._store = store

    def resolve(
        self,
        user_id: str,
        context_id: str,
        context_type: ContextType = ContextType.WORKSPACE,
    ) -> frozenset[Capability]:
        caps, _ = self.resolve_with_source(user_id, context_id, context_type)
        return caps

    def resolve_with_source(
        self,
        user_id: str,
        context_id: str,
        context_type: ContextType = ContextType.WORKSPACE,
    ) -> tuple[frozenset[Capability], Optional[tuple[ContextType, str]]]:
        """Resolve and also report which context answered.

        The source is the context whose membership row was used. When a
        project falls back and the workspace has no row either, the source is
        still that workspace, so a later grant there can invalidate the
        result. None means nothing beyond the requested context was consulted.
        """
        context_type = coerce_context_type(context_type)

        membership = self._store.get_membership(user_id, context_type, context_id)
        if membership is not None:
            return capabilities_for(membership), membership.context_key

        # Workspace is the top of the hierarchy
        if context_type is ContextType.WORKSPACE:
            return NO_CAPABILITIES, None

        workspace_id = self._store.get_project_workspace_id(context_id)
        if workspace_id is None:
            logger.debug("Project not found during fallback", extra={"project_id": context_id})
            return NO_CAPABILITIES, None

        membership = self._store.get_membership(user_id, ContextType.WORKSPACE, workspace_id)
        if membership is None:
            return NO_CAPABILITIES, (ContextType.WORKSPACE, workspace_id)
        return capabilities_for(membership), membership.context_key
