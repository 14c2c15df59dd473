"""capgate - Invitation API

Token-bearing invitations into a workspace or one of its projects.
Delivering the token (email, chat) is up to the caller; it is returned once
at creation and only its hash is stored.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .cache import CapabilityCache
from .capabilities import Capability
from .dependencies import authenticate_and_store, get_capability_cache, get_store
from .logging_config import get_logger
from .permissions import require_capability, require_grantable
from .schemas import InvitationAccept, InvitationCreate
from .store import (
    InvitationAcceptedError,
    InvitationEmailMismatchError,
    InvitationExpiredError,
    InvitationNotFoundError,
    MembershipExistsError,
    MembershipStore,
)

logger = get_logger(__name__)

invitations_router = APIRouter(tags=["invitations"])

_ERROR_STATUS = {
    InvitationNotFoundError: 404,
    InvitationAcceptedError: 409,
    MembershipExistsError: 409,
    InvitationExpiredError: 410,
    InvitationEmailMismatchError: 403,
}
_INVITATION_ERRORS = tuple(_ERROR_STATUS)


@invitations_router.post("/workspaces/{workspace_id}/invitations", status_code=201)
def create_invitations(
    workspace_id: str,
    body: InvitationCreate,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Invite one or more people. Requires 'manage_members' on the workspace."""
    caller_caps = caps.resolve(user_id, workspace_id)
    require_capability(caller_caps, Capability.MANAGE_MEMBERS)
    if store.get_workspace(workspace_id) is None:
        raise HTTPException(404, "Workspace not found")

    # Validate the whole batch before writing any of it
    for invite in body.invites:
        require_grantable(caller_caps, invite.role)
        if invite.project_id:
            project = store.get_project(invite.project_id)
            if project is None or project["workspace_id"] != workspace_id:
                raise HTTPException(404, f"Project {invite.project_id} not found in this workspace")

    created = [
        store.create_invitation(workspace_id, invite.email, invite.role, user_id, invite.project_id)
        for invite in body.invites
    ]
    logger.info("Invitations created", extra={
        "workspace_id": workspace_id, "count": len(created), "by": user_id,
    })
    return {"invitations": created, "count": len(created)}


@invitations_router.get("/workspaces/{workspace_id}/invitations")
def list_invitations(
    workspace_id: str,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Pending invitations for a workspace. Requires 'manage_members'."""
    require_capability(caps.resolve(user_id, workspace_id), Capability.MANAGE_MEMBERS)
    pending = store.list_invitations(workspace_id)
    return {"invitations": pending, "count": len(pending)}


@invitations_router.get("/invitations/validate")
def validate_invitation(
    token: Optional[str] = Query(None),
    store: MembershipStore = Depends(get_store),
):
    """Describe an invitation before sign-up. No authentication required."""
    if not token:
        raise HTTPException(400, "Token is required")
    try:
        return {"invitation": store.validate_invitation(token)}
    except _INVITATION_ERRORS as e:
        raise HTTPException(_ERROR_STATUS[type(e)], str(e))


@invitations_router.post("/invitations/accept")
def accept_invitation(
    body: InvitationAccept,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Join the invited workspace or project as the authenticated user."""
    user = store.get_user(user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    try:
        result = store.accept_invitation(body.token, user)
    except _INVITATION_ERRORS as e:
        raise HTTPException(_ERROR_STATUS[type(e)], str(e))

    caps.invalidate(user_id=user_id)
    return {"message": "Invitation accepted", **result}
