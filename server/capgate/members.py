"""capgate - Member Management API

Workspace and project membership CRUD, plus the workspace audit log.
Every endpoint resolves the caller's capabilities through the request's
CapabilityCache and invalidates the target user's entries after a write.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from .cache import CapabilityCache
from .capabilities import Capability, ContextType
from .dependencies import authenticate_and_store, get_capability_cache, get_store
from .logging_config import get_logger
from .permissions import require_capability, require_grantable, require_removable
from .schemas import MemberAdd, MemberUpdate
from .store import LastOwnerError, MembershipExistsError, MembershipStore

logger = get_logger(__name__)

members_router = APIRouter(tags=["members"])


# ==========================================================================
# Internal helpers
# ==========================================================================

def _resolve_target_user(store: MembershipStore, body: MemberAdd) -> str:
    """User id for the member being added. Unknown emails get a new user."""
    if body.user_id:
        if store.get_user(body.user_id) is None:
            raise HTTPException(404, f"User {body.user_id} not found")
        return body.user_id
    return store.get_or_create_user(body.email, body.display_name).id


def _require_context(store: MembershipStore, context_type: ContextType, context_id: str) -> None:
    if context_type is ContextType.WORKSPACE:
        found = store.get_workspace(context_id)
    else:
        found = store.get_project(context_id)
    if found is None:
        raise HTTPException(404, f"{context_type.value.capitalize()} {context_id} not found")


def _list(context_type, context_id, user_id, store, caps):
    require_capability(caps.resolve(user_id, context_id, context_type), Capability.VIEW)
    members = store.list_members(context_type, context_id)
    return {"members": members, "count": len(members)}


def _current_role(store: MembershipStore, context_type: ContextType, context_id: str, member_id: str):
    membership = store.get_membership(member_id, context_type, context_id)
    return membership.role if membership else None


def _remove(context_type, context_id, member_id, user_id, store, caps):
    caller_caps = caps.resolve(user_id, context_id, context_type)
    require_capability(caller_caps, Capability.MANAGE_MEMBERS)
    require_removable(caller_caps, _current_role(store, context_type, context_id, member_id))
    try:
        removed = store.remove_membership(context_type, context_id, member_id, actor_id=user_id)
    except LastOwnerError as e:
        raise HTTPException(400, str(e))
    if not removed:
        raise HTTPException(404, "Membership not found")
    caps.invalidate(user_id=member_id)
    logger.info("Member removed", extra={
        "context_type": context_type.value, "context_id": context_id,
        "member": member_id, "by": user_id,
    })
    return {"message": "Member removed", "user_id": member_id}


# ==========================================================================
# Workspace members
# ==========================================================================

@members_router.get("/workspaces/{workspace_id}/members")
def list_workspace_members(
    workspace_id: str,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """List members of a workspace. Requires 'view'."""
    return _list(ContextType.WORKSPACE, workspace_id, user_id, store, caps)


@members_router.post("/workspaces/{workspace_id}/members", status_code=201)
def add_workspace_member(
    workspace_id: str,
    body: MemberAdd,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Add a member to a workspace. Requires 'manage_members'."""
    caller_caps = caps.resolve(user_id, workspace_id)
    require_capability(caller_caps, Capability.MANAGE_MEMBERS)
    require_grantable(caller_caps, body.role, body.capabilities)
    _require_context(store, ContextType.WORKSPACE, workspace_id)
    member_id = _resolve_target_user(store, body)

    try:
        membership = store.add_membership(
            ContextType.WORKSPACE, workspace_id, member_id, body.role,
            body.capabilities, actor_id=user_id,
        )
    except MembershipExistsError:
        raise HTTPException(409, "User is already a member of this workspace")

    caps.invalidate(user_id=member_id)
    return {"message": f"Added as {body.role.value}", "workspace_id": workspace_id, **membership}


@members_router.patch("/workspaces/{workspace_id}/members/{member_id}")
def update_workspace_member(
    workspace_id: str,
    member_id: str,
    body: MemberUpdate,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Change a member's role or capability list. Requires 'manage_members'."""
    caller_caps = caps.resolve(user_id, workspace_id)
    require_capability(caller_caps, Capability.MANAGE_MEMBERS)
    require_grantable(
        caller_caps, body.role, body.capabilities,
        _current_role(store, ContextType.WORKSPACE, workspace_id, member_id),
    )
    try:
        membership = store.update_membership(
            ContextType.WORKSPACE, workspace_id, member_id, body.role,
            body.capabilities, actor_id=user_id,
        )
    except LastOwnerError as e:
        raise HTTPException(400, str(e))
    if membership is None:
        raise HTTPException(404, "Membership not found")

    caps.invalidate(user_id=member_id)
    return {"message": f"Role updated to {body.role.value}", **membership}


@members_router.delete("/workspaces/{workspace_id}/members/{member_id}")
def remove_workspace_member(
    workspace_id: str,
    member_id: str,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Remove a member from a workspace. The last owner cannot be removed."""
    return _remove(ContextType.WORKSPACE, workspace_id, member_id, user_id, store, caps)


@members_router.get("/workspaces/{workspace_id}/audit-logs")
def get_workspace_audit_logs(
    workspace_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Audit log for a workspace. Requires 'manage_settings'."""
    require_capability(caps.resolve(user_id, workspace_id), Capability.MANAGE_SETTINGS)
    entries = store.list_audit_logs(workspace_id, limit=limit, offset=offset)
    return {"entries": entries, "count": len(entries)}


# ==========================================================================
# Project members
# ==========================================================================

@members_router.get("/projects/{project_id}/members")
def list_project_members(
    project_id: str,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """List direct members of a project. Requires 'view' (workspace fallback applies)."""
    return _list(ContextType.PROJECT, project_id, user_id, store, caps)


@members_router.post("/projects/{project_id}/members")
def upsert_project_member(
    project_id: str,
    body: MemberAdd,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Add or update a project member. Requires 'manage_members' in the project."""
    caller_caps = caps.resolve(user_id, project_id, ContextType.PROJECT)
    require_capability(caller_caps, Capability.MANAGE_MEMBERS)
    _require_context(store, ContextType.PROJECT, project_id)
    member_id = _resolve_target_user(store, body)
    require_grantable(
        caller_caps, body.role, body.capabilities,
        _current_role(store, ContextType.PROJECT, project_id, member_id),
    )

    membership, created = store.upsert_membership(
        ContextType.PROJECT, project_id, member_id, body.role,
        body.capabilities, actor_id=user_id,
    )
    caps.invalidate(user_id=member_id)
    return {"created": created, "project_id": project_id, **membership}


@members_router.delete("/projects/{project_id}/members/{member_id}")
def remove_project_member(
    project_id: str,
    member_id: str,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Remove a direct project member; they fall back to their workspace membership."""
    return _remove(ContextType.PROJECT, project_id, member_id, user_id, store, caps)
