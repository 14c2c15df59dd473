"""capgate - REST API"""

from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .cache import CapabilityCache
from .capabilities import Capability, ContextType, capability_flags, ordered
from .config import get_settings
from .database import StoreUnavailableError, check_connection
from .dependencies import authenticate_and_store, get_capability_cache, get_store
from .invitations import invitations_router
from .logging_config import get_logger
from .members import members_router
from .permissions import require_capability
from .schemas import ProjectCreate, WorkspaceCreate
from .store import MembershipStore, WorkspaceExistsError

logger = get_logger(__name__)
settings = get_settings()

app = FastAPI(title="capgate API", version="1.0.0")


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.debug("Request", extra={
        "method": request.method,
        "path": request.url.path,
    })
    response = await call_next(request)
    logger.debug("Response", extra={
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
    })
    return response

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    """An outage is a 5xx, never an authorization denial."""
    logger.error("Store unavailable", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable, please retry"},
    )


app.include_router(members_router, prefix="/api")
app.include_router(invitations_router, prefix="/api")


# ============================================================================
# REST ENDPOINTS
# ============================================================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "capgate"}


@app.get("/api/health/ready")
def health_ready(store: MembershipStore = Depends(get_store)):
    """Readiness check: verifies the database is accessible."""
    try:
        check_connection(store.engine)
        return {"status": "ready", "database": "connected"}
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "database": "unavailable"},
        )


@app.get("/api/me")
def get_me(
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
):
    """Return the authenticated user's profile and workspace memberships."""
    user = store.get_user(user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    workspaces = store.list_user_workspaces(user_id)
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "workspaces": workspaces,
    }


@app.get("/api/permissions")
def get_permissions(
    context_id: Optional[str] = Query(None, alias="contextId"),
    context_type: ContextType = Query(ContextType.WORKSPACE, alias="contextType"),
    user_id: str = Depends(authenticate_and_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Effective capabilities of the caller in a workspace or project."""
    if not context_id:
        raise HTTPException(400, "Context ID is required")

    resolved = caps.resolve(user_id, context_id, context_type)
    return {
        "context_id": context_id,
        "context_type": context_type.value,
        "capabilities": ordered(resolved),
        "permissions": capability_flags(resolved),
    }


@app.post("/api/workspaces", status_code=201)
def create_workspace(
    body: WorkspaceCreate,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
):
    """Create a workspace. The caller becomes its owner."""
    try:
        workspace = store.create_workspace(body.name, body.slug, user_id)
    except WorkspaceExistsError:
        raise HTTPException(409, f"Workspace '{body.slug}' already exists")
    logger.info("Workspace created", extra={"workspace_id": workspace["id"], "user": user_id})
    return workspace


@app.post("/api/workspaces/{workspace_id}/projects", status_code=201)
def create_project(
    workspace_id: str,
    body: ProjectCreate,
    user_id: str = Depends(authenticate_and_store),
    store: MembershipStore = Depends(get_store),
    caps: CapabilityCache = Depends(get_capability_cache),
):
    """Create a project in a workspace. Requires 'create' on the workspace."""
    require_capability(caps.resolve(user_id, workspace_id, ContextType.WORKSPACE), Capability.CREATE)
    if store.get_workspace(workspace_id) is None:
        raise HTTPException(404, "Workspace not found")
    return store.create_project(workspace_id, body.name, user_id)
