"""capgate - FastAPI Dependency Chain

Dependency chain:
  get_store → authenticate_and_store → get_capability_cache

FastAPI evaluates each dependency once per request, so the CapabilityCache
returned here lives exactly as long as the request that asked for it.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import SecurityScopes
from fastapi_azure_auth import SingleTenantAzureAuthorizationCodeBearer

from .cache import CapabilityCache
from .config import get_settings
from .logging_config import get_logger
from .resolver import CapabilityResolver
from .store import MembershipStore, hash_token

logger = get_logger(__name__)

_azure_scheme: Optional[SingleTenantAzureAuthorizationCodeBearer] = None


def _get_azure_scheme() -> SingleTenantAzureAuthorizationCodeBearer:
    """Entra ID bearer validator, built on first use."""
    global _azure_scheme
    if _azure_scheme is None:
        settings = get_settings()
        _azure_scheme = SingleTenantAzureAuthorizationCodeBearer(
            app_client_id=settings.azure_client_id,
            tenant_id=settings.azure_tenant_id,
            allow_guest_users=True,
            scopes={
                f"api://{settings.azure_client_id}/access_as_user": "Access capgate API",
            },
        )
    return _azure_scheme


def _claim(payload, key: str):
    """Read a claim from either a dict payload or a User object."""
    if isinstance(payload, dict):
        return payload.get(key)
    return getattr(payload, key, None)


# --- Layer 0: Store ---

def get_store() -> MembershipStore:
    """Store on the process-wide engine. Overridden in tests."""
    return MembershipStore()


# --- Layer 1: Authenticate ---

async def authenticate_and_store(
    request: Request,
    store: MembershipStore = Depends(get_store),
) -> str:
    """Resolve the caller's user id and store it on request.state.

    1. API bearer token, matched by hash against api_tokens
    2. Entra ID access token (when configured), matched by email against users
    """
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise unauthorized

    token = auth_header.split(" ", 1)[1].strip()
    user_id = store.get_token_user(hash_token(token))
    if user_id:
        request.state.user_id = user_id
        return user_id

    if not get_settings().entra_auth_enabled():
        logger.warning("Auth failed: unknown API token")
        raise unauthorized

    try:
        payload = await _get_azure_scheme()(request, SecurityScopes(scopes=[]))
    except Exception as e:
        logger.warning("Auth failed", extra={
            "error_type": type(e).__name__,
            "detail": str(e),
            "status_code": getattr(e, "status_code", None),
        })
        raise unauthorized

    email = _claim(payload, "preferred_username") or _claim(payload, "upn") or _claim(payload, "email")
    if not email:
        logger.warning("Auth failed: no email in token payload")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing email/upn claim",
        )

    user = store.get_user_by_email(email)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"No account for user: {email}",
        )
    request.state.user_id = user.id
    return user.id


# --- Layer 2: Capabilities ---

def get_capability_cache(store: MembershipStore = Depends(get_store)) -> CapabilityCache:
    """Fresh per-request cache over a resolver on the request's store."""
    return CapabilityCache(CapabilityResolver(store))
