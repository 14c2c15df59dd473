"""Input validation schemas for the capgate API."""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
import re

from .capabilities import Capability, Role


# === Shared Validators ===

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,98}[a-z0-9]$")

RESERVED_SLUGS = frozenset({
    "admin", "api", "health", "default", "system", "settings", "new",
})


def validate_email_format(email: str) -> str:
    """Validate and normalise email address."""
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValueError(f'Invalid email format: {email}')
    return email


# === Workspace / Project Schemas ===

class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Human-readable name")
    slug: str = Field(
        ..., min_length=2, max_length=100,
        description="URL-safe slug: lowercase, hyphens, no spaces",
    )

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        if not SLUG_PATTERN.match(v):
            raise ValueError(
                "slug must be URL-safe: lowercase letters, numbers, hyphens. "
                "Must start and end with a letter or number. 2-100 characters."
            )
        if v in RESERVED_SLUGS:
            raise ValueError(f"'{v}' is a reserved name")
        return v


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


# === Membership Schemas ===

class MemberAdd(BaseModel):
    """Add a member by user id or by email (user created if unknown)."""
    user_id: Optional[str] = Field(None, max_length=64)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    display_name: Optional[str] = Field(None, max_length=255)
    role: Role = Field(Role.MEMBER, description="One of: owner, manager, member, viewer")
    capabilities: Optional[list[Capability]] = Field(
        None, description="Explicit capability list; defaults to the role's set",
    )

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return validate_email_format(v) if v is not None else v

    @model_validator(mode="after")
    def require_user_reference(self):
        if not self.user_id and not self.email:
            raise ValueError("user_id or email is required")
        return self


class MemberUpdate(BaseModel):
    role: Role = Field(..., description="New role: owner, manager, member, or viewer")
    capabilities: Optional[list[Capability]] = None


# === Invitation Schemas ===

class InviteItem(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    role: Role = Field(Role.MEMBER, description="One of: manager, member, viewer")
    project_id: Optional[str] = Field(None, max_length=64, description="Invite into this project only")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return validate_email_format(v)

    @field_validator("role")
    @classmethod
    def reject_owner(cls, v):
        if v is Role.OWNER:
            raise ValueError("Ownership cannot be granted by invitation")
        return v


class InvitationCreate(BaseModel):
    invites: list[InviteItem] = Field(..., min_length=1, max_length=50)


class InvitationAccept(BaseModel):
    token: str = Field(..., min_length=1, max_length=255)
