"""capgate - Membership Store

Reads and writes for users, workspaces, projects, memberships and API tokens.
Every public method runs in its own transaction and retries transient errors;
once retries are exhausted StoreUnavailableError propagates to the caller.
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine

from .audit import log_audit, utc_timestamp
from .capabilities import (
    DEFAULT_ROLE_CAPABILITIES,
    OWNER_CAPABILITIES,
    Capability,
    ContextType,
    Role,
    serialize_capabilities,
)
from .database import (
    StoreError,
    audit_log,
    get_db_for,
    get_engine,
    retry_on_transient,
    rows_to_list,
)
from .logging_config import get_logger
from .models import Membership, User

logger = get_logger(__name__)

# context type -> (membership table, context column)
_MEMBER_TABLES = {
    ContextType.WORKSPACE: ("workspace_members", "workspace_id"),
    ContextType.PROJECT: ("project_members", "project_id"),
}

INVITATION_TTL_DAYS = 7


class MembershipExistsError(StoreError):
    """The user already has a membership on this context."""


class LastOwnerError(StoreError):
    """The change would leave a workspace without an owner."""


class WorkspaceExistsError(StoreError):
    """The slug is already taken."""


class InvitationNotFoundError(StoreError):
    """No invitation matches the token."""


class InvitationAcceptedError(StoreError):
    """The invitation has already been used."""


class InvitationExpiredError(StoreError):
    """The invitation is past its expiry."""


class InvitationEmailMismatchError(StoreError):
    """The accepting user is not the invited email address."""


def hash_token(plaintext: str) -> str:
    """Single SHA256 hex digest. Tokens are only ever stored hashed."""
    return hashlib.sha256(plaintext.encode()).hexdigest()


def stored_capabilities(role: Role, capabilities: Optional[Iterable[Capability]] = None) -> str:
    """Serialized list to store for a new or updated membership.

    Owners always store the full set; other roles use the explicit list when
    given, else the role default.
    """
    if role is Role.OWNER:
        return serialize_capabilities(OWNER_CAPABILITIES)
    if capabilities is None:
        return serialize_capabilities(DEFAULT_ROLE_CAPABILITIES[role])
    return serialize_capabilities(capabilities)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _as_datetime(value) -> Optional[datetime]:
    """SQL Server returns datetimes, SQLite returns the stored string."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _utc_after(days: int) -> str:
    return (
        datetime.now(timezone.utc) + timedelta(days=days)
    ).replace(tzinfo=None).isoformat(sep=" ", timespec="seconds")


class MembershipStore:

    def __init__(self, engine: Engine = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    @property
    def _integrity_error(self) -> type:
        """The driver's IntegrityError class (sqlite3 or pyodbc)."""
        return self.engine.dialect.loaded_dbapi.IntegrityError

    # ------------------------------------------------------------------
    # Resolver reads
    # ------------------------------------------------------------------

    @retry_on_transient()
    def get_membership(
        self, user_id: str, context_type: ContextType, context_id: str
    ) -> Optional[Membership]:
        table, column = _MEMBER_TABLES[ContextType(context_type)]
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                f"SELECT role, capabilities FROM {table} WHERE user_id = ? AND {column} = ?",
                (user_id, context_id),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return Membership(
            user_id=user_id,
            context_type=ContextType(context_type),
            context_id=context_id,
            role=row[0],
            capabilities=row[1],
        )

    @retry_on_transient()
    def get_project_workspace_id(self, project_id: str) -> Optional[str]:
        with get_db_for(self.engine) as cursor:
            cursor.execute("SELECT workspace_id FROM projects WHERE id = ?", (project_id,))
            row = cursor.fetchone()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Users and tokens
    # ------------------------------------------------------------------

    @retry_on_transient()
    def get_user(self, user_id: str) -> Optional[User]:
        with get_db_for(self.engine) as cursor:
            cursor.execute("SELECT id, email, display_name FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        return User(id=row[0], email=row[1], display_name=row[2]) if row else None

    @retry_on_transient()
    def get_user_by_email(self, email: str) -> Optional[User]:
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                "SELECT id, email, display_name FROM users WHERE email = ?",
                (email.strip().lower(),),
            )
            row = cursor.fetchone()
        return User(id=row[0], email=row[1], display_name=row[2]) if row else None

    @retry_on_transient()
    def create_user(self, email: str, display_name: str = None) -> User:
        user = User(id=_new_id(), email=email.strip().lower(), display_name=display_name)
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                "INSERT INTO users (id, email, display_name, created_at) VALUES (?, ?, ?, ?)",
                (user.id, user.email, user.display_name, utc_timestamp()),
            )
        logger.info("User created", extra={"user_id": user.id})
        return user

    def get_or_create_user(self, email: str, display_name: str = None) -> User:
        return self.get_user_by_email(email) or self.create_user(email, display_name)

    @retry_on_transient()
    def get_token_user(self, token_hash: str) -> Optional[str]:
        """User id for an active, unexpired token hash. Touches last_used_at."""
        now = utc_timestamp()
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                """
                SELECT id, user_id FROM api_tokens
                WHERE token_hash = ?
                  AND is_active = 1
                  AND (expires_at IS NULL OR expires_at > ?)
                """,
                (token_hash, now),
            )
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute("UPDATE api_tokens SET last_used_at = ? WHERE id = ?", (now, row[0]))
        return row[1]

    @retry_on_transient()
    def create_api_token(self, user_id: str, expires_days: int = None, notes: str = None) -> dict:
        """Generate a token and store its hash.

        Returns the plaintext once; it cannot be recovered later.
        """
        plaintext = secrets.token_urlsafe(32)
        expires_at = _utc_after(expires_days) if expires_days is not None else None

        with get_db_for(self.engine) as cursor:
            cursor.execute(
                """
                INSERT INTO api_tokens (token_hash, user_id, is_active, expires_at, created_at, notes)
                VALUES (?, ?, 1, ?, ?, ?)
                """,
                (hash_token(plaintext), user_id, expires_at, utc_timestamp(), notes),
            )
        return {"token": plaintext, "user_id": user_id, "expires_at": expires_at or "never"}

    @retry_on_transient()
    def revoke_api_token(self, token_id: int) -> bool:
        with get_db_for(self.engine) as cursor:
            cursor.execute("UPDATE api_tokens SET is_active = 0 WHERE id = ?", (token_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Workspaces and projects
    # ------------------------------------------------------------------

    @retry_on_transient()
    def get_workspace(self, workspace_id: str) -> Optional[dict]:
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                "SELECT id, name, slug, created_by, created_at FROM workspaces WHERE id = ?",
                (workspace_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return {
            "id": row[0], "name": row[1], "slug": row[2],
            "created_by": row[3], "created_at": _iso(row[4]),
        }

    @retry_on_transient()
    def get_workspace_by_slug(self, slug: str) -> Optional[dict]:
        with get_db_for(self.engine) as cursor:
            cursor.execute("SELECT id FROM workspaces WHERE slug = ?", (slug,))
            row = cursor.fetchone()
        return self.get_workspace(row[0]) if row else None

    @retry_on_transient()
    def get_project(self, project_id: str) -> Optional[dict]:
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                "SELECT id, workspace_id, name, created_by, created_at FROM projects WHERE id = ?",
                (project_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return {
            "id": row[0], "workspace_id": row[1], "name": row[2],
            "created_by": row[3], "created_at": _iso(row[4]),
        }

    @retry_on_transient()
    def create_workspace(self, name: str, slug: str, owner_id: str) -> dict:
        """Create a workspace and make ``owner_id`` its owner.

        Raises WorkspaceExistsError if the slug is taken, including when a
        concurrent insert wins the unique constraint.
        """
        workspace_id = _new_id()
        now = utc_timestamp()
        try:
            with get_db_for(self.engine) as cursor:
                cursor.execute("SELECT 1 FROM workspaces WHERE slug = ?", (slug,))
                if cursor.fetchone():
                    raise WorkspaceExistsError("Workspace slug already exists")
                cursor.execute(
                    "INSERT INTO workspaces (id, name, slug, created_by, created_at) VALUES (?, ?, ?, ?, ?)",
                    (workspace_id, name, slug, owner_id, now),
                )
                self._insert_membership(
                    cursor, ContextType.WORKSPACE, workspace_id, owner_id, Role.OWNER,
                    stored_capabilities(Role.OWNER), owner_id,
                )
                log_audit(cursor, workspace_id, owner_id, "workspace.created", "medium",
                          f"Created workspace '{name}' ({slug})")
        except self._integrity_error as e:
            raise WorkspaceExistsError("Workspace slug already exists") from e
        logger.info("Workspace created", extra={"workspace_id": workspace_id, "owner_id": owner_id})
        return {"id": workspace_id, "name": name, "slug": slug, "created_by": owner_id, "created_at": now}

    @retry_on_transient()
    def create_project(self, workspace_id: str, name: str, owner_id: str) -> dict:
        """Create a project under ``workspace_id`` with ``owner_id`` as project owner."""
        project_id = _new_id()
        now = utc_timestamp()
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                "INSERT INTO projects (id, workspace_id, name, created_by, created_at) VALUES (?, ?, ?, ?, ?)",
                (project_id, workspace_id, name, owner_id, now),
            )
            self._insert_membership(
                cursor, ContextType.PROJECT, project_id, owner_id, Role.OWNER,
                stored_capabilities(Role.OWNER), owner_id,
            )
            log_audit(cursor, workspace_id, owner_id, "project.created", "low",
                      f"Created project '{name}'")
        logger.info("Project created", extra={"project_id": project_id, "workspace_id": workspace_id})
        return {
            "id": project_id, "workspace_id": workspace_id, "name": name,
            "created_by": owner_id, "created_at": now,
        }

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def _audit_workspace_id(self, cursor, context_type: ContextType, context_id: str) -> Optional[str]:
        if context_type is ContextType.WORKSPACE:
            return context_id
        cursor.execute("SELECT workspace_id FROM projects WHERE id = ?", (context_id,))
        row = cursor.fetchone()
        return row[0] if row else None

    @staticmethod
    def _insert_membership(
        cursor, context_type: ContextType, context_id: str, user_id: str,
        role: Role, stored: str, actor_id: Optional[str],
    ) -> None:
        table, column = _MEMBER_TABLES[context_type]
        cursor.execute(
            f"""
            INSERT INTO {table} ({column}, user_id, role, capabilities, added_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (context_id, user_id, role.value, stored, actor_id, utc_timestamp()),
        )

    @staticmethod
    def _has_membership(cursor, context_type: ContextType, context_id: str, user_id: str) -> bool:
        table, column = _MEMBER_TABLES[context_type]
        cursor.execute(
            f"SELECT 1 FROM {table} WHERE user_id = ? AND {column} = ?",
            (user_id, context_id),
        )
        return cursor.fetchone() is not None

    @staticmethod
    def _other_owners(cursor, workspace_id: str, user_id: str) -> int:
        cursor.execute(
            """
            SELECT COUNT(*) FROM workspace_members
            WHERE workspace_id = ? AND role = ? AND user_id != ?
            """,
            (workspace_id, Role.OWNER.value, user_id),
        )
        return cursor.fetchone()[0]

    @retry_on_transient()
    def list_members(self, context_type: ContextType, context_id: str) -> list[dict]:
        table, column = _MEMBER_TABLES[ContextType(context_type)]
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                f"""
                SELECT u.id AS user_id, u.email, u.display_name, m.role,
                       m.capabilities, m.added_by, m.created_at
                FROM {table} m
                JOIN users u ON u.id = m.user_id
                WHERE m.{column} = ?
                ORDER BY
                    CASE m.role WHEN 'owner' THEN 1 WHEN 'manager' THEN 2
                                WHEN 'member' THEN 3 ELSE 4 END,
                    u.email
                """,
                (context_id,),
            )
            members = rows_to_list(cursor, cursor.fetchall())
        for member in members:
            member["created_at"] = _iso(member["created_at"])
        return members

    @retry_on_transient()
    def list_user_workspaces(self, user_id: str) -> list[dict]:
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                """
                SELECT w.id, w.name, w.slug, wm.role
                FROM workspace_members wm
                JOIN workspaces w ON w.id = wm.workspace_id
                WHERE wm.user_id = ?
                ORDER BY w.name
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
        return [{"id": r[0], "name": r[1], "slug": r[2], "role": r[3]} for r in rows]

    @retry_on_transient()
    def add_membership(
        self,
        context_type: ContextType,
        context_id: str,
        user_id: str,
        role: Role,
        capabilities: Optional[Iterable[Capability]] = None,
        actor_id: str = None,
    ) -> dict:
        """Insert a membership. Raises MembershipExistsError if one exists."""
        context_type = ContextType(context_type)
        stored = stored_capabilities(role, capabilities)
        exists = MembershipExistsError(f"Already a member of this {context_type.value}")
        try:
            with get_db_for(self.engine) as cursor:
                if self._has_membership(cursor, context_type, context_id, user_id):
                    raise exists
                self._insert_membership(cursor, context_type, context_id, user_id, role, stored, actor_id)
                log_audit(
                    cursor, self._audit_workspace_id(cursor, context_type, context_id), actor_id,
                    f"{context_type.value}_member.added", "medium",
                    f"Added {user_id} as {role.value} to {context_type.value} {context_id}",
                )
        except self._integrity_error as e:
            raise exists from e
        return {"user_id": user_id, "role": role.value, "capabilities": stored}

    @retry_on_transient()
    def update_membership(
        self,
        context_type: ContextType,
        context_id: str,
        user_id: str,
        role: Role,
        capabilities: Optional[Iterable[Capability]] = None,
        actor_id: str = None,
    ) -> Optional[dict]:
        """Change role and stored capabilities. None if there is no such membership.

        Demoting the last workspace owner raises LastOwnerError.
        """
        context_type = ContextType(context_type)
        table, column = _MEMBER_TABLES[context_type]
        stored = stored_capabilities(role, capabilities)
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                f"SELECT role FROM {table} WHERE user_id = ? AND {column} = ?",
                (user_id, context_id),
            )
            row = cursor.fetchone()
            if not row:
                return None
            if (
                context_type is ContextType.WORKSPACE
                and row[0] == Role.OWNER.value
                and role is not Role.OWNER
                and self._other_owners(cursor, context_id, user_id) == 0
            ):
                raise LastOwnerError("Cannot demote the only owner of a workspace")
            cursor.execute(
                f"UPDATE {table} SET role = ?, capabilities = ? WHERE user_id = ? AND {column} = ?",
                (role.value, stored, user_id, context_id),
            )
            log_audit(
                cursor, self._audit_workspace_id(cursor, context_type, context_id), actor_id,
                f"{context_type.value}_member.updated", "medium",
                f"Changed {user_id} to {role.value} in {context_type.value} {context_id}",
            )
        return {"user_id": user_id, "role": role.value, "capabilities": stored}

    def upsert_membership(
        self,
        context_type: ContextType,
        context_id: str,
        user_id: str,
        role: Role,
        capabilities: Optional[Iterable[Capability]] = None,
        actor_id: str = None,
    ) -> tuple[dict, bool]:
        """Update if present, else insert. Returns (membership, created)."""
        updated = self.update_membership(context_type, context_id, user_id, role, capabilities, actor_id)
        if updated is not None:
            return updated, False
        try:
            return self.add_membership(context_type, context_id, user_id, role, capabilities, actor_id), True
        except MembershipExistsError:
            # A concurrent insert won; apply this write as an update
            updated = self.update_membership(context_type, context_id, user_id, role, capabilities, actor_id)
            if updated is None:
                raise
            return updated, False

    @retry_on_transient()
    def remove_membership(
        self, context_type: ContextType, context_id: str, user_id: str, actor_id: str = None
    ) -> bool:
        """Delete a membership. False if none existed.

        Removing the last workspace owner raises LastOwnerError.
        """
        context_type = ContextType(context_type)
        table, column = _MEMBER_TABLES[context_type]
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                f"SELECT role FROM {table} WHERE user_id = ? AND {column} = ?",
                (user_id, context_id),
            )
            row = cursor.fetchone()
            if not row:
                return False
            if (
                context_type is ContextType.WORKSPACE
                and row[0] == Role.OWNER.value
                and self._other_owners(cursor, context_id, user_id) == 0
            ):
                raise LastOwnerError("Cannot remove the only owner of a workspace")
            cursor.execute(
                f"DELETE FROM {table} WHERE user_id = ? AND {column} = ?",
                (user_id, context_id),
            )
            log_audit(
                cursor, self._audit_workspace_id(cursor, context_type, context_id), actor_id,
                f"{context_type.value}_member.removed", "high",
                f"Removed {user_id} from {context_type.value} {context_id}",
            )
        return True

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    @retry_on_transient()
    def create_invitation(
        self,
        workspace_id: str,
        email: str,
        role: Role,
        invited_by: str,
        project_id: str = None,
        ttl_days: int = INVITATION_TTL_DAYS,
    ) -> dict:
        """Store a pending invitation. The plaintext token is returned once."""
        plaintext = secrets.token_urlsafe(32)
        invitation_id = _new_id()
        email = email.strip().lower()
        expires_at = _utc_after(ttl_days)
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                """
                INSERT INTO invitations
                    (id, workspace_id, project_id, email, role, token_hash, status,
                     invited_by, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (invitation_id, workspace_id, project_id, email, role.value,
                 hash_token(plaintext), invited_by, utc_timestamp(), expires_at),
            )
            log_audit(cursor, workspace_id, invited_by, "invitation.created", "medium",
                      f"Invited {email} as {role.value}" + (f" to project {project_id}" if project_id else ""))
        return {
            "id": invitation_id,
            "workspace_id": workspace_id,
            "project_id": project_id,
            "email": email,
            "role": role.value,
            "token": plaintext,
            "expires_at": expires_at,
        }

    @retry_on_transient()
    def list_invitations(self, workspace_id: str, status: str = "pending") -> list[dict]:
        with get_db_for(self.engine) as cursor:
            cursor.execute(
                """
                SELECT id, project_id, email, role, status, invited_by, created_at, expires_at
                FROM invitations
                WHERE workspace_id = ? AND status = ?
                ORDER BY created_at DESC, email
                """,
                (workspace_id, status),
            )
            rows = rows_to_list(cursor, cursor.fetchall())
        for row in rows:
            row["created_at"] = _iso(row["created_at"])
            row["expires_at"] = _iso(row["expires_at"])
        return rows

    @staticmethod
    def _usable_invitation(cursor, token: str) -> dict:
        """Pending, unexpired invitation for ``token`` or the matching error."""
        cursor.execute(
            """
            SELECT id, workspace_id, project_id, email, role, status, invited_by, expires_at
            FROM invitations WHERE token_hash = ?
            """,
            (hash_token(token),),
        )
        invitation = rows_to_list(cursor, cursor.fetchall())
        if not invitation:
            raise InvitationNotFoundError("Invalid invitation token")
        invitation = invitation[0]
        if invitation["status"] != "pending":
            raise InvitationAcceptedError("Invitation has already been accepted")
        expires_at = _as_datetime(invitation["expires_at"])
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        if expires_at is not None and expires_at <= now:
            raise InvitationExpiredError("Invitation has expired")
        return invitation

    @retry_on_transient()
    def validate_invitation(self, token: str) -> dict:
        """Describe a usable invitation without consuming it."""
        with get_db_for(self.engine) as cursor:
            invitation = self._usable_invitation(cursor, token)
            cursor.execute("SELECT name FROM workspaces WHERE id = ?", (invitation["workspace_id"],))
            workspace = cursor.fetchone()
            cursor.execute(
                "SELECT display_name, email FROM users WHERE id = ?", (invitation["invited_by"],)
            )
            inviter = cursor.fetchone()
            cursor.execute("SELECT 1 FROM users WHERE email = ?", (invitation["email"],))
            existing_user = cursor.fetchone() is not None
        return {
            "id": invitation["id"],
            "workspace_id": invitation["workspace_id"],
            "workspace_name": workspace[0] if workspace else None,
            "project_id": invitation["project_id"],
            "email": invitation["email"],
            "role": invitation["role"],
            "inviter_name": (inviter[0] or inviter[1]) if inviter else "A team member",
            "is_new_user": not existing_user,
        }

    @retry_on_transient()
    def accept_invitation(self, token: str, user: User) -> dict:
        """Consume an invitation and create the membership it describes.

        Project invitations create a project membership; all others create a
        workspace membership. Membership insert and status change commit
        together, so an invitation can only be accepted once.
        """
        try:
            with get_db_for(self.engine) as cursor:
                invitation = self._usable_invitation(cursor, token)
                if invitation["email"] != user.email:
                    raise InvitationEmailMismatchError(
                        "You can only accept invitations for your own email address"
                    )

                role = Role(invitation["role"])
                if invitation["project_id"]:
                    context_type, context_id = ContextType.PROJECT, invitation["project_id"]
                else:
                    context_type, context_id = ContextType.WORKSPACE, invitation["workspace_id"]
                if self._has_membership(cursor, context_type, context_id, user.id):
                    raise MembershipExistsError(f"Already a member of this {context_type.value}")

                stored = stored_capabilities(role)
                self._insert_membership(
                    cursor, context_type, context_id, user.id, role, stored, invitation["invited_by"],
                )
                cursor.execute(
                    """
                    UPDATE invitations SET status = 'accepted', accepted_by = ?, accepted_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (user.id, utc_timestamp(), invitation["id"]),
                )
                if cursor.rowcount != 1:
                    raise InvitationAcceptedError("Invitation has already been accepted")
                log_audit(cursor, invitation["workspace_id"], user.id, "invitation.accepted", "medium",
                          f"{user.email} joined {context_type.value} {context_id} as {role.value}")
        except self._integrity_error as e:
            raise MembershipExistsError("Already a member") from e

        logger.info("Invitation accepted", extra={"invitation_id": invitation["id"], "user_id": user.id})
        return {
            "workspace_id": invitation["workspace_id"],
            "project_id": invitation["project_id"],
            "context_type": context_type.value,
            "context_id": context_id,
            "role": role.value,
            "capabilities": stored,
        }

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @retry_on_transient()
    def list_audit_logs(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
        query = (
            select(audit_log)
            .where(audit_log.c.workspace_id == workspace_id)
            .order_by(audit_log.c.created_at.desc(), audit_log.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            {
                "id": row["id"],
                "actor_id": row["actor_id"],
                "action": row["action"],
                "severity": row["severity"],
                "detail": row["detail"],
                "created_at": _iso(row["created_at"]),
            }
            for row in rows
        ]
