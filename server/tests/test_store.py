"""Tests for the membership store against an in-memory SQLite database.

Covers:
- Workspace / project creation seeds owner memberships
- Membership add / update / upsert / remove, including last-owner protection
- Role-default and explicit stored capability lists
- API token lifecycle
- Audit rows written alongside changes
- Resolver end-to-end over the real store
- Transient error retry → StoreUnavailableError
"""
import sys
import os
import json
from contextlib import contextmanager
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from capgate.capabilities import OWNER_CAPABILITIES, Capability, ContextType, Role
from capgate.database import (
    StoreUnavailableError,
    build_engine,
    check_connection,
    get_db_for,
    init_schema,
    is_transient_error,
    retry_on_transient,
)
from capgate.resolver import CapabilityResolver
from capgate.store import (
    InvitationAcceptedError,
    InvitationEmailMismatchError,
    InvitationExpiredError,
    InvitationNotFoundError,
    LastOwnerError,
    MembershipExistsError,
    MembershipStore,
    WorkspaceExistsError,
    hash_token,
    stored_capabilities,
)


# --- Fixtures ---

def _store() -> MembershipStore:
    engine = build_engine("sqlite://")
    init_schema(engine)
    return MembershipStore(engine)


def _seeded():
    """Store with one owner, one workspace and one project."""
    store = _store()
    owner = store.create_user("owner@example.com", "Owner")
    workspace = store.create_workspace("Acme", "acme", owner.id)
    project = store.create_project(workspace["id"], "Website", owner.id)
    return store, owner, workspace, project


# --- Stored capability seeding ---

class TestStoredCapabilities:

    def test_role_defaults(self):
        assert json.loads(stored_capabilities(Role.MEMBER)) == ["view", "create", "edit"]
        assert json.loads(stored_capabilities(Role.VIEWER)) == ["view"]

    def test_explicit_list_wins_for_non_owner(self):
        raw = stored_capabilities(Role.MEMBER, [Capability.VIEW])
        assert json.loads(raw) == ["view"]

    def test_owner_always_stores_full_set(self):
        raw = stored_capabilities(Role.OWNER, [Capability.VIEW])
        assert len(json.loads(raw)) == 6


# --- Workspaces and projects ---

class TestCreation:

    def test_workspace_creator_is_owner(self):
        store, owner, workspace, _ = _seeded()
        membership = store.get_membership(owner.id, ContextType.WORKSPACE, workspace["id"])
        assert membership.role == "owner"

    def test_project_creator_is_project_owner(self):
        store, owner, _, project = _seeded()
        membership = store.get_membership(owner.id, ContextType.PROJECT, project["id"])
        assert membership.role == "owner"

    def test_project_workspace_lookup(self):
        store, _, workspace, project = _seeded()
        assert store.get_project_workspace_id(project["id"]) == workspace["id"]
        assert store.get_project_workspace_id("missing") is None

    def test_workspace_by_slug(self):
        store, _, workspace, _ = _seeded()
        assert store.get_workspace_by_slug("acme")["id"] == workspace["id"]
        assert store.get_workspace_by_slug("nope") is None

    def test_user_email_is_normalised(self):
        store = _store()
        user = store.create_user("  Alice@Example.COM ")
        assert store.get_user_by_email("alice@example.com").id == user.id

    def test_get_or_create_user_reuses_existing(self):
        store = _store()
        first = store.get_or_create_user("a@example.com")
        second = store.get_or_create_user("a@example.com")
        assert first.id == second.id

    def test_list_user_workspaces(self):
        store, owner, workspace, _ = _seeded()
        workspaces = store.list_user_workspaces(owner.id)
        assert workspaces == [{"id": workspace["id"], "name": "Acme", "slug": "acme", "role": "owner"}]


# --- Memberships ---

class TestMemberships:

    def test_add_member_with_role_defaults(self):
        store, owner, workspace, _ = _seeded()
        bob = store.create_user("bob@example.com")
        result = store.add_membership(ContextType.WORKSPACE, workspace["id"], bob.id, Role.VIEWER,
                                      actor_id=owner.id)
        assert json.loads(result["capabilities"]) == ["view"]

    def test_duplicate_membership_rejected(self):
        store, owner, workspace, _ = _seeded()
        with pytest.raises(MembershipExistsError):
            store.add_membership(ContextType.WORKSPACE, workspace["id"], owner.id, Role.MEMBER)

    def test_update_membership(self):
        store, owner, workspace, _ = _seeded()
        bob = store.create_user("bob@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], bob.id, Role.VIEWER)

        updated = store.update_membership(ContextType.WORKSPACE, workspace["id"], bob.id, Role.MANAGER)
        assert updated["role"] == "manager"
        membership = store.get_membership(bob.id, ContextType.WORKSPACE, workspace["id"])
        assert membership.role == "manager"

    def test_update_missing_membership_returns_none(self):
        store, _, workspace, _ = _seeded()
        assert store.update_membership(ContextType.WORKSPACE, workspace["id"], "ghost", Role.MEMBER) is None

    def test_upsert_creates_then_updates(self):
        store, owner, _, project = _seeded()
        bob = store.create_user("bob@example.com")

        _, created = store.upsert_membership(ContextType.PROJECT, project["id"], bob.id, Role.MEMBER)
        assert created is True
        result, created = store.upsert_membership(ContextType.PROJECT, project["id"], bob.id, Role.VIEWER)
        assert created is False
        assert result["role"] == "viewer"

    def test_remove_membership(self):
        store, _, workspace, _ = _seeded()
        bob = store.create_user("bob@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], bob.id, Role.MEMBER)

        assert store.remove_membership(ContextType.WORKSPACE, workspace["id"], bob.id) is True
        assert store.get_membership(bob.id, ContextType.WORKSPACE, workspace["id"]) is None
        assert store.remove_membership(ContextType.WORKSPACE, workspace["id"], bob.id) is False

    def test_cannot_remove_last_workspace_owner(self):
        store, owner, workspace, _ = _seeded()
        with pytest.raises(LastOwnerError):
            store.remove_membership(ContextType.WORKSPACE, workspace["id"], owner.id)

    def test_cannot_demote_last_workspace_owner(self):
        store, owner, workspace, _ = _seeded()
        with pytest.raises(LastOwnerError):
            store.update_membership(ContextType.WORKSPACE, workspace["id"], owner.id, Role.MEMBER)

    def test_owner_removable_when_another_owner_exists(self):
        store, owner, workspace, _ = _seeded()
        other = store.create_user("co-owner@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], other.id, Role.OWNER)
        assert store.remove_membership(ContextType.WORKSPACE, workspace["id"], owner.id) is True

    def test_project_owner_can_be_removed(self):
        """Projects fall back to the workspace, so no last-owner rule applies."""
        store, owner, _, project = _seeded()
        assert store.remove_membership(ContextType.PROJECT, project["id"], owner.id) is True

    def test_list_members_orders_by_role(self):
        store, owner, workspace, _ = _seeded()
        viewer = store.create_user("aaa@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], viewer.id, Role.VIEWER)

        members = store.list_members(ContextType.WORKSPACE, workspace["id"])
        assert [m["role"] for m in members] == ["owner", "viewer"]
        assert members[0]["email"] == "owner@example.com"


# --- Tokens ---

class TestTokens:

    def test_token_round_trip(self):
        store = _store()
        user = store.create_user("t@example.com")
        token = store.create_api_token(user.id)
        assert store.get_token_user(hash_token(token["token"])) == user.id

    def test_unknown_token(self):
        store = _store()
        assert store.get_token_user(hash_token("nope")) is None

    def test_revoked_token_rejected(self):
        store = _store()
        user = store.create_user("t@example.com")
        token = store.create_api_token(user.id)
        with get_db_for(store.engine) as cursor:
            cursor.execute("SELECT id FROM api_tokens")
            token_id = cursor.fetchone()[0]

        assert store.revoke_api_token(token_id) is True
        assert store.get_token_user(hash_token(token["token"])) is None

    def test_expired_token_rejected(self):
        store = _store()
        user = store.create_user("t@example.com")
        token = store.create_api_token(user.id, expires_days=-1)
        assert store.get_token_user(hash_token(token["token"])) is None


# --- Audit ---

class TestAuditTrail:

    def test_changes_are_audited(self):
        store, owner, workspace, project = _seeded()
        bob = store.create_user("bob@example.com")
        store.add_membership(ContextType.PROJECT, project["id"], bob.id, Role.MEMBER, actor_id=owner.id)

        actions = {e["action"] for e in store.list_audit_logs(workspace["id"])}
        assert {"workspace.created", "project.created", "project_member.added"} <= actions

    def test_audit_pagination(self):
        store, _, workspace, _ = _seeded()
        assert len(store.list_audit_logs(workspace["id"], limit=1)) == 1
        assert store.list_audit_logs(workspace["id"], limit=10, offset=10) == []


# --- Resolver over the real store ---

class TestResolverIntegration:

    def test_project_fallback_to_workspace_manager(self):
        store, _, workspace, project = _seeded()
        carol = store.create_user("carol@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], carol.id, Role.MANAGER,
                             [Capability.VIEW, Capability.CREATE, Capability.EDIT])

        caps = CapabilityResolver(store).resolve(carol.id, project["id"], ContextType.PROJECT)
        assert caps == {Capability.VIEW, Capability.CREATE, Capability.EDIT}

    def test_owner_override_ignores_corrupted_row(self):
        store, owner, workspace, _ = _seeded()
        with get_db_for(store.engine) as cursor:
            cursor.execute("UPDATE workspace_members SET capabilities = 'garbage'")
        assert CapabilityResolver(store).resolve(owner.id, workspace["id"]) == OWNER_CAPABILITIES

    def test_corrupted_member_row_resolves_empty(self):
        store, _, workspace, _ = _seeded()
        dave = store.create_user("dave@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], dave.id, Role.MEMBER)
        with get_db_for(store.engine) as cursor:
            cursor.execute(
                "UPDATE workspace_members SET capabilities = '[view' WHERE user_id = ?", (dave.id,)
            )
        assert CapabilityResolver(store).resolve(dave.id, workspace["id"]) == frozenset()

    def test_removed_project_member_falls_back(self):
        store, owner, workspace, project = _seeded()
        erin = store.create_user("erin@example.com")
        store.add_membership(ContextType.WORKSPACE, workspace["id"], erin.id, Role.VIEWER)
        store.add_membership(ContextType.PROJECT, project["id"], erin.id, Role.MEMBER)
        resolver = CapabilityResolver(store)

        assert Capability.EDIT in resolver.resolve(erin.id, project["id"], ContextType.PROJECT)
        store.remove_membership(ContextType.PROJECT, project["id"], erin.id)
        assert resolver.resolve(erin.id, project["id"], ContextType.PROJECT) == {Capability.VIEW}


# --- Retry ---

class TestRetryOnTransient:

    def test_transient_detection(self):
        assert is_transient_error(Exception("database is locked"))
        assert is_transient_error(Exception("[08S01] Communication link failure"))
        assert not is_transient_error(Exception("syntax error"))

    def test_exhausted_retries_raise_store_unavailable(self):
        calls = []

        @retry_on_transient(max_retries=2, base_delay=0)
        def flaky():
            calls.append(1)
            raise Exception("database is locked")

        with patch("capgate.database.time.sleep"):
            with pytest.raises(StoreUnavailableError):
                flaky()
        assert len(calls) == 3

    def test_recovers_after_transient_error(self):
        attempts = iter([Exception("40613 database not available"), None])

        @retry_on_transient(max_retries=2, base_delay=0)
        def sometimes():
            err = next(attempts)
            if err:
                raise err
            return "ok"

        with patch("capgate.database.time.sleep"):
            assert sometimes() == "ok"

    def test_non_transient_error_passes_through(self):
        @retry_on_transient()
        def broken():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            broken()


# --- Concurrent writers ---

class _BlindCursor:
    """Cursor whose pre-check query sees no rows, as when another writer
    commits between the check and the insert."""

    def __init__(self, cursor, fragment):
        self._cursor = cursor
        self._fragment = fragment
        self._blind = False

    def execute(self, sql, params=()):
        self._blind = self._fragment in sql
        return self._cursor.execute(sql, params)

    def fetchone(self):
        row = self._cursor.fetchone()
        return None if self._blind else row

    def __getattr__(self, name):
        return getattr(self._cursor, name)


def _blind_to(fragment):
    @contextmanager
    def fake_get_db_for(engine):
        with get_db_for(engine) as cursor:
            yield _BlindCursor(cursor, fragment)
    return patch("capgate.store.get_db_for", fake_get_db_for)


class TestConcurrentWrites:

    def test_duplicate_slug_rejected(self):
        store, owner, _, _ = _seeded()
        with pytest.raises(WorkspaceExistsError):
            store.create_workspace("Acme 2", "acme", owner.id)

    def test_slug_unique_constraint_maps_to_exists(self):
        store, owner, _, _ = _seeded()
        with _blind_to("FROM workspaces WHERE slug"):
            with pytest.raises(WorkspaceExistsError):
                store.create_workspace("Acme 2", "acme", owner.id)
        assert len(store.list_user_workspaces(owner.id)) == 1

    def test_membership_unique_constraint_maps_to_exists(self):
        store, owner, workspace, _ = _seeded()
        with _blind_to("FROM workspace_members WHERE user_id"):
            with pytest.raises(MembershipExistsError):
                store.add_membership(ContextType.WORKSPACE, workspace["id"], owner.id, Role.MEMBER)

    def test_upsert_that_loses_insert_race_updates(self):
        store, _, _, project = _seeded()
        bob = store.create_user("bob@example.com")
        store.add_membership(ContextType.PROJECT, project["id"], bob.id, Role.MEMBER)

        real_update = store.update_membership
        calls = []

        def update_missing_first_time(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                return None
            return real_update(*args, **kwargs)

        with patch.object(store, "update_membership", side_effect=update_missing_first_time):
            result, created = store.upsert_membership(
                ContextType.PROJECT, project["id"], bob.id, Role.VIEWER
            )

        assert created is False
        assert result["role"] == "viewer"
        assert store.get_membership(bob.id, ContextType.PROJECT, project["id"]).role == "viewer"

    def test_store_errors_are_never_retried(self):
        calls = []

        @retry_on_transient(max_retries=2, base_delay=0)
        def refuse():
            calls.append(1)
            raise WorkspaceExistsError("Workspace slug 'team-4060' already exists")

        with patch("capgate.database.time.sleep") as sleep:
            with pytest.raises(WorkspaceExistsError):
                refuse()
        assert len(calls) == 1
        sleep.assert_not_called()


# --- Invitations ---

class TestInvitations:

    def test_create_and_list(self):
        store, owner, workspace, _ = _seeded()
        invitation = store.create_invitation(workspace["id"], "New@Example.com", Role.VIEWER, owner.id)

        assert invitation["email"] == "new@example.com"
        assert invitation["token"]
        pending = store.list_invitations(workspace["id"])
        assert [i["email"] for i in pending] == ["new@example.com"]
        assert "token" not in pending[0]
        assert "token_hash" not in pending[0]

    def test_validate_describes_invitation(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(workspace["id"], "new@example.com", Role.MEMBER, owner.id)["token"]

        details = store.validate_invitation(token)
        assert details["workspace_name"] == "Acme"
        assert details["role"] == "member"
        assert details["inviter_name"] == "Owner"
        assert details["is_new_user"] is True

    def test_unknown_token(self):
        store = _store()
        with pytest.raises(InvitationNotFoundError):
            store.validate_invitation("nope")

    def test_accept_creates_workspace_membership(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(workspace["id"], "new@example.com", Role.MEMBER, owner.id)["token"]
        invitee = store.create_user("new@example.com")

        result = store.accept_invitation(token, invitee)

        assert result["context_type"] == "workspace"
        membership = store.get_membership(invitee.id, ContextType.WORKSPACE, workspace["id"])
        assert membership.role == "member"
        assert json.loads(membership.capabilities) == ["view", "create", "edit"]
        assert store.list_invitations(workspace["id"]) == []

    def test_accept_twice_rejected(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(workspace["id"], "new@example.com", Role.VIEWER, owner.id)["token"]
        invitee = store.create_user("new@example.com")
        store.accept_invitation(token, invitee)

        with pytest.raises(InvitationAcceptedError):
            store.accept_invitation(token, invitee)
        with pytest.raises(InvitationAcceptedError):
            store.validate_invitation(token)

    def test_project_invitation_creates_project_membership(self):
        store, owner, workspace, project = _seeded()
        token = store.create_invitation(
            workspace["id"], "new@example.com", Role.MEMBER, owner.id, project_id=project["id"]
        )["token"]
        invitee = store.create_user("new@example.com")

        store.accept_invitation(token, invitee)

        assert store.get_membership(invitee.id, ContextType.WORKSPACE, workspace["id"]) is None
        resolver = CapabilityResolver(store)
        assert resolver.resolve(invitee.id, project["id"], ContextType.PROJECT) == {
            Capability.VIEW, Capability.CREATE, Capability.EDIT,
        }

    def test_expired_invitation(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(
            workspace["id"], "new@example.com", Role.MEMBER, owner.id, ttl_days=-1
        )["token"]
        with pytest.raises(InvitationExpiredError):
            store.validate_invitation(token)
        with pytest.raises(InvitationExpiredError):
            store.accept_invitation(token, store.create_user("new@example.com"))

    def test_email_mismatch_leaves_invitation_pending(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(workspace["id"], "new@example.com", Role.MEMBER, owner.id)["token"]
        intruder = store.create_user("intruder@example.com")

        with pytest.raises(InvitationEmailMismatchError):
            store.accept_invitation(token, intruder)
        assert len(store.list_invitations(workspace["id"])) == 1

    def test_existing_member_rolls_back(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(workspace["id"], "owner@example.com", Role.VIEWER, owner.id)["token"]

        with pytest.raises(MembershipExistsError):
            store.accept_invitation(token, owner)
        assert store.get_membership(owner.id, ContextType.WORKSPACE, workspace["id"]).role == "owner"
        assert len(store.list_invitations(workspace["id"])) == 1

    def test_invitation_lifecycle_is_audited(self):
        store, owner, workspace, _ = _seeded()
        token = store.create_invitation(workspace["id"], "new@example.com", Role.VIEWER, owner.id)["token"]
        store.accept_invitation(token, store.create_user("new@example.com"))

        actions = {e["action"] for e in store.list_audit_logs(workspace["id"])}
        assert {"invitation.created", "invitation.accepted"} <= actions


class TestCheckConnection:

    def test_connected(self):
        assert check_connection(_store().engine) is True
