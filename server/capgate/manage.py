"""
Access management CLI for capgate.

Manages users, tokens, workspaces, projects and memberships in the configured
database, and resolves effective capabilities for debugging.

Usage:
  capgate-admin init-db
  capgate-admin create-user --user EMAIL [--name NAME]
  capgate-admin create-token --user EMAIL [--expires DAYS] [--notes TEXT]
  capgate-admin revoke-token --token-id ID
  capgate-admin create-workspace --owner EMAIL --name NAME --slug SLUG
  capgate-admin create-project --owner EMAIL --workspace SLUG --name NAME
  capgate-admin add-membership --user EMAIL (--workspace SLUG | --project ID) --role ROLE [--capabilities view,edit]
  capgate-admin remove-membership --user EMAIL (--workspace SLUG | --project ID)
  capgate-admin list-members (--workspace SLUG | --project ID)
  capgate-admin resolve --user EMAIL (--workspace SLUG | --project ID)

Every command accepts --database-url to override DATABASE_URL.
"""

import argparse

from .capabilities import Capability, ContextType, Role, ordered
from .database import build_engine, init_schema
from .resolver import CapabilityResolver
from .store import LastOwnerError, MembershipExistsError, MembershipStore, WorkspaceExistsError


# ==========================================================================
# Helpers
# ==========================================================================

def _parse_capability_list(value: str) -> list[Capability]:
    try:
        return [Capability(token.strip()) for token in value.split(",") if token.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _context(store: MembershipStore, args) -> tuple[ContextType, str] | None:
    """Turn --workspace SLUG / --project ID into (context_type, context_id)."""
    if args.project:
        if store.get_project(args.project) is None:
            print(f"Error: Project '{args.project}' not found.")
            return None
        return ContextType.PROJECT, args.project

    workspace = store.get_workspace_by_slug(args.workspace)
    if workspace is None:
        print(f"Error: Workspace '{args.workspace}' not found.")
        return None
    return ContextType.WORKSPACE, workspace["id"]


def _user(store: MembershipStore, email: str):
    user = store.get_user_by_email(email)
    if user is None:
        print(f"Error: User '{email}' not found.")
    return user


def _add_context_args(parser: argparse.ArgumentParser) -> None:
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--workspace", help="Workspace slug")
    target.add_argument("--project", help="Project id")


# ==========================================================================
# Commands
# ==========================================================================

def cmd_init_db(store, args):
    init_schema(store.engine)
    print("Schema ready.")
    return 0


def cmd_create_user(store, args):
    user = store.get_or_create_user(args.user, args.name)
    print(f"User {user.email} id={user.id}")
    return 0


def cmd_create_token(store, args):
    user = store.get_or_create_user(args.user)
    token = store.create_api_token(user.id, expires_days=args.expires, notes=args.notes)

    print("\n=== Token Created ===")
    print(f"User:       {user.email}")
    print(f"Expires:    {token['expires_at']}")
    print()
    print("TOKEN (save this -- it will NOT be shown again):")
    print(f"  {token['token']}")
    return 0


def cmd_revoke_token(store, args):
    if store.revoke_api_token(args.token_id):
        print(f"Token {args.token_id} revoked.")
        return 0
    print(f"Token {args.token_id} not found.")
    return 1


def cmd_create_workspace(store, args):
    owner = store.get_or_create_user(args.owner)
    try:
        workspace = store.create_workspace(args.name, args.slug, owner.id)
    except WorkspaceExistsError:
        print(f"Error: Workspace '{args.slug}' already exists.")
        return 1
    print(f"Workspace '{args.slug}' id={workspace['id']} (owner: {owner.email})")
    return 0


def cmd_create_project(store, args):
    owner = store.get_or_create_user(args.owner)
    workspace = store.get_workspace_by_slug(args.workspace)
    if workspace is None:
        print(f"Error: Workspace '{args.workspace}' not found.")
        return 1
    project = store.create_project(workspace["id"], args.name, owner.id)
    print(f"Project '{args.name}' id={project['id']} in workspace '{args.workspace}'")
    return 0


def cmd_add_membership(store, args):
    context = _context(store, args)
    if context is None:
        return 1
    context_type, context_id = context
    user = store.get_or_create_user(args.user)
    role = Role(args.role)
    try:
        membership, created = store.upsert_membership(
            context_type, context_id, user.id, role, args.capabilities, actor_id="cli-admin",
        )
    except (MembershipExistsError, LastOwnerError) as e:
        print(f"Error: {e}")
        return 1
    verb = "Added" if created else "Updated"
    print(f"{verb} {user.email} as {role.value} in {context_type.value} {context_id}: {membership['capabilities']}")
    return 0


def cmd_remove_membership(store, args):
    context = _context(store, args)
    user = _user(store, args.user)
    if context is None or user is None:
        return 1
    context_type, context_id = context
    try:
        removed = store.remove_membership(context_type, context_id, user.id, actor_id="cli-admin")
    except LastOwnerError as e:
        print(f"Error: {e}")
        return 1
    if removed:
        print(f"Removed {user.email} from {context_type.value} {context_id}.")
        return 0
    print(f"{user.email} is not a member of {context_type.value} {context_id}.")
    return 1


def cmd_list_members(store, args):
    context = _context(store, args)
    if context is None:
        return 1
    members = store.list_members(*context)
    if not members:
        print("No members found.")
        return 0

    print(f"\n{'Email':<30} {'Role':<10} {'Capabilities'}")
    print("-" * 80)
    for m in members:
        print(f"{m['email']:<30} {m['role']:<10} {m['capabilities']}")
    return 0


def cmd_resolve(store, args):
    context = _context(store, args)
    user = _user(store, args.user)
    if context is None or user is None:
        return 1
    context_type, context_id = context
    caps = CapabilityResolver(store).resolve(user.id, context_id, context_type)
    print(", ".join(ordered(caps)) or "(no access)")
    return 0


# ==========================================================================
# CLI Entry Point
# ==========================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capgate-admin",
        description="capgate access manager",
    )
    parser.add_argument("--database-url", help="SQLAlchemy URL (default: settings)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("init-db", help="Create missing tables")

    p_user = sub.add_parser("create-user", help="Create a user")
    p_user.add_argument("--user", required=True, help="User email address")
    p_user.add_argument("--name", help="Display name")

    p_token = sub.add_parser("create-token", help="Create an API token for a user")
    p_token.add_argument("--user", required=True, help="User email address")
    p_token.add_argument("--expires", type=int, help="Expiry in days (default: never)")
    p_token.add_argument("--notes", help="Admin notes")

    p_revoke = sub.add_parser("revoke-token", help="Revoke an API token")
    p_revoke.add_argument("--token-id", type=int, required=True)

    p_ws = sub.add_parser("create-workspace", help="Create a workspace")
    p_ws.add_argument("--owner", required=True, help="Owner email address")
    p_ws.add_argument("--name", required=True)
    p_ws.add_argument("--slug", required=True)

    p_proj = sub.add_parser("create-project", help="Create a project in a workspace")
    p_proj.add_argument("--owner", required=True, help="Owner email address")
    p_proj.add_argument("--workspace", required=True, help="Workspace slug")
    p_proj.add_argument("--name", required=True)

    p_add = sub.add_parser("add-membership", help="Add or update a membership")
    p_add.add_argument("--user", required=True, help="User email address")
    _add_context_args(p_add)
    p_add.add_argument("--role", required=True, choices=[r.value for r in Role])
    p_add.add_argument("--capabilities", type=_parse_capability_list,
                       help="Comma-separated capabilities (default: role defaults)")

    p_rm = sub.add_parser("remove-membership", help="Remove a membership")
    p_rm.add_argument("--user", required=True, help="User email address")
    _add_context_args(p_rm)

    p_list = sub.add_parser("list-members", help="List members of a workspace or project")
    _add_context_args(p_list)

    p_resolve = sub.add_parser("resolve", help="Show a user's effective capabilities")
    p_resolve.add_argument("--user", required=True, help="User email address")
    _add_context_args(p_resolve)

    return parser


COMMANDS = {
    "init-db": cmd_init_db,
    "create-user": cmd_create_user,
    "create-token": cmd_create_token,
    "revoke-token": cmd_revoke_token,
    "create-workspace": cmd_create_workspace,
    "create-project": cmd_create_project,
    "add-membership": cmd_add_membership,
    "remove-membership": cmd_remove_membership,
    "list-members": cmd_list_members,
    "resolve": cmd_resolve,
}


def main(argv=None, store: MembershipStore = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    if store is None:
        engine = build_engine(args.database_url) if args.database_url else None
        store = MembershipStore(engine)
    return COMMANDS[args.command](store, args)


if __name__ == "__main__":
    raise SystemExit(main())
