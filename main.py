#!/usr/bin/env python3
"""
AuthGate -- operator CLI for the credential and session-token service.

Usage:
  python main.py create-user admin@example.com --first-name Ada --last-name Lovelace
  python main.py create-user ops@example.com --inactive
  python main.py list-users
  python main.py revoke-sessions 3
  python main.py serve --host 0.0.0.0 --port 8082

Environment variables (see core/config.py):
  DATABASE_URL / DSN   SQLAlchemy URL of the users/tokens database.
  BCRYPT_ROUNDS        bcrypt cost factor (default 12).
  SESSION_POLICY       "multi" (default) or "single".

Passwords are read with getpass, never from the command line, so they do not
end up in shell history or the process list.
"""

import argparse
import getpass
import sys

from auth.errors import ErrorClassifier, InvalidInputError, ResourceNotFoundError, StorageError
from auth.models import NewUser
from auth.service import AuthenticationService
from auth.store import TokenStore, UserStore, create_db_engine
from auth.tokens import PasswordHasher
from core.config import get_settings


def _build_service() -> AuthenticationService:
    settings = get_settings()
    engine = create_db_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    return AuthenticationService(
        UserStore(engine),
        TokenStore(engine),
        PasswordHasher(rounds=settings.bcrypt_rounds),
        token_ttl=settings.token_ttl,
        single_session=settings.single_session,
    )


def _read_password() -> str:
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    if not first:
        print("  [!] Password must not be empty.")
        sys.exit(1)
    return first


def cmd_create_user(service: AuthenticationService, args: argparse.Namespace) -> int:
    password = _read_password()
    try:
        user = service.register_user(
            NewUser(
                email=args.email,
                password=password,
                first_name=args.first_name,
                last_name=args.last_name,
                active=not args.inactive,
            )
        )
    except (InvalidInputError, StorageError) as exc:
        result = ErrorClassifier().classify(exc)
        print(f"  [!] Could not create user: {result.message}")
        return 1
    print(f"  Created user {user.id} <{user.email}>{'' if user.active else ' (inactive)'}")
    return 0


def cmd_list_users(service: AuthenticationService, args: argparse.Namespace) -> int:
    summaries = service.list_users()
    if not summaries:
        print("  No users.")
        return 0
    print(f"  {'ID':>4}  {'EMAIL':<32} {'NAME':<28} {'ACTIVE':<7} SESSION")
    for s in summaries:
        name = f"{s.user.first_name} {s.user.last_name}".strip()
        print(
            f"  {s.user.id:>4}  {s.user.email:<32} {name:<28} "
            f"{'yes' if s.user.active else 'no':<7} {'yes' if s.has_active_token else 'no'}"
        )
    return 0


def cmd_revoke_sessions(service: AuthenticationService, args: argparse.Namespace) -> int:
    try:
        removed = service.revoke_all_sessions(args.user_id)
    except ResourceNotFoundError:
        print(f"  [!] No user with id {args.user_id}.")
        return 1
    print(f"  Revoked {removed} session(s) for user {args.user_id}.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Manage AuthGate users and sessions, or run the API server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user admin@example.com
  python main.py list-users
  python main.py revoke-sessions 3
  python main.py serve --port 8082
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account (password prompted)")
    create.add_argument("email", help="Login email, must be unique")
    create.add_argument("--first-name", default="", help="Given name")
    create.add_argument("--last-name", default="", help="Family name")
    create.add_argument("--inactive", action="store_true", help="Create the account disabled")

    sub.add_parser("list-users", help="List accounts and whether they hold an unexpired token")

    revoke = sub.add_parser("revoke-sessions", help="Delete every token of a user")
    revoke.add_argument("user_id", type=int, help="Numeric user id")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8082, help="Port (default: 8082)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return
    if args.command == "serve":
        sys.exit(cmd_serve(args))

    service = _build_service()
    try:
        handlers = {
            "create-user": cmd_create_user,
            "list-users": cmd_list_users,
            "revoke-sessions": cmd_revoke_sessions,
        }
        sys.exit(handlers[args.command](service, args))
    finally:
        service.users.engine.dispose()


if __name__ == "__main__":
    main()
