#!/usr/bin/env python3
"""
Turnstile -- operator commands for the authentication store.

Usage:
  python main.py create-account admin@example.com --admin --name "Site Admin"
  python main.py sweep-sessions
  python main.py unlock someone@example.com
  python main.py list-sessions someone@example.com

Reads the same settings as the API (environment / .env), so DATABASE_URL
and the signing secrets must be set, or DEBUG=true for local use.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.credentials import CredentialAuthenticator, password_policy_errors
from auth.errors import AccountExists
from auth.reaper import SessionReaper
from auth.sessions import SessionRegistry
from auth.store import AccountStore
from core.config import ConfigurationError, Settings, get_settings


def _read_password() -> Optional[str]:
    """Prompt twice without echo. Returns None if the entries differ or break the password policy."""
    password = getpass.getpass("  Password: ")
    problems = password_policy_errors(password)
    if problems:
        for problem in problems:
            print(f"  [!] {problem}.")
        return None
    if getpass.getpass("  Repeat password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def cmd_create_account(args: argparse.Namespace, store: AccountStore, settings: Settings) -> int:
    password = _read_password()
    if password is None:
        return 1
    authenticator = CredentialAuthenticator(store, settings)
    role = "admin" if args.admin else "user"
    try:
        account = authenticator.register(args.email, password, display_name=args.name or "", role=role)
    except AccountExists:
        print(f"  [!] An account for {args.email} already exists.")
        return 1
    print(f"  Created {account.role} account {account.email} (id {account.id}).")
    return 0


def cmd_sweep_sessions(args: argparse.Namespace, store: AccountStore, settings: Settings) -> int:
    reaper = SessionReaper(SessionRegistry(store, settings))
    print(f"  Sweeping sessions idle for more than {settings.session_inactivity_days} days...", end=" ", flush=True)
    stats = reaper.sweep()
    print("done.")
    print(f"  Accounts scanned:  {stats.accounts_scanned}")
    print(f"  Sessions removed:  {stats.sessions_removed}")
    print(f"  Accounts updated:  {stats.accounts_updated}")
    if stats.errors:
        print(f"  [!] {stats.errors} account(s) failed; see the log for details.")
        return 1
    return 0


def cmd_unlock(args: argparse.Namespace, store: AccountStore, settings: Settings) -> int:
    account = store.get_by_email(args.email)
    if account is None:
        print(f"  [!] No account for {args.email}.")
        return 1
    store.reset_lockout(account.id)
    print(f"  Unlocked {account.email} ({account.failed_login_attempts} failed attempt(s) cleared).")
    return 0


def cmd_list_sessions(args: argparse.Namespace, store: AccountStore, settings: Settings) -> int:
    account = store.get_by_email(args.email)
    if account is None:
        print(f"  [!] No account for {args.email}.")
        return 1
    registry = SessionRegistry(store, settings)
    active_ids = {s.session_id for s in registry.list_active(account)}
    if not account.sessions:
        print(f"  {account.email} has no sessions.")
        return 0
    print(f"  Sessions for {account.email}:")
    for session in account.sessions:
        state = "active" if session.session_id in active_ids else "stale"
        print(
            f"  {session.session_id[:12]}  {session.device_class.value:<8} {state:<6} "
            f"{session.last_activity:%Y-%m-%d %H:%M}  {session.source_ip or '-':<15} {session.device_label}"
        )
    return 0


_COMMANDS = {
    "create-account": cmd_create_account,
    "sweep-sessions": cmd_sweep_sessions,
    "unlock": cmd_unlock,
    "list-sessions": cmd_list_sessions,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="turnstile",
        description="Operator commands for Turnstile accounts and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account admin@example.com --admin
  python main.py sweep-sessions
  python main.py unlock someone@example.com
  python main.py list-sessions someone@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-account", help="Create a password account (password is prompted)")
    create.add_argument("email", metavar="EMAIL")
    create.add_argument("--admin", action="store_true", help="Give the account the admin role")
    create.add_argument("--name", metavar="NAME", help="Display name (default: the email's local part)")

    sub.add_parser("sweep-sessions", help="Remove sessions idle past the inactivity window")

    unlock = sub.add_parser("unlock", help="Clear a lockout and the failed-attempt counter")
    unlock.add_argument("email", metavar="EMAIL")

    list_sessions = sub.add_parser("list-sessions", help="Show an account's device sessions")
    list_sessions.add_argument("email", metavar="EMAIL")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    try:
        settings = get_settings()
    except ConfigurationError as exc:
        print(f"  [!] {exc}")
        return 2

    store = AccountStore(settings.database_url)
    try:
        return _COMMANDS[args.command](args, store, settings)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
