# Guild Vault - Operator CLI
#
# Maintenance commands for whoever runs the vault process. This is an
# operator tool with direct database access: it does not go through
# permission checks, and it never prints passwords.
#
#   guild-vault keygen
#   guild-vault list
#   guild-vault totp <account-id>
#   guild-vault prune-logs [--days N]
#   guild-vault logs [--account ID] [--user ID] [--limit N]

import argparse
import json
import logging
import sys

from . import __version__
from .config import generate_master_key, load_config
from .exceptions import VaultError


def _build_vault(args):
    from .vault.service import SharedAccountVault

    return SharedAccountVault(load_config(args.env_file))


def cmd_keygen(args) -> int:
    print(generate_master_key())
    return 0


def cmd_list(args) -> int:
    vault = _build_vault(args)
    accounts = vault.get_all_accounts()
    if args.json:
        print(json.dumps([a.to_dict() for a in accounts], indent=2))
        return 0
    if not accounts:
        print("No accounts stored.")
        return 0
    for account in accounts:
        flags = "".join((
            "P" if account.has_password else "-",
            "K" if account.has_kafra_password else "-",
            "T" if account.has_totp_secret else "-",
        ))
        print(f"{account.id}  {flags}  {account.server.value:<9}  {account.name} ({account.login})")
    return 0


def cmd_totp(args) -> int:
    vault = _build_vault(args)
    if vault.get_account(args.account_id) is None:
        print(f"Account not found: {args.account_id}", file=sys.stderr)
        return 1
    code = vault.generate_totp(args.account_id)
    if code is None:
        print("This account has no TOTP secret configured.", file=sys.stderr)
        return 1
    print(f"{code.code}  (valid for {code.remaining_seconds}s)")
    return 0


def cmd_prune_logs(args) -> int:
    vault = _build_vault(args)
    removed = vault.clear_old_access_logs(args.days)
    print(f"Removed {removed} access log entries.")
    return 0


def cmd_logs(args) -> int:
    vault = _build_vault(args)
    entries = vault.get_access_logs(account_id=args.account, user_id=args.user, limit=args.limit)
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0
    for entry in entries:
        print(
            f"{entry.timestamp}  {entry.action.value:<6}  {entry.account_name} "
            f"by {entry.username or entry.user_id}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="guild-vault",
        description="Guild Vault - shared game account credential vault",
    )
    parser.add_argument("--env-file", default=None, help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"Guild Vault v{__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Print a new random master key (hex)")
    keygen.set_defaults(func=cmd_keygen)

    list_cmd = sub.add_parser("list", help="List stored accounts (no secrets)")
    list_cmd.add_argument("--json", action="store_true")
    list_cmd.set_defaults(func=cmd_list)

    totp = sub.add_parser("totp", help="Print the current TOTP code of an account")
    totp.add_argument("account_id")
    totp.set_defaults(func=cmd_totp)

    prune = sub.add_parser("prune-logs", help="Delete old access log entries")
    prune.add_argument("--days", type=int, default=None,
                       help="Age in days (default: GUILD_VAULT_ACCESS_LOG_RETENTION_DAYS)")
    prune.set_defaults(func=cmd_prune_logs)

    logs = sub.add_parser("logs", help="Show access log entries, newest first")
    logs.add_argument("--account", default=None)
    logs.add_argument("--user", default=None)
    logs.add_argument("--limit", type=int, default=100)
    logs.add_argument("--json", action="store_true")
    logs.set_defaults(func=cmd_logs)

    return parser


def main(argv=None) -> int:
    """Entry point for the ``guild-vault`` console script."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except VaultError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
