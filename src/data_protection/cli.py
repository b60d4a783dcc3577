"""
Key administration CLI.

Usage:
    data-protection-keys list
    data-protection-keys create [--activation ISO] [--lifetime-days N]
    data-protection-keys revoke KEY_ID [--reason TEXT]
    data-protection-keys revoke-all [--reason TEXT]

Or run directly:
    python -m data_protection.cli list

Configuration comes from the environment or a .env file (see
data_protection.config for the variables).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from .config import DataProtectionOptions, build_provider
from .errors import DataProtectionError
from .key_manager import KeyManager
from .logging_utils import configure_logging
from .postgres_storage import PostgresKeyRepository


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_key_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a key id: {value!r}")


# =============================================================================
# Commands
# =============================================================================


async def cmd_list(manager: KeyManager, args: argparse.Namespace) -> None:
    ring = await manager.get_ring()
    keys = await manager.list_keys()
    if not keys:
        print("No keys")
        return

    default_id = ring.default_key.key_id if ring.default_key else None
    print(f"{'KEY ID':<38}{'ACTIVATION':<27}{'EXPIRATION':<27}{'ALGORITHM':<26}STATUS")
    for key in keys:
        status = []
        if key.key_id == default_id:
            status.append("default")
        if key.revoked:
            status.append("revoked")
        if not key.is_usable:
            status.append("unusable")
        print(
            f"{str(key.key_id):<38}"
            f"{key.activation_time.isoformat(timespec='seconds'):<27}"
            f"{key.expiration_time.isoformat(timespec='seconds'):<27}"
            f"{str(key.algorithm):<26}"
            f"{','.join(status) or '-'}"
        )


async def cmd_create(manager: KeyManager, args: argparse.Namespace) -> None:
    activation = args.activation or manager.now()
    expiration = None
    if args.lifetime_days is not None:
        expiration = activation + timedelta(days=args.lifetime_days)
    key = await manager.create_key(activation, expiration)
    print(f"Created key {key.key_id}")
    print(f"  activation: {key.activation_time.isoformat()}")
    print(f"  expiration: {key.expiration_time.isoformat()}")


async def cmd_revoke(manager: KeyManager, args: argparse.Namespace) -> None:
    await manager.revoke_key(args.key_id, args.reason)
    print(f"Revoked key {args.key_id}")


async def cmd_revoke_all(manager: KeyManager, args: argparse.Namespace) -> None:
    count = await manager.revoke_all_keys(reason=args.reason)
    print(f"Revoked {count} keys")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="data-protection-keys",
        description="Manage data protection keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--env-file", help="Path to a .env file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List keys in the key ring")
    list_parser.set_defaults(func=cmd_list)

    create_parser = subparsers.add_parser("create", help="Create a key")
    create_parser.add_argument("--activation", type=_parse_time, help="Activation time (ISO 8601)")
    create_parser.add_argument("--lifetime-days", type=int, help="Lifetime in days")
    create_parser.set_defaults(func=cmd_create)

    revoke_parser = subparsers.add_parser("revoke", help="Revoke one key")
    revoke_parser.add_argument("key_id", type=_parse_key_id, help="Key id")
    revoke_parser.add_argument("--reason", help="Revocation reason")
    revoke_parser.set_defaults(func=cmd_revoke)

    revoke_all_parser = subparsers.add_parser("revoke-all", help="Revoke every existing key")
    revoke_all_parser.add_argument("--reason", help="Revocation reason")
    revoke_all_parser.set_defaults(func=cmd_revoke_all)

    return parser


async def run(args: argparse.Namespace) -> None:
    options = DataProtectionOptions.from_env(args.env_file)
    provider = await build_provider(options)
    repository = provider.key_manager.repository
    try:
        await args.func(provider.key_manager, args)
    finally:
        if isinstance(repository, PostgresKeyRepository):
            await repository.pool.close()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        asyncio.run(run(args))
    except DataProtectionError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
