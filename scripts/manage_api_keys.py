#!/usr/bin/env python3
"""
CLI for API key and audit administration.

Provides commands to generate, list, revoke and rotate API keys, and to
check the audit trail's integrity digests.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from trustcore.config import settings
from trustcore.container import ServiceContainer, build_services
from trustcore.exceptions import TrustCoreError
from trustcore.models.api_key import PERMISSION_PRESETS


async def cmd_generate(
    user_id: str,
    name: str,
    permissions: Optional[List[str]],
    preset: Optional[str],
    ip_whitelist: Optional[List[str]],
    expiry_days: Optional[int],
    rate_limit: Optional[int],
    description: Optional[str],
    services: Optional[ServiceContainer] = None,
) -> None:
    """
    Issue a new API key for a user.

    Args:
        user_id: Owning user
        name: Human-readable label
        permissions: Explicit scopes
        preset: Named scope bundle used when no scopes are given
        ip_whitelist: Exact IPs or CIDR blocks
        expiry_days: Lifetime in days
        rate_limit: Requests per minute
        description: Optional note
        services: Prebuilt container (built from settings if omitted)
    """
    services = services or build_services()
    scopes = permissions or list(PERMISSION_PRESETS.get(preset or "read_only", []))

    result = await services.api_keys.create_key(
        user_id,
        name=name,
        permissions=scopes,
        ip_whitelist=ip_whitelist,
        expiry_days=expiry_days,
        rate_limit_per_minute=rate_limit,
        description=description,
    )
    key = result.key

    print("✓ API Key created successfully")
    print(f"\nKey ID: {key.key_id}")
    print(f"API Key: {result.api_key}")
    print(f"API Secret: {result.api_secret}")
    print("\n⚠️  IMPORTANT: Save the key and secret now!")
    print("   They will not be shown again.")
    print(f"\nName: {key.name}")
    print(f"Permissions: {', '.join(key.permissions)}")
    print(f"Rate Limit: {key.rate_limit_per_minute} requests/minute")
    print(f"Expires: {key.expires_at.isoformat()}")
    if key.ip_whitelist:
        print(f"IP Whitelist: {', '.join(key.ip_whitelist)}")


async def cmd_list(user_id: str, services: Optional[ServiceContainer] = None) -> None:
    """List a user's API keys with their metadata."""
    services = services or build_services()
    keys = await services.api_keys.list_keys(user_id)

    if not keys:
        print("No API keys found.")
        return

    print(f"\n{'Key ID':<38} {'Prefix':<14} {'Status':<10} {'Uses':<8}"
          f" {'Expires':<22} {'Name':<30}")
    print("-" * 124)

    for key in keys:
        status = "active" if key.is_active else "revoked"
        name = key.name
        if len(name) > 27:
            name = name[:27] + "..."
        print(
            f"{key.key_id:<38} {key.key_prefix:<14} {status:<10} {key.usage_count:<8}"
            f" {key.expires_at.strftime('%Y-%m-%d %H:%M:%S'):<22} {name:<30}"
        )

    print(f"\nTotal: {len(keys)} API keys")


async def cmd_revoke(
    key_id: str, user_id: str, services: Optional[ServiceContainer] = None
) -> None:
    """
    Revoke an API key.

    Args:
        key_id: The key ID to revoke
        user_id: The owning user
    """
    services = services or build_services()
    try:
        await services.api_keys.revoke_key(key_id, user_id)
    except TrustCoreError as e:
        print(f"✗ Error: {e.message}")
        sys.exit(1)

    print(f"✓ API key {key_id} has been revoked")


async def cmd_rotate(
    key_id: str, user_id: str, services: Optional[ServiceContainer] = None
) -> None:
    """
    Issue a new secret for an API key.

    Args:
        key_id: The key ID to rotate
        user_id: The owning user
    """
    services = services or build_services()
    try:
        new_secret = await services.api_keys.rotate_key(key_id, user_id)
    except TrustCoreError as e:
        print(f"✗ Error: {e.message}")
        sys.exit(1)

    print(f"✓ API key {key_id} rotated")
    print(f"New API Secret: {new_secret}")
    print("\n⚠️  The previous secret no longer works.")


async def cmd_verify_audit(services: Optional[ServiceContainer] = None) -> None:
    """Recompute every audit digest and report mismatches."""
    services = services or build_services()
    report = await services.audit_log.verify_integrity()

    if report.valid:
        print(f"✓ Audit trail intact ({report.checked} records checked)")
        return

    print(f"✗ {len(report.invalid_record_ids)} of {report.checked} records failed verification:")
    for event_id in report.invalid_record_ids:
        print(f"  - {event_id}")
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Manage API keys and audit records for the Trust Core API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Generate command
    generate_parser = subparsers.add_parser("generate", help="Generate a new API key")
    generate_parser.add_argument("--user-id", type=str, required=True, help="Owning user")
    generate_parser.add_argument("--name", type=str, required=True, help="Key label")
    generate_parser.add_argument(
        "--permissions",
        type=str,
        nargs="+",
        help="Scopes (space-separated)",
    )
    generate_parser.add_argument(
        "--preset",
        type=str,
        choices=sorted(PERMISSION_PRESETS),
        help="Scope bundle used when --permissions is omitted (default: read_only)",
    )
    generate_parser.add_argument(
        "--ip-whitelist",
        type=str,
        nargs="+",
        help="Allowed IPs or CIDR blocks (space-separated)",
    )
    generate_parser.add_argument(
        "--expiry-days",
        type=int,
        help=f"Lifetime in days (default: {settings.api_key_default_expiry_days})",
    )
    generate_parser.add_argument(
        "--rate-limit",
        type=int,
        help=f"Rate limit (default: {settings.default_rate_limit_per_minute})",
    )
    generate_parser.add_argument("--description", type=str, help="Optional note")

    # List command
    list_parser = subparsers.add_parser("list", help="List a user's API keys")
    list_parser.add_argument("--user-id", type=str, required=True, help="Owning user")

    # Revoke command
    revoke_parser = subparsers.add_parser("revoke", help="Revoke an API key")
    revoke_parser.add_argument("key_id", type=str, help="Key ID to revoke")
    revoke_parser.add_argument("--user-id", type=str, required=True, help="Owning user")

    # Rotate command
    rotate_parser = subparsers.add_parser("rotate", help="Rotate an API key's secret")
    rotate_parser.add_argument("key_id", type=str, help="Key ID to rotate")
    rotate_parser.add_argument("--user-id", type=str, required=True, help="Owning user")

    # Audit integrity command
    subparsers.add_parser("verify-audit", help="Check audit record digests")

    return parser


def main() -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Execute command
    if args.command == "generate":
        asyncio.run(
            cmd_generate(
                args.user_id,
                args.name,
                args.permissions,
                args.preset,
                args.ip_whitelist,
                args.expiry_days,
                args.rate_limit,
                args.description,
            )
        )
    elif args.command == "list":
        asyncio.run(cmd_list(args.user_id))
    elif args.command == "revoke":
        asyncio.run(cmd_revoke(args.key_id, args.user_id))
    elif args.command == "rotate":
        asyncio.run(cmd_rotate(args.key_id, args.user_id))
    elif args.command == "verify-audit":
        asyncio.run(cmd_verify_audit())


if __name__ == "__main__":
    main()
