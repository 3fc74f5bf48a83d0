#!/usr/bin/env python3
"""Register or update an AI provider for a tenant.

Usage:
    # Tenant provider with an encrypted key:
    PROVIDER_KEY_ENCRYPTION_KEY=... python scripts/provision_provider.py \
        --id acme-claude --account-id acme --provider anthropic \
        --model claude-sonnet-4-5 --use-case complex --use-case workflow \
        --api-key sk-ant-...

    # Global default without a stored key (falls back to OPENAI_API_KEY):
    python scripts/provision_provider.py --id global-mini --provider openai \
        --model gpt-4o-mini --default

Environment Variables:
    PROVIDER_KEY_ENCRYPTION_KEY: Fernet key used to encrypt --api-key
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_FAMILIES = ("openai", "anthropic")
_USE_CASES = ("draft", "summary", "complex", "vision", "general", "voice", "workflow")


async def provision_provider(args: argparse.Namespace) -> dict:
    """Encrypt the key, upsert the provider and drop the tenant's cached list."""
    # Import here to avoid loading config before env vars are set
    from fieldllm.service.model_backend import encrypt_api_key
    from fieldllm.service.runtime import get_runtime
    from fieldllm.storage.models import ProviderRecord

    runtime = get_runtime()
    encrypted = None
    if args.api_key:
        secret = runtime.settings.provider_key_encryption_key
        if not secret:
            raise RuntimeError("PROVIDER_KEY_ENCRYPTION_KEY is required to store an API key")
        encrypted = encrypt_api_key(args.api_key, secret)

    record = ProviderRecord(
        id=args.id,
        name=args.name or f"{args.provider}-{args.model}",
        provider=args.provider,
        model=args.model,
        api_key_encrypted=encrypted,
        is_default=args.default,
        use_cases=tuple(dict.fromkeys(args.use_case or ())),
        max_tokens=args.max_tokens,
        is_active=not args.inactive,
        account_id=args.account_id,
    )

    if args.dry_run:
        print(f"[DRY RUN] Would upsert provider {record.id} ({record.provider}/{record.model})")
        return {"provider_id": record.id, "status": "dry_run"}

    runtime.store.upsert_provider(record)
    await runtime.providers.invalidate(record.account_id)
    await runtime.close()
    return {
        "provider_id": record.id,
        "status": "upserted",
        "encrypted_key": bool(encrypted),
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision an AI provider for FieldLLM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--id", required=True, help="Stable provider id")
    parser.add_argument("--name", help="Display name (defaults to <provider>-<model>)")
    parser.add_argument("--provider", required=True, choices=_FAMILIES)
    parser.add_argument("--model", required=True)
    parser.add_argument("--account-id", help="Tenant id; omit for a global provider")
    parser.add_argument(
        "--use-case",
        action="append",
        choices=_USE_CASES,
        help="Use-case tag (repeatable)",
    )
    parser.add_argument("--max-tokens", type=int)
    parser.add_argument("--default", action="store_true", help="Mark as the tenant default")
    parser.add_argument("--inactive", action="store_true")
    parser.add_argument(
        "--api-key",
        default=os.environ.get("PROVIDER_API_KEY"),
        help="Plaintext API key to encrypt (or set PROVIDER_API_KEY env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(provision_provider(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "upserted":
        print(f"Provider {result['provider_id']} saved")
        if result["encrypted_key"]:
            print("  API key stored encrypted")


if __name__ == "__main__":
    main()
