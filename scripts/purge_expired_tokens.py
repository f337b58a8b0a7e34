#!/usr/bin/env python3
"""Delete every expired access token in one pass.

Tokens are normally removed the next time someone presents them; this sweep
clears the ones that are never presented again. It runs the same code path as
the in-process sweep enabled by TOKEN_SWEEP_INTERVAL_SECONDS, so it suits a
cron job when that is left disabled.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_expired_tokens.py
    python scripts/purge_expired_tokens.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Set to true to run against an empty in-memory store
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge(dry_run: bool = False) -> Optional[int]:
    """Return the number of tokens removed, or None on a dry run."""
    # Imported here so argument parsing does not load settings
    from kioskapi.service.runtime import Runtime

    runtime = Runtime()
    await runtime.startup()
    try:
        if dry_run:
            print("[DRY RUN] Connected to store; no tokens deleted")
            return None
        return await runtime.tokens.purge_expired()
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired access tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Check store connectivity without deleting anything",
    )
    args = parser.parse_args()

    try:
        removed = asyncio.run(purge(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if removed is not None:
        print(f"Removed {removed} expired token(s)")


if __name__ == "__main__":
    main()
