#!/usr/bin/env python3
"""Delete expired GitHub OAuth handshake states.

Usage:
  python -m codelink.scripts.cleanup_oauth_states
  python -m codelink.scripts.cleanup_oauth_states --dry-run
"""
from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

import aiosqlite

from codelink.db import connection, migrations
from codelink.services.oauth_handshake import cleanup_expired_states


async def _count_expired(db) -> int:
    now = datetime.now(timezone.utc).isoformat()
    if isinstance(db, aiosqlite.Connection):
        async with db.execute("SELECT COUNT(*) FROM github_oauth_states WHERE expires_at < ?", (now,)) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)
    return int(await db.fetchval("SELECT COUNT(*) FROM github_oauth_states WHERE expires_at < $1", now) or 0)


async def _run(dry_run: bool) -> int:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    try:
        if dry_run:
            print(f"Expired states: {await _count_expired(db)}")
        else:
            print(f"Deleted expired states: {await cleanup_expired_states(db)}")
    finally:
        await connection.close_connection()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete expired GitHub OAuth handshake states.")
    parser.add_argument("--dry-run", action="store_true", help="Only count expired states")
    args = parser.parse_args()
    return asyncio.run(_run(args.dry_run))


if __name__ == "__main__":
    raise SystemExit(main())
