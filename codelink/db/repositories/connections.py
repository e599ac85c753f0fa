"""SQLite implementation of ConnectionRepository and OAuthStateRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_connection(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    data["scopes"] = json.loads(data.pop("scopes_json", None) or "[]")
    return data


class SqliteConnectionRepository:
    """provider_connections: one row per project ↔ git account link."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_id(self, connection_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM provider_connections WHERE id = ?", (connection_id,),
        ) as cur:
            return _decode_connection(await cur.fetchone())

    async def get_for_project(self, project_id: str, provider: str = "github") -> dict | None:
        """Latest connection for (project, provider)."""
        async with self.db.execute(
            """SELECT * FROM provider_connections
               WHERE project_id = ? AND provider = ?
               ORDER BY created_at DESC LIMIT 1""",
            (project_id, provider),
        ) as cur:
            return _decode_connection(await cur.fetchone())

    async def list_for_project(self, project_id: str) -> list[dict]:
        async with self.db.execute(
            """SELECT c.*, (SELECT COUNT(*) FROM repos r WHERE r.connection_id = c.id) AS repos_count
               FROM provider_connections c
               WHERE c.project_id = ?
               ORDER BY c.created_at DESC""",
            (project_id,),
        ) as cur:
            return [_decode_connection(r) for r in await cur.fetchall()]

    async def insert(self, data: dict) -> str:
        connection_id = data.get("id") or str(uuid.uuid4())
        now = _now()
        await self.db.execute(
            """INSERT INTO provider_connections (
                id, project_id, provider, owner_type, owner_name,
                installation_id, workspace_id, status, secrets_ref,
                created_by, github_user_id, username,
                access_token_encrypted, scopes_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                connection_id,
                data["project_id"],
                data.get("provider", "github"),
                data["owner_type"],
                data["owner_name"],
                data.get("installation_id"),
                data.get("workspace_id"),
                data.get("status", "active"),
                data.get("secrets_ref"),
                data.get("created_by"),
                data.get("github_user_id"),
                data.get("username"),
                data.get("access_token_encrypted"),
                json.dumps(data.get("scopes", [])),
                now,
                now,
            ),
        )
        await self.db.commit()
        return connection_id

    async def update_oauth_credentials(self, connection_id: str, data: dict) -> None:
        await self.db.execute(
            """UPDATE provider_connections SET
                github_user_id = ?, username = ?, access_token_encrypted = ?,
                scopes_json = ?, status = 'active', error_message = NULL, updated_at = ?
               WHERE id = ?""",
            (
                data["github_user_id"],
                data["username"],
                data["access_token_encrypted"],
                json.dumps(data.get("scopes", [])),
                _now(),
                connection_id,
            ),
        )
        await self.db.commit()

    async def set_status(self, connection_id: str, status: str, error_message: str | None = None) -> None:
        await self.db.execute(
            "UPDATE provider_connections SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
            (status, error_message, _now(), connection_id),
        )
        await self.db.commit()

    async def mark_synced(self, connection_id: str) -> None:
        now = _now()
        await self.db.execute(
            "UPDATE provider_connections SET last_sync_at = ?, updated_at = ? WHERE id = ?",
            (now, now, connection_id),
        )
        await self.db.commit()


class SqliteOAuthStateRepository:
    """github_oauth_states: single-use anti-forgery tokens."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, state: str, project_id: str, user_id: str, created_at: str, expires_at: str) -> None:
        await self.db.execute(
            """INSERT INTO github_oauth_states (state, project_id, user_id, created_at, expires_at)
               VALUES (?, ?, ?, ?, ?)""",
            (state, project_id, user_id, created_at, expires_at),
        )
        await self.db.commit()

    async def get_valid(self, state: str, now: str) -> dict | None:
        """Return the state row only while `now` is before its expiry."""
        async with self.db.execute(
            "SELECT * FROM github_oauth_states WHERE state = ? AND expires_at > ?",
            (state, now),
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def delete(self, state: str) -> None:
        await self.db.execute("DELETE FROM github_oauth_states WHERE state = ?", (state,))
        await self.db.commit()

    async def delete_expired(self, now: str) -> int:
        async with self.db.execute(
            "DELETE FROM github_oauth_states WHERE expires_at < ?", (now,),
        ) as cur:
            deleted = cur.rowcount
        await self.db.commit()
        return max(0, deleted or 0)
