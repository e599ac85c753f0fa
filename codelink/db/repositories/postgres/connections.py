"""PostgreSQL implementation of connection and handshake-state storage."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import asyncpg


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rowcount(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _decode_connection(row: asyncpg.Record | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    data["scopes"] = json.loads(data.pop("scopes_json", None) or "[]")
    return data


class PostgresConnectionRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get_by_id(self, connection_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM provider_connections WHERE id = $1", connection_id)
        return _decode_connection(row)

    async def get_for_project(self, project_id: str, provider: str = "github") -> dict | None:
        row = await self.db.fetchrow(
            """SELECT * FROM provider_connections
               WHERE project_id = $1 AND provider = $2
               ORDER BY created_at DESC LIMIT 1""",
            project_id, provider,
        )
        return _decode_connection(row)

    async def list_for_project(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT c.*, (SELECT COUNT(*) FROM repos r WHERE r.connection_id = c.id) AS repos_count
               FROM provider_connections c
               WHERE c.project_id = $1
               ORDER BY c.created_at DESC""",
            project_id,
        )
        return [_decode_connection(r) for r in rows]

    async def insert(self, data: dict) -> str:
        connection_id = data.get("id") or str(uuid.uuid4())
        now = _now()
        await self.db.execute(
            """INSERT INTO provider_connections (
                id, project_id, provider, owner_type, owner_name,
                installation_id, workspace_id, status, secrets_ref,
                created_by, github_user_id, username,
                access_token_encrypted, scopes_json, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)""",
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
        )
        return connection_id

    async def update_oauth_credentials(self, connection_id: str, data: dict) -> None:
        await self.db.execute(
            """UPDATE provider_connections SET
                github_user_id = $1, username = $2, access_token_encrypted = $3,
                scopes_json = $4, status = 'active', error_message = NULL, updated_at = $5
               WHERE id = $6""",
            data["github_user_id"],
            data["username"],
            data["access_token_encrypted"],
            json.dumps(data.get("scopes", [])),
            _now(),
            connection_id,
        )

    async def set_status(self, connection_id: str, status: str, error_message: str | None = None) -> None:
        await self.db.execute(
            "UPDATE provider_connections SET status = $1, error_message = $2, updated_at = $3 WHERE id = $4",
            status, error_message, _now(), connection_id,
        )

    async def mark_synced(self, connection_id: str) -> None:
        now = _now()
        await self.db.execute(
            "UPDATE provider_connections SET last_sync_at = $1, updated_at = $1 WHERE id = $2",
            now, connection_id,
        )


class PostgresOAuthStateRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def create(self, state: str, project_id: str, user_id: str, created_at: str, expires_at: str) -> None:
        await self.db.execute(
            """INSERT INTO github_oauth_states (state, project_id, user_id, created_at, expires_at)
               VALUES ($1, $2, $3, $4, $5)""",
            state, project_id, user_id, created_at, expires_at,
        )

    async def get_valid(self, state: str, now: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM github_oauth_states WHERE state = $1 AND expires_at > $2",
            state, now,
        )
        return dict(row) if row else None

    async def delete(self, state: str) -> None:
        await self.db.execute("DELETE FROM github_oauth_states WHERE state = $1", state)

    async def delete_expired(self, now: str) -> int:
        status = await self.db.execute("DELETE FROM github_oauth_states WHERE expires_at < $1", now)
        return _rowcount(status)
