"""SQLite implementation of AuditEventRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite


class SqliteAuditEventRepository:
    """Append-only audit trail."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, event: dict) -> str:
        event_id = str(uuid.uuid4())
        before = event.get("before")
        after = event.get("after")
        await self.db.execute(
            """INSERT INTO audit_events (
                id, actor_id, action, entity_type, entity_id,
                before_json, after_json, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event_id,
                event["actor_id"],
                event["action"],
                event["entity_type"],
                event.get("entity_id"),
                json.dumps(before) if before is not None else None,
                json.dumps(after) if after is not None else None,
                json.dumps(event.get("metadata") or {}),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.db.commit()
        return event_id

    async def list_for_entity(self, entity_type: str, entity_id: str) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM audit_events
               WHERE entity_type = ? AND entity_id = ?
               ORDER BY created_at ASC""",
            (entity_type, entity_id),
        ) as cur:
            rows = [dict(r) for r in await cur.fetchall()]
        for row in rows:
            before = row.pop("before_json", None)
            after = row.pop("after_json", None)
            row["before"] = json.loads(before) if before else None
            row["after"] = json.loads(after) if after else None
            row["metadata"] = json.loads(row.pop("metadata_json", None) or "{}")
        return rows
