"""PostgreSQL implementation of AuditEventRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import asyncpg


class PostgresAuditEventRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def insert(self, event: dict) -> str:
        event_id = str(uuid.uuid4())
        before = event.get("before")
        after = event.get("after")
        await self.db.execute(
            """INSERT INTO audit_events (
                id, actor_id, action, entity_type, entity_id,
                before_json, after_json, metadata_json, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)""",
            event_id,
            event["actor_id"],
            event["action"],
            event["entity_type"],
            event.get("entity_id"),
            json.dumps(before) if before is not None else None,
            json.dumps(after) if after is not None else None,
            json.dumps(event.get("metadata") or {}),
            datetime.now(timezone.utc).isoformat(),
        )
        return event_id

    async def list_for_entity(self, entity_type: str, entity_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT * FROM audit_events
               WHERE entity_type = $1 AND entity_id = $2
               ORDER BY created_at ASC""",
            entity_type, entity_id,
        )
        events = []
        for record in rows:
            row = dict(record)
            before = row.pop("before_json", None)
            after = row.pop("after_json", None)
            row["before"] = json.loads(before) if before else None
            row["after"] = json.loads(after) if after else None
            row["metadata"] = json.loads(row.pop("metadata_json", None) or "{}")
            events.append(row)
        return events
