"""PostgreSQL implementation of project member and tarefa lookups."""
from __future__ import annotations

import asyncpg


class PostgresProjectMemberRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get_role(self, project_id: str, user_id: str) -> str | None:
        return await self.db.fetchval(
            "SELECT role FROM project_members WHERE project_id = $1 AND user_id = $2",
            project_id, user_id,
        )

    async def upsert(self, project_id: str, user_id: str, role: str) -> None:
        await self.db.execute(
            """INSERT INTO project_members (project_id, user_id, role) VALUES ($1, $2, $3)
               ON CONFLICT(project_id, user_id) DO UPDATE SET role=EXCLUDED.role""",
            project_id, user_id, role,
        )


class PostgresTarefaRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get_by_id(self, tarefa_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT id, project_id, key, title FROM tarefas WHERE id = $1", tarefa_id,
        )
        return dict(row) if row else None

    async def find_by_keys(self, project_id: str, keys: list[str]) -> list[dict]:
        if not keys:
            return []
        rows = await self.db.fetch(
            "SELECT id, key FROM tarefas WHERE project_id = $1 AND key = ANY($2::text[])",
            project_id, keys,
        )
        return [dict(r) for r in rows]

    async def upsert(self, tarefa: dict) -> None:
        await self.db.execute(
            """INSERT INTO tarefas (id, project_id, key, title) VALUES ($1, $2, $3, $4)
               ON CONFLICT(id) DO UPDATE SET key=EXCLUDED.key, title=EXCLUDED.title""",
            tarefa["id"], tarefa["project_id"], tarefa["key"], tarefa.get("title", ""),
        )
