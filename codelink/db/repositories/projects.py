"""SQLite implementation of the host-app lookups: project members and tarefas."""
from __future__ import annotations

import aiosqlite


class SqliteProjectMemberRepository:
    """Role lookups against project_members."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_role(self, project_id: str, user_id: str) -> str | None:
        async with self.db.execute(
            "SELECT role FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def upsert(self, project_id: str, user_id: str, role: str) -> None:
        await self.db.execute(
            """INSERT INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)
               ON CONFLICT(project_id, user_id) DO UPDATE SET role=excluded.role""",
            (project_id, user_id, role),
        )
        await self.db.commit()


class SqliteTarefaRepository:
    """Read access to tarefas, keyed by id or by TSK key."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_id(self, tarefa_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT id, project_id, key, title FROM tarefas WHERE id = ?", (tarefa_id,),
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def find_by_keys(self, project_id: str, keys: list[str]) -> list[dict]:
        if not keys:
            return []
        placeholders = ",".join("?" for _ in keys)
        async with self.db.execute(
            f"SELECT id, key FROM tarefas WHERE project_id = ? AND key IN ({placeholders})",
            (project_id, *keys),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def upsert(self, tarefa: dict) -> None:
        await self.db.execute(
            """INSERT INTO tarefas (id, project_id, key, title) VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET key=excluded.key, title=excluded.title""",
            (tarefa["id"], tarefa["project_id"], tarefa["key"], tarefa.get("title", "")),
        )
        await self.db.commit()
