"""PostgreSQL implementation of TarefaGitLinkRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import asyncpg


def _decode(row: asyncpg.Record | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    data["metadata"] = json.loads(data.pop("metadata_json", None) or "{}")
    return data


class PostgresTarefaGitLinkRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def find_matching(
        self,
        tarefa_id: str,
        provider: str,
        branch: str | None = None,
        commit_sha: str | None = None,
        pr_number: int | None = None,
    ) -> dict | None:
        clauses = ["tarefa_id = $1", "provider = $2"]
        params: list = [tarefa_id, provider]
        for column, value in (("branch", branch), ("commit_sha", commit_sha), ("pr_number", pr_number)):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        row = await self.db.fetchrow(
            f"SELECT * FROM tarefa_git_links WHERE {' AND '.join(clauses)} LIMIT 1", *params,
        )
        return _decode(row)

    async def find_exact(
        self,
        tarefa_id: str,
        provider: str,
        branch: str | None,
        commit_sha: str | None,
        pr_number: int | None,
    ) -> dict | None:
        row = await self.db.fetchrow(
            """SELECT * FROM tarefa_git_links
               WHERE tarefa_id = $1 AND provider = $2
                 AND branch IS NOT DISTINCT FROM $3
                 AND commit_sha IS NOT DISTINCT FROM $4
                 AND pr_number IS NOT DISTINCT FROM $5::integer
               LIMIT 1""",
            tarefa_id, provider, branch, commit_sha, pr_number,
        )
        return _decode(row)

    async def insert(self, link: dict) -> str:
        link_id = link.get("id") or str(uuid.uuid4())
        await self.db.execute(
            """INSERT INTO tarefa_git_links (
                id, tarefa_id, provider, repo_id, branch, commit_sha, pr_number,
                pr_id, url, metadata_json, created_by, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)""",
            link_id,
            link["tarefa_id"],
            link.get("provider", "github"),
            link.get("repo_id"),
            link.get("branch"),
            link.get("commit_sha"),
            link.get("pr_number"),
            link.get("pr_id"),
            link.get("url"),
            json.dumps(link.get("metadata", {})),
            link.get("created_by"),
            datetime.now(timezone.utc).isoformat(),
        )
        return link_id

    async def upsert(self, link: dict) -> dict:
        provider = link.get("provider", "github")
        existing = await self.find_exact(
            link["tarefa_id"], provider, link.get("branch"), link.get("commit_sha"), link.get("pr_number"),
        )
        if existing:
            await self.db.execute(
                """UPDATE tarefa_git_links SET
                    url = $1, metadata_json = $2, repo_id = COALESCE($3, repo_id), created_by = $4
                   WHERE id = $5""",
                link.get("url"),
                json.dumps(link.get("metadata", {})),
                link.get("repo_id"),
                link.get("created_by"),
                existing["id"],
            )
            link_id = existing["id"]
        else:
            link_id = await self.insert({**link, "provider": provider})
        return await self.get_by_id(link_id)

    async def get_by_id(self, link_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM tarefa_git_links WHERE id = $1", link_id)
        return _decode(row)

    async def list_for_tarefa(self, tarefa_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT l.*,
                      r.id AS repo_ref_id, r.full_name AS repo_full_name, r.url AS repo_url,
                      p.id AS pr_ref_id, p.number AS pr_ref_number, p.title AS pr_title,
                      p.state AS pr_state, p.url AS pr_url
               FROM tarefa_git_links l
               LEFT JOIN repos r ON r.id = l.repo_id
               LEFT JOIN pull_requests p
                 ON p.id = l.pr_id
                 OR (l.pr_id IS NULL AND p.repo_id = l.repo_id AND p.number = l.pr_number)
               WHERE l.tarefa_id = $1
               ORDER BY l.created_at DESC""",
            tarefa_id,
        )
        return [_decode(r) for r in rows]

    async def tarefas_for_commit(self, project_id: str, sha: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT DISTINCT t.id, t.key, t.title
               FROM tarefa_git_links l JOIN tarefas t ON t.id = l.tarefa_id
               WHERE t.project_id = $1 AND l.commit_sha = $2
               ORDER BY t.key""",
            project_id,
            sha,
        )
        return [dict(r) for r in rows]

    async def tarefas_for_pull_request(
        self, project_id: str, pr_number: int, branch: str, commit_shas: list[str],
    ) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT DISTINCT t.id, t.key, t.title
               FROM tarefa_git_links l JOIN tarefas t ON t.id = l.tarefa_id
               WHERE t.project_id = $1
                 AND (l.pr_number = $2 OR l.branch = $3 OR l.commit_sha = ANY($4::text[]))
               ORDER BY t.key""",
            project_id, pr_number, branch, list(commit_shas),
        )
        return [dict(r) for r in rows]
