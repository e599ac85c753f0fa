"""SQLite implementation of TarefaGitLinkRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite


def _decode(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    data["metadata"] = json.loads(data.pop("metadata_json", None) or "{}")
    return data


class SqliteTarefaGitLinkRepository:
    """Associations between tarefas and branches, commits and pull requests."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def find_matching(
        self,
        tarefa_id: str,
        provider: str,
        branch: str | None = None,
        commit_sha: str | None = None,
        pr_number: int | None = None,
    ) -> dict | None:
        """First link matching the given fields; a None field is not a constraint."""
        clauses = ["tarefa_id = ?", "provider = ?"]
        params: list = [tarefa_id, provider]
        if branch is not None:
            clauses.append("branch = ?")
            params.append(branch)
        if commit_sha is not None:
            clauses.append("commit_sha = ?")
            params.append(commit_sha)
        if pr_number is not None:
            clauses.append("pr_number = ?")
            params.append(pr_number)
        async with self.db.execute(
            f"SELECT * FROM tarefa_git_links WHERE {' AND '.join(clauses)} LIMIT 1", params,
        ) as cur:
            return _decode(await cur.fetchone())

    async def find_exact(
        self,
        tarefa_id: str,
        provider: str,
        branch: str | None,
        commit_sha: str | None,
        pr_number: int | None,
    ) -> dict | None:
        """NULL-safe match on the whole dedupe tuple."""
        async with self.db.execute(
            """SELECT * FROM tarefa_git_links
               WHERE tarefa_id = ? AND provider = ?
                 AND branch IS ? AND commit_sha IS ? AND pr_number IS ?
               LIMIT 1""",
            (tarefa_id, provider, branch, commit_sha, pr_number),
        ) as cur:
            return _decode(await cur.fetchone())

    async def insert(self, link: dict) -> str:
        link_id = link.get("id") or str(uuid.uuid4())
        await self.db.execute(
            """INSERT INTO tarefa_git_links (
                id, tarefa_id, provider, repo_id, branch, commit_sha, pr_number,
                pr_id, url, metadata_json, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
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
            ),
        )
        await self.db.commit()
        return link_id

    async def upsert(self, link: dict) -> dict:
        """Insert, or refresh url/metadata of the row with the same dedupe tuple."""
        provider = link.get("provider", "github")
        existing = await self.find_exact(
            link["tarefa_id"], provider, link.get("branch"), link.get("commit_sha"), link.get("pr_number"),
        )
        if existing:
            await self.db.execute(
                """UPDATE tarefa_git_links SET
                    url = ?, metadata_json = ?, repo_id = COALESCE(?, repo_id), created_by = ?
                   WHERE id = ?""",
                (
                    link.get("url"),
                    json.dumps(link.get("metadata", {})),
                    link.get("repo_id"),
                    link.get("created_by"),
                    existing["id"],
                ),
            )
            await self.db.commit()
            link_id = existing["id"]
        else:
            link_id = await self.insert({**link, "provider": provider})
        return await self.get_by_id(link_id)

    async def get_by_id(self, link_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM tarefa_git_links WHERE id = ?", (link_id,)) as cur:
            return _decode(await cur.fetchone())

    async def list_for_tarefa(self, tarefa_id: str) -> list[dict]:
        """Links with their repo and pull request, newest first."""
        async with self.db.execute(
            """SELECT l.*,
                      r.id AS repo_ref_id, r.full_name AS repo_full_name, r.url AS repo_url,
                      p.id AS pr_ref_id, p.number AS pr_ref_number, p.title AS pr_title,
                      p.state AS pr_state, p.url AS pr_url
               FROM tarefa_git_links l
               LEFT JOIN repos r ON r.id = l.repo_id
               LEFT JOIN pull_requests p
                 ON p.id = l.pr_id
                 OR (l.pr_id IS NULL AND p.repo_id = l.repo_id AND p.number = l.pr_number)
               WHERE l.tarefa_id = ?
               ORDER BY l.created_at DESC""",
            (tarefa_id,),
        ) as cur:
            return [_decode(r) for r in await cur.fetchall()]

    async def tarefas_for_commit(self, project_id: str, sha: str) -> list[dict]:
        async with self.db.execute(
            """SELECT DISTINCT t.id, t.key, t.title
               FROM tarefa_git_links l JOIN tarefas t ON t.id = l.tarefa_id
               WHERE t.project_id = ? AND l.commit_sha = ?
               ORDER BY t.key""",
            (project_id, sha),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def tarefas_for_pull_request(
        self, project_id: str, pr_number: int, branch: str, commit_shas: list[str],
    ) -> list[dict]:
        clauses = ["l.pr_number = ?", "l.branch = ?"]
        params: list = [project_id, pr_number, branch]
        if commit_shas:
            clauses.append(f"l.commit_sha IN ({','.join('?' for _ in commit_shas)})")
            params.extend(commit_shas)
        async with self.db.execute(
            f"""SELECT DISTINCT t.id, t.key, t.title
                FROM tarefa_git_links l JOIN tarefas t ON t.id = l.tarefa_id
                WHERE t.project_id = ? AND ({' OR '.join(clauses)})
                ORDER BY t.key""",
            params,
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
