"""PostgreSQL implementation of the repository mirror."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import asyncpg

from codelink.db.repositories.postgres.connections import _rowcount


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PostgresRepoRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, data: dict) -> str:
        now = _now()
        selected = data.get("selected")
        return await self.db.fetchval(
            """INSERT INTO repos (
                id, connection_id, project_id, provider_repo_id, full_name,
                default_branch, visibility, description, url,
                last_synced_at, sync_status, selected, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, COALESCE($12::boolean, FALSE), $13, $13)
            ON CONFLICT(connection_id, provider_repo_id) DO UPDATE SET
                full_name=EXCLUDED.full_name,
                default_branch=EXCLUDED.default_branch,
                visibility=EXCLUDED.visibility,
                description=EXCLUDED.description,
                url=EXCLUDED.url,
                last_synced_at=EXCLUDED.last_synced_at,
                sync_status=EXCLUDED.sync_status,
                project_id=COALESCE(EXCLUDED.project_id, repos.project_id),
                selected=COALESCE($12::boolean, repos.selected),
                updated_at=EXCLUDED.updated_at
            RETURNING id""",
            str(uuid.uuid4()),
            data["connection_id"],
            data.get("project_id"),
            data["provider_repo_id"],
            data["full_name"],
            data.get("default_branch") or "main",
            data.get("visibility") or "private",
            data.get("description"),
            data.get("url"),
            data.get("last_synced_at", now),
            data.get("sync_status", "synced"),
            None if selected is None else bool(selected),
            now,
        )

    async def get_by_id(self, repo_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM repos WHERE id = $1", repo_id)
        return dict(row) if row else None

    async def list_for_project(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT r.*,
                      (SELECT COUNT(*) FROM branches b WHERE b.repo_id = r.id) AS branches_count,
                      (SELECT COUNT(*) FROM pull_requests p
                        WHERE p.repo_id = r.id AND p.state = 'OPEN') AS open_prs_count
               FROM project_repos pr
               JOIN repos r ON r.id = pr.repo_id
               WHERE pr.project_id = $1
               ORDER BY r.full_name""",
            project_id,
        )
        return [dict(r) for r in rows]

    async def list_selected(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM repos WHERE project_id = $1 AND selected ORDER BY full_name", project_id,
        )
        return [dict(r) for r in rows]

    async def list_by_connection(self, connection_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM repos WHERE connection_id = $1 ORDER BY full_name", connection_id,
        )
        return [dict(r) for r in rows]

    async def deselect_for_connection(self, connection_id: str) -> int:
        status = await self.db.execute(
            "UPDATE repos SET selected = FALSE, updated_at = $1 WHERE connection_id = $2 AND selected",
            _now(), connection_id,
        )
        return _rowcount(status)

    async def deselect_except(self, connection_id: str, keep_ids: list[str]) -> int:
        status = await self.db.execute(
            """UPDATE repos SET selected = FALSE, updated_at = $1
               WHERE connection_id = $2 AND selected AND NOT (id = ANY($3::text[]))""",
            _now(), connection_id, list(keep_ids),
        )
        return _rowcount(status)

    async def link_project(self, project_id: str, repo_id: str) -> None:
        now = _now()
        await self.db.execute(
            """INSERT INTO project_repos (project_id, repo_id, created_at, updated_at)
               VALUES ($1, $2, $3, $3)
               ON CONFLICT(project_id, repo_id) DO NOTHING""",
            project_id, repo_id, now,
        )
        await self.db.execute(
            "UPDATE repos SET project_id = $1 WHERE id = $2 AND project_id IS NULL",
            project_id, repo_id,
        )

    async def unlink_project(self, project_id: str, repo_id: str) -> None:
        await self.db.execute(
            "DELETE FROM project_repos WHERE project_id = $1 AND repo_id = $2", project_id, repo_id,
        )

    async def get_project_id(self, repo_id: str) -> str | None:
        project_id = await self.db.fetchval(
            "SELECT project_id FROM project_repos WHERE repo_id = $1 LIMIT 1", repo_id,
        )
        if project_id:
            return project_id
        return await self.db.fetchval("SELECT project_id FROM repos WHERE id = $1", repo_id)


class PostgresBranchRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, repo_id: str, branch: dict) -> str:
        now = _now()
        return await self.db.fetchval(
            """INSERT INTO branches (
                id, repo_id, name, last_commit_sha, is_default, protected,
                last_synced_at, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $7, $7)
            ON CONFLICT(repo_id, name) DO UPDATE SET
                last_commit_sha=EXCLUDED.last_commit_sha,
                is_default=EXCLUDED.is_default,
                protected=EXCLUDED.protected,
                last_synced_at=EXCLUDED.last_synced_at,
                updated_at=EXCLUDED.updated_at
            RETURNING id""",
            str(uuid.uuid4()),
            repo_id,
            branch["name"],
            branch.get("last_commit_sha"),
            bool(branch.get("is_default")),
            bool(branch.get("protected")),
            now,
        )

    async def list_for_repo(self, repo_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM branches WHERE repo_id = $1 ORDER BY is_default DESC, name ASC", repo_id,
        )
        return [dict(r) for r in rows]

    async def list_recent(self, repo_id: str, limit: int = 10) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM branches WHERE repo_id = $1 ORDER BY last_synced_at DESC LIMIT $2",
            repo_id, limit,
        )
        return [dict(r) for r in rows]


class PostgresCommitRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, repo_id: str, commit: dict) -> str:
        return await self.db.fetchval(
            """INSERT INTO commits (
                id, repo_id, sha, branch_name, author_name, author_email,
                message, date, url, parent_shas_json, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT(repo_id, sha) DO UPDATE SET
                branch_name=COALESCE(commits.branch_name, EXCLUDED.branch_name),
                url=EXCLUDED.url
            RETURNING id""",
            str(uuid.uuid4()),
            repo_id,
            commit["sha"],
            commit.get("branch_name"),
            commit.get("author_name", ""),
            commit.get("author_email"),
            commit.get("message", ""),
            commit.get("date", ""),
            commit.get("url"),
            json.dumps(commit.get("parent_shas", [])),
            _now(),
        )

    async def get_by_sha(self, repo_id: str, sha: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM commits WHERE repo_id = $1 AND sha = $2", repo_id, sha)
        if row is None:
            return None
        data = dict(row)
        data["parent_shas"] = json.loads(data.pop("parent_shas_json") or "[]")
        return data


class PostgresPullRequestRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, repo_id: str, pr: dict) -> str:
        now = _now()
        return await self.db.fetchval(
            """INSERT INTO pull_requests (
                id, repo_id, number, provider_pr_id, title, description, state,
                source_branch, target_branch, author_id, author_username, draft,
                created_at, updated_at, merged_at, merge_commit_sha, url
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            ON CONFLICT(repo_id, number) DO UPDATE SET
                provider_pr_id=EXCLUDED.provider_pr_id,
                title=EXCLUDED.title, description=EXCLUDED.description,
                state=EXCLUDED.state,
                source_branch=EXCLUDED.source_branch, target_branch=EXCLUDED.target_branch,
                author_username=EXCLUDED.author_username, draft=EXCLUDED.draft,
                updated_at=EXCLUDED.updated_at, merged_at=EXCLUDED.merged_at,
                merge_commit_sha=EXCLUDED.merge_commit_sha, url=EXCLUDED.url
            RETURNING id""",
            str(uuid.uuid4()),
            repo_id,
            pr["number"],
            pr.get("provider_pr_id"),
            pr["title"],
            pr.get("description"),
            pr.get("state", "OPEN"),
            pr["source_branch"],
            pr.get("target_branch") or "main",
            pr.get("author_id"),
            pr.get("author_username"),
            bool(pr.get("draft")),
            pr.get("created_at") or now,
            pr.get("updated_at") or now,
            pr.get("merged_at"),
            pr.get("merge_commit_sha"),
            pr.get("url"),
        )

    async def get_by_id(self, pr_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM pull_requests WHERE id = $1", pr_id)
        return dict(row) if row else None

    async def list_recent(self, repo_id: str, limit: int = 5) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM pull_requests WHERE repo_id = $1 ORDER BY created_at DESC LIMIT $2",
            repo_id, limit,
        )
        return [dict(r) for r in rows]

    async def count_open(self, repo_id: str) -> int:
        value = await self.db.fetchval(
            "SELECT COUNT(*) FROM pull_requests WHERE repo_id = $1 AND state = 'OPEN'", repo_id,
        )
        return int(value or 0)

    async def count_awaiting_review(self, repo_id: str) -> int:
        value = await self.db.fetchval(
            """SELECT COUNT(*) FROM pull_requests p
               WHERE p.repo_id = $1 AND p.state = 'OPEN'
                 AND NOT EXISTS (
                     SELECT 1 FROM pr_reviews r WHERE r.pr_id = p.id AND r.state = 'APPROVED'
                 )""",
            repo_id,
        )
        return int(value or 0)

    async def upsert_review(self, pr_id: str, review: dict) -> None:
        now = _now()
        await self.db.execute(
            """INSERT INTO pr_reviews (
                id, pr_id, reviewer_id, reviewer_username, state, body, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT(pr_id, reviewer_id) DO UPDATE SET
                reviewer_username=EXCLUDED.reviewer_username,
                state=EXCLUDED.state,
                body=EXCLUDED.body,
                updated_at=EXCLUDED.updated_at
            """,
            str(uuid.uuid4()),
            pr_id,
            review["reviewer_id"],
            review.get("reviewer_username"),
            review["state"],
            review.get("body"),
            review.get("submitted_at") or now,
            now,
        )
