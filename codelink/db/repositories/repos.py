"""SQLite implementation of the repository mirror: repos, branches, commits, pull requests."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import aiosqlite


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bools(row: aiosqlite.Row | None, *fields: str) -> dict | None:
    if row is None:
        return None
    data = dict(row)
    for field in fields:
        if field in data and data[field] is not None:
            data[field] = bool(data[field])
    return data


class SqliteRepoRepository:
    """Repos synced from a provider connection and their project bindings."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, data: dict) -> str:
        """Insert or refresh a repo keyed by (connection_id, provider_repo_id).

        `selected` and `project_id` are only overwritten when present in `data`.
        """
        now = _now()
        selected = data.get("selected")
        selected_value = None if selected is None else int(bool(selected))
        await self.db.execute(
            """INSERT INTO repos (
                id, connection_id, project_id, provider_repo_id, full_name,
                default_branch, visibility, description, url,
                last_synced_at, sync_status, selected, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, COALESCE(?, 0), ?, ?)
            ON CONFLICT(connection_id, provider_repo_id) DO UPDATE SET
                full_name=excluded.full_name,
                default_branch=excluded.default_branch,
                visibility=excluded.visibility,
                description=excluded.description,
                url=excluded.url,
                last_synced_at=excluded.last_synced_at,
                sync_status=excluded.sync_status,
                project_id=COALESCE(excluded.project_id, repos.project_id),
                selected=COALESCE(?, repos.selected),
                updated_at=excluded.updated_at
            """,
            (
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
                selected_value,
                now,
                now,
                selected_value,
            ),
        )
        await self.db.commit()
        async with self.db.execute(
            "SELECT id FROM repos WHERE connection_id = ? AND provider_repo_id = ?",
            (data["connection_id"], data["provider_repo_id"]),
        ) as cur:
            row = await cur.fetchone()
        return row[0]

    async def get_by_id(self, repo_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM repos WHERE id = ?", (repo_id,)) as cur:
            return _bools(await cur.fetchone(), "selected")

    async def list_for_project(self, project_id: str) -> list[dict]:
        """Repos bound to a project with branch and open-PR counts."""
        async with self.db.execute(
            """SELECT r.*,
                      (SELECT COUNT(*) FROM branches b WHERE b.repo_id = r.id) AS branches_count,
                      (SELECT COUNT(*) FROM pull_requests p
                        WHERE p.repo_id = r.id AND p.state = 'OPEN') AS open_prs_count
               FROM project_repos pr
               JOIN repos r ON r.id = pr.repo_id
               WHERE pr.project_id = ?
               ORDER BY r.full_name""",
            (project_id,),
        ) as cur:
            return [_bools(r, "selected") for r in await cur.fetchall()]

    async def list_selected(self, project_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM repos WHERE project_id = ? AND selected = 1 ORDER BY full_name",
            (project_id,),
        ) as cur:
            return [_bools(r, "selected") for r in await cur.fetchall()]

    async def list_by_connection(self, connection_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM repos WHERE connection_id = ? ORDER BY full_name", (connection_id,),
        ) as cur:
            return [_bools(r, "selected") for r in await cur.fetchall()]

    async def deselect_for_connection(self, connection_id: str) -> int:
        async with self.db.execute(
            "UPDATE repos SET selected = 0, updated_at = ? WHERE connection_id = ? AND selected = 1",
            (_now(), connection_id),
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return max(0, changed or 0)

    async def deselect_except(self, connection_id: str, keep_ids: list[str]) -> int:
        params: list = [_now(), connection_id]
        query = "UPDATE repos SET selected = 0, updated_at = ? WHERE connection_id = ? AND selected = 1"
        if keep_ids:
            query += f" AND id NOT IN ({','.join('?' for _ in keep_ids)})"
            params.extend(keep_ids)
        async with self.db.execute(query, params) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return max(0, changed or 0)

    async def link_project(self, project_id: str, repo_id: str) -> None:
        now = _now()
        await self.db.execute(
            """INSERT INTO project_repos (project_id, repo_id, created_at, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(project_id, repo_id) DO NOTHING""",
            (project_id, repo_id, now, now),
        )
        await self.db.execute(
            "UPDATE repos SET project_id = ? WHERE id = ? AND project_id IS NULL",
            (project_id, repo_id),
        )
        await self.db.commit()

    async def unlink_project(self, project_id: str, repo_id: str) -> None:
        await self.db.execute(
            "DELETE FROM project_repos WHERE project_id = ? AND repo_id = ?",
            (project_id, repo_id),
        )
        await self.db.commit()

    async def get_project_id(self, repo_id: str) -> str | None:
        async with self.db.execute(
            "SELECT project_id FROM project_repos WHERE repo_id = ? LIMIT 1", (repo_id,),
        ) as cur:
            row = await cur.fetchone()
        if row:
            return row[0]
        async with self.db.execute("SELECT project_id FROM repos WHERE id = ?", (repo_id,)) as cur:
            row = await cur.fetchone()
        return row[0] if row and row[0] else None


class SqliteBranchRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, repo_id: str, branch: dict) -> str:
        now = _now()
        await self.db.execute(
            """INSERT INTO branches (
                id, repo_id, name, last_commit_sha, is_default, protected,
                last_synced_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repo_id, name) DO UPDATE SET
                last_commit_sha=excluded.last_commit_sha,
                is_default=excluded.is_default,
                protected=excluded.protected,
                last_synced_at=excluded.last_synced_at,
                updated_at=excluded.updated_at
            """,
            (
                str(uuid.uuid4()),
                repo_id,
                branch["name"],
                branch.get("last_commit_sha"),
                int(bool(branch.get("is_default"))),
                int(bool(branch.get("protected"))),
                now,
                now,
                now,
            ),
        )
        await self.db.commit()
        async with self.db.execute(
            "SELECT id FROM branches WHERE repo_id = ? AND name = ?", (repo_id, branch["name"]),
        ) as cur:
            row = await cur.fetchone()
        return row[0]

    async def list_for_repo(self, repo_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM branches WHERE repo_id = ? ORDER BY is_default DESC, name ASC",
            (repo_id,),
        ) as cur:
            return [_bools(r, "is_default", "protected") for r in await cur.fetchall()]

    async def list_recent(self, repo_id: str, limit: int = 10) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM branches WHERE repo_id = ? ORDER BY last_synced_at DESC LIMIT ?",
            (repo_id, limit),
        ) as cur:
            return [_bools(r, "is_default", "protected") for r in await cur.fetchall()]


class SqliteCommitRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, repo_id: str, commit: dict) -> str:
        await self.db.execute(
            """INSERT INTO commits (
                id, repo_id, sha, branch_name, author_name, author_email,
                message, date, url, parent_shas_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repo_id, sha) DO UPDATE SET
                branch_name=COALESCE(commits.branch_name, excluded.branch_name),
                url=excluded.url
            """,
            (
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
            ),
        )
        await self.db.commit()
        async with self.db.execute(
            "SELECT id FROM commits WHERE repo_id = ? AND sha = ?", (repo_id, commit["sha"]),
        ) as cur:
            row = await cur.fetchone()
        return row[0]

    async def get_by_sha(self, repo_id: str, sha: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM commits WHERE repo_id = ? AND sha = ?", (repo_id, sha),
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        data = dict(row)
        data["parent_shas"] = json.loads(data.pop("parent_shas_json") or "[]")
        return data


class SqlitePullRequestRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, repo_id: str, pr: dict) -> str:
        now = _now()
        await self.db.execute(
            """INSERT INTO pull_requests (
                id, repo_id, number, provider_pr_id, title, description, state,
                source_branch, target_branch, author_id, author_username, draft,
                created_at, updated_at, merged_at, merge_commit_sha, url
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repo_id, number) DO UPDATE SET
                provider_pr_id=excluded.provider_pr_id,
                title=excluded.title, description=excluded.description,
                state=excluded.state,
                source_branch=excluded.source_branch, target_branch=excluded.target_branch,
                author_username=excluded.author_username, draft=excluded.draft,
                updated_at=excluded.updated_at, merged_at=excluded.merged_at,
                merge_commit_sha=excluded.merge_commit_sha, url=excluded.url
            """,
            (
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
                int(bool(pr.get("draft"))),
                pr.get("created_at") or now,
                pr.get("updated_at") or now,
                pr.get("merged_at"),
                pr.get("merge_commit_sha"),
                pr.get("url"),
            ),
        )
        await self.db.commit()
        async with self.db.execute(
            "SELECT id FROM pull_requests WHERE repo_id = ? AND number = ?", (repo_id, pr["number"]),
        ) as cur:
            row = await cur.fetchone()
        return row[0]

    async def get_by_id(self, pr_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM pull_requests WHERE id = ?", (pr_id,)) as cur:
            return _bools(await cur.fetchone(), "draft")

    async def list_recent(self, repo_id: str, limit: int = 5) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM pull_requests WHERE repo_id = ? ORDER BY created_at DESC LIMIT ?",
            (repo_id, limit),
        ) as cur:
            return [_bools(r, "draft") for r in await cur.fetchall()]

    async def count_open(self, repo_id: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM pull_requests WHERE repo_id = ? AND state = 'OPEN'", (repo_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def count_awaiting_review(self, repo_id: str) -> int:
        """Open PRs with no approving review yet."""
        async with self.db.execute(
            """SELECT COUNT(*) FROM pull_requests p
               WHERE p.repo_id = ? AND p.state = 'OPEN'
                 AND NOT EXISTS (
                     SELECT 1 FROM pr_reviews r WHERE r.pr_id = p.id AND r.state = 'APPROVED'
                 )""",
            (repo_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def upsert_review(self, pr_id: str, review: dict) -> None:
        """Keep the latest review per reviewer."""
        now = _now()
        await self.db.execute(
            """INSERT INTO pr_reviews (
                id, pr_id, reviewer_id, reviewer_username, state, body, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(pr_id, reviewer_id) DO UPDATE SET
                reviewer_username=excluded.reviewer_username,
                state=excluded.state,
                body=excluded.body,
                updated_at=excluded.updated_at
            """,
            (
                str(uuid.uuid4()),
                pr_id,
                review["reviewer_id"],
                review.get("reviewer_username"),
                review["state"],
                review.get("body"),
                review.get("submitted_at") or now,
                now,
            ),
        )
        await self.db.commit()
