"""Tarefa ↔ git link router."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from codelink.auth import require_user
from codelink.db import connection
from codelink.db.factory import get_git_link_repository, get_repo_repository, get_tarefa_repository
from codelink.permissions import can_create_pr
from codelink.routers.access import require_member

git_links_router = APIRouter(prefix="/api/git-links", tags=["git-links"])


class CreateLinkRequest(BaseModel):
    tarefaId: Optional[str] = None
    repoId: Optional[str] = None
    branchName: Optional[str] = None
    prNumber: Optional[int] = None
    commitSha: Optional[str] = None


def _format_link(row: dict) -> dict:
    return {
        "id": row["id"],
        "branch": row.get("branch"),
        "commitSha": row.get("commit_sha"),
        "prNumber": row.get("pr_number"),
        "url": row.get("url"),
        "autoLinked": bool(row.get("metadata", {}).get("auto_linked", False)),
        "repo": {
            "id": row["repo_ref_id"],
            "fullName": row.get("repo_full_name"),
            "url": row.get("repo_url"),
        } if row.get("repo_ref_id") else None,
        "pr": {
            "id": row["pr_ref_id"],
            "number": row.get("pr_ref_number"),
            "title": row.get("pr_title"),
            "state": row.get("pr_state"),
            "url": row.get("pr_url"),
        } if row.get("pr_ref_id") else None,
    }


def build_link_url(repo_url: str | None, pr_number: int | None, commit_sha: str | None, branch: str | None) -> str | None:
    """Most specific GitHub URL for the link: PR, then commit, then branch."""
    if not repo_url:
        return None
    if pr_number:
        return f"{repo_url}/pull/{pr_number}"
    if commit_sha:
        return f"{repo_url}/commit/{commit_sha}"
    if branch:
        return f"{repo_url}/tree/{branch}"
    return repo_url


async def _load_tarefa(db, tarefa_id: str) -> dict:
    tarefa = await get_tarefa_repository(db).get_by_id(tarefa_id)
    if not tarefa:
        raise HTTPException(status_code=404, detail="Tarefa not found")
    return tarefa


@git_links_router.get("/tarefas/{tarefa_id}")
async def get_tarefa_links(tarefa_id: str, user_id: str = Depends(require_user)):
    db = await connection.get_connection()
    tarefa = await _load_tarefa(db, tarefa_id)
    await require_member(db, user_id, tarefa["project_id"])
    rows = await get_git_link_repository(db).list_for_tarefa(tarefa_id)
    return {"links": [_format_link(row) for row in rows]}


@git_links_router.post("")
async def create_link(req: CreateLinkRequest, user_id: str = Depends(require_user)):
    """Create or refresh a manual link; the dedupe tuple is matched NULL-safe."""
    if not req.tarefaId:
        raise HTTPException(status_code=400, detail="tarefaId is required")
    db = await connection.get_connection()
    tarefa = await _load_tarefa(db, req.tarefaId)
    if not await can_create_pr(db, user_id, tarefa["project_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")

    repo = await get_repo_repository(db).get_by_id(req.repoId) if req.repoId else None
    branch = req.branchName or None
    commit_sha = req.commitSha or None
    pr_number = req.prNumber or None

    link = await get_git_link_repository(db).upsert(
        {
            "tarefa_id": req.tarefaId,
            "provider": "github",
            "repo_id": repo["id"] if repo else None,
            "branch": branch,
            "commit_sha": commit_sha,
            "pr_number": pr_number,
            "url": build_link_url(repo.get("url") if repo else None, pr_number, commit_sha, branch),
            "created_by": user_id,
            "metadata": {"manual_link": True},
        }
    )
    return {"link": link}
