"""Repository selection for OAuth connections."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from codelink.audit import log_audit_event
from codelink.auth import require_user
from codelink.db import connection
from codelink.db.factory import get_connection_repository, get_repo_repository
from codelink.models import GitHubRepo
from codelink.routers.access import UPSTREAM_ERRORS, require_admin, require_member, require_param, upstream_error
from codelink.services.github_client import GitHubClient
from codelink.services.repo_sync import sync_branches
from codelink.token_crypto import decrypt_token

logger = logging.getLogger("codelink.api")

github_repos_router = APIRouter(prefix="/api/github-repos", tags=["github-repos"])


class SelectReposRequest(BaseModel):
    projectId: Optional[str] = None
    selectedFullNames: list[str] = Field(default_factory=list)


def _available_repo(repo: GitHubRepo, selected: set[str]) -> dict:
    return {
        "fullName": repo.full_name,
        "name": repo.name,
        "owner": repo.owner.login,
        "private": repo.private,
        "defaultBranch": repo.default_branch or "main",
        "description": repo.description or "",
        "url": repo.html_url,
        "updatedAt": repo.updated_at,
        "selected": repo.full_name in selected,
    }


async def _oauth_connection(db, project_id: str) -> dict:
    conn = await get_connection_repository(db).get_for_project(project_id)
    if not conn or conn.get("status") != "active" or not conn.get("access_token_encrypted"):
        raise HTTPException(status_code=404, detail="GitHub not connected")
    return conn


def _client(conn: dict) -> GitHubClient:
    try:
        return GitHubClient(decrypt_token(conn["access_token_encrypted"]))
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to authenticate with GitHub") from exc


@github_repos_router.get("/available")
async def list_available_repos(
    projectId: Optional[str] = Query(None),
    org: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    """Repos the connected GitHub account can see, flagged when already selected."""
    project_id = require_param(projectId, "projectId")
    db = await connection.get_connection()
    await require_member(db, user_id, project_id)
    conn = await _oauth_connection(db, project_id)

    try:
        async with _client(conn) as github:
            remote = await github.list_user_repos(org or None)
            orgs = [account.login for account in await github.list_user_orgs()]
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch repositories") from exc

    if search:
        needle = search.lower()
        remote = [
            repo for repo in remote
            if needle in repo.full_name.lower() or needle in (repo.description or "").lower()
        ]
    selected = {
        row["full_name"]
        for row in await get_repo_repository(db).list_by_connection(conn["id"])
        if row.get("selected")
    }
    return {"repos": [_available_repo(repo, selected) for repo in remote], "orgs": orgs}


@github_repos_router.post("/select")
async def select_repos(req: SelectReposRequest, user_id: str = Depends(require_user)):
    """Make `selectedFullNames` the project's selected set, mirroring each repo."""
    project_id = require_param(req.projectId, "projectId")
    db = await connection.get_connection()
    await require_admin(db, user_id, project_id)
    conn = await _oauth_connection(db, project_id)
    repos = get_repo_repository(db)
    wanted = set(req.selectedFullNames)

    previous = {row["id"] for row in await repos.list_by_connection(conn["id"]) if row.get("selected")}
    keep_ids: list[str] = []
    try:
        async with _client(conn) as github:
            remote = [repo for repo in await github.list_user_repos() if repo.full_name in wanted]
            for repo in remote:
                repo_id = await repos.upsert(repo.to_row(conn["id"], project_id=project_id, selected=True))
                await repos.link_project(project_id, repo_id)
                keep_ids.append(repo_id)
                await sync_branches(db, github, repo_id, repo.full_name, project_id)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to select repositories") from exc

    for repo_id in previous - set(keep_ids):
        await repos.unlink_project(project_id, repo_id)
    await repos.deselect_except(conn["id"], keep_ids)

    missing = wanted - {repo.full_name for repo in remote}
    if missing:
        logger.warning("Ignored %d repo name(s) not visible to the connection", len(missing))

    await log_audit_event(
        db,
        user_id,
        "RULE_CHANGE",
        "provider_connection",
        conn["id"],
        after={"selected_repos": sorted(repo.full_name for repo in remote)},
        metadata={"project_id": project_id},
    )
    return {"selected": await repos.list_selected(project_id)}


@github_repos_router.get("/selected")
async def list_selected_repos(
    projectId: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    project_id = require_param(projectId, "projectId")
    db = await connection.get_connection()
    await require_member(db, user_id, project_id)
    return {"repos": await get_repo_repository(db).list_selected(project_id)}
