"""Repository browsing router: overview, tree, blob, branches and commits."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from codelink.auth import require_user
from codelink.auto_link import link_commit
from codelink.db import connection
from codelink.db.factory import (
    get_branch_repository,
    get_commit_repository,
    get_git_link_repository,
    get_pull_request_repository,
    get_repo_repository,
)
from codelink.models import GitHubCommit
from codelink.routers.access import (
    UPSTREAM_ERRORS,
    client_for_repo,
    load_repo,
    require_member,
    require_param,
    upstream_error,
)
from codelink.services.github_client import GitHubAPIError

git_repos_router = APIRouter(prefix="/api/git-repos", tags=["git-repos"])


async def _mirror_commits(
    db,
    project_id: str,
    repo_id: str,
    commits: list[GitHubCommit],
    branch_name: str | None = None,
) -> list[dict]:
    """Store listed commits and link any tarefa keys in their messages."""
    store = get_commit_repository(db)
    rows = []
    for commit in commits:
        row = commit.to_row(repo_id, branch_name)
        await store.upsert(repo_id, row)
        # Link with the stored branch; the mirror keeps the first branch a commit was seen on.
        stored = await store.get_by_sha(repo_id, commit.sha)
        await link_commit(db, project_id, repo_id, stored or row)
        rows.append(row)
    return rows


@git_repos_router.get("")
async def list_project_repos(
    projectId: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    project_id = require_param(projectId, "projectId")
    db = await connection.get_connection()
    await require_member(db, user_id, project_id)
    return {"repos": await get_repo_repository(db).list_for_project(project_id)}


@git_repos_router.get("/{repo_id}/overview")
async def get_repo_overview(repo_id: str, user_id: str = Depends(require_user)):
    db = await connection.get_connection()
    repo, project_id = await load_repo(db, repo_id, user_id)

    readme = None
    try:
        async with await client_for_repo(db, repo) as github:
            try:
                content = await github.get_content(repo["full_name"], "README.md")
            except GitHubAPIError as exc:
                if exc.status != 404:
                    raise
                content = None
            if content is not None and not isinstance(content, list) and content.content is not None:
                readme = {
                    "content": content.decoded(),
                    "encoding": "utf-8",
                    "size": content.size,
                    "sha": content.sha,
                    "path": "README.md",
                }
            commits = await github.list_commits(repo["full_name"], per_page=10)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch overview") from exc

    recent_commits = await _mirror_commits(db, project_id, repo_id, commits)
    pulls = get_pull_request_repository(db)
    return {
        "repo": repo,
        "readme": readme,
        "recent_commits": recent_commits,
        "recent_prs": await pulls.list_recent(repo_id, limit=5),
        "active_branches": await get_branch_repository(db).list_recent(repo_id, limit=10),
        "open_prs_count": await pulls.count_open(repo_id),
        "pending_reviews_count": await pulls.count_awaiting_review(repo_id),
    }


@git_repos_router.get("/{repo_id}/tree")
async def get_repo_tree(
    repo_id: str,
    ref: str = Query("main"),
    path: str = Query(""),
    user_id: str = Depends(require_user),
):
    db = await connection.get_connection()
    repo, _project_id = await load_repo(db, repo_id, user_id)
    try:
        async with await client_for_repo(db, repo) as github:
            entries = await github.get_content(repo["full_name"], path, ref)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch tree") from exc
    if not isinstance(entries, list):
        entries = [entries]
    return {"tree": [entry.to_tree_entry() for entry in entries]}


@git_repos_router.get("/{repo_id}/blob")
async def get_repo_blob(
    repo_id: str,
    ref: str = Query("main"),
    path: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    require_param(path, "path")
    db = await connection.get_connection()
    repo, _project_id = await load_repo(db, repo_id, user_id)
    try:
        async with await client_for_repo(db, repo) as github:
            blob = await github.get_content(repo["full_name"], path, ref)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch blob") from exc
    if isinstance(blob, list) or blob.content is None:
        raise HTTPException(status_code=400, detail="Not a file")
    return {
        "content": blob.decoded(),
        "encoding": "utf-8",
        "size": blob.size,
        "sha": blob.sha,
        "path": blob.path,
    }


@git_repos_router.get("/{repo_id}/branches")
async def list_repo_branches(repo_id: str, user_id: str = Depends(require_user)):
    db = await connection.get_connection()
    await load_repo(db, repo_id, user_id)
    return {"branches": await get_branch_repository(db).list_for_repo(repo_id)}


@git_repos_router.get("/{repo_id}/commits")
async def list_repo_commits(
    repo_id: str,
    ref: str = Query("main"),
    page: int = Query(1, ge=1),
    limit: int = Query(30, ge=1, le=100),
    user_id: str = Depends(require_user),
):
    db = await connection.get_connection()
    repo, project_id = await load_repo(db, repo_id, user_id)
    try:
        async with await client_for_repo(db, repo) as github:
            commits = await github.list_commits(repo["full_name"], ref=ref, page=page, per_page=limit)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch commits") from exc
    rows = await _mirror_commits(db, project_id, repo_id, commits, branch_name=ref)
    return {"commits": rows, "page": page, "limit": limit}


@git_repos_router.get("/{repo_id}/commits/{sha}")
async def get_repo_commit(repo_id: str, sha: str, user_id: str = Depends(require_user)):
    db = await connection.get_connection()
    repo, project_id = await load_repo(db, repo_id, user_id)
    try:
        async with await client_for_repo(db, repo) as github:
            commit = await github.get_commit(repo["full_name"], sha)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch commit") from exc

    row = (await _mirror_commits(db, project_id, repo_id, [commit]))[0]
    row.pop("branch_name", None)
    row["files"] = [item.model_dump() for item in commit.files]
    return {
        "commit": row,
        "linked_tarefas": await get_git_link_repository(db).tarefas_for_commit(project_id, commit.sha),
    }
