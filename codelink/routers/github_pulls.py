"""Pull request router."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from codelink.auth import require_user
from codelink.auto_link import link_pull_request
from codelink.db import connection
from codelink.db.factory import get_git_link_repository, get_pull_request_repository
from codelink.models import GitHubPull
from codelink.routers.access import UPSTREAM_ERRORS, client_for_repo, load_repo, upstream_error

github_pulls_router = APIRouter(prefix="/api/github-pulls", tags=["github-pulls"])

_PR_STATES = {"open", "closed", "all"}


def _matches(pr: GitHubPull, needle: str) -> bool:
    return (
        needle in pr.title.lower()
        or needle in (pr.body or "").lower()
        or needle in pr.head.ref.lower()
    )


async def _mirror_pull(db, project_id: str, repo_id: str, pr: GitHubPull) -> tuple[dict, str, list[str]]:
    """Store the PR and auto-link it. Returns (row, local id, detected keys)."""
    row = pr.to_row(repo_id)
    local_id = await get_pull_request_repository(db).upsert(repo_id, row)
    keys = await link_pull_request(db, project_id, repo_id, row)
    return row, local_id, keys


@github_pulls_router.get("/repos/{repo_id}/pulls")
async def list_pulls(
    repo_id: str,
    state: str = Query("open"),
    search: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    if state not in _PR_STATES:
        raise HTTPException(status_code=400, detail="state must be one of open, closed, all")
    db = await connection.get_connection()
    repo, project_id = await load_repo(db, repo_id, user_id)
    try:
        async with await client_for_repo(db, repo) as github:
            pulls = await github.list_pulls(repo["full_name"], state=state)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch pull requests") from exc

    if search:
        needle = search.lower()
        pulls = [pr for pr in pulls if _matches(pr, needle)]

    rows = []
    for pr in pulls:
        row, _local_id, _keys = await _mirror_pull(db, project_id, repo_id, pr)
        rows.append(row)
    return {"prs": rows}


@github_pulls_router.get("/pulls/{repo_id}/{number}")
async def get_pull_detail(repo_id: str, number: int, user_id: str = Depends(require_user)):
    db = await connection.get_connection()
    repo, project_id = await load_repo(db, repo_id, user_id)
    full_name = repo["full_name"]
    try:
        async with await client_for_repo(db, repo) as github:
            pr = await github.get_pull(full_name, number)
            commits = await github.list_pull_commits(full_name, number)
            files = await github.list_pull_files(full_name, number)
            reviews = await github.list_pull_reviews(full_name, number)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to fetch PR detail") from exc

    row, local_id, detected_keys = await _mirror_pull(db, project_id, repo_id, pr)
    pulls = get_pull_request_repository(db)
    for review in reviews:
        review_row = review.to_row()
        if review_row:
            await pulls.upsert_review(local_id, review_row)

    commit_shas = [commit.sha for commit in commits]
    row["commits"] = [
        {
            "sha": commit.sha,
            "message": commit.commit.message,
            "author": commit.commit.author.name if commit.commit.author else None,
            "date": commit.commit.author.date if commit.commit.author else None,
        }
        for commit in commits
    ]
    row["files"] = [item.model_dump() for item in files]
    row["reviews"] = [review.to_dict() for review in reviews]
    return {
        "pr": row,
        "linked_tarefas": await get_git_link_repository(db).tarefas_for_pull_request(
            project_id, pr.number, pr.head.ref, commit_shas,
        ),
        "detected_keys": detected_keys,
    }
