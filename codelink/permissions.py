"""Project role checks for git integration actions.

Every check takes the database handle explicitly so callers (routers, services,
tests) decide which connection answers the question.
"""
from __future__ import annotations

from typing import Any, Literal

from codelink.db.factory import (
    get_member_repository,
    get_pull_request_repository,
    get_repo_repository,
)

AppRole = Literal["admin", "tech_lead", "developer", "viewer"]

_CONNECT_ROLES = {"admin"}
_CREATE_PR_ROLES = {"admin", "tech_lead", "developer"}
_MERGE_ROLES = {"admin", "tech_lead"}


async def get_project_role(db: Any, user_id: str, project_id: str) -> AppRole | None:
    if not user_id or not project_id:
        return None
    return await get_member_repository(db).get_role(project_id, user_id)


async def is_project_member(db: Any, user_id: str, project_id: str) -> bool:
    return await get_project_role(db, user_id, project_id) is not None


async def can_connect_git(db: Any, user_id: str, project_id: str) -> bool:
    """Connecting or revoking a provider is admin only."""
    return await get_project_role(db, user_id, project_id) in _CONNECT_ROLES


async def can_create_pr(db: Any, user_id: str, project_id: str) -> bool:
    return await get_project_role(db, user_id, project_id) in _CREATE_PR_ROLES


async def _project_for_pr(db: Any, pr_id: str) -> tuple[dict | None, str | None]:
    pr = await get_pull_request_repository(db).get_by_id(pr_id)
    if not pr:
        return None, None
    project_id = await get_repo_repository(db).get_project_id(pr["repo_id"])
    return pr, project_id


async def can_review_pr(db: Any, user_id: str, pr_id: str) -> bool:
    """Any member of the PR's project may review, except the PR author."""
    pr, project_id = await _project_for_pr(db, pr_id)
    if not pr or pr.get("author_id") == user_id or not project_id:
        return False
    return await is_project_member(db, user_id, project_id)


async def can_merge_pr(db: Any, user_id: str, pr_id: str) -> bool:
    pr, project_id = await _project_for_pr(db, pr_id)
    if not pr or not project_id:
        return False
    return await get_project_role(db, user_id, project_id) in _MERGE_ROLES
