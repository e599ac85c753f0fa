"""Shared lookups and role guards for the git routers."""
from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import HTTPException
from pydantic import ValidationError

from codelink.db.factory import get_connection_repository, get_repo_repository
from codelink.permissions import can_connect_git, get_project_role
from codelink.services.github_client import GitHubAPIError, GitHubClient, GitHubConfigError, get_client_for_connection
from codelink.token_crypto import TokenDecryptionError

logger = logging.getLogger("codelink.api")

# Failures talking to GitHub; routes answer these with a generic 500.
UPSTREAM_ERRORS = (GitHubAPIError, GitHubConfigError, TokenDecryptionError, httpx.HTTPError, ValidationError)


def require_param(value: Any, name: str) -> Any:
    if value in (None, ""):
        raise HTTPException(status_code=400, detail=f"{name} is required")
    return value


async def require_member(db: Any, user_id: str, project_id: str) -> str:
    role = await get_project_role(db, user_id, project_id)
    if role is None:
        raise HTTPException(status_code=403, detail="Forbidden")
    return role


async def require_admin(db: Any, user_id: str, project_id: str, detail: str = "Forbidden") -> None:
    if not await can_connect_git(db, user_id, project_id):
        raise HTTPException(status_code=403, detail=detail)


async def load_repo(db: Any, repo_id: str, user_id: str) -> tuple[dict, str]:
    """Repo row and its project, after checking the caller is a project member."""
    repo = await get_repo_repository(db).get_by_id(repo_id)
    if not repo:
        raise HTTPException(status_code=404, detail="Repository not found")
    project_id = await get_repo_repository(db).get_project_id(repo_id)
    if not project_id:
        raise HTTPException(status_code=404, detail="Repository not linked to project")
    await require_member(db, user_id, project_id)
    return repo, project_id


async def client_for_repo(db: Any, repo: dict) -> GitHubClient:
    connection = await get_connection_repository(db).get_by_id(repo["connection_id"]) if repo.get("connection_id") else None
    if not connection or connection.get("status") == "revoked":
        raise HTTPException(status_code=404, detail="Connection not found")
    try:
        return await get_client_for_connection(connection)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to authenticate with GitHub") from exc


def upstream_error(exc: Exception, detail: str) -> HTTPException:
    logger.error("%s: %s", detail, exc)
    return HTTPException(status_code=500, detail=detail)
