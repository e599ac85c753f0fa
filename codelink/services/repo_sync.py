"""Mirror a connection's repositories and branches into the local store.

Each upsert is committed on its own; a sync that stops halfway leaves the rows
already written in place. Per-repo and per-branch failures are logged and
skipped, while a failure to reach the provider at all marks the connection as
errored.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from codelink.audit import log_audit_event
from codelink.auto_link import link_branch
from codelink.db.factory import (
    get_branch_repository,
    get_connection_repository,
    get_repo_repository,
)
from codelink.models import GitHubRepo
from codelink.observability import record_sync, start_span
from codelink.services.github_client import (
    GitHubAPIError,
    GitHubClient,
    GitHubConfigError,
    get_client_for_connection,
)
from codelink.token_crypto import TokenDecryptionError

logger = logging.getLogger("codelink.sync")

_SYNC_ERRORS = (GitHubAPIError, GitHubConfigError, TokenDecryptionError, httpx.HTTPError, ValidationError)


class SyncError(Exception):
    pass


async def sync_branches(
    db: Any,
    github: GitHubClient,
    repo_id: str,
    full_name: str,
    project_id: str | None = None,
) -> int:
    """Upsert every branch of `full_name`. Returns how many were stored."""
    try:
        branches = await github.list_branches(full_name)
    except _SYNC_ERRORS as exc:
        logger.warning("Listing branches for %s failed: %s", full_name, exc)
        return 0

    repo_branches = get_branch_repository(db)
    stored = 0
    for branch in branches:
        row = branch.to_row()
        try:
            row["id"] = await repo_branches.upsert(repo_id, row)
        except Exception:  # noqa: BLE001
            logger.exception("Storing branch %s of %s failed", branch.name, full_name)
            continue
        stored += 1
        if project_id:
            await link_branch(db, project_id, repo_id, row)
    return stored


async def _repos_for(github: GitHubClient, connection: dict, db: Any) -> list[GitHubRepo] | list[dict]:
    if connection.get("installation_id"):
        return await github.list_installation_repos()
    # OAuth connections only mirror what the user picked.
    return [repo for repo in await get_repo_repository(db).list_by_connection(connection["id"]) if repo.get("selected")]


async def sync_repos(
    db: Any,
    connection_id: str,
    actor_id: str,
    http: httpx.AsyncClient | None = None,
) -> dict:
    """Refresh repos and branches for a connection.

    Returns `{"status": "synced", "repos_synced": n, "branches_synced": m}` or,
    when the provider cannot be queried, `{"status": "error", "error": msg}`
    after recording the error on the connection.
    """
    connections = get_connection_repository(db)
    connection = await connections.get_by_id(connection_id)
    if not connection:
        raise SyncError("Connection not found")
    if connection.get("status") == "revoked":
        raise SyncError("Connection revoked")

    repos = get_repo_repository(db)
    project_id = connection["project_id"]

    with start_span("codelink.sync_repos", {"connection_id": connection_id, "project_id": project_id}):
        try:
            github = await get_client_for_connection(connection, http)
        except _SYNC_ERRORS as exc:
            return await _fail(db, connection_id, exc)

        repos_synced = 0
        branches_synced = 0
        async with github:
            try:
                remote_repos = await _repos_for(github, connection, db)
            except _SYNC_ERRORS as exc:
                return await _fail(db, connection_id, exc)

            for remote in remote_repos:
                if isinstance(remote, GitHubRepo):
                    full_name = remote.full_name
                    try:
                        repo_id = await repos.upsert(remote.to_row(connection_id))
                    except Exception:  # noqa: BLE001
                        logger.exception("Storing repo %s failed", full_name)
                        continue
                else:
                    full_name, repo_id = remote["full_name"], remote["id"]
                await repos.link_project(project_id, repo_id)
                repos_synced += 1
                branches_synced += await sync_branches(db, github, repo_id, full_name, project_id)

    await connections.mark_synced(connection_id)
    if connection.get("status") == "error":
        await connections.set_status(connection_id, "active")
    await log_audit_event(
        db,
        actor_id,
        "SYNC",
        "provider_connection",
        connection_id,
        after={"repos_synced": repos_synced, "branches_synced": branches_synced},
    )
    record_sync("success")
    logger.info(
        "Synced connection %s: %d repo(s), %d branch(es)", connection_id, repos_synced, branches_synced,
    )
    return {"status": "synced", "repos_synced": repos_synced, "branches_synced": branches_synced}


async def _fail(db: Any, connection_id: str, exc: Exception) -> dict:
    message = getattr(exc, "message", None) or str(exc) or "Unknown error"
    logger.error("Sync of connection %s failed: %s", connection_id, message)
    await get_connection_repository(db).set_status(connection_id, "error", message)
    record_sync("error")
    return {"status": "error", "error": message}
