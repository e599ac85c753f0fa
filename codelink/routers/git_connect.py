"""GitHub App installation router: connect, list, sync and revoke connections."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from codelink import config
from codelink.audit import log_audit_event
from codelink.auth import require_user
from codelink.db import connection
from codelink.db.factory import get_connection_repository, get_repo_repository
from codelink.routers.access import UPSTREAM_ERRORS, require_admin, require_member, require_param, upstream_error
from codelink.services.github_client import get_app_client
from codelink.services.repo_sync import sync_repos

logger = logging.getLogger("codelink.api")

git_connect_router = APIRouter(prefix="/api/git-connect", tags=["git-connect"])


class StartConnectionRequest(BaseModel):
    projectId: Optional[str] = None
    provider: str = "github"


class InstallationCallbackRequest(BaseModel):
    projectId: Optional[str] = None
    installationId: Optional[str] = None
    provider: str = "github"
    ownerType: Optional[str] = None
    ownerName: Optional[str] = None


def _public_connection(row: dict) -> dict:
    data = dict(row)
    data.pop("access_token_encrypted", None)
    return data


@git_connect_router.post("/start")
async def start_connection(req: StartConnectionRequest, user_id: str = Depends(require_user)):
    """Return the GitHub App installation URL for the project."""
    project_id = require_param(req.projectId, "projectId")
    db = await connection.get_connection()
    await require_admin(db, user_id, project_id, "Forbidden: Only admins can connect Git providers")
    if req.provider != "github":
        raise HTTPException(status_code=400, detail="Unsupported provider")
    if not config.GITHUB_APP_SLUG:
        raise HTTPException(status_code=500, detail="GitHub App not configured")
    return {
        "url": f"{config.GITHUB_WEB_URL}/apps/{config.GITHUB_APP_SLUG}/installations/new",
        "provider": "github",
        "type": "github_app",
    }


@git_connect_router.post("/callback")
async def installation_callback(req: InstallationCallbackRequest, user_id: str = Depends(require_user)):
    """Record an App installation as a connection and run the first sync."""
    if not req.projectId or not req.installationId:
        raise HTTPException(status_code=400, detail="projectId and installationId are required")
    db = await connection.get_connection()
    await require_admin(db, user_id, req.projectId)

    try:
        async with get_app_client() as app_client:
            installation = await app_client.get_installation(req.installationId)
    except UPSTREAM_ERRORS as exc:
        raise upstream_error(exc, "Failed to process callback") from exc

    account_login = installation.account.login if installation.account else ""
    connections = get_connection_repository(db)
    connection_id = await connections.insert(
        {
            "project_id": req.projectId,
            "provider": req.provider,
            "owner_type": req.ownerType or installation.owner_type,
            "owner_name": req.ownerName or account_login,
            "installation_id": str(req.installationId),
            "status": "active",
            "secrets_ref": f"github_installation_{req.installationId}",
            "created_by": user_id,
        }
    )
    await log_audit_event(
        db,
        user_id,
        "CONNECT",
        "provider_connection",
        connection_id,
        after={"provider": req.provider, "installation_id": req.installationId},
        metadata={"project_id": req.projectId},
    )

    await sync_repos(db, connection_id, user_id)
    return {"connection": _public_connection(await connections.get_by_id(connection_id))}


@git_connect_router.get("/connections")
async def list_connections(
    projectId: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    project_id = require_param(projectId, "projectId")
    db = await connection.get_connection()
    await require_member(db, user_id, project_id)
    rows = await get_connection_repository(db).list_for_project(project_id)
    return {"connections": [_public_connection(row) for row in rows]}


@git_connect_router.post("/sync")
async def trigger_sync(
    connectionId: Optional[str] = Query(None),
    repoId: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    if not connectionId and not repoId:
        raise HTTPException(status_code=400, detail="connectionId or repoId is required")
    db = await connection.get_connection()

    connection_id = connectionId
    if not connection_id:
        repo = await get_repo_repository(db).get_by_id(repoId)
        if not repo:
            raise HTTPException(status_code=404, detail="Repository not found")
        connection_id = repo["connection_id"]

    conn = await get_connection_repository(db).get_by_id(connection_id) if connection_id else None
    if not conn or conn.get("status") == "revoked":
        raise HTTPException(status_code=404, detail="Connection not found")
    await require_member(db, user_id, conn["project_id"])

    result = await sync_repos(db, connection_id, user_id)
    return {"success": result["status"] == "synced", **result}


@git_connect_router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str, user_id: str = Depends(require_user)):
    db = await connection.get_connection()
    connections = get_connection_repository(db)
    conn = await connections.get_by_id(connection_id)
    if not conn:
        raise HTTPException(status_code=404, detail="Connection not found")
    await require_admin(db, user_id, conn["project_id"])

    await connections.set_status(connection_id, "revoked")
    deselected = await get_repo_repository(db).deselect_for_connection(connection_id)
    await log_audit_event(
        db,
        user_id,
        "CONNECT",
        "provider_connection",
        connection_id,
        before={"status": conn.get("status")},
        after={"status": "revoked"},
        metadata={"deselected_repos": deselected},
    )
    logger.info("Connection %s revoked by %s", connection_id, user_id)
    return {"success": True}
