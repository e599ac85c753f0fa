"""GitHub OAuth connection router."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from codelink.auth import require_user
from codelink.db import connection
from codelink.db.factory import get_connection_repository
from codelink.routers.access import require_admin, require_member, require_param
from codelink.services.oauth_handshake import (
    ConnectionNotFoundError,
    build_authorize_url,
    complete_callback,
    issue_state,
    oauth_configured,
    revoke_connection,
)


github_oauth_router = APIRouter(prefix="/api/github-oauth", tags=["github-oauth"])


class ProjectRequest(BaseModel):
    projectId: Optional[str] = None


@github_oauth_router.post("/start")
async def start_oauth(req: ProjectRequest, user_id: str = Depends(require_user)):
    """Issue a handshake state and return the GitHub authorize URL."""
    project_id = require_param(req.projectId, "projectId")
    db = await connection.get_connection()
    await require_admin(db, user_id, project_id, "Forbidden: Only admins can connect GitHub")
    if not oauth_configured():
        raise HTTPException(
            status_code=500,
            detail="GitHub OAuth not configured. Please set GITHUB_CLIENT_ID and GITHUB_REDIRECT_URI environment variables.",
        )
    state, _expires_at = await issue_state(db, project_id, user_id)
    return {"authorizeUrl": build_authorize_url(state), "state": state}


@github_oauth_router.get("/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    # Reached by browser navigation from GitHub; always answers with a redirect.
    db = await connection.get_connection()
    return RedirectResponse(await complete_callback(db, code, state), status_code=302)


@github_oauth_router.get("/connection")
async def get_oauth_connection(
    projectId: Optional[str] = Query(None),
    user_id: str = Depends(require_user),
):
    project_id = require_param(projectId, "projectId")
    db = await connection.get_connection()
    await require_member(db, user_id, project_id)
    conn = await get_connection_repository(db).get_for_project(project_id)
    return {
        "connected": bool(conn) and conn.get("status") == "active",
        "username": conn.get("username") if conn else None,
        "status": conn.get("status") if conn else None,
        "scopes": conn.get("scopes", []) if conn else [],
        "lastSyncAt": conn.get("last_sync_at") if conn else None,
    }


@github_oauth_router.post("/connection/revoke")
async def revoke_oauth_connection(req: ProjectRequest, user_id: str = Depends(require_user)):
    project_id = require_param(req.projectId, "projectId")
    db = await connection.get_connection()
    await require_admin(db, user_id, project_id)
    try:
        await revoke_connection(db, project_id, user_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"ok": True}
