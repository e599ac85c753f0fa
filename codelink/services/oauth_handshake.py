"""OAuth connection handshake: state issuance, callback, revocation.

The callback is reached by a browser redirect from GitHub, so it carries no
bearer token; the stored state row is the only source of project and user.
Every outcome of the callback is a frontend URL, never an exception.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from pydantic import ValidationError

from codelink import config
from codelink.audit import log_audit_event
from codelink.db.factory import (
    get_connection_repository,
    get_oauth_state_repository,
    get_repo_repository,
)
from codelink.services.github_client import (
    GitHubAPIError,
    GitHubClient,
    exchange_code_for_token,
    revoke_oauth_token,
)
from codelink.token_crypto import TokenDecryptionError, decrypt_token, encrypt_token

logger = logging.getLogger("codelink.oauth")


class ConnectionNotFoundError(LookupError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def oauth_configured() -> bool:
    return bool(config.GITHUB_CLIENT_ID and config.GITHUB_CLIENT_SECRET and config.GITHUB_REDIRECT_URI)


def error_redirect(message: str, project_id: str | None = None) -> str:
    if project_id:
        return f"{config.FRONTEND_URL}/project/{project_id}/code/repos?error={quote(message)}"
    return f"{config.FRONTEND_URL}/project/error?message={quote(message)}"


def success_redirect(project_id: str) -> str:
    return f"{config.FRONTEND_URL}/project/{project_id}/code/select-repos?connected=true"


async def issue_state(db: Any, project_id: str, user_id: str) -> tuple[str, str]:
    """Store a fresh anti-forgery state bound to (project, user)."""
    state = str(uuid.uuid4())
    created = _now()
    expires = created + timedelta(seconds=config.OAUTH_STATE_TTL_SECONDS)
    await get_oauth_state_repository(db).create(
        state, project_id, user_id, created.isoformat(), expires.isoformat(),
    )
    return state, expires.isoformat()


def build_authorize_url(state: str) -> str:
    query = urlencode(
        {
            "client_id": config.GITHUB_CLIENT_ID,
            "redirect_uri": config.GITHUB_REDIRECT_URI,
            "scope": config.GITHUB_OAUTH_SCOPES,
            "state": state,
        }
    )
    return f"{config.GITHUB_WEB_URL}/login/oauth/authorize?{query}"


async def complete_callback(
    db: Any,
    code: str | None,
    state: str | None,
    http: httpx.AsyncClient | None = None,
) -> str:
    """Finish the handshake and return the frontend URL to redirect to."""
    if not oauth_configured():
        logger.error("OAuth callback received but GitHub OAuth is not configured")
        return error_redirect("GitHub OAuth not configured")
    if not code or not state:
        return error_redirect("Missing code or state parameter")

    states = get_oauth_state_repository(db)
    stored = await states.get_valid(state, _now().isoformat())
    if not stored:
        logger.info("Rejected OAuth callback with unknown or expired state")
        return error_redirect("Invalid or expired state")

    try:
        return await _consume_state(db, stored, code, http)
    except Exception:  # noqa: BLE001
        logger.exception("OAuth callback failed for project %s", stored["project_id"])
        return error_redirect("Internal server error", stored["project_id"])
    finally:
        await states.delete(state)


async def _consume_state(db: Any, stored: dict, code: str, http: httpx.AsyncClient | None) -> str:
    project_id = stored["project_id"]
    user_id = stored["user_id"]

    try:
        token_data = await exchange_code_for_token(code, http)
    except GitHubAPIError as exc:
        logger.warning("OAuth code exchange failed (%s): %s", exc.status, exc.message)
        return error_redirect(exc.message, project_id)
    except httpx.HTTPError as exc:
        logger.warning("OAuth code exchange failed: %s", exc)
        return error_redirect("Failed to exchange code for token", project_id)

    access_token = token_data.get("access_token")
    if not access_token:
        message = token_data.get("error_description") or token_data.get("error") or "No access token received"
        return error_redirect(message, project_id)
    scopes = [s for s in (token_data.get("scope") or "").split(",") if s]

    try:
        async with GitHubClient(access_token, http) as github:
            github_user = await github.get_authenticated_user()
    except (GitHubAPIError, httpx.HTTPError, ValidationError) as exc:
        logger.warning("Fetching GitHub user failed: %s", exc)
        return error_redirect("Failed to fetch GitHub user", project_id)

    connections = get_connection_repository(db)
    credentials = {
        "github_user_id": str(github_user.id),
        "username": github_user.login,
        "access_token_encrypted": encrypt_token(access_token),
        "scopes": scopes,
    }
    existing = await connections.get_for_project(project_id)
    if existing:
        try:
            await connections.update_oauth_credentials(existing["id"], credentials)
        except Exception:  # noqa: BLE001
            logger.exception("Updating connection %s failed", existing["id"])
            return error_redirect("Failed to update connection", project_id)
        connection_id = existing["id"]
    else:
        try:
            connection_id = await connections.insert(
                {
                    "project_id": project_id,
                    "provider": "github",
                    "owner_type": "user",
                    "owner_name": github_user.login,
                    "status": "active",
                    "created_by": user_id,
                    **credentials,
                }
            )
        except Exception:  # noqa: BLE001
            logger.exception("Creating connection for project %s failed", project_id)
            return error_redirect("Failed to create connection", project_id)

    await log_audit_event(
        db,
        user_id,
        "CONNECT",
        "provider_connection",
        connection_id,
        after={"provider": "github", "username": github_user.login, "project_id": project_id},
    )
    logger.info("GitHub connected for project %s as %s", project_id, github_user.login)
    return success_redirect(project_id)


async def revoke_connection(
    db: Any,
    project_id: str,
    user_id: str,
    http: httpx.AsyncClient | None = None,
) -> dict:
    """Revoke the project's GitHub connection and deselect its repos."""
    connections = get_connection_repository(db)
    connection = await connections.get_for_project(project_id)
    if not connection:
        raise ConnectionNotFoundError(project_id)

    if connection.get("access_token_encrypted"):
        try:
            token = decrypt_token(connection["access_token_encrypted"])
        except TokenDecryptionError:
            logger.warning("Skipping provider revoke for %s: token unreadable", connection["id"])
        else:
            await revoke_oauth_token(token, http)

    await connections.set_status(connection["id"], "revoked")
    deselected = await get_repo_repository(db).deselect_for_connection(connection["id"])
    await log_audit_event(
        db,
        user_id,
        "CONNECT",
        "provider_connection",
        connection["id"],
        before={"status": connection.get("status")},
        after={"status": "revoked"},
        metadata={"deselected_repos": deselected},
    )
    return {"id": connection["id"], "status": "revoked", "deselected_repos": deselected}


async def cleanup_expired_states(db: Any) -> int:
    deleted = await get_oauth_state_repository(db).delete_expired(_now().isoformat())
    if deleted:
        logger.info("Removed %d expired OAuth state(s)", deleted)
    return deleted
