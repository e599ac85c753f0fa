"""Bearer-token validation against the host app's identity provider."""
from __future__ import annotations

import logging

import httpx
from fastapi import Header, HTTPException

from codelink import config

logger = logging.getLogger("codelink.auth")


async def validate_token(token: str, http: httpx.AsyncClient | None = None) -> str | None:
    """Return the user id the identity provider attaches to `token`, or None."""
    if not config.AUTH_USER_URL:
        logger.error("CODELINK_AUTH_USER_URL is not configured; rejecting bearer token")
        return None
    headers = {"Authorization": f"Bearer {token}"}
    if config.AUTH_API_KEY:
        headers["apikey"] = config.AUTH_API_KEY

    owns_http = http is None
    client = http or httpx.AsyncClient(timeout=config.GITHUB_HTTP_TIMEOUT_SECONDS)
    try:
        response = await client.get(config.AUTH_USER_URL, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("Identity provider unreachable: %s", exc)
        return None
    finally:
        if owns_http:
            await client.aclose()

    if response.status_code != 200:
        return None
    try:
        payload = response.json()
    except ValueError:
        logger.warning("Identity provider returned a non-JSON body")
        return None
    user_id = payload.get("id") if isinstance(payload, dict) else None
    return str(user_id) if user_id else None


async def require_user(authorization: str | None = Header(default=None)) -> str:
    """FastAPI dependency: the authenticated user id, or 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    user_id = await validate_token(authorization[len("Bearer "):].strip())
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id
