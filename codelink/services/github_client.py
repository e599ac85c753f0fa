"""GitHub REST client used by routes and the repository sync.

Every API call goes through `with_retry`: 403 and 429 responses are retried
with a linearly growing delay, anything else propagates immediately. OAuth code
exchange and identity lookups made during the handshake are single attempts.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import jwt

from codelink import config
from codelink.models import (
    GitHubAccount,
    GitHubBranch,
    GitHubCommit,
    GitHubContent,
    GitHubFile,
    GitHubInstallation,
    GitHubInstallationToken,
    GitHubPull,
    GitHubRepo,
    GitHubReview,
    GitHubUser,
)
from codelink.observability import record_github_call, record_github_retry
from codelink.token_crypto import decrypt_token

logger = logging.getLogger("codelink.github")

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({403, 429})
GITHUB_API_VERSION = "2022-11-28"


class GitHubAPIError(Exception):
    """Non-2xx response from the GitHub API."""

    def __init__(self, status: int, message: str, endpoint: str = ""):
        super().__init__(f"GitHub API error {status} on {endpoint or 'request'}: {message}")
        self.status = status
        self.message = message
        self.endpoint = endpoint


class GitHubConfigError(Exception):
    """A connection or the App settings lack what is needed to authenticate."""


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    delay: Optional[float] = None,
) -> T:
    """Run `fn`, retrying rate-limit and forbidden responses.

    `max_retries` is the total number of attempts. Between attempt N and N+1
    the wrapper sleeps `delay * N` seconds; there is no sleep after the last.
    """
    attempts = max(1, max_retries if max_retries is not None else config.GITHUB_RETRY_ATTEMPTS)
    base_delay = delay if delay is not None else config.GITHUB_RETRY_DELAY_MS / 1000
    attempt = 1
    while True:
        try:
            return await fn()
        except GitHubAPIError as exc:
            if exc.status not in RETRYABLE_STATUSES or attempt >= attempts:
                raise
            record_github_retry(exc.status)
            logger.warning(
                "GitHub %s on %s, retrying (%d/%d)", exc.status, exc.endpoint, attempt, attempts,
            )
            await asyncio.sleep(base_delay * attempt)
        attempt += 1


def _headers(authorization: str | None = None) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "User-Agent": "codelink",
    }
    if authorization:
        headers["Authorization"] = authorization
    return headers


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.reason_phrase


class GitHubClient:
    """Token-authenticated client over a shared or owned `httpx.AsyncClient`."""

    def __init__(self, token: str, http: httpx.AsyncClient | None = None, *, scheme: str = "Bearer"):
        self._authorization = f"{scheme} {token}"
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=config.GITHUB_HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        started = time.monotonic()
        response = await self._http.request(
            method,
            f"{config.GITHUB_API_URL}{path}",
            params=params,
            json=json,
            headers=_headers(self._authorization),
        )
        record_github_call(endpoint, response.status_code, (time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            raise GitHubAPIError(response.status_code, _error_message(response), endpoint)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _request(
        self,
        method: str,
        path: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
        retry: bool = True,
    ) -> Any:
        if not retry:
            return await self._send(method, path, endpoint, params, json)
        return await with_retry(lambda: self._send(method, path, endpoint, params, json))

    # ── Identity ───────────────────────────────────────────────────

    async def get_authenticated_user(self) -> GitHubUser:
        data = await self._request("GET", "/user", "user", retry=False)
        return GitHubUser.model_validate(data)

    async def list_user_orgs(self) -> list[GitHubAccount]:
        data = await self._request("GET", "/user/orgs", "user.orgs", params={"per_page": 100})
        return [GitHubAccount.model_validate({"type": "Organization", **org}) for org in data or []]

    # ── Repositories ───────────────────────────────────────────────

    async def list_installation_repos(self) -> list[GitHubRepo]:
        data = await self._request(
            "GET", "/installation/repositories", "installation.repos", params={"per_page": 100},
        )
        return [GitHubRepo.model_validate(repo) for repo in (data or {}).get("repositories", [])]

    async def list_user_repos(self, org: str | None = None) -> list[GitHubRepo]:
        if org:
            data = await self._request(
                "GET", f"/orgs/{org}/repos", "orgs.repos",
                params={"per_page": 100, "sort": "updated"},
            )
        else:
            data = await self._request(
                "GET", "/user/repos", "user.repos",
                params={"per_page": 100, "sort": "updated", "affiliation": "owner,collaborator,organization_member"},
            )
        return [GitHubRepo.model_validate(repo) for repo in data or []]

    async def list_branches(self, full_name: str) -> list[GitHubBranch]:
        data = await self._request(
            "GET", f"/repos/{full_name}/branches", "repos.branches", params={"per_page": 100},
        )
        return [GitHubBranch.model_validate(branch) for branch in data or []]

    async def get_content(self, full_name: str, path: str = "", ref: str | None = None) -> list[GitHubContent] | GitHubContent:
        """Directory listing (list) or a single file (with base64 body)."""
        params = {"ref": ref} if ref else None
        data = await self._request(
            "GET", f"/repos/{full_name}/contents/{path.strip('/')}", "repos.contents", params=params,
        )
        if isinstance(data, list):
            return [GitHubContent.model_validate(item) for item in data]
        return GitHubContent.model_validate(data)

    async def get_readme(self, full_name: str) -> GitHubContent:
        data = await self._request("GET", f"/repos/{full_name}/readme", "repos.readme")
        return GitHubContent.model_validate(data)

    # ── Commits ────────────────────────────────────────────────────

    async def list_commits(
        self, full_name: str, ref: str | None = None, page: int = 1, per_page: int = 30,
    ) -> list[GitHubCommit]:
        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if ref:
            params["sha"] = ref
        data = await self._request("GET", f"/repos/{full_name}/commits", "repos.commits", params=params)
        return [GitHubCommit.model_validate(commit) for commit in data or []]

    async def get_commit(self, full_name: str, sha: str) -> GitHubCommit:
        data = await self._request("GET", f"/repos/{full_name}/commits/{sha}", "repos.commit")
        return GitHubCommit.model_validate(data)

    # ── Pull requests ──────────────────────────────────────────────

    async def list_pulls(self, full_name: str, state: str = "open", per_page: int = 100) -> list[GitHubPull]:
        data = await self._request(
            "GET", f"/repos/{full_name}/pulls", "repos.pulls",
            params={"state": state, "per_page": per_page, "sort": "updated", "direction": "desc"},
        )
        return [GitHubPull.model_validate(pr) for pr in data or []]

    async def get_pull(self, full_name: str, number: int) -> GitHubPull:
        data = await self._request("GET", f"/repos/{full_name}/pulls/{number}", "repos.pull")
        return GitHubPull.model_validate(data)

    async def list_pull_commits(self, full_name: str, number: int) -> list[GitHubCommit]:
        data = await self._request(
            "GET", f"/repos/{full_name}/pulls/{number}/commits", "repos.pull.commits", params={"per_page": 100},
        )
        return [GitHubCommit.model_validate(commit) for commit in data or []]

    async def list_pull_files(self, full_name: str, number: int) -> list[GitHubFile]:
        data = await self._request(
            "GET", f"/repos/{full_name}/pulls/{number}/files", "repos.pull.files", params={"per_page": 100},
        )
        return [GitHubFile.model_validate(item) for item in data or []]

    async def list_pull_reviews(self, full_name: str, number: int) -> list[GitHubReview]:
        data = await self._request(
            "GET", f"/repos/{full_name}/pulls/{number}/reviews", "repos.pull.reviews", params={"per_page": 100},
        )
        return [GitHubReview.model_validate(review) for review in data or []]

    # ── App installation (JWT-authenticated) ───────────────────────

    async def get_installation(self, installation_id: str) -> GitHubInstallation:
        data = await self._request("GET", f"/app/installations/{installation_id}", "app.installation")
        return GitHubInstallation.model_validate(data)

    async def create_installation_token(self, installation_id: str) -> GitHubInstallationToken:
        data = await self._request(
            "POST", f"/app/installations/{installation_id}/access_tokens", "app.installation.token",
        )
        return GitHubInstallationToken.model_validate(data)


# ── Factories ──────────────────────────────────────────────────────

def generate_app_jwt(now: int | None = None) -> str:
    """RS256 JWT identifying the GitHub App, valid for nine minutes."""
    if not config.GITHUB_APP_ID or not config.GITHUB_PRIVATE_KEY:
        raise GitHubConfigError("GitHub App credentials not configured")
    issued = int(now if now is not None else time.time())
    payload = {
        "iat": issued - 60,
        "exp": issued + 540,
        "iss": config.GITHUB_APP_ID,
    }
    return jwt.encode(payload, config.GITHUB_PRIVATE_KEY, algorithm="RS256")


def get_app_client(http: httpx.AsyncClient | None = None) -> GitHubClient:
    return GitHubClient(generate_app_jwt(), http)


async def get_installation_token(installation_id: str, http: httpx.AsyncClient | None = None) -> str:
    async with get_app_client(http) as app_client:
        token = await app_client.create_installation_token(installation_id)
    return token.token


async def get_client_for_connection(connection: dict, http: httpx.AsyncClient | None = None) -> GitHubClient:
    """Client authenticated as the installation, or with the stored OAuth token."""
    if connection.get("installation_id"):
        token = await get_installation_token(connection["installation_id"], http)
        return GitHubClient(token, http)
    if connection.get("access_token_encrypted"):
        return GitHubClient(decrypt_token(connection["access_token_encrypted"]), http)
    raise GitHubConfigError("No valid authentication method found for connection")


# ── OAuth helpers (single attempt) ─────────────────────────────────

async def exchange_code_for_token(code: str, http: httpx.AsyncClient | None = None) -> dict:
    """Trade an OAuth code for the token payload (`access_token`, `scope`, ...).

    An HTTP failure raises GitHubAPIError. GitHub also answers some failures
    with a 200 carrying `error`/`error_description` and no token; that payload
    is returned as-is for the caller to inspect.
    """
    owns_http = http is None
    client = http or httpx.AsyncClient(timeout=config.GITHUB_HTTP_TIMEOUT_SECONDS)
    try:
        started = time.monotonic()
        response = await client.post(
            f"{config.GITHUB_WEB_URL}/login/oauth/access_token",
            headers={"Accept": "application/json"},
            json={
                "client_id": config.GITHUB_CLIENT_ID,
                "client_secret": config.GITHUB_CLIENT_SECRET,
                "code": code,
                "redirect_uri": config.GITHUB_REDIRECT_URI,
            },
        )
        record_github_call("oauth.access_token", response.status_code, (time.monotonic() - started) * 1000)
    finally:
        if owns_http:
            await client.aclose()

    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        message = payload.get("error_description") or payload.get("error") or "Failed to exchange code for token"
        raise GitHubAPIError(response.status_code, message, "oauth.access_token")
    return response.json()


async def revoke_oauth_token(token: str, http: httpx.AsyncClient | None = None) -> bool:
    """Ask GitHub to revoke an OAuth grant. Failures are logged, not raised."""
    owns_http = http is None
    client = http or httpx.AsyncClient(timeout=config.GITHUB_HTTP_TIMEOUT_SECONDS)
    try:
        response = await client.request(
            "DELETE",
            f"{config.GITHUB_API_URL}/applications/{config.GITHUB_CLIENT_ID}/token",
            auth=(config.GITHUB_CLIENT_ID, config.GITHUB_CLIENT_SECRET),
            headers=_headers(),
            json={"access_token": token},
        )
    except httpx.HTTPError as exc:
        logger.warning("Could not revoke token on GitHub: %s", exc)
        return False
    finally:
        if owns_http:
            await client.aclose()
    if response.status_code >= 400:
        logger.warning("GitHub token revoke returned %s", response.status_code)
        return False
    return True
