import unittest
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import aiosqlite
from cryptography.fernet import Fernet
from fastapi import HTTPException

from codelink import config
from codelink.db.factory import get_connection_repository, get_member_repository
from codelink.db.sqlite_migrations import run_migrations
from codelink.routers import github_oauth as oauth_router
from codelink.token_crypto import encrypt_token


class GitHubOAuthRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        members = get_member_repository(self.db)
        await members.upsert("p-1", "admin", "admin")
        await members.upsert("p-1", "dev", "developer")
        self._patches = [
            patch.object(oauth_router.connection, "get_connection", new=AsyncMock(return_value=self.db)),
            patch.object(config, "GITHUB_CLIENT_ID", "cid"),
            patch.object(config, "GITHUB_CLIENT_SECRET", "secret"),
            patch.object(config, "GITHUB_REDIRECT_URI", "http://app.test/callback"),
            patch.object(config, "FRONTEND_URL", "http://app.test"),
            patch.object(config, "TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode()),
        ]
        for p in self._patches:
            p.start()

    async def asyncTearDown(self) -> None:
        for p in reversed(self._patches):
            p.stop()
        await self.db.close()

    async def test_start_requires_admin(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await oauth_router.start_oauth(oauth_router.ProjectRequest(projectId="p-1"), user_id="dev")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.detail, "Forbidden: Only admins can connect GitHub")

    async def test_start_requires_project(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await oauth_router.start_oauth(oauth_router.ProjectRequest(), user_id="admin")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.detail, "projectId is required")

    async def test_start_unconfigured(self) -> None:
        with patch.object(config, "GITHUB_CLIENT_ID", ""):
            with self.assertRaises(HTTPException) as ctx:
                await oauth_router.start_oauth(oauth_router.ProjectRequest(projectId="p-1"), user_id="admin")
        self.assertEqual(ctx.exception.status_code, 500)

    async def test_start_returns_authorize_url_with_state(self) -> None:
        payload = await oauth_router.start_oauth(oauth_router.ProjectRequest(projectId="p-1"), user_id="admin")
        query = parse_qs(urlparse(payload["authorizeUrl"]).query)
        self.assertEqual(query["state"], [payload["state"]])
        async with self.db.execute(
            "SELECT project_id, user_id FROM github_oauth_states WHERE state = ?", (payload["state"],),
        ) as cur:
            row = await cur.fetchone()
        self.assertEqual((row["project_id"], row["user_id"]), ("p-1", "admin"))

    async def test_callback_redirects_on_bad_state(self) -> None:
        response = await oauth_router.oauth_callback(code="c", state="unknown")
        self.assertEqual(response.status_code, 302)
        self.assertEqual(
            response.headers["location"],
            "http://app.test/project/error?message=Invalid%20or%20expired%20state",
        )

    async def test_connection_status(self) -> None:
        empty = await oauth_router.get_oauth_connection(projectId="p-1", user_id="dev")
        self.assertFalse(empty["connected"])
        self.assertEqual(empty["scopes"], [])

        await get_connection_repository(self.db).insert(
            {
                "project_id": "p-1",
                "owner_type": "user",
                "owner_name": "octocat",
                "username": "octocat",
                "access_token_encrypted": encrypt_token("gho_1"),
                "scopes": ["repo"],
            }
        )
        status = await oauth_router.get_oauth_connection(projectId="p-1", user_id="dev")
        self.assertTrue(status["connected"])
        self.assertEqual(status["username"], "octocat")
        self.assertEqual(status["scopes"], ["repo"])
        self.assertNotIn("access_token_encrypted", status)

    async def test_connection_status_hidden_from_outsiders(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await oauth_router.get_oauth_connection(projectId="p-1", user_id="stranger")
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_revoke_missing_connection(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await oauth_router.revoke_oauth_connection(oauth_router.ProjectRequest(projectId="p-1"), user_id="admin")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_revoke(self) -> None:
        connection_id = await get_connection_repository(self.db).insert(
            {"project_id": "p-1", "owner_type": "user", "owner_name": "octocat"}
        )
        result = await oauth_router.revoke_oauth_connection(
            oauth_router.ProjectRequest(projectId="p-1"), user_id="admin",
        )
        self.assertEqual(result, {"ok": True})
        conn = await get_connection_repository(self.db).get_by_id(connection_id)
        self.assertEqual(conn["status"], "revoked")


if __name__ == "__main__":
    unittest.main()
