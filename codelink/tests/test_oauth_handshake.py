import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import aiosqlite
import httpx
from cryptography.fernet import Fernet

from codelink import config
from codelink.db.factory import (
    get_audit_repository,
    get_connection_repository,
    get_oauth_state_repository,
    get_repo_repository,
)
from codelink.db.repositories.connections import SqliteConnectionRepository
from codelink.db.sqlite_migrations import run_migrations
from codelink.services.oauth_handshake import (
    ConnectionNotFoundError,
    build_authorize_url,
    cleanup_expired_states,
    complete_callback,
    issue_state,
    revoke_connection,
)
from codelink.token_crypto import decrypt_token, encrypt_token


def _github(token_payload=None, token_status=200, user_status=200, calls=None):
    """Mock transport answering the token endpoint, /user and the revoke endpoint."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append((request.method, request.url.path))
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(token_status, json=token_payload or {})
        if request.url.path == "/user":
            if user_status != 200:
                return httpx.Response(user_status, json={"message": "Bad credentials"})
            return httpx.Response(200, json={"id": 9001, "login": "octocat", "name": "Octo Cat"})
        if request.url.path.startswith("/applications/"):
            return httpx.Response(204)
        return httpx.Response(404, json={"message": "Not Found"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class OAuthHandshakeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self._patches = [
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

    async def _state_count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM github_oauth_states") as cur:
            row = await cur.fetchone()
        return row[0]

    async def test_issue_state_expires_after_five_minutes(self) -> None:
        state, expires_at = await issue_state(self.db, "p-1", "u-1")
        delta = datetime.fromisoformat(expires_at) - datetime.now(timezone.utc)
        self.assertTrue(timedelta(minutes=4) < delta <= timedelta(minutes=5))
        url = urlparse(build_authorize_url(state))
        query = parse_qs(url.query)
        self.assertEqual(url.path, "/login/oauth/authorize")
        self.assertEqual(query["state"], [state])
        self.assertEqual(query["client_id"], ["cid"])
        self.assertEqual(query["redirect_uri"], ["http://app.test/callback"])

    async def test_successful_callback_creates_connection(self) -> None:
        state, _ = await issue_state(self.db, "p-1", "u-1")
        async with _github({"access_token": "gho_abc", "scope": "repo,read:org"}) as http:
            target = await complete_callback(self.db, "code-1", state, http)

        self.assertEqual(target, "http://app.test/project/p-1/code/select-repos?connected=true")
        connection = await get_connection_repository(self.db).get_for_project("p-1")
        self.assertEqual(connection["username"], "octocat")
        self.assertEqual(connection["github_user_id"], "9001")
        self.assertEqual(connection["owner_type"], "user")
        self.assertEqual(connection["status"], "active")
        self.assertEqual(connection["scopes"], ["repo", "read:org"])
        self.assertNotEqual(connection["access_token_encrypted"], "gho_abc")
        self.assertEqual(decrypt_token(connection["access_token_encrypted"]), "gho_abc")
        self.assertEqual(await self._state_count(), 0)

        events = await get_audit_repository(self.db).list_for_entity("provider_connection", connection["id"])
        self.assertEqual(events[0]["action"], "CONNECT")
        self.assertEqual(events[0]["actor_id"], "u-1")
        self.assertEqual(events[0]["after"]["username"], "octocat")

    async def test_state_cannot_be_replayed(self) -> None:
        state, _ = await issue_state(self.db, "p-1", "u-1")
        async with _github({"access_token": "gho_abc", "scope": "repo"}) as http:
            await complete_callback(self.db, "code-1", state, http)
            second = await complete_callback(self.db, "code-1", state, http)
        self.assertIn("/project/error?message=Invalid%20or%20expired%20state", second)

    async def test_expired_state_is_rejected(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(minutes=10)
        await get_oauth_state_repository(self.db).create(
            "old-state", "p-1", "u-1", past.isoformat(), (past + timedelta(minutes=5)).isoformat(),
        )
        calls: list = []
        async with _github({"access_token": "gho_abc"}, calls=calls) as http:
            target = await complete_callback(self.db, "code-1", "old-state", http)
        self.assertIn("Invalid%20or%20expired%20state", target)
        self.assertEqual(calls, [])
        self.assertIsNone(await get_connection_repository(self.db).get_for_project("p-1"))

    async def test_missing_parameters(self) -> None:
        target = await complete_callback(self.db, None, "s")
        self.assertEqual(
            target, "http://app.test/project/error?message=Missing%20code%20or%20state%20parameter",
        )

    async def test_not_configured(self) -> None:
        with patch.object(config, "GITHUB_CLIENT_SECRET", ""):
            target = await complete_callback(self.db, "code", "state")
        self.assertIn("GitHub%20OAuth%20not%20configured", target)

    async def test_exchange_failure_consumes_state(self) -> None:
        state, _ = await issue_state(self.db, "p-1", "u-1")
        async with _github({"error": "bad_verification_code"}, token_status=400) as http:
            target = await complete_callback(self.db, "bad", state, http)
        self.assertEqual(target, "http://app.test/project/p-1/code/repos?error=bad_verification_code")
        self.assertEqual(await self._state_count(), 0)

    async def test_payload_without_token(self) -> None:
        state, _ = await issue_state(self.db, "p-1", "u-1")
        payload = {"error": "bad_verification_code", "error_description": "The code passed is incorrect"}
        async with _github(payload) as http:
            target = await complete_callback(self.db, "bad", state, http)
        self.assertIn("/project/p-1/code/repos?error=The%20code%20passed%20is%20incorrect", target)

    async def test_user_lookup_failure(self) -> None:
        state, _ = await issue_state(self.db, "p-1", "u-1")
        async with _github({"access_token": "gho_abc"}, user_status=401) as http:
            target = await complete_callback(self.db, "code", state, http)
        self.assertIn("Failed%20to%20fetch%20GitHub%20user", target)
        self.assertIsNone(await get_connection_repository(self.db).get_for_project("p-1"))

    async def test_storage_failure_redirect_hides_error_details(self) -> None:
        state, _ = await issue_state(self.db, "p-1", "u-1")
        failing = AsyncMock(side_effect=RuntimeError("duplicate key value violates unique constraint"))
        with patch.object(SqliteConnectionRepository, "insert", new=failing):
            async with _github({"access_token": "gho_abc", "scope": "repo"}) as http:
                target = await complete_callback(self.db, "code", state, http)

        self.assertEqual(target, "http://app.test/project/p-1/code/repos?error=Failed%20to%20create%20connection")
        self.assertNotIn("duplicate", target)
        self.assertEqual(await self._state_count(), 0)

    async def test_reconnect_updates_existing_connection(self) -> None:
        connections = get_connection_repository(self.db)
        existing_id = await connections.insert(
            {
                "project_id": "p-1",
                "owner_type": "user",
                "owner_name": "octocat",
                "access_token_encrypted": encrypt_token("gho_old"),
            }
        )
        await connections.set_status(existing_id, "revoked")

        state, _ = await issue_state(self.db, "p-1", "u-1")
        async with _github({"access_token": "gho_new", "scope": "repo"}) as http:
            await complete_callback(self.db, "code", state, http)

        rows = await connections.list_for_project("p-1")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["id"], existing_id)
        self.assertEqual(rows[0]["status"], "active")
        self.assertEqual(decrypt_token(rows[0]["access_token_encrypted"]), "gho_new")

    async def test_revoke_deselects_repos(self) -> None:
        connections = get_connection_repository(self.db)
        connection_id = await connections.insert(
            {
                "project_id": "p-1",
                "owner_type": "user",
                "owner_name": "octocat",
                "access_token_encrypted": encrypt_token("gho_abc"),
            }
        )
        repos = get_repo_repository(self.db)
        for n in (1, 2):
            await repos.upsert(
                {
                    "connection_id": connection_id,
                    "project_id": "p-1",
                    "provider_repo_id": str(n),
                    "full_name": f"octocat/r{n}",
                    "selected": True,
                }
            )

        calls: list = []
        async with _github(calls=calls) as http:
            result = await revoke_connection(self.db, "p-1", "u-1", http)

        self.assertEqual(result["deselected_repos"], 2)
        self.assertEqual(calls, [("DELETE", "/applications/cid/token")])
        self.assertEqual((await connections.get_by_id(connection_id))["status"], "revoked")
        self.assertEqual(await repos.list_selected("p-1"), [])

    async def test_revoke_without_connection(self) -> None:
        with self.assertRaises(ConnectionNotFoundError):
            await revoke_connection(self.db, "p-missing", "u-1")

    async def test_cleanup_removes_only_expired_states(self) -> None:
        await issue_state(self.db, "p-1", "u-1")
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        await get_oauth_state_repository(self.db).create(
            "stale", "p-1", "u-1", past.isoformat(), (past + timedelta(minutes=5)).isoformat(),
        )
        self.assertEqual(await cleanup_expired_states(self.db), 1)
        self.assertEqual(await self._state_count(), 1)


if __name__ == "__main__":
    unittest.main()
