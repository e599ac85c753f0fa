import unittest
from unittest.mock import AsyncMock, patch

import aiosqlite
import httpx

from codelink import config
from codelink.db.factory import (
    get_audit_repository,
    get_branch_repository,
    get_connection_repository,
    get_git_link_repository,
    get_repo_repository,
    get_tarefa_repository,
)
from codelink.db.sqlite_migrations import run_migrations
from codelink.services import repo_sync
from codelink.services.github_client import GitHubClient, GitHubConfigError


_REPOS = {
    "repositories": [
        {
            "id": 1,
            "name": "api",
            "full_name": "acme/api",
            "owner": {"id": 5, "login": "acme", "type": "Organization"},
            "private": True,
            "default_branch": "main",
            "html_url": "https://github.com/acme/api",
        },
        {
            "id": 2,
            "name": "web",
            "full_name": "acme/web",
            "owner": {"id": 5, "login": "acme", "type": "Organization"},
            "private": False,
            "default_branch": "develop",
            "html_url": "https://github.com/acme/web",
        },
    ]
}


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/installation/repositories":
        return httpx.Response(200, json=_REPOS)
    if path == "/repos/acme/api/branches":
        return httpx.Response(
            200,
            json=[
                {"name": "main", "commit": {"sha": "a1"}},
                {"name": "feature/TSK-7-login", "commit": {"sha": "a2"}},
            ],
        )
    if path == "/repos/acme/web/branches":
        return httpx.Response(500, json={"message": "Server Error"})
    return httpx.Response(404, json={"message": "Not Found"})


class RepoSyncTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.connections = get_connection_repository(self.db)
        self.connection_id = await self.connections.insert(
            {
                "project_id": "p-1",
                "owner_type": "org",
                "owner_name": "acme",
                "installation_id": "77",
                "secrets_ref": "github_installation_77",
            }
        )
        await get_tarefa_repository(self.db).upsert(
            {"id": "t-7", "project_id": "p-1", "key": "TSK-7-login", "title": "Login"}
        )
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
        self._delay = patch.object(config, "GITHUB_RETRY_DELAY_MS", 0)
        self._delay.start()

    async def asyncTearDown(self) -> None:
        self._delay.stop()
        await self.http.aclose()
        await self.db.close()

    async def test_installation_sync_mirrors_repos_and_branches(self) -> None:
        client = GitHubClient("ghs_inst", self.http)
        with patch.object(repo_sync, "get_client_for_connection", new=AsyncMock(return_value=client)):
            result = await repo_sync.sync_repos(self.db, self.connection_id, "u-1")

        self.assertEqual(result, {"status": "synced", "repos_synced": 2, "branches_synced": 2})
        repos = await get_repo_repository(self.db).list_for_project("p-1")
        self.assertEqual([r["full_name"] for r in repos], ["acme/api", "acme/web"])
        self.assertEqual(repos[1]["visibility"], "public")
        self.assertEqual(repos[1]["default_branch"], "develop")

        branches = await get_branch_repository(self.db).list_for_repo(repos[0]["id"])
        self.assertEqual(sorted(b["name"] for b in branches), ["feature/TSK-7-login", "main"])

        links = await get_git_link_repository(self.db).list_for_tarefa("t-7")
        self.assertEqual(len(links), 1)
        self.assertEqual(links[0]["branch"], "feature/TSK-7-login")

        connection = await self.connections.get_by_id(self.connection_id)
        self.assertIsNotNone(connection["last_sync_at"])
        events = await get_audit_repository(self.db).list_for_entity("provider_connection", self.connection_id)
        self.assertEqual(events[-1]["action"], "SYNC")
        self.assertEqual(events[-1]["after"]["repos_synced"], 2)

    async def test_resync_is_idempotent(self) -> None:
        client = GitHubClient("ghs_inst", self.http)
        with patch.object(repo_sync, "get_client_for_connection", new=AsyncMock(return_value=client)):
            await repo_sync.sync_repos(self.db, self.connection_id, "u-1")
            await repo_sync.sync_repos(self.db, self.connection_id, "u-1")

        repos = await get_repo_repository(self.db).list_by_connection(self.connection_id)
        self.assertEqual(len(repos), 2)
        links = await get_git_link_repository(self.db).list_for_tarefa("t-7")
        self.assertEqual(len(links), 1)

    async def test_unreachable_provider_marks_connection_errored(self) -> None:
        failing = AsyncMock(side_effect=GitHubConfigError("GitHub App credentials not configured"))
        with patch.object(repo_sync, "get_client_for_connection", new=failing):
            result = await repo_sync.sync_repos(self.db, self.connection_id, "u-1")

        self.assertEqual(result, {"status": "error", "error": "GitHub App credentials not configured"})
        connection = await self.connections.get_by_id(self.connection_id)
        self.assertEqual(connection["status"], "error")
        self.assertEqual(connection["error_message"], "GitHub App credentials not configured")

    async def test_successful_sync_clears_error_status(self) -> None:
        await self.connections.set_status(self.connection_id, "error", "previous failure")
        client = GitHubClient("ghs_inst", self.http)
        with patch.object(repo_sync, "get_client_for_connection", new=AsyncMock(return_value=client)):
            await repo_sync.sync_repos(self.db, self.connection_id, "u-1")
        connection = await self.connections.get_by_id(self.connection_id)
        self.assertEqual(connection["status"], "active")
        self.assertIsNone(connection["error_message"])

    async def test_unknown_connection(self) -> None:
        with self.assertRaises(repo_sync.SyncError):
            await repo_sync.sync_repos(self.db, "missing", "u-1")

    async def test_revoked_connection_is_not_synced(self) -> None:
        await self.connections.set_status(self.connection_id, "revoked")
        factory = AsyncMock(return_value=GitHubClient("ghs_inst", self.http))
        with patch.object(repo_sync, "get_client_for_connection", new=factory):
            with self.assertRaises(repo_sync.SyncError):
                await repo_sync.sync_repos(self.db, self.connection_id, "u-1")

        factory.assert_not_awaited()
        connection = await self.connections.get_by_id(self.connection_id)
        self.assertEqual(connection["status"], "revoked")
        self.assertEqual(await get_repo_repository(self.db).list_by_connection(self.connection_id), [])


if __name__ == "__main__":
    unittest.main()
