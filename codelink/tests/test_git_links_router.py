import unittest
from unittest.mock import AsyncMock, patch

import aiosqlite
from fastapi import HTTPException

from codelink.db.factory import (
    get_connection_repository,
    get_member_repository,
    get_repo_repository,
    get_tarefa_repository,
)
from codelink.db.sqlite_migrations import run_migrations
from codelink.routers import git_links as links_router


class BuildLinkUrlTests(unittest.TestCase):
    def test_most_specific_target_wins(self) -> None:
        base = "https://github.com/acme/api"
        self.assertEqual(links_router.build_link_url(base, 3, "abc", "main"), f"{base}/pull/3")
        self.assertEqual(links_router.build_link_url(base, None, "abc", "main"), f"{base}/commit/abc")
        self.assertEqual(links_router.build_link_url(base, None, None, "main"), f"{base}/tree/main")
        self.assertEqual(links_router.build_link_url(base, None, None, None), base)
        self.assertIsNone(links_router.build_link_url(None, 3, None, None))


class GitLinksRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        members = get_member_repository(self.db)
        await members.upsert("p-1", "dev", "developer")
        await members.upsert("p-1", "viewer", "viewer")
        await get_tarefa_repository(self.db).upsert({"id": "t-1", "project_id": "p-1", "key": "TSK-1", "title": "One"})
        connection_id = await get_connection_repository(self.db).insert(
            {"project_id": "p-1", "owner_type": "org", "owner_name": "acme", "installation_id": "7"}
        )
        self.repo_id = await get_repo_repository(self.db).upsert(
            {
                "connection_id": connection_id,
                "provider_repo_id": "1",
                "full_name": "acme/api",
                "url": "https://github.com/acme/api",
            }
        )
        self._conn = patch.object(links_router.connection, "get_connection", new=AsyncMock(return_value=self.db))
        self._conn.start()

    async def asyncTearDown(self) -> None:
        self._conn.stop()
        await self.db.close()

    async def test_create_is_idempotent_and_listed(self) -> None:
        req = links_router.CreateLinkRequest(tarefaId="t-1", repoId=self.repo_id, branchName="feature/one")
        first = await links_router.create_link(req, user_id="dev")
        second = await links_router.create_link(req, user_id="dev")
        self.assertEqual(first["link"]["id"], second["link"]["id"])
        self.assertEqual(first["link"]["url"], "https://github.com/acme/api/tree/feature/one")
        self.assertEqual(first["link"]["metadata"], {"manual_link": True})

        listed = await links_router.get_tarefa_links("t-1", user_id="viewer")
        self.assertEqual(len(listed["links"]), 1)
        link = listed["links"][0]
        self.assertFalse(link["autoLinked"])
        self.assertEqual(link["repo"]["fullName"], "acme/api")
        self.assertIsNone(link["pr"])

    async def test_viewer_cannot_create(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await links_router.create_link(links_router.CreateLinkRequest(tarefaId="t-1"), user_id="viewer")
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_missing_tarefa(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await links_router.create_link(links_router.CreateLinkRequest(), user_id="dev")
        self.assertEqual(ctx.exception.status_code, 400)

        with self.assertRaises(HTTPException) as ctx:
            await links_router.get_tarefa_links("t-404", user_id="dev")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.detail, "Tarefa not found")

    async def test_outsider_cannot_list(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await links_router.get_tarefa_links("t-1", user_id="stranger")
        self.assertEqual(ctx.exception.status_code, 403)


if __name__ == "__main__":
    unittest.main()
