import unittest

import aiosqlite

from codelink.db.factory import (
    get_connection_repository,
    get_member_repository,
    get_pull_request_repository,
    get_repo_repository,
)
from codelink.db.sqlite_migrations import run_migrations
from codelink.permissions import (
    can_connect_git,
    can_create_pr,
    can_merge_pr,
    can_review_pr,
    get_project_role,
    is_project_member,
)


class PermissionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

        members = get_member_repository(self.db)
        for user_id, role in (
            ("admin", "admin"),
            ("lead", "tech_lead"),
            ("dev", "developer"),
            ("viewer", "viewer"),
        ):
            await members.upsert("p-1", user_id, role)

        connection_id = await get_connection_repository(self.db).insert(
            {"project_id": "p-1", "owner_type": "org", "owner_name": "acme", "installation_id": "1"}
        )
        repos = get_repo_repository(self.db)
        repo_id = await repos.upsert(
            {"connection_id": connection_id, "provider_repo_id": "10", "full_name": "acme/api"}
        )
        await repos.link_project("p-1", repo_id)
        self.pr_id = await get_pull_request_repository(self.db).upsert(
            repo_id,
            {
                "number": 1,
                "title": "Add login",
                "source_branch": "feature/login",
                "author_id": "dev",
                "author_username": "dev",
            },
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_roles(self) -> None:
        self.assertEqual(await get_project_role(self.db, "lead", "p-1"), "tech_lead")
        self.assertIsNone(await get_project_role(self.db, "stranger", "p-1"))
        self.assertIsNone(await get_project_role(self.db, "", "p-1"))
        self.assertTrue(await is_project_member(self.db, "viewer", "p-1"))
        self.assertFalse(await is_project_member(self.db, "viewer", "p-2"))

    async def test_connect_is_admin_only(self) -> None:
        self.assertTrue(await can_connect_git(self.db, "admin", "p-1"))
        for user_id in ("lead", "dev", "viewer", "stranger"):
            self.assertFalse(await can_connect_git(self.db, user_id, "p-1"), user_id)

    async def test_create_pr_excludes_viewers(self) -> None:
        for user_id in ("admin", "lead", "dev"):
            self.assertTrue(await can_create_pr(self.db, user_id, "p-1"), user_id)
        self.assertFalse(await can_create_pr(self.db, "viewer", "p-1"))

    async def test_author_cannot_review_own_pr(self) -> None:
        self.assertFalse(await can_review_pr(self.db, "dev", self.pr_id))
        self.assertTrue(await can_review_pr(self.db, "viewer", self.pr_id))
        self.assertFalse(await can_review_pr(self.db, "stranger", self.pr_id))
        self.assertFalse(await can_review_pr(self.db, "viewer", "no-such-pr"))

    async def test_merge_requires_lead_or_admin(self) -> None:
        self.assertTrue(await can_merge_pr(self.db, "admin", self.pr_id))
        self.assertTrue(await can_merge_pr(self.db, "lead", self.pr_id))
        self.assertFalse(await can_merge_pr(self.db, "dev", self.pr_id))


if __name__ == "__main__":
    unittest.main()
