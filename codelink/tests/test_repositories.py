import unittest

import aiosqlite

from codelink.db.factory import (
    get_commit_repository,
    get_connection_repository,
    get_git_link_repository,
    get_pull_request_repository,
    get_repo_repository,
    get_tarefa_repository,
)
from codelink.db.sqlite_migrations import run_migrations


class RepositoryMirrorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.connection_id = await get_connection_repository(self.db).insert(
            {"project_id": "p-1", "owner_type": "user", "owner_name": "octocat"}
        )
        self.repos = get_repo_repository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _repo(self, provider_id: str, **extra) -> str:
        return await self.repos.upsert(
            {
                "connection_id": self.connection_id,
                "provider_repo_id": provider_id,
                "full_name": f"octocat/r{provider_id}",
                **extra,
            }
        )

    async def test_sync_upsert_keeps_selection(self) -> None:
        repo_id = await self._repo("1", selected=True, project_id="p-1")
        again = await self._repo("1", description="renamed")
        self.assertEqual(repo_id, again)
        repo = await self.repos.get_by_id(repo_id)
        self.assertTrue(repo["selected"])
        self.assertEqual(repo["project_id"], "p-1")
        self.assertEqual(repo["description"], "renamed")
        self.assertEqual(repo["default_branch"], "main")

    async def test_deselect_except(self) -> None:
        keep = await self._repo("1", selected=True, project_id="p-1")
        await self._repo("2", selected=True, project_id="p-1")
        changed = await self.repos.deselect_except(self.connection_id, [keep])
        self.assertEqual(changed, 1)
        self.assertEqual([r["id"] for r in await self.repos.list_selected("p-1")], [keep])

    async def test_project_binding(self) -> None:
        repo_id = await self._repo("1")
        await self.repos.link_project("p-1", repo_id)
        await self.repos.link_project("p-1", repo_id)
        listed = await self.repos.list_for_project("p-1")
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0]["branches_count"], 0)
        self.assertEqual(await self.repos.get_project_id(repo_id), "p-1")

        await self.repos.unlink_project("p-1", repo_id)
        self.assertEqual(await self.repos.list_for_project("p-1"), [])

    async def test_commit_keeps_first_branch(self) -> None:
        repo_id = await self._repo("1")
        commits = get_commit_repository(self.db)
        await commits.upsert(repo_id, {"sha": "c1", "message": "init", "branch_name": "main", "parent_shas": ["c0"]})
        await commits.upsert(repo_id, {"sha": "c1", "message": "init", "branch_name": "dev"})
        stored = await commits.get_by_sha(repo_id, "c1")
        self.assertEqual(stored["branch_name"], "main")
        self.assertEqual(stored["parent_shas"], ["c0"])

    async def test_awaiting_review_counts_unapproved_open_prs(self) -> None:
        repo_id = await self._repo("1")
        pulls = get_pull_request_repository(self.db)
        first = await pulls.upsert(repo_id, {"number": 1, "title": "A", "source_branch": "a"})
        await pulls.upsert(repo_id, {"number": 2, "title": "B", "source_branch": "b"})
        await pulls.upsert(repo_id, {"number": 3, "title": "C", "source_branch": "c", "state": "MERGED"})
        self.assertEqual(await pulls.count_open(repo_id), 2)
        self.assertEqual(await pulls.count_awaiting_review(repo_id), 2)

        await pulls.upsert_review(first, {"reviewer_id": "9", "reviewer_username": "rev", "state": "COMMENTED"})
        self.assertEqual(await pulls.count_awaiting_review(repo_id), 2)
        await pulls.upsert_review(first, {"reviewer_id": "9", "reviewer_username": "rev", "state": "APPROVED"})
        self.assertEqual(await pulls.count_awaiting_review(repo_id), 1)

        # Re-listing a PR keeps its local id.
        self.assertEqual(await pulls.upsert(repo_id, {"number": 1, "title": "A2", "source_branch": "a"}), first)


class GitLinkRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        tarefas = get_tarefa_repository(self.db)
        await tarefas.upsert({"id": "t-1", "project_id": "p-1", "key": "TSK-1", "title": "One"})
        await tarefas.upsert({"id": "t-2", "project_id": "p-1", "key": "TSK-2", "title": "Two"})
        await tarefas.upsert({"id": "t-3", "project_id": "p-2", "key": "TSK-3", "title": "Elsewhere"})
        self.links = get_git_link_repository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_upsert_matches_null_fields(self) -> None:
        first = await self.links.upsert({"tarefa_id": "t-1", "branch": "main", "url": "u1"})
        second = await self.links.upsert({"tarefa_id": "t-1", "branch": "main", "url": "u2"})
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(second["url"], "u2")

        other = await self.links.upsert({"tarefa_id": "t-1", "branch": "main", "commit_sha": "c1"})
        self.assertNotEqual(other["id"], first["id"])

    async def test_find_matching_ignores_unset_fields(self) -> None:
        await self.links.insert({"tarefa_id": "t-1", "branch": "dev", "pr_number": 4})
        self.assertIsNotNone(await self.links.find_matching("t-1", "github", pr_number=4))
        self.assertIsNone(await self.links.find_matching("t-1", "github", branch="main"))

    async def test_tarefas_for_pull_request_matches_any_reference(self) -> None:
        await self.links.insert({"tarefa_id": "t-1", "pr_number": 7})
        await self.links.insert({"tarefa_id": "t-2", "commit_sha": "c9"})
        await self.links.insert({"tarefa_id": "t-3", "branch": "feature/x"})

        found = await self.links.tarefas_for_pull_request("p-1", 7, "feature/x", ["c9"])
        self.assertEqual([t["key"] for t in found], ["TSK-1", "TSK-2"])
        self.assertEqual([t["key"] for t in await self.links.tarefas_for_commit("p-1", "c9")], ["TSK-2"])

    async def test_tarefas_for_commit_stays_in_project(self) -> None:
        await self.links.insert({"tarefa_id": "t-2", "commit_sha": "c9"})
        await self.links.insert({"tarefa_id": "t-3", "commit_sha": "c9"})
        self.assertEqual([t["key"] for t in await self.links.tarefas_for_commit("p-1", "c9")], ["TSK-2"])
        self.assertEqual([t["key"] for t in await self.links.tarefas_for_commit("p-2", "c9")], ["TSK-3"])

    async def test_list_for_tarefa_includes_metadata(self) -> None:
        await self.links.insert({"tarefa_id": "t-1", "branch": "main", "metadata": {"manual_link": True}})
        rows = await self.links.list_for_tarefa("t-1")
        self.assertEqual(rows[0]["metadata"], {"manual_link": True})
        self.assertIsNone(rows[0]["repo_full_name"])


if __name__ == "__main__":
    unittest.main()
