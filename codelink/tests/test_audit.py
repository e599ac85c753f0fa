import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite

from codelink import audit
from codelink.audit import SYSTEM_ACTOR_ID, log_audit_event
from codelink.db.factory import get_audit_repository
from codelink.db.sqlite_migrations import run_migrations


class AuditEventTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_records_before_after_and_metadata(self) -> None:
        await log_audit_event(
            self.db,
            "u-1",
            "RULE_CHANGE",
            "project",
            "p-1",
            before={"selected": ["acme/api"]},
            after={"selected": ["acme/web"]},
            metadata={"source": "select"},
        )
        events = await get_audit_repository(self.db).list_for_entity("project", "p-1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["actor_id"], "u-1")
        self.assertEqual(events[0]["before"], {"selected": ["acme/api"]})
        self.assertEqual(events[0]["after"], {"selected": ["acme/web"]})
        self.assertEqual(events[0]["metadata"], {"source": "select"})

    async def test_system_actor_is_mapped_to_sentinel(self) -> None:
        await log_audit_event(self.db, "system", "SYNC", "provider_connection", "c-1")
        events = await get_audit_repository(self.db).list_for_entity("provider_connection", "c-1")
        self.assertEqual(events[0]["actor_id"], SYSTEM_ACTOR_ID)
        self.assertIsNone(events[0]["before"])
        self.assertEqual(events[0]["metadata"], {})

    async def test_write_failure_is_not_raised(self) -> None:
        broken = MagicMock()
        broken.insert = AsyncMock(side_effect=RuntimeError("disk full"))
        with patch.object(audit, "get_audit_repository", return_value=broken):
            with self.assertLogs("codelink.audit", level="ERROR"):
                await log_audit_event(self.db, "u-1", "CONNECT", "provider_connection", "c-1")
        broken.insert.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
