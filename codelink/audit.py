"""Best-effort audit trail for git integration actions."""
from __future__ import annotations

import logging
from typing import Any, Literal

from codelink.db.factory import get_audit_repository

logger = logging.getLogger("codelink.audit")

AuditAction = Literal[
    "CONNECT",
    "CREATE_PR",
    "REVIEW",
    "MERGE",
    "RULE_CHANGE",
    "SYNC",
    "WEBHOOK_EVENT",
]

SYSTEM_ACTOR_ID = "00000000-0000-0000-0000-000000000000"


async def log_audit_event(
    db: Any,
    actor_id: str,
    action: AuditAction,
    entity_type: str,
    entity_id: str | None,
    before: dict | None = None,
    after: dict | None = None,
    metadata: dict | None = None,
) -> None:
    """Append an audit record. A failed write is logged and never raised."""
    final_actor = SYSTEM_ACTOR_ID if actor_id == "system" else actor_id
    try:
        await get_audit_repository(db).insert(
            {
                "actor_id": final_actor,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "before": before,
                "after": after,
                "metadata": metadata or {},
            }
        )
    except Exception:  # noqa: BLE001
        logger.exception("Failed to log audit event %s on %s/%s", action, entity_type, entity_id)
