"""Auto-linking of tarefas to git entities by TSK key detection.

Text from branch names, commit messages and pull requests is scanned for keys
like ``TSK-123`` or ``TSK-ABC-99``. Each key that names a tarefa in the
project gets one association row per (tarefa, provider, branch, commit, PR);
re-scanning the same text is a no-op.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Literal

from codelink.db.factory import get_git_link_repository, get_tarefa_repository
from codelink.observability import record_auto_links

logger = logging.getLogger("codelink.autolink")

EntityType = Literal["branch", "commit", "pull_request"]

TAREFA_KEY_PATTERN = re.compile(r"TSK-([A-Z0-9]+(?:-[A-Z0-9]+)*)", re.IGNORECASE)
PROVENANCE_CHARS = 200


def detect_tarefa_keys(text: str | None) -> list[str]:
    """Return the distinct canonical ``TSK-<rest>`` keys found in `text`, in first-seen order."""
    if not text:
        return []
    keys: dict[str, None] = {}
    for match in TAREFA_KEY_PATTERN.finditer(text):
        keys.setdefault(f"TSK-{match.group(1)}", None)
    return list(keys)


async def create_auto_links(
    db: Any,
    tarefa_keys: list[str],
    project_id: str,
    repo_id: str | None,
    entity_type: EntityType,
    entity_id: str,
    *,
    branch_name: str | None = None,
    commit_sha: str | None = None,
    pr_number: int | None = None,
    detected_from: str | None = None,
    provider: str = "github",
) -> int:
    """Create missing links for the keys that resolve to tarefas. Returns the number created."""
    if not tarefa_keys:
        return 0

    tarefas = await get_tarefa_repository(db).find_by_keys(project_id, tarefa_keys)
    if not tarefas:
        return 0

    links = get_git_link_repository(db)
    created = 0
    for tarefa in tarefas:
        existing = await links.find_matching(
            tarefa["id"], provider, branch=branch_name, commit_sha=commit_sha, pr_number=pr_number,
        )
        if existing:
            continue
        await links.insert(
            {
                "tarefa_id": tarefa["id"],
                "provider": provider,
                "repo_id": repo_id,
                "branch": branch_name,
                "commit_sha": commit_sha,
                "pr_number": pr_number,
                "metadata": {
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "auto_linked": True,
                    "detected_from": detected_from,
                },
            }
        )
        created += 1

    if created:
        logger.info("Auto-linked %d tarefa(s) to %s %s", created, entity_type, entity_id)
        record_auto_links(entity_type, created, project_id=project_id)
    return created


async def process_auto_link(
    db: Any,
    text: str,
    project_id: str,
    repo_id: str | None,
    entity_type: EntityType,
    entity_id: str,
    *,
    branch_name: str | None = None,
    commit_sha: str | None = None,
    pr_number: int | None = None,
) -> list[str]:
    """Detect keys in `text` and link them. Returns the detected keys, resolved or not."""
    keys = detect_tarefa_keys(text)
    if keys:
        await create_auto_links(
            db,
            keys,
            project_id,
            repo_id,
            entity_type,
            entity_id,
            branch_name=branch_name,
            commit_sha=commit_sha,
            pr_number=pr_number,
            detected_from=text[:PROVENANCE_CHARS],
        )
    return keys


async def link_commit(db: Any, project_id: str, repo_id: str, commit: dict) -> list[str]:
    return await process_auto_link(
        db,
        commit.get("message") or "",
        project_id,
        repo_id,
        "commit",
        commit.get("id") or commit["sha"],
        branch_name=commit.get("branch_name"),
        commit_sha=commit["sha"],
    )


async def link_pull_request(db: Any, project_id: str, repo_id: str, pr: dict) -> list[str]:
    text = f"{pr.get('title') or ''} {pr.get('description') or ''} {pr.get('source_branch') or ''}"
    return await process_auto_link(
        db,
        text,
        project_id,
        repo_id,
        "pull_request",
        str(pr["id"]),
        branch_name=pr.get("source_branch"),
        pr_number=pr.get("number"),
    )


async def link_branch(db: Any, project_id: str, repo_id: str, branch: dict) -> list[str]:
    return await process_auto_link(
        db,
        branch["name"],
        project_id,
        repo_id,
        "branch",
        branch.get("id") or branch["name"],
        branch_name=branch["name"],
    )
