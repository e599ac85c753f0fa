"""PostgreSQL schema creation and versioning.

Mirrors sqlite_migrations; booleans are native BOOLEAN, timestamps stay ISO text
so both backends hand the same row shapes to the routers.
"""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("codelink.db")

SCHEMA_VERSION = 3

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id  TEXT NOT NULL,
    user_id     TEXT NOT NULL,
    role        TEXT NOT NULL CHECK (role IN ('admin', 'tech_lead', 'developer', 'viewer')),
    created_at  TEXT NOT NULL DEFAULT (now()::text),
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS tarefas (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    key         TEXT NOT NULL,
    title       TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL DEFAULT (now()::text),
    UNIQUE(project_id, key)
);

CREATE TABLE IF NOT EXISTS provider_connections (
    id                      TEXT PRIMARY KEY,
    project_id              TEXT NOT NULL,
    provider                TEXT NOT NULL DEFAULT 'github',
    owner_type              TEXT NOT NULL CHECK (owner_type IN ('user', 'org')),
    owner_name              TEXT NOT NULL,
    installation_id         TEXT,
    workspace_id            TEXT,
    status                  TEXT NOT NULL DEFAULT 'active'
                            CHECK (status IN ('active', 'error', 'revoked')),
    secrets_ref             TEXT,
    last_sync_at            TEXT,
    error_message           TEXT,
    created_by              TEXT,
    github_user_id          TEXT,
    username                TEXT,
    access_token_encrypted  TEXT,
    scopes_json             TEXT NOT NULL DEFAULT '[]',
    created_at              TEXT NOT NULL DEFAULT (now()::text),
    updated_at              TEXT NOT NULL DEFAULT (now()::text)
);
CREATE INDEX IF NOT EXISTS idx_connections_project ON provider_connections(project_id, provider);

CREATE TABLE IF NOT EXISTS github_oauth_states (
    state       TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    user_id     TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    expires_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_oauth_states_expires ON github_oauth_states(expires_at);

CREATE TABLE IF NOT EXISTS repos (
    id                TEXT PRIMARY KEY,
    connection_id     TEXT REFERENCES provider_connections(id) ON DELETE CASCADE,
    project_id        TEXT,
    provider_repo_id  TEXT NOT NULL,
    full_name         TEXT NOT NULL,
    default_branch    TEXT NOT NULL DEFAULT 'main',
    visibility        TEXT NOT NULL DEFAULT 'private'
                      CHECK (visibility IN ('public', 'private', 'internal')),
    description       TEXT,
    url               TEXT,
    last_synced_at    TEXT,
    sync_status       TEXT DEFAULT 'pending',
    selected          BOOLEAN NOT NULL DEFAULT FALSE,
    created_at        TEXT NOT NULL DEFAULT (now()::text),
    updated_at        TEXT NOT NULL DEFAULT (now()::text),
    UNIQUE(connection_id, provider_repo_id)
);
CREATE INDEX IF NOT EXISTS idx_repos_connection ON repos(connection_id);
CREATE INDEX IF NOT EXISTS idx_repos_project ON repos(project_id);
CREATE INDEX IF NOT EXISTS idx_repos_selected ON repos(project_id, selected);

CREATE TABLE IF NOT EXISTS branches (
    id               TEXT PRIMARY KEY,
    repo_id          TEXT NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    name             TEXT NOT NULL,
    last_commit_sha  TEXT,
    is_default       BOOLEAN NOT NULL DEFAULT FALSE,
    protected        BOOLEAN NOT NULL DEFAULT FALSE,
    ahead_count      INTEGER DEFAULT 0,
    behind_count     INTEGER DEFAULT 0,
    last_synced_at   TEXT,
    created_at       TEXT NOT NULL DEFAULT (now()::text),
    updated_at       TEXT NOT NULL DEFAULT (now()::text),
    UNIQUE(repo_id, name)
);

CREATE TABLE IF NOT EXISTS commits (
    id                 TEXT PRIMARY KEY,
    repo_id            TEXT NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    sha                TEXT NOT NULL,
    branch_name        TEXT,
    author_name        TEXT NOT NULL DEFAULT '',
    author_email       TEXT,
    message            TEXT NOT NULL DEFAULT '',
    date               TEXT NOT NULL DEFAULT '',
    url                TEXT,
    parent_shas_json   TEXT NOT NULL DEFAULT '[]',
    created_at         TEXT NOT NULL DEFAULT (now()::text),
    UNIQUE(repo_id, sha)
);
CREATE INDEX IF NOT EXISTS idx_commits_sha ON commits(sha);

CREATE TABLE IF NOT EXISTS pull_requests (
    id                TEXT PRIMARY KEY,
    repo_id           TEXT NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    number            INTEGER NOT NULL,
    provider_pr_id    TEXT,
    title             TEXT NOT NULL,
    description       TEXT,
    state             TEXT NOT NULL DEFAULT 'OPEN' CHECK (state IN ('OPEN', 'MERGED', 'CLOSED')),
    source_branch     TEXT NOT NULL,
    target_branch     TEXT NOT NULL DEFAULT 'main',
    author_id         TEXT,
    author_username   TEXT,
    draft             BOOLEAN NOT NULL DEFAULT FALSE,
    created_at        TEXT NOT NULL DEFAULT (now()::text),
    updated_at        TEXT NOT NULL DEFAULT (now()::text),
    merged_at         TEXT,
    merge_commit_sha  TEXT,
    url               TEXT,
    UNIQUE(repo_id, number)
);
CREATE INDEX IF NOT EXISTS idx_pull_requests_repo_state ON pull_requests(repo_id, state);

CREATE TABLE IF NOT EXISTS pr_reviews (
    id                 TEXT PRIMARY KEY,
    pr_id              TEXT NOT NULL REFERENCES pull_requests(id) ON DELETE CASCADE,
    reviewer_id        TEXT NOT NULL,
    reviewer_username  TEXT,
    state              TEXT NOT NULL CHECK (state IN ('APPROVED', 'CHANGES_REQUESTED', 'COMMENTED')),
    body               TEXT,
    created_at         TEXT NOT NULL DEFAULT (now()::text),
    updated_at         TEXT NOT NULL DEFAULT (now()::text),
    UNIQUE(pr_id, reviewer_id)
);

CREATE TABLE IF NOT EXISTS project_repos (
    project_id                  TEXT NOT NULL,
    repo_id                     TEXT NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    branch_template             TEXT DEFAULT 'feature/{taskKey}-{title}',
    merge_policy                TEXT DEFAULT 'MERGE',
    min_reviews                 INTEGER DEFAULT 1,
    require_checks              BOOLEAN DEFAULT FALSE,
    auto_close_tarefa_on_merge  BOOLEAN DEFAULT TRUE,
    created_at                  TEXT NOT NULL DEFAULT (now()::text),
    updated_at                  TEXT NOT NULL DEFAULT (now()::text),
    PRIMARY KEY (project_id, repo_id)
);

CREATE TABLE IF NOT EXISTS tarefa_git_links (
    id             TEXT PRIMARY KEY,
    tarefa_id      TEXT NOT NULL REFERENCES tarefas(id) ON DELETE CASCADE,
    provider       TEXT NOT NULL DEFAULT 'github',
    repo_id        TEXT REFERENCES repos(id) ON DELETE SET NULL,
    branch         TEXT,
    commit_sha     TEXT,
    pr_number      INTEGER,
    pr_id          TEXT REFERENCES pull_requests(id) ON DELETE SET NULL,
    url            TEXT,
    metadata_json  TEXT NOT NULL DEFAULT '{}',
    created_by     TEXT,
    created_at     TEXT NOT NULL DEFAULT (now()::text)
);
CREATE INDEX IF NOT EXISTS idx_tarefa_git_links_tarefa ON tarefa_git_links(tarefa_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_tarefa_git_links_commit ON tarefa_git_links(commit_sha);
CREATE INDEX IF NOT EXISTS idx_tarefa_git_links_pr ON tarefa_git_links(pr_number);

CREATE TABLE IF NOT EXISTS audit_events (
    id             TEXT PRIMARY KEY,
    actor_id       TEXT NOT NULL,
    action         TEXT NOT NULL CHECK (action IN (
                       'CONNECT', 'CREATE_PR', 'REVIEW', 'MERGE',
                       'RULE_CHANGE', 'SYNC', 'WEBHOOK_EVENT')),
    entity_type    TEXT NOT NULL,
    entity_id      TEXT,
    before_json    TEXT,
    after_json     TEXT,
    metadata_json  TEXT NOT NULL DEFAULT '{}',
    created_at     TEXT NOT NULL DEFAULT (now()::text)
);
CREATE INDEX IF NOT EXISTS idx_audit_events_entity ON audit_events(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_events_created ON audit_events(created_at DESC);
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("ALTER TABLE repos ADD COLUMN IF NOT EXISTS selected BOOLEAN NOT NULL DEFAULT FALSE")
            await conn.execute("ALTER TABLE repos ADD COLUMN IF NOT EXISTS project_id TEXT")
            await conn.execute("ALTER TABLE tarefa_git_links ADD COLUMN IF NOT EXISTS repo_id TEXT")
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
