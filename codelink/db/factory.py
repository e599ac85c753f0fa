"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from codelink.db.repositories.audit import SqliteAuditEventRepository
from codelink.db.repositories.connections import (
    SqliteConnectionRepository,
    SqliteOAuthStateRepository,
)
from codelink.db.repositories.git_links import SqliteTarefaGitLinkRepository
from codelink.db.repositories.projects import (
    SqliteProjectMemberRepository,
    SqliteTarefaRepository,
)
from codelink.db.repositories.repos import (
    SqliteBranchRepository,
    SqliteCommitRepository,
    SqlitePullRequestRepository,
    SqliteRepoRepository,
)

def get_member_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProjectMemberRepository(db)
    from codelink.db.repositories.postgres.projects import PostgresProjectMemberRepository
    return PostgresProjectMemberRepository(db)

def get_tarefa_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteTarefaRepository(db)
    from codelink.db.repositories.postgres.projects import PostgresTarefaRepository
    return PostgresTarefaRepository(db)

def get_connection_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteConnectionRepository(db)
    from codelink.db.repositories.postgres.connections import PostgresConnectionRepository
    return PostgresConnectionRepository(db)

def get_oauth_state_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteOAuthStateRepository(db)
    from codelink.db.repositories.postgres.connections import PostgresOAuthStateRepository
    return PostgresOAuthStateRepository(db)

def get_repo_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteRepoRepository(db)
    from codelink.db.repositories.postgres.repos import PostgresRepoRepository
    return PostgresRepoRepository(db)

def get_branch_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteBranchRepository(db)
    from codelink.db.repositories.postgres.repos import PostgresBranchRepository
    return PostgresBranchRepository(db)

def get_commit_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteCommitRepository(db)
    from codelink.db.repositories.postgres.repos import PostgresCommitRepository
    return PostgresCommitRepository(db)

def get_pull_request_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqlitePullRequestRepository(db)
    from codelink.db.repositories.postgres.repos import PostgresPullRequestRepository
    return PostgresPullRequestRepository(db)

def get_git_link_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteTarefaGitLinkRepository(db)
    from codelink.db.repositories.postgres.git_links import PostgresTarefaGitLinkRepository
    return PostgresTarefaGitLinkRepository(db)

def get_audit_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteAuditEventRepository(db)
    from codelink.db.repositories.postgres.audit import PostgresAuditEventRepository
    return PostgresAuditEventRepository(db)
