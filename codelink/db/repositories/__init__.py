"""Repository package for database access."""

from .projects import SqliteProjectMemberRepository, SqliteTarefaRepository
from .connections import SqliteConnectionRepository, SqliteOAuthStateRepository
from .repos import (
    SqliteBranchRepository,
    SqliteCommitRepository,
    SqlitePullRequestRepository,
    SqliteRepoRepository,
)
from .git_links import SqliteTarefaGitLinkRepository
from .audit import SqliteAuditEventRepository

__all__ = [
    "SqliteProjectMemberRepository",
    "SqliteTarefaRepository",
    "SqliteConnectionRepository",
    "SqliteOAuthStateRepository",
    "SqliteRepoRepository",
    "SqliteBranchRepository",
    "SqliteCommitRepository",
    "SqlitePullRequestRepository",
    "SqliteTarefaGitLinkRepository",
    "SqliteAuditEventRepository",
]
