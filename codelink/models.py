"""Pydantic records for GitHub REST payloads.

Provider responses are validated here before anything reaches the database or
a route response; a payload missing a required field raises ValidationError.
"""
from __future__ import annotations

import base64
from typing import Optional

from pydantic import BaseModel, Field

# ── Accounts ────────────────────────────────────────────────────────

class GitHubAccount(BaseModel):
    id: int
    login: str
    type: str = "User"


class GitHubUser(BaseModel):
    id: int
    login: str
    name: Optional[str] = None


class GitHubInstallation(BaseModel):
    id: int
    account: Optional[GitHubAccount] = None

    @property
    def owner_type(self) -> str:
        return "org" if self.account and self.account.type == "Organization" else "user"


class GitHubInstallationToken(BaseModel):
    token: str
    expires_at: Optional[str] = None


# ── Repositories and branches ───────────────────────────────────────

class GitHubRepo(BaseModel):
    id: int
    name: str
    full_name: str
    owner: GitHubAccount
    private: bool = False
    visibility: Optional[str] = None
    default_branch: Optional[str] = None
    description: Optional[str] = None
    html_url: str
    updated_at: Optional[str] = None

    def resolved_visibility(self) -> str:
        if self.visibility in {"public", "private", "internal"}:
            return self.visibility
        return "private" if self.private else "public"

    def to_row(self, connection_id: str, **extra) -> dict:
        row = {
            "connection_id": connection_id,
            "provider_repo_id": str(self.id),
            "full_name": self.full_name,
            "default_branch": self.default_branch or "main",
            "visibility": self.resolved_visibility(),
            "description": self.description,
            "url": self.html_url,
            "sync_status": "synced",
        }
        row.update(extra)
        return row


class GitHubBranchCommit(BaseModel):
    sha: str


class GitHubBranch(BaseModel):
    name: str
    commit: GitHubBranchCommit
    protected: bool = False

    def to_row(self) -> dict:
        return {
            "name": self.name,
            "last_commit_sha": self.commit.sha,
            "is_default": self.name in {"main", "master"},
            "protected": self.protected,
        }


# ── Commits ─────────────────────────────────────────────────────────

class GitHubCommitAuthor(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    date: Optional[str] = None


class GitHubCommitDetail(BaseModel):
    message: str = ""
    author: Optional[GitHubCommitAuthor] = None


class GitHubParent(BaseModel):
    sha: str


class GitHubFile(BaseModel):
    filename: str
    status: str = ""
    additions: int = 0
    deletions: int = 0
    changes: int = 0
    patch: Optional[str] = None
    blob_url: Optional[str] = None
    raw_url: Optional[str] = None


class GitHubCommit(BaseModel):
    sha: str
    commit: GitHubCommitDetail
    html_url: Optional[str] = None
    parents: list[GitHubParent] = Field(default_factory=list)
    files: list[GitHubFile] = Field(default_factory=list)

    def to_row(self, repo_id: str, branch_name: Optional[str] = None) -> dict:
        author = self.commit.author or GitHubCommitAuthor()
        return {
            "id": self.sha,
            "repo_id": repo_id,
            "sha": self.sha,
            "branch_name": branch_name,
            "author_name": author.name or "",
            "author_email": author.email,
            "message": self.commit.message,
            "date": author.date or "",
            "url": self.html_url,
            "parent_shas": [parent.sha for parent in self.parents],
        }


# ── Pull requests ───────────────────────────────────────────────────

class GitHubRef(BaseModel):
    ref: str
    sha: Optional[str] = None


class GitHubPull(BaseModel):
    id: int
    number: int
    title: str
    body: Optional[str] = None
    state: str
    head: GitHubRef
    base: GitHubRef
    user: Optional[GitHubAccount] = None
    draft: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    merged_at: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    html_url: Optional[str] = None

    @property
    def normalized_state(self) -> str:
        # GitHub reports merged PRs as "closed"; the mirror keeps them apart.
        if self.merged_at:
            return "MERGED"
        return self.state.upper()

    def to_row(self, repo_id: str) -> dict:
        return {
            "id": str(self.id),
            "provider_pr_id": str(self.id),
            "repo_id": repo_id,
            "number": self.number,
            "title": self.title,
            "description": self.body or "",
            "state": self.normalized_state,
            "source_branch": self.head.ref,
            "target_branch": self.base.ref,
            "author_username": self.user.login if self.user else None,
            "draft": self.draft,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "merged_at": self.merged_at,
            "merge_commit_sha": self.merge_commit_sha,
            "url": self.html_url,
        }


class GitHubReview(BaseModel):
    id: int
    state: str
    user: Optional[GitHubAccount] = None
    body: Optional[str] = None
    submitted_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state,
            "reviewer": self.user.login if self.user else None,
            "body": self.body,
            "submitted_at": self.submitted_at,
        }

    def to_row(self) -> Optional[dict]:
        """Mirror row, or None for pending/dismissed reviews and deleted users."""
        if self.user is None or self.state not in MIRRORED_REVIEW_STATES:
            return None
        return {
            "reviewer_id": str(self.user.id),
            "reviewer_username": self.user.login,
            "state": self.state,
            "body": self.body,
            "submitted_at": self.submitted_at,
        }


MIRRORED_REVIEW_STATES = frozenset({"APPROVED", "CHANGES_REQUESTED", "COMMENTED"})


# ── Contents ────────────────────────────────────────────────────────

class GitHubContent(BaseModel):
    name: str
    path: str
    type: str
    sha: str
    size: int = 0
    mode: Optional[str] = None
    content: Optional[str] = None
    encoding: Optional[str] = None

    def decoded(self) -> str:
        """Decode a base64 file body; GitHub wraps it at 60 columns."""
        raw = (self.content or "").replace("\n", "")
        return base64.b64decode(raw).decode("utf-8", errors="replace")

    def to_tree_entry(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "type": self.type,
            "sha": self.sha,
            "size": self.size,
            "mode": self.mode,
        }
