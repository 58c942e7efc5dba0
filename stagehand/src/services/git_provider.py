"""
Git provider abstraction and the GitHub REST implementation.
"""

import base64
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel

from stagehand.src.config import Settings, get_settings

logger = logging.getLogger(__name__)

class GitProviderError(Exception):
    """Raised when a git provider API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class PullRequestInfo(BaseModel):
    number: int
    url: str = ""
    state: str = "open"
    title: str = ""
    author: str = ""
    head_sha: str = ""
    head_ref: str = ""
    base_ref: str = ""
    merged: bool = False
    merge_commit_sha: str = ""
    mergeable: Optional[bool] = None

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

class CommitInfo(BaseModel):
    sha: str
    message: str = ""
    author: str = ""
    url: str = ""

class CommitStatusInfo(BaseModel):
    id: int = 0
    state: str = ""
    target_url: str = ""
    context: str = ""
    description: str = ""
    created_at: Optional[datetime] = None

class GitProvider(ABC):
    """Capabilities the controllers need from a git hosting service."""

    @abstractmethod
    def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequestInfo: ...

    @abstractmethod
    def pull_request_last_commit_status(self, owner: str, repo: str, pr: PullRequestInfo) -> str: ...

    @abstractmethod
    def merge_pull_request(self, owner: str, repo: str, pr: PullRequestInfo, message: str): ...

    @abstractmethod
    def list_commits(self, owner: str, repo: str, branch: str, limit: int = 1) -> List[CommitInfo]: ...

    @abstractmethod
    def list_commit_status(self, owner: str, repo: str, ref: str) -> List[CommitStatusInfo]: ...

    @abstractmethod
    def update_commit_status(self, owner: str, repo: str, sha: str, status: CommitStatusInfo) -> CommitStatusInfo: ...

    @abstractmethod
    def create_issue_comment(self, owner: str, repo: str, number: int, body: str): ...

    @abstractmethod
    def create_webhook(self, owner: str, repo: str, url: str, secret: str = ""): ...

    @abstractmethod
    def get_default_branch(self, owner: str, repo: str) -> str: ...

    @abstractmethod
    def get_file(self, owner: str, repo: str, path: str, ref: str) -> Tuple[Optional[str], str]: ...

    @abstractmethod
    def put_file(self, owner: str, repo: str, path: str, content: bytes, message: str,
                 branch: str, sha: str = "") -> str: ...

    @abstractmethod
    def create_branch(self, owner: str, repo: str, branch: str, from_ref: str): ...

    @abstractmethod
    def find_pull_request(self, owner: str, repo: str, head: str, base: str) -> Optional[PullRequestInfo]: ...

    @abstractmethod
    def create_pull_request(self, owner: str, repo: str, title: str, head: str, base: str,
                            body: str = "") -> PullRequestInfo: ...

class GitHubProvider(GitProvider):
    """GitHub REST v3 client over a synchronous httpx client."""

    def __init__(self, api_url: str = "https://api.github.com", token: str = "",
                 timeout: float = 30.0, client: Optional[httpx.Client] = None):
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "stagehand",
        }
        if token:
            headers["Authorization"] = f"token {token}"
        self._client = client or httpx.Client(base_url=api_url, headers=headers, timeout=timeout)

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitProviderError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            raise GitProviderError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Pull requests

    def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequestInfo:
        data = self._request("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        return _pull_request(data)

    def pull_request_last_commit_status(self, owner: str, repo: str, pr: PullRequestInfo) -> str:
        """Combined status of the PR head commit: success, pending, failure or error."""
        if not pr.head_sha:
            raise GitProviderError(f"pull request {owner}/{repo}#{pr.number} has no head commit")
        data = self._request("GET", f"/repos/{owner}/{repo}/commits/{pr.head_sha}/status")
        return data.get("state", "")

    def merge_pull_request(self, owner: str, repo: str, pr: PullRequestInfo, message: str):
        self._request(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{pr.number}/merge",
            json={"commit_message": message, "sha": pr.head_sha} if pr.head_sha else {"commit_message": message},
        )
        logger.info(f"Merged pull request {owner}/{repo}#{pr.number}")

    def create_pull_request(self, owner: str, repo: str, title: str, head: str, base: str,
                            body: str = "") -> PullRequestInfo:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return _pull_request(data)

    def find_pull_request(self, owner: str, repo: str, head: str, base: str) -> Optional[PullRequestInfo]:
        """The open pull request from branch `head` into `base`, if any."""
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": f"{owner}:{head}", "base": base, "state": "open"},
        )
        return _pull_request(data[0]) if data else None

    def create_issue_comment(self, owner: str, repo: str, number: int, body: str):
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{number}/comments",
            json={"body": body},
        )

    # Commits and statuses

    def list_commits(self, owner: str, repo: str, branch: str, limit: int = 1) -> List[CommitInfo]:
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/commits",
            params={"sha": branch, "per_page": limit},
        )
        commits = []
        for item in data or []:
            commit = item.get("commit", {})
            author = (item.get("author") or {}).get("login") or commit.get("author", {}).get("name", "")
            commits.append(CommitInfo(
                sha=item["sha"],
                message=commit.get("message", ""),
                author=author,
                url=item.get("html_url", ""),
            ))
        return commits

    def list_commit_status(self, owner: str, repo: str, ref: str) -> List[CommitStatusInfo]:
        """Statuses of a ref, newest first as returned by the API."""
        data = self._request("GET", f"/repos/{owner}/{repo}/commits/{ref}/statuses")
        return [_commit_status(s) for s in data or []]

    def update_commit_status(self, owner: str, repo: str, sha: str, status: CommitStatusInfo) -> CommitStatusInfo:
        payload: Dict[str, str] = {"state": status.state, "context": status.context}
        if status.target_url:
            payload["target_url"] = status.target_url
        if status.description:
            payload["description"] = status.description
        data = self._request("POST", f"/repos/{owner}/{repo}/statuses/{sha}", json=payload)
        return _commit_status(data)

    def create_webhook(self, owner: str, repo: str, url: str, secret: str = ""):
        config = {"url": url, "content_type": "json"}
        if secret:
            config["secret"] = secret
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/hooks",
            json={"name": "web", "active": True, "events": ["*"], "config": config},
        )

    # Repository contents

    def get_default_branch(self, owner: str, repo: str) -> str:
        data = self._request("GET", f"/repos/{owner}/{repo}")
        return data.get("default_branch", "master")

    def get_file(self, owner: str, repo: str, path: str, ref: str) -> Tuple[Optional[str], str]:
        """Return (text, blob sha) of a file, or (None, "") when it does not exist."""
        try:
            data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})
        except GitProviderError as e:
            if e.status_code == 404:
                return None, ""
            raise
        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return content, data.get("sha", "")

    def put_file(self, owner: str, repo: str, path: str, content: bytes, message: str,
                 branch: str, sha: str = "") -> str:
        payload = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": branch,
        }
        if sha:
            payload["sha"] = sha
        data = self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", json=payload)
        return data.get("content", {}).get("html_url", "")

    def create_branch(self, owner: str, repo: str, branch: str, from_ref: str):
        ref = self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{from_ref}")
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": ref["object"]["sha"]},
        )

def _pull_request(data: dict) -> PullRequestInfo:
    head = data.get("head") or {}
    base = data.get("base") or {}
    return PullRequestInfo(
        number=data["number"],
        url=data.get("html_url", ""),
        state=data.get("state", "open"),
        title=data.get("title", ""),
        author=(data.get("user") or {}).get("login", ""),
        head_sha=head.get("sha", ""),
        head_ref=head.get("ref", ""),
        base_ref=base.get("ref", ""),
        merged=bool(data.get("merged")),
        merge_commit_sha=data.get("merge_commit_sha") or "",
        mergeable=data.get("mergeable"),
    )

def _commit_status(data: dict) -> CommitStatusInfo:
    return CommitStatusInfo(
        id=data.get("id", 0),
        state=data.get("state", ""),
        target_url=data.get("target_url") or "",
        context=data.get("context", ""),
        description=data.get("description") or "",
        created_at=data.get("created_at"),
    )

def create_git_provider(settings: Optional[Settings] = None) -> GitProvider:
    settings = settings or get_settings()
    return GitHubProvider(
        api_url=settings.git_api_url,
        token=settings.git_token,
        timeout=settings.git_api_timeout,
    )
