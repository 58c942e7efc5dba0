"""
Git repository URL parsing.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel

class GitURLError(ValueError):
    """Raised when a git URL cannot be parsed into host/owner/repo."""
    pass

class GitRepository(BaseModel):
    url: str
    host: str
    organisation: str
    name: str
    scheme: str = "https"

    def https_url(self) -> str:
        return f"https://{self.host}/{self.organisation}/{self.name}"

    def provider_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def full_name(self) -> str:
        return f"{self.organisation}/{self.name}"

_SCP_LIKE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")

def parse_git_url(url: str) -> GitRepository:
    """
    Parse https, ssh and scp-like git URLs.

    `https://github.com/acme/app.git`, `git@github.com:acme/app.git` and
    `ssh://git@github.com/acme/app` all give organisation `acme`, name `app`.
    """
    text = (url or "").strip()
    if not text:
        raise GitURLError("empty git URL")

    scheme = "https"
    if "://" in text:
        parsed = urlparse(text)
        host = parsed.hostname or ""
        path = parsed.path
        if parsed.scheme in ("http", "https"):
            scheme = parsed.scheme
    else:
        match = _SCP_LIKE.match(text)
        if not match:
            raise GitURLError(f"unsupported git URL {url}")
        host = match.group("host")
        path = match.group("path")

    paths = [p for p in path.strip("/").split("/") if p]
    if not host or len(paths) < 2:
        raise GitURLError(f"no owner/repository in git URL {url}")

    name = paths[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return GitRepository(
        url=text,
        host=host,
        organisation=paths[-2],
        name=name,
        scheme=scheme,
    )

def pull_request_url_to_number(url: str) -> int:
    """Return the trailing pull request number of a PR URL."""
    last = url.rstrip("/").split("/")[-1]
    try:
        return int(last)
    except ValueError:
        raise GitURLError(f"failed to parse PR number from {last} on URL {url}")

def pull_request_repository(url: str) -> Optional[GitRepository]:
    """Repository of a pull request URL such as `https://host/o/r/pull/12`."""
    paths = url.rstrip("/").split("/")
    if len(paths) < 3:
        return None
    return parse_git_url("/".join(paths[:-2]) + ".git")
