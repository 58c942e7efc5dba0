"""Shared fakes for the store and the git provider."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from stagehand.src.config import Settings
from stagehand.src.k8s.build_info import LABEL_BUILD_NAME
from stagehand.src.k8s.store import ResourceStore, StoreError
from stagehand.src.models.activity import ObjectMeta, PipelineActivity, PipelineActivitySpec
from stagehand.src.models.pod import (
    ContainerSnapshot,
    ContainerState,
    PodSnapshot,
    RunningState,
    TerminatedState,
)
from stagehand.src.services.git_provider import (
    CommitInfo,
    CommitStatusInfo,
    GitProvider,
    GitProviderError,
    PullRequestInfo,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)

def terminated(start: int, end: int, exit_code: int = 0) -> ContainerState:
    return ContainerState(terminated=TerminatedState(started_at=at(start), finished_at=at(end), exit_code=exit_code))

def running(start: int = 0) -> ContainerState:
    return ContainerState(running=RunningState(started_at=at(start)))

def waiting() -> ContainerState:
    return ContainerState(waiting=True)

GIT_ENV = {
    "SOURCE_URL": "https://github.com/acme/app.git",
    "REPO_OWNER": "acme",
    "REPO_NAME": "app",
    "BRANCH_NAME": "master",
    "BUILD_NUMBER": "1",
    "PULL_BASE_SHA": "0123abc",
}

def make_pod(containers: List[Tuple[str, ContainerState]], name: str = "acme-app-master-1-pod",
             labels: Optional[Dict[str, str]] = None, env: Optional[Dict[str, str]] = None) -> PodSnapshot:
    labels = {LABEL_BUILD_NAME: "acme-app-master-1"} if labels is None else labels
    env = GIT_ENV if env is None else env
    return PodSnapshot(
        name=name,
        namespace="jx",
        labels=labels,
        creation_timestamp=T0,
        containers=[ContainerSnapshot(name=n, env=dict(env), state=s) for n, s in containers],
    )

def make_activity(name: str = "acme-app-master-1", build: str = "1", **spec) -> PipelineActivity:
    values = {
        "pipeline": "acme/app/master",
        "build": build,
        "git_url": "https://github.com/acme/app.git",
        "git_owner": "acme",
        "git_repository": "app",
        "git_branch": "master",
    }
    values.update(spec)
    return PipelineActivity(metadata=ObjectMeta(name=name), spec=PipelineActivitySpec(**values))

class FakeStore(ResourceStore):
    """In-memory store recording every write."""

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__(core_api=object(), custom_api=object(), settings=settings or Settings())
        self.objects: Dict[Tuple[str, str], dict] = {}
        self.writes: List[Tuple[str, str, str]] = []
        self.pods: List[PodSnapshot] = []
        self.logs: Dict[Tuple[str, str], str] = {}
        self.secrets: List[str] = []
        self.fail_writes = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _get(self, plural, name, namespace=None):
        data = self.objects.get((plural, name))
        return copy.deepcopy(data) if data else None

    def _list(self, plural, label_selector=""):
        return [copy.deepcopy(v) for (p, _), v in self.objects.items() if p == plural]

    def _write(self, op, plural, body):
        if self.fail_writes:
            self.fail_writes -= 1
            raise StoreError(f"failed to {op} {plural}")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self._next_version()
        name = body["metadata"]["name"]
        self.objects[(plural, name)] = body
        self.writes.append((op, plural, name))
        return copy.deepcopy(body)

    def _create(self, plural, body):
        return self._write("create", plural, body)

    def _replace(self, plural, body):
        return self._write("update", plural, body)

    def put(self, plural: str, resource) -> dict:
        """Seed a resource without recording a write."""
        body = self._body(type(resource).__name__, resource)
        body["metadata"]["resourceVersion"] = self._next_version()
        self.objects[(plural, body["metadata"]["name"])] = body
        return body

    def activity(self, name: str) -> PipelineActivity:
        return self.get_activity(name)

    def updates_of(self, name: str) -> int:
        return len([w for w in self.writes if w[2] == name and w[1] == "pipelineactivities"])

    def list_pods(self, label_selector):
        key, value = label_selector.split("=", 1)
        return [p for p in self.pods if p.labels.get(key) == value]

    def read_pod_log(self, pod_name, container):
        return self.logs.get((pod_name, container), "")

    def list_masked_secret_values(self):
        return list(self.secrets)

class FakeGit(GitProvider):
    """Git provider answering from dictionaries and recording calls."""

    def __init__(self):
        self.pull_requests: Dict[int, PullRequestInfo] = {}
        self.last_commit_status = ""
        self.commit_statuses: List[CommitStatusInfo] = []
        self.commits: List[CommitInfo] = [CommitInfo(sha="abc", message="fix things", author="jdoe")]
        self.files: Dict[str, Tuple[str, str]] = {}
        self.calls: List[tuple] = []
        self.branches: List[str] = []
        self.fail = False
        self._pr_number = 100

    def _record(self, *call):
        self.calls.append(call)
        if self.fail:
            raise GitProviderError(f"{call[0]} failed", status_code=500)

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def get_pull_request(self, owner, repo, number):
        self._record("get_pull_request", owner, repo, number)
        return self.pull_requests[number]

    def pull_request_last_commit_status(self, owner, repo, pr):
        self._record("pull_request_last_commit_status", owner, repo, pr.number)
        return self.last_commit_status

    def merge_pull_request(self, owner, repo, pr, message):
        self._record("merge_pull_request", owner, repo, pr.number, message)

    def list_commits(self, owner, repo, branch, limit=1):
        self._record("list_commits", owner, repo, branch)
        return self.commits[:limit]

    def list_commit_status(self, owner, repo, ref):
        self._record("list_commit_status", owner, repo, ref)
        return list(self.commit_statuses)

    def update_commit_status(self, owner, repo, sha, status):
        self._record("update_commit_status", owner, repo, sha, status.state, status.context)
        return status

    def create_issue_comment(self, owner, repo, number, body):
        self._record("create_issue_comment", owner, repo, number, body)

    def create_webhook(self, owner, repo, url, secret=""):
        self._record("create_webhook", owner, repo, url)

    def get_default_branch(self, owner, repo):
        self._record("get_default_branch", owner, repo)
        return "master"

    def get_file(self, owner, repo, path, ref):
        self._record("get_file", owner, repo, path, ref)
        return self.files.get(path, (None, ""))

    def put_file(self, owner, repo, path, content, message, branch, sha=""):
        self._record("put_file", owner, repo, path, branch, message)
        self.files[path] = (content.decode("utf-8"), "new-sha")
        return f"https://github.com/{owner}/{repo}/blob/{branch}/{path}"

    def create_branch(self, owner, repo, branch, from_ref):
        self._record("create_branch", owner, repo, branch, from_ref)
        if branch in self.branches:
            raise GitProviderError("Reference already exists", status_code=422)
        self.branches.append(branch)

    def find_pull_request(self, owner, repo, head, base):
        self._record("find_pull_request", owner, repo, head, base)
        for pr in self.pull_requests.values():
            if pr.head_ref == head and pr.base_ref == base and pr.state == "open":
                return pr
        return None

    def create_pull_request(self, owner, repo, title, head, base, body=""):
        self._record("create_pull_request", owner, repo, title, head, base)
        self._pr_number += 1
        pr = PullRequestInfo(
            number=self._pr_number,
            url=f"https://github.com/{owner}/{repo}/pull/{self._pr_number}",
            title=title,
            head_ref=head,
            base_ref=base,
        )
        self.pull_requests[pr.number] = pr
        return pr

@pytest.fixture
def settings():
    return Settings(
        git_reporting=True,
        get_or_create_retry_interval=0.0,
        get_or_create_attempts=3,
        release_branches=["master"],
        default_promote_environment="staging",
    )

@pytest.fixture
def store(settings):
    return FakeStore(settings)

@pytest.fixture
def git():
    return FakeGit()
