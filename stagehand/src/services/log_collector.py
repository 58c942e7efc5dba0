"""
Collect build logs from pods, mask secrets and push them to long-term storage.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.build_info import LABEL_BUILD_NAME, LABEL_PIPELINE_RUN
from stagehand.src.k8s.store import ResourceStore
from stagehand.src.models.activity import PipelineActivity
from stagehand.src.models.git import GitURLError, parse_git_url
from stagehand.src.models.workflow import StorageLocation
from stagehand.src.services.git_provider import GitProvider, GitProviderError

logger = logging.getLogger(__name__)

LOGS_CLASSIFIER = "logs"
LOGS_PATH_PREFIX = "stagehand"
DEFAULT_LOGS_BRANCH = "gh-pages"

class LogStorageError(Exception):
    """Raised when logs cannot be written to long-term storage."""
    pass

class LogMasker:
    """Replaces secret values in log text with asterisks."""

    def __init__(self, values: List[str]):
        # longest first so a secret containing another one is masked whole
        self.values = sorted({v for v in values if v}, key=len, reverse=True)

    def mask(self, text: str) -> str:
        for value in self.values:
            if value in text:
                text = text.replace(value, "*" * len(value))
        return text

class Collector(ABC):
    @abstractmethod
    def collect_data(self, data: bytes, path: str) -> str:
        """Store data under a relative path and return the URL it can be read from."""

    def close(self):
        pass

class FileCollector(Collector):
    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def collect_data(self, data: bytes, path: str) -> str:
        target = os.path.join(self.base_dir, path)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
        except OSError as e:
            raise LogStorageError(f"failed to write {target}: {e}") from e
        return f"file://{os.path.abspath(target)}"

class HttpCollector(Collector):
    """Uploads to a bucket exposing an HTTP PUT interface."""

    def __init__(self, bucket_url: str, client: Optional[httpx.Client] = None, timeout: float = 30.0):
        self.bucket_url = bucket_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def collect_data(self, data: bytes, path: str) -> str:
        url = f"{self.bucket_url}/{path}"
        try:
            response = self.client.put(url, content=data, headers={"Content-Type": "text/plain"})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LogStorageError(f"failed to upload {url}: {e}") from e
        return url

    def close(self):
        if self._owns_client:
            self.client.close()

class GitCollector(Collector):
    """Commits files to a branch of a git repository through the provider API."""

    def __init__(self, git: GitProvider, git_url: str, branch: str = DEFAULT_LOGS_BRANCH):
        self.git = git
        self.repository = parse_git_url(git_url)
        self.branch = branch or DEFAULT_LOGS_BRANCH

    def collect_data(self, data: bytes, path: str) -> str:
        owner = self.repository.organisation
        repo = self.repository.name
        try:
            _, sha = self.git.get_file(owner, repo, path, self.branch)
            url = self.git.put_file(owner, repo, path, data, f"add {path}", self.branch, sha=sha)
        except GitProviderError as e:
            raise LogStorageError(f"failed to commit {path} to {self.repository.full_name()}: {e}") from e
        return url or f"{self.repository.https_url()}/blob/{self.branch}/{path}"

def create_collector(location: StorageLocation, git: GitProvider, timeout: float = 30.0) -> Collector:
    if location.bucket_url:
        parsed = urlparse(location.bucket_url)
        if parsed.scheme == "file":
            return FileCollector(parsed.path)
        if parsed.scheme in ("http", "https"):
            return HttpCollector(location.bucket_url, timeout=timeout)
        raise LogStorageError(f"unsupported bucket URL {location.bucket_url}")
    if location.git_url:
        try:
            return GitCollector(git, location.git_url, location.git_branch)
        except GitURLError as e:
            raise LogStorageError(str(e)) from e
    raise LogStorageError("no storage location configured")

def resolve_storage_location(store: ResourceStore, activity: PipelineActivity,
                             settings: Optional[Settings] = None) -> StorageLocation:
    """
    Storage for build logs: the dev environment's team settings, then the
    configured bucket, then the gh-pages branch of the activity's own repository.
    """
    settings = settings or get_settings()
    environment = store.get_environment(settings.dev_environment)
    if environment is not None:
        location = environment.spec.team_settings.storage_location(LOGS_CLASSIFIER)
        if not location.is_empty():
            return location
    if settings.log_storage_url:
        return StorageLocation(classifier=LOGS_CLASSIFIER, bucket_url=settings.log_storage_url)
    return StorageLocation(
        classifier=LOGS_CLASSIFIER,
        git_url=activity.spec.git_url,
        git_branch=DEFAULT_LOGS_BRANCH,
    )

def build_log_path(activity: PipelineActivity) -> str:
    build = activity.spec.build or "1"
    return "/".join([
        LOGS_PATH_PREFIX,
        "logs",
        activity.repository_owner(),
        activity.repository_name(),
        activity.branch_name(),
        f"{build}.log",
    ])

def collect_build_logs(store: ResourceStore, build_name: str, masker: LogMasker) -> bytes:
    """Logs of every container of every pod belonging to a build, masked."""
    pods = store.list_pods(f"{LABEL_PIPELINE_RUN}={build_name}")
    if not pods:
        pods = store.list_pods(f"{LABEL_BUILD_NAME}={build_name}")
    pods.sort(key=lambda p: p.creation_timestamp.timestamp() if p.creation_timestamp else 0.0)

    lines = []
    for pod in pods:
        for container in pod.containers:
            lines.append(f"Showing logs for build {build_name} pod {pod.name} container {container.name}")
            text = store.read_pod_log(pod.name, container.name)
            lines.append(masker.mask(text).rstrip("\n"))
    return ("\n".join(lines) + "\n").encode("utf-8")

def store_build_logs(store: ResourceStore, git: GitProvider, activity: PipelineActivity,
                     build_name: str, settings: Optional[Settings] = None) -> str:
    """Capture, mask and store the logs of a build; returns the resulting URL."""
    settings = settings or get_settings()
    location = resolve_storage_location(store, activity, settings)
    logger.debug(f"Collecting logs for {activity.name} to location {location.description()}")
    collector = create_collector(location, git, timeout=settings.git_api_timeout)
    try:
        masker = LogMasker(store.list_masked_secret_values())

        data = collect_build_logs(store, build_name, masker)
        path = build_log_path(activity)
        logger.info(f"Storing logs for activity {activity.name} into storage at {path}")
        url = collector.collect_data(data, path)
    finally:
        collector.close()
    logger.info(f"Stored logs for activity {activity.name} into storage at {url}")
    return url
