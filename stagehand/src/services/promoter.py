"""
Promote an application version into an environment via a pull request
against the environment's git repository.
"""

import logging
import time
from typing import Callable, Optional

import yaml

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.store import ResourceStore, StoreError
from stagehand.src.models.activity import (
    PipelineActivity,
    get_or_create_promote,
    now,
    start_promotion_pull_request,
    to_valid_name,
)
from stagehand.src.models.git import GitURLError, parse_git_url, pull_request_repository, pull_request_url_to_number
from stagehand.src.models.workflow import Environment
from stagehand.src.services.git_provider import GitProvider, GitProviderError, PullRequestInfo

logger = logging.getLogger(__name__)

REQUIREMENTS_PATH = "env/requirements.yaml"

class PromotionError(Exception):
    """Raised when a promotion pull request cannot be created."""
    pass

def update_requirements(text: Optional[str], app: str, version: str) -> str:
    """Set the version of `app` in a requirements document, adding it when missing."""
    data = yaml.safe_load(text) if text else None
    if not isinstance(data, dict):
        data = {}
    dependencies = data.get("dependencies") or []
    for dependency in dependencies:
        if dependency.get("name") == app:
            dependency["version"] = version
            break
    else:
        dependencies.append({"name": app, "version": version})
    data["dependencies"] = dependencies
    return yaml.safe_dump(data, sort_keys=False)

class Promoter:
    def __init__(self, store: ResourceStore, git: GitProvider, settings: Optional[Settings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.git = git
        self.settings = settings or get_settings()
        self.sleep = sleep

    def promote(self, activity: PipelineActivity, environment_name: str,
                rebase: bool = False) -> Optional[PullRequestInfo]:
        """
        Open a pull request bumping the activity's version in the environment
        repository and record it on the activity's promote step.
        """
        app = activity.repository_name()
        version = activity.spec.version
        if not app or not version:
            raise PromotionError(f"PipelineActivity {activity.name} has no application name or version")

        environment = self.store.get_environment(environment_name)
        if environment is None:
            raise PromotionError(f"Environment {environment_name} not found")
        if not environment.spec.source.url:
            raise PromotionError(f"Environment {environment_name} has no source repository")

        title = f"chore: {app} to {version}"
        if self.settings.dry_run:
            logger.info(f"Dry run: would open pull request '{title}' for environment {environment_name}")
            return None

        try:
            pr = self._open_pull_request(environment, app, version, title, rebase)
        except (GitProviderError, GitURLError) as e:
            raise PromotionError(f"failed to promote {app} {version} to {environment_name}: {e}") from e

        self.record_pull_request(activity, environment_name, pr.url)
        logger.info(f"Created pull request {pr.url} promoting {app} {version} to {environment_name}")
        return pr

    def record_pull_request(self, activity: PipelineActivity, environment_name: str, url: str):
        """
        Point the activity's promote step at a pull request.

        The step is recorded on a freshly read copy of the activity so a
        concurrent write by the build controller is not lost; conflicts and
        other store failures are retried a bounded number of times.
        """
        interval = self.settings.get_or_create_retry_interval
        attempts = max(1, self.settings.get_or_create_attempts)
        for attempt in range(1, attempts + 1):
            try:
                current = self.store.get_activity(activity.name) or activity
                promote, _ = get_or_create_promote(current, environment_name)
                start_promotion_pull_request(promote, url)
                updated = self.store.update_activity(current)
                break
            except StoreError as e:
                logger.warning(f"Failed to record pull request {url} on PipelineActivity {activity.name} (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts:
                    raise
                self.sleep(interval)

        if current is not activity:
            promote, _ = get_or_create_promote(activity, environment_name)
            start_promotion_pull_request(promote, url)
        activity.metadata.resource_version = updated.metadata.resource_version

    def _open_pull_request(self, environment: Environment, app: str, version: str, title: str,
                           rebase: bool) -> PullRequestInfo:
        repo = parse_git_url(environment.spec.source.url)
        owner, name = repo.organisation, repo.name
        base = environment.spec.source.ref or self.git.get_default_branch(owner, name)

        branch = to_valid_name(f"promote-{app}-{version}")
        if rebase:
            branch = f"{branch}-{now().strftime('%Y%m%d%H%M%S')}"
        else:
            existing = self.git.find_pull_request(owner, name, branch, base)
            if existing is not None:
                logger.info(f"Reusing pull request {existing.url} for branch {branch}")
                return existing

        ref = base
        try:
            self.git.create_branch(owner, name, branch, base)
        except GitProviderError as e:
            if e.status_code != 422:
                raise
            logger.info(f"Branch {branch} already exists in {owner}/{name}, updating it")
            ref = branch

        text, sha = self.git.get_file(owner, name, REQUIREMENTS_PATH, ref)
        content = update_requirements(text, app, version)
        if content != text:
            self.git.put_file(owner, name, REQUIREMENTS_PATH, content.encode("utf-8"), title, branch, sha=sha)
        return self.git.create_pull_request(
            owner,
            name,
            title=title,
            head=branch,
            base=base,
            body=f"chore: Promote {app} to version {version}",
        )

    def comment_on_issues(self, activity: PipelineActivity, environment_name: str) -> int:
        """
        Tell the closed issues of the activity's release that their fix is deployed.

        Returns how many issues were commented on.
        """
        app = activity.repository_name()
        version = activity.spec.version
        release = self.store.get_release(to_valid_name(f"{app}-{version}"))
        if release is None:
            logger.debug(f"No Release found for {app} {version}, not commenting on issues")
            return 0

        version_text = version
        if release.spec.release_notes_url:
            version_text = f"[{version}]({release.spec.release_notes_url})"
        body = f":white_check_mark: the fix for this issue is now deployed to **{environment_name}** in version {version_text}"

        commented = 0
        for issue in release.spec.issues:
            if not issue.is_closed() or not issue.url:
                continue
            try:
                repo = pull_request_repository(issue.url)
                number = pull_request_url_to_number(issue.url)
                if repo is None:
                    continue
                self.git.create_issue_comment(repo.organisation, repo.name, number, body)
                commented += 1
            except (GitURLError, GitProviderError) as e:
                logger.warning(f"Failed to comment on issue {issue.url}: {e}")
        return commented
