"""
Poll pending promotions: pull request merge state, merge commit checks,
auto-merge and rebase on conflict.
"""

import logging
from typing import Dict, Optional

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.store import ResourceStore, StoreError
from stagehand.src.models.activity import (
    GitStatus,
    PipelineActivity,
    PromoteStep,
    complete_promotion_pull_request,
    complete_promotion_update,
    start_promotion_update,
)
from stagehand.src.models.git import GitURLError, pull_request_repository, pull_request_url_to_number
from stagehand.src.services.git_provider import GitProvider, GitProviderError, PullRequestInfo
from stagehand.src.services.promoter import Promoter, PromotionError
from stagehand.src.services.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)

MERGE_MESSAGE = "automatically merged promotion PR"
FAILED_STATES = ("failure", "error")

def is_pending_promotion(promote: PromoteStep) -> bool:
    """True for a promote step that is still running and has a pull request to watch."""
    if promote.status.is_terminated() or not promote.environment:
        return False
    pr_step = promote.pull_request
    return pr_step is not None and bool(pr_step.pull_request_url)

class PromotionPoller:
    def __init__(self, store: ResourceStore, git: GitProvider, promoter: Promoter,
                 engine: WorkflowEngine, settings: Optional[Settings] = None):
        self.store = store
        self.git = git
        self.promoter = promoter
        self.engine = engine
        self.settings = settings or get_settings()

    def poll(self):
        """Poll every stored activity once."""
        try:
            activities = self.store.list_activities()
        except StoreError as e:
            logger.warning(f"Failed to list PipelineActivity resources: {e}")
            return
        for activity in activities:
            try:
                self.poll_activity(activity)
            except StoreError as e:
                logger.warning(f"Failed to update PipelineActivity {activity.name}: {e}")

    def poll_activity(self, activity: PipelineActivity):
        pending = [p for p in activity.promotes() if is_pending_promotion(p)]
        if not pending:
            logger.debug(f"Pipeline {activity.name} has no pending promotion pull request")
            return
        if not self.engine.is_release_branch(activity.branch_name()):
            self.engine.cache.remove_activity(activity.name)
            return
        if not self.engine.gate.check(activity):
            return

        for promote in pending:
            self.poll_promotion(activity, promote)

    def poll_promotion(self, activity: PipelineActivity, promote: PromoteStep):
        environment = promote.environment
        url = promote.pull_request.pull_request_url
        try:
            repo = pull_request_repository(url)
            number = pull_request_url_to_number(url)
        except GitURLError as e:
            logger.warning(f"Failed to parse pull request URL {url}: {e}")
            return
        if repo is None:
            logger.warning(f"No repository in pull request URL {url}")
            return
        owner, name = repo.organisation, repo.name

        try:
            pr = self.git.get_pull_request(owner, name, number)
        except GitProviderError as e:
            logger.warning(f"Failed to query the Pull Request status on pipeline {activity.name} for repo {repo.https_url()} PR {number}: {e}")
            return
        logger.debug(f"Pipeline {activity.name} promote Environment {environment} has PR {url}")

        if pr.merged:
            self.on_merged(activity, promote, owner, name, pr)
            return

        if pr.is_closed:
            # left pending: nobody decides whether a closed promotion failed
            logger.warning(f"Pull Request {pr.url or url} is closed without merging, no longer polling it")
            return

        try:
            status = self.git.pull_request_last_commit_status(owner, name, pr)
        except GitProviderError as e:
            logger.warning(f"Failed to query the Pull Request last commit status for {url} ref {pr.head_sha}: {e}")
            status = ""

        if status:
            logger.info(f"Pipeline {activity.name} promote Environment {environment} has PR {url} with status {status}")
        if status == "success":
            if not self.settings.no_merge_pull_request:
                try:
                    self.git.merge_pull_request(owner, name, pr, MERGE_MESSAGE)
                except GitProviderError as e:
                    logger.warning(f"Failed to merge the Pull Request {url}: {e}")
        elif status in FAILED_STATES:
            logger.warning(f"Pull request {url} last commit has status {status} for ref {pr.head_sha}")
            return

        if pr.mergeable is False:
            logger.info(f"Rebasing PullRequest {url} due to conflict")
            try:
                self.promoter.promote(activity, environment, rebase=True)
            except PromotionError as e:
                logger.warning(f"Failed to rebase promotion of {activity.name} to {environment}: {e}")

    def on_merged(self, activity: PipelineActivity, promote: PromoteStep, owner: str, repo: str,
                  pr: PullRequestInfo):
        environment = promote.environment
        if not pr.merge_commit_sha:
            logger.warning(f"Pipeline {activity.name} promote Environment {environment} has PR {pr.url} which is merged but there is no merge SHA")
            return

        complete_promotion_pull_request(promote, pr.merge_commit_sha)
        start_promotion_update(promote)

        if self.settings.no_wait_for_update_pipeline:
            logger.info(f"Pull Request {pr.number} merged but we are not waiting for the update pipeline to complete")
            self.promoter.comment_on_issues(activity, environment)
            complete_promotion_update(promote)
            self.store.update_activity(activity)
            return

        try:
            statuses = self.git.list_commit_status(owner, repo, pr.merge_commit_sha)
        except GitProviderError as e:
            logger.warning(f"Failed to list commit statuses of {pr.merge_commit_sha} on {owner}/{repo}: {e}")
            self.store.update_activity(activity)
            return

        latest: Dict[str, str] = {}
        for status in statuses:
            if status.state in FAILED_STATES:
                logger.warning(f"merge status: {status.state} URL: {status.target_url} description: {status.description}")
                self.store.update_activity(activity)
                return
            key = status.target_url or status.context
            # newest first: the first state seen for a check is its latest
            latest.setdefault(key, status.state)

        promote.update.statuses = [GitStatus(url=url, status=state) for url, state in sorted(latest.items())]
        if latest and all(state == "success" for state in latest.values()):
            self.promoter.comment_on_issues(activity, environment)
            complete_promotion_update(promote)
            logger.info(f"Promotion of {activity.name} to {environment} completed")
        self.store.update_activity(activity)
