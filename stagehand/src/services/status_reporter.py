"""
Report pipeline status to the git provider as commit statuses.
"""

import logging
from typing import Optional

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.store import ResourceStore, StoreError
from stagehand.src.models.activity import (
    ANNOTATION_GIT_REPORT_STATE,
    LABEL_LAST_COMMIT_SHA,
    ActivityStatus,
    ObjectMeta,
    PipelineActivity,
    duration_string,
    to_valid_name,
)
from stagehand.src.models.workflow import CommitStatus
from stagehand.src.services.git_provider import CommitStatusInfo, GitProvider, GitProviderError

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT = "stagehand"

# once one of these has been reported the commit status is never touched again
FINAL_REPORTED = (
    ActivityStatus.SUCCEEDED.value,
    ActivityStatus.ABORTED.value,
    ActivityStatus.FAILED.value,
)

def to_scm_status(status: ActivityStatus) -> str:
    if status == ActivityStatus.SUCCEEDED:
        return "success"
    if status in (ActivityStatus.RUNNING, ActivityStatus.PENDING):
        return "pending"
    if status == ActivityStatus.ERROR:
        return "error"
    return "failure"

def create_report_target_url(template: str, owner: str, repository: str, branch: str = "",
                             build: str = "", context: str = "") -> str:
    """Render the commit status target URL; empty when the template is unset or invalid."""
    if not template:
        return ""
    try:
        return template.format(
            owner=owner,
            repository=repository,
            branch=branch,
            build=build,
            context=context,
        )
    except (KeyError, IndexError, ValueError) as e:
        logger.warning(f"Failed to render target URL template {template}: {e}")
        return ""

class GitStatusReporter:
    def __init__(self, git: GitProvider, store: Optional[ResourceStore] = None,
                 settings: Optional[Settings] = None):
        self.git = git
        self.store = store
        self.settings = settings or get_settings()

    def report(self, activity: PipelineActivity, context: str = "", last_commit_sha: str = "",
               base_sha: str = "") -> bool:
        """
        Post the activity status as a commit status.

        The reported state is recorded in an annotation on the activity, which
        the caller persists. Returns True when a status was posted.
        """
        spec = activity.spec
        if not spec.last_commit_sha:
            spec.last_commit_sha = last_commit_sha or activity.metadata.labels.get(LABEL_LAST_COMMIT_SHA, "")
        if not spec.base_sha:
            spec.base_sha = base_sha

        sha = spec.last_commit_sha
        owner = spec.git_owner
        repo = spec.git_repository
        status = spec.status
        state = to_scm_status(status)
        fields = (
            f"name={activity.name} status={status.value} gitOwner={owner} gitRepo={repo} "
            f"gitSHA={sha} gitBranch={spec.git_branch} gitStatus={state} buildNumber={spec.build} "
            f"duration={duration_string(spec.started_timestamp, spec.completed_timestamp)}"
        )

        if not spec.git_url or not sha or not owner or not repo:
            logger.debug(f"Cannot report pipeline {activity.name} without git URL, SHA, owner and repository: {fields}")
            return False
        if status == ActivityStatus.NONE:
            return False

        annotations = activity.metadata.annotations
        previous = annotations.get(ANNOTATION_GIT_REPORT_STATE, "")
        if previous == status.value or previous in FINAL_REPORTED:
            return False

        context = context or spec.context or DEFAULT_CONTEXT
        target_url = create_report_target_url(
            self.settings.target_url_template,
            owner=owner,
            repository=repo,
            branch=spec.git_branch,
            build=spec.build,
            context=context,
        )
        try:
            self.git.update_commit_status(owner, repo, sha, CommitStatusInfo(
                state=state,
                context=context,
                description=state,
                target_url=target_url,
            ))
        except GitProviderError as e:
            logger.warning(f"Failed to report git status: {e} {fields}")
            return False

        annotations[ANNOTATION_GIT_REPORT_STATE] = status.value
        logger.info(f"Reported git status {fields}")
        self._record(activity, context, state)
        return True

    def _record(self, activity: PipelineActivity, context: str, state: str):
        """Keep a CommitStatus record of what was reported against the commit."""
        if self.store is None:
            return
        spec = activity.spec
        name = to_valid_name(f"{spec.git_owner}-{spec.git_repository}-{spec.last_commit_sha}")
        try:
            record = self.store.get_commit_status(name) or CommitStatus(metadata=ObjectMeta(name=name))
            item = record.item_for(context, activity.name)
            item.commit.git_url = spec.git_url
            item.commit.sha = spec.last_commit_sha
            if spec.git_branch.upper().startswith("PR-"):
                item.commit.pull_request = spec.git_branch
            item.checked = state != "pending"
            item.pass_ = state == "success"
            self.store.save_commit_status(record)
        except StoreError as e:
            logger.warning(f"Failed to record commit status {name}: {e}")
