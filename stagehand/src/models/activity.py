"""
PipelineActivity resource models.

A PipelineActivity is the persisted status tree of one pipeline execution:
the build stages reported by pods plus the promotion steps driven by the
workflow controller.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

LABEL_OWNER = "owner"
LABEL_REPOSITORY = "repository"
LABEL_BRANCH = "branch"
LABEL_BUILD = "build"
LABEL_CONTEXT = "context"
LABEL_PROVIDER = "provider"
LABEL_SOURCE_REPOSITORY = "sourcerepository"
LABEL_LAST_COMMIT_SHA = "lastCommitSha"

ANNOTATION_GIT_REPORT_STATE = "stagehand.dev/git-report-state"

class ActivityStatus(str, Enum):
    NONE = ""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"
    ERROR = "Error"
    NOT_EXECUTED = "NotExecuted"

    def is_terminated(self) -> bool:
        return self in TERMINAL_STATUSES

TERMINAL_STATUSES = frozenset({
    ActivityStatus.SUCCEEDED,
    ActivityStatus.FAILED,
    ActivityStatus.ABORTED,
    ActivityStatus.ERROR,
})

class StepKind(str, Enum):
    STAGE = "Stage"
    PROMOTE = "Promote"

class ResourceModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True

class ObjectMeta(ResourceModel):
    name: str
    namespace: Optional[str] = None
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}
    resource_version: Optional[str] = None

class CoreStep(ResourceModel):
    name: str = ""
    description: str = ""
    status: ActivityStatus = ActivityStatus.NONE
    started_timestamp: Optional[datetime] = None
    completed_timestamp: Optional[datetime] = None

class StageStep(CoreStep):
    steps: List[CoreStep] = []

class GitStatus(ResourceModel):
    url: str = ""
    status: str = ""

class PromotePullRequestStep(CoreStep):
    pull_request_url: str = Field("", alias="pullRequestURL")
    merge_commit_sha: str = Field("", alias="mergeCommitSHA")

class PromoteUpdateStep(CoreStep):
    statuses: List[GitStatus] = []

class PromoteStep(CoreStep):
    environment: str = ""
    pull_request: Optional[PromotePullRequestStep] = None
    update: Optional[PromoteUpdateStep] = None
    application_url: str = Field("", alias="applicationURL")

class ActivityStep(ResourceModel):
    kind: StepKind = StepKind.STAGE
    stage: Optional[StageStep] = None
    promote: Optional[PromoteStep] = None

class PipelineActivitySpec(ResourceModel):
    pipeline: str = ""
    build: str = ""
    version: str = ""
    status: ActivityStatus = ActivityStatus.NONE
    started_timestamp: Optional[datetime] = None
    completed_timestamp: Optional[datetime] = None
    steps: List[ActivityStep] = []
    build_url: str = Field("", alias="buildUrl")
    build_logs_url: str = Field("", alias="buildLogsUrl")
    git_url: str = Field("", alias="gitUrl")
    git_repository: str = ""
    git_owner: str = ""
    git_branch: str = ""
    context: str = ""
    author: str = ""
    pull_title: str = ""
    last_commit_sha: str = Field("", alias="lastCommitSHA")
    last_commit_message: str = ""
    last_commit_url: str = Field("", alias="lastCommitURL")
    base_sha: str = Field("", alias="baseSHA")
    workflow: str = ""
    workflow_status: ActivityStatus = ActivityStatus.NONE
    workflow_message: str = ""

class PipelineActivity(ResourceModel):
    metadata: ObjectMeta
    spec: PipelineActivitySpec = Field(default_factory=PipelineActivitySpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    def _pipeline_paths(self) -> List[str]:
        return self.spec.pipeline.split("/") if self.spec.pipeline else []

    def repository_owner(self) -> str:
        if self.spec.git_owner:
            return self.spec.git_owner
        paths = self._pipeline_paths()
        return paths[0] if len(paths) > 2 else ""

    def repository_name(self) -> str:
        if self.spec.git_repository:
            return self.spec.git_repository
        paths = self._pipeline_paths()
        return paths[-2] if len(paths) > 2 else ""

    def branch_name(self) -> str:
        if self.spec.git_branch:
            return self.spec.git_branch
        paths = self._pipeline_paths()
        return paths[-1] if len(paths) > 2 else "master"

    def pipeline_key(self) -> str:
        """Key identifying the logical pipeline stream across build numbers."""
        key = self.spec.pipeline or "/".join(
            [self.repository_owner(), self.repository_name(), self.branch_name()]
        )
        if self.spec.context:
            key = f"{key}/{self.spec.context}"
        return key

    def stages(self) -> List[StageStep]:
        return [s.stage for s in self.spec.steps if s.stage is not None]

    def promotes(self) -> List[PromoteStep]:
        return [s.promote for s in self.spec.steps if s.promote is not None]

    def to_body(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

def now() -> datetime:
    return datetime.now(timezone.utc)

def to_valid_name(name: str) -> str:
    """Convert a string into a valid Kubernetes resource name."""
    name = name.lower().replace("/", "-").replace("_", "-").replace(" ", "-")
    name = re.sub(r"[^a-z0-9.-]", "", name)
    name = re.sub(r"-+", "-", name)
    return name.strip("-.")[:253]

def activity_snapshot(activity: PipelineActivity) -> str:
    """
    Canonical YAML form of an activity.

    Two snapshots compare equal iff nothing in the record changed, including
    in-place edits of nested step lists.
    """
    return yaml.safe_dump(activity.to_body(), sort_keys=True)

def get_or_create_stage(activity: PipelineActivity, stage_name: str) -> Tuple[StageStep, bool]:
    for step in activity.spec.steps:
        if step.stage is not None and step.stage.name == stage_name:
            return step.stage, False
    stage = StageStep(name=stage_name)
    activity.spec.steps.append(ActivityStep(kind=StepKind.STAGE, stage=stage))
    return stage, True

def find_promote(activity: PipelineActivity, environment: str) -> Optional[PromoteStep]:
    for promote in activity.promotes():
        if promote.environment == environment:
            return promote
    return None

def get_or_create_promote(activity: PipelineActivity, environment: str) -> Tuple[PromoteStep, bool]:
    """Find the promote step for an environment, adding one when missing."""
    promote = find_promote(activity, environment)
    if promote is not None:
        return promote, False

    spec = activity.spec
    if not spec.steps:
        # activities created by a promotion get a completed release stage
        completed = now()
        spec.steps.append(ActivityStep(kind=StepKind.STAGE, stage=StageStep(
            name="Release",
            status=ActivityStatus.SUCCEEDED,
            started_timestamp=completed,
            completed_timestamp=completed,
        )))
    promote = PromoteStep(environment=environment, started_timestamp=now())
    spec.steps.append(ActivityStep(kind=StepKind.PROMOTE, promote=promote))
    return promote, True

def promote_status_map(activity: PipelineActivity) -> Dict[str, PromoteStep]:
    """Promote steps of an activity indexed by environment name."""
    return {p.environment: p for p in activity.promotes() if p.environment}

def start_promotion_pull_request(promote: PromoteStep, pull_request_url: str):
    if promote.pull_request is None:
        promote.pull_request = PromotePullRequestStep(started_timestamp=now())
    promote.pull_request.pull_request_url = pull_request_url
    promote.pull_request.status = ActivityStatus.RUNNING
    if promote.started_timestamp is None:
        promote.started_timestamp = now()
    promote.status = ActivityStatus.RUNNING

def complete_promotion_pull_request(promote: PromoteStep, merge_sha: str):
    pr = promote.pull_request
    if pr is None:
        pr = promote.pull_request = PromotePullRequestStep(started_timestamp=now())
    pr.merge_commit_sha = merge_sha
    pr.status = ActivityStatus.SUCCEEDED
    if pr.completed_timestamp is None:
        pr.completed_timestamp = now()

def start_promotion_update(promote: PromoteStep):
    if promote.update is None:
        promote.update = PromoteUpdateStep(started_timestamp=now())
    if not promote.update.status.is_terminated():
        promote.update.status = ActivityStatus.RUNNING

def complete_promotion_update(promote: PromoteStep):
    start_promotion_update(promote)
    completed = now()
    promote.update.status = ActivityStatus.SUCCEEDED
    promote.update.completed_timestamp = promote.update.completed_timestamp or completed
    promote.status = ActivityStatus.SUCCEEDED
    promote.completed_timestamp = promote.completed_timestamp or completed

def duration_string(start: Optional[datetime], end: Optional[datetime]) -> str:
    if start is None or end is None:
        return ""
    return str(end - start)
