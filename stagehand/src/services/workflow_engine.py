"""
Drive promotion workflows from PipelineActivity updates.
"""

import fnmatch
import logging
from typing import Dict, Optional

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.store import ResourceStore, StoreError
from stagehand.src.models.activity import (
    ActivityStatus,
    PipelineActivity,
    PromoteStep,
    promote_status_map,
)
from stagehand.src.models.workflow import DEFAULT_WORKFLOW_NAME, Workflow, WorkflowStep, default_workflow
from stagehand.src.services.dedup import DedupGate, PipelineCache, is_newer_version
from stagehand.src.services.promoter import Promoter, PromotionError

logger = logging.getLogger(__name__)

def can_execute_step(step: WorkflowStep, statuses: Dict[str, PromoteStep], environment: str) -> bool:
    """True when every precondition environment has already been promoted successfully."""
    for name in step.preconditions.environments:
        status = statuses.get(name)
        if status is None:
            logger.warning(f"Cannot promote to Environment: {environment} as precondition Environment: {name} has no status")
            return False
        if status.status != ActivityStatus.SUCCEEDED:
            logger.warning(f"Cannot promote to Environment: {environment} as precondition Environment: {name} has status {status.status.value}")
            return False
    return True

def is_release_branch(branch: str, patterns) -> bool:
    return any(fnmatch.fnmatchcase(branch, pattern) for pattern in patterns)

def has_manual_promotion(activity: PipelineActivity) -> bool:
    return any(
        p.status in (ActivityStatus.PENDING, ActivityStatus.RUNNING)
        for p in activity.promotes()
    )

class WorkflowEngine:
    def __init__(self, store: ResourceStore, promoter: Promoter, cache: Optional[PipelineCache] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.promoter = promoter
        self.cache = cache or PipelineCache()
        self.gate = DedupGate(self.cache, store)
        self.settings = settings or get_settings()

    # Workflow events

    def on_workflow(self, workflow: Workflow):
        self.cache.put_workflow(workflow)

    def on_workflow_delete(self, name: str):
        self.cache.remove_workflow(name)

    def resolve_workflow(self, name: str) -> Optional[Workflow]:
        workflow = self.cache.get_workflow(name)
        if workflow is None and name == DEFAULT_WORKFLOW_NAME:
            workflow = default_workflow(self.settings.default_promote_environment)
            self.cache.put_workflow(workflow)
        return workflow

    def is_release_branch(self, branch: str) -> bool:
        return is_release_branch(branch, self.settings.release_branches)

    # Activity events

    def on_activity_event(self, activity: PipelineActivity):
        """Handle a watched activity, preferring the stored copy when it is newer."""
        try:
            current = self.store.get_activity(activity.name)
        except StoreError as e:
            logger.warning(f"Failed to re-read PipelineActivity {activity.name}: {e}")
            current = None
        if current is not None and is_newer_version(
            current.metadata.resource_version or "", activity.metadata.resource_version or ""
        ):
            logger.debug(
                f"onActivity {activity.name} using newer resourceVersion "
                f"{current.metadata.resource_version} > {activity.metadata.resource_version}"
            )
            activity = current
        self.on_activity(activity)

    def on_activity_delete(self, name: str):
        self.cache.remove_activity(name)

    def on_activity(self, activity: PipelineActivity):
        spec = activity.spec
        workflow_name = spec.workflow
        repo = activity.repository_name()
        branch = activity.branch_name()
        logger.debug(
            f"Processing pipeline {activity.name} repo {repo} version {spec.version} "
            f"with workflow {workflow_name} and status {spec.workflow_status.value}"
        )

        if not repo or not spec.version or not spec.build or not spec.pipeline:
            logger.debug(f"Ignoring missing data for pipeline: {activity.name} repo: {repo} version: {spec.version}")
            self.cache.remove_activity(activity.name)
            return

        if not workflow_name:
            self.remove_if_no_manual(activity)
            return

        if spec.workflow_status.is_terminated():
            return

        workflow = self.resolve_workflow(workflow_name)
        if workflow is None:
            self.remove_if_no_manual(activity)
            return

        if not self.is_release_branch(branch):
            logger.info(f"Ignoring branch {branch}")
            self.cache.remove_activity(activity.name)
            return

        if not self.gate.check(activity):
            return

        self.cache.put_activity(activity)
        self.advance(activity, workflow)

    def advance(self, activity: PipelineActivity, workflow: Workflow):
        """Open promotion pull requests whose preconditions hold; complete the workflow when all succeeded."""
        statuses = promote_status_map(activity)
        all_complete = True
        for step in workflow.spec.steps:
            if step.promote is None or not step.promote.environment:
                continue
            environment = step.promote.environment
            status = statuses.get(environment)
            if status is None or status.pull_request is None or not status.pull_request.pull_request_url:
                all_complete = False
                if can_execute_step(step, statuses, environment):
                    logger.info(f"Creating PR for environment {environment} from PipelineActivity {activity.name}")
                    try:
                        self.promoter.promote(activity, environment)
                    except (PromotionError, StoreError) as e:
                        logger.warning(
                            f"Failed to create PullRequest on pipeline {activity.name} repo {activity.repository_name()} "
                            f"version {activity.spec.version} with workflow {workflow.name}: {e}"
                        )
            if status is not None and status.status != ActivityStatus.SUCCEEDED:
                all_complete = False

        spec = activity.spec
        if all_complete and (spec.status != ActivityStatus.SUCCEEDED or spec.workflow_status != ActivityStatus.SUCCEEDED):
            spec.status = ActivityStatus.SUCCEEDED
            spec.workflow_status = ActivityStatus.SUCCEEDED
            try:
                self.store.update_activity(activity)
                logger.info(f"PipelineActivity {activity.name} completed its workflow {workflow.name}")
            except StoreError as e:
                logger.warning(f"Failed to update PipelineActivity {activity.name} due to being complete: {e}")

    def remove_if_no_manual(self, activity: PipelineActivity):
        """Evict the activity unless it has a promotion still pending or running."""
        if not has_manual_promotion(activity):
            self.cache.remove_activity(activity.name)

    def resync(self):
        """Process every stored workflow and activity once without watching."""
        for workflow in self.store.list_workflows():
            self.on_workflow(workflow)
        for activity in self.store.list_activities():
            self.cache.put_activity(activity)
            self.on_activity(activity)
