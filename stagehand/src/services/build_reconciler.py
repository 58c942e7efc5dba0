"""
Reconcile PipelineActivity records from build pods and pipeline runs.

Every event re-derives the stage and step statuses from the pods, so
handling the same state twice (or out of order) converges on the same
record. The record is only written when its canonical form changed.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.build_info import (
    LABEL_PIPELINE_RUN,
    LABEL_STAGE_NAME,
    ActivityKey,
    build_name,
    create_activity_key,
    create_activity_key_for_run,
    create_pipeline_run_info,
)
from stagehand.src.k8s.store import ResourceStore, StoreError
from stagehand.src.models.activity import (
    LABEL_CONTEXT,
    ActivityStatus,
    PipelineActivity,
    activity_snapshot,
    duration_string,
    get_or_create_stage,
    now,
)
from stagehand.src.models.git import GitURLError, parse_git_url
from stagehand.src.models.pod import STAGE_SEPARATOR, PipelineRunInfo, PodSnapshot
from stagehand.src.services.git_provider import GitProvider, GitProviderError
from stagehand.src.services.log_collector import LogStorageError, store_build_logs
from stagehand.src.services.stage_aggregator import StageArena, aggregate, is_finished, rollup
from stagehand.src.services.status_reporter import GitStatusReporter

logger = logging.getLogger(__name__)

@dataclass
class ReconcileResult:
    activity: PipelineActivity
    changed: bool

class BuildStatusReconciler:
    def __init__(
        self,
        store: ResourceStore,
        git: Optional[GitProvider] = None,
        reporter: Optional[GitStatusReporter] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.git = git
        self.reporter = reporter
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.clock = clock

    # Watch handlers

    def on_pod(self, pod: PodSnapshot) -> Optional[ReconcileResult]:
        build = build_name(pod)
        if not build:
            return None
        logger.debug(f"Found build pod {pod.name}")

        run_name = pod.labels.get(LABEL_PIPELINE_RUN, "")
        if run_name and pod.labels.get(LABEL_STAGE_NAME):
            run = self.load_run(run_name)
            if run is None:
                logger.warning(f"No pipeline run info created for PipelineRun {run_name}")
                return None
            return self.reconcile_run(run)
        return self.reconcile_pod(pod, build)

    def on_pipeline_run(self, run: dict) -> Optional[ReconcileResult]:
        metadata = run.get("metadata") or {}
        name = metadata.get("name", "")
        if not name:
            logger.warning(f"Skipping PipelineRun without a name: {run}")
            return None
        info = self.load_run(name, context=(metadata.get("labels") or {}).get(LABEL_CONTEXT, ""))
        if info is None:
            logger.debug(f"No pods yet for PipelineRun {name}")
            return None
        return self.reconcile_run(info)

    def load_run(self, run_name: str, context: str = "") -> Optional[PipelineRunInfo]:
        pods = self.store.list_pods(f"{LABEL_PIPELINE_RUN}={run_name}")
        structure = self.store.get_pipeline_structure(run_name)
        if not context:
            for pod in pods:
                context = pod.labels.get(LABEL_CONTEXT, "")
                if context:
                    break
        return create_pipeline_run_info(run_name, pods, structure, context=context)

    # Reconcile entry points

    def reconcile_pod(self, pod: PodSnapshot, build: str) -> Optional[ReconcileResult]:
        """Reconcile a standalone build pod: one stage whose steps are its containers."""
        key = create_activity_key(pod)
        if key is None:
            logger.debug(f"Ignoring pod {pod.name} without git metadata")
            return None
        arena = StageArena.from_pod(pod, pod.labels.get(LABEL_STAGE_NAME, ""))
        return self.reconcile(key, arena, build)

    def reconcile_run(self, run: PipelineRunInfo) -> Optional[ReconcileResult]:
        key = create_activity_key_for_run(run)
        if key is None:
            logger.debug(f"Ignoring pipeline run {run.name} without git metadata")
            return None
        return self.reconcile(key, StageArena.from_run(run), run.pipeline_run or run.name, context=run.context)

    def reconcile(self, key: ActivityKey, arena: StageArena, build: str,
                  context: str = "") -> Optional[ReconcileResult]:
        """
        Get or create the activity for `key`, refresh it from `arena` and
        persist it when it changed.

        Store failures are retried at a fixed interval a bounded number of
        times within an overall timeout; after that the event is dropped and
        the next event for the build starts over. Log storage and git
        reporting only run once the refreshed status has been written, so a
        retried write never repeats them.
        """
        interval = self.settings.get_or_create_retry_interval
        attempts = max(1, self.settings.get_or_create_attempts)
        deadline = self.clock() + self.settings.get_or_create_timeout
        name = key.resource_name

        for attempt in range(1, attempts + 1):
            try:
                activity, created = self.store.get_or_create_activity(key)
                previous = activity.spec.status
                changed = self.apply(activity, arena)
                if changed:
                    logger.debug(f"Updating PipelineActivity {activity.name} for build {build}")
                    activity = self.store.update_activity(activity)
                break
            except StoreError as e:
                logger.warning(f"Failed to update PipelineActivity {name} (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts or self.clock() + interval > deadline:
                    logger.warning(f"Giving up on PipelineActivity {name} for build {build}")
                    return None
                self.sleep(interval)

        completed = activity.spec.status.is_terminated() and not previous.is_terminated()
        if self.after_update(activity, build, completed, context=context, key=key):
            changed = True
            try:
                activity = self.store.update_activity(activity)
            except StoreError as e:
                logger.warning(f"Failed to record build logs and git status on PipelineActivity {name}: {e}")
        return ReconcileResult(activity=activity, changed=changed or created)

    # Status computation

    def apply(self, activity: PipelineActivity, arena: StageArena) -> bool:
        """Refresh stages and pipeline status in place; True if the record changed."""
        before = activity_snapshot(activity)

        update_stages(activity, arena)
        update_pipeline_status(activity)

        if not activity.spec.author and not self.settings.dry_run:
            self.complete_build_source_info(activity)

        return activity_snapshot(activity) != before

    def after_update(self, activity: PipelineActivity, build: str, completed: bool,
                     context: str = "", key: Optional[ActivityKey] = None) -> bool:
        """Side effects of a persisted status; True if they changed the record."""
        before = activity_snapshot(activity)
        if completed:
            self.on_completed(activity, build)

        if self.reporter is not None and self.settings.git_reporting:
            self.reporter.report(
                activity,
                context=context,
                last_commit_sha=key.last_commit_sha if key else "",
            )

        return activity_snapshot(activity) != before

    def on_completed(self, activity: PipelineActivity, build: str):
        """Side effects of an activity becoming terminal; runs once per transition."""
        log_job_completed_state(activity, build)

        spec = activity.spec
        if spec.build_logs_url or self.settings.dry_run or self.git is None:
            return
        try:
            url = store_build_logs(self.store, self.git, activity, build, self.settings)
        except (LogStorageError, StoreError, GitProviderError) as e:
            logger.warning(f"Failed to store build logs for {activity.name}: {e}")
            return
        if url:
            spec.build_logs_url = url

    def complete_build_source_info(self, activity: PipelineActivity):
        """Fill author, PR title and last commit message from the git provider."""
        if self.git is None or not activity.spec.git_url:
            return
        spec = activity.spec
        try:
            repo = parse_git_url(spec.git_url)
            if spec.git_branch.upper().startswith("PR-"):
                number = int(spec.git_branch[3:])
                pr = self.git.get_pull_request(repo.organisation, repo.name, number)
                spec.author = pr.author
                spec.pull_title = pr.title
                logger.info(f"PipelineActivity {activity.name} set with author={spec.author} and PR title={spec.pull_title}")
            else:
                commits = self.git.list_commits(repo.organisation, repo.name, spec.git_branch or "master", limit=1)
                if commits:
                    spec.author = commits[0].author
                    spec.last_commit_message = spec.last_commit_message or commits[0].message
                logger.info(f"PipelineActivity {activity.name} set with author={spec.author} and last message")
        except (GitURLError, GitProviderError, ValueError) as e:
            logger.warning(f"Error completing build information for {activity.name}: {e}")

def update_stages(activity: PipelineActivity, arena: StageArena):
    """Copy aggregated stage results onto the activity's stage steps."""
    for node, result in zip(arena.nodes, aggregate(arena)):
        stage, _ = get_or_create_stage(activity, result.name)
        if is_finished(stage.status, None) and not is_finished(result.status, None):
            # stale event or pod gone: keep what the stage reported last
            continue
        stage.status = result.status
        if stage.started_timestamp is None:
            stage.started_timestamp = result.started
        if result.completed is not None and stage.completed_timestamp is None:
            stage.completed_timestamp = result.completed
        if result.is_leaf and (node.steps or not stage.steps):
            stage.steps = result.steps

def update_pipeline_status(activity: PipelineActivity) -> bool:
    """
    Roll the pipeline status up over the activity's top-level stages.

    A pipeline that already reached a terminal status keeps it. Returns True
    if the pipeline is terminal after the update.
    """
    spec = activity.spec
    stages = activity.stages()
    top_level = [s for s in stages if STAGE_SEPARATOR not in s.name]
    summary = rollup((s.status, s.started_timestamp, s.completed_timestamp) for s in top_level)
    if spec.started_timestamp is None:
        spec.started_timestamp = summary.started

    if spec.status.is_terminated():
        return True

    # nothing running and something failed: later stages will never start
    failed = summary.failed or any(s.status == ActivityStatus.FAILED for s in stages)
    if summary.status.is_terminated() or (not summary.running and failed):
        if failed:
            spec.status = ActivityStatus.FAILED
            for stage in stages:
                if stage.status == ActivityStatus.PENDING:
                    stage.status = ActivityStatus.FAILED if _has_failed_child(stage, stages) else ActivityStatus.NOT_EXECUTED
        else:
            spec.status = ActivityStatus.SUCCEEDED
        if spec.completed_timestamp is None:
            spec.completed_timestamp = _latest_completion(stages) or now()
        return True

    spec.status = ActivityStatus.RUNNING if summary.running else ActivityStatus.PENDING
    return False

def _has_failed_child(stage, stages) -> bool:
    prefix = stage.name + STAGE_SEPARATOR
    return any(s.status == ActivityStatus.FAILED and s.name.startswith(prefix) for s in stages)

def _latest_completion(stages):
    times = [s.completed_timestamp for s in stages if s.completed_timestamp is not None]
    return max(times) if times else None

def log_job_completed_state(activity: PipelineActivity, build: str = ""):
    """Emit the "build completed" record with per-stage and per-step outcomes."""
    spec = activity.spec
    provider_url = ""
    if spec.git_url:
        try:
            provider_url = parse_git_url(spec.git_url).provider_url()
        except GitURLError as e:
            logger.warning(f"Unable to parse {spec.git_url} as git url: {e}")

    pr_number = ""
    if spec.git_branch.upper().startswith("PR-"):
        pr_number = spec.git_branch[3:]

    stages: List[str] = []
    for stage in activity.stages():
        steps = ", ".join(
            f"{step.name}={step.status.value}({duration_string(step.started_timestamp, step.completed_timestamp)})"
            for step in stage.steps
        )
        duration = duration_string(stage.started_timestamp, stage.completed_timestamp)
        stages.append(f"{stage.name}={stage.status.value}({duration})[{steps}]")

    logger.info(
        f"Build {activity.name} {spec.status.value} "
        f"name={activity.name} status={spec.status.value} gitOwner={spec.git_owner} "
        f"gitRepo={spec.git_repository} gitProviderUrl={provider_url} gitBranch={spec.git_branch} "
        f"buildNumber={spec.build} pullRequestNumber={pr_number} pipelineRun={build} "
        f"duration={duration_string(spec.started_timestamp, spec.completed_timestamp)} "
        f"stages=[{'; '.join(stages)}]"
    )
