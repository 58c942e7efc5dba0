"""
Stagehand controllers - Main entry point.
"""

import logging
import sys

from stagehand.src.config import get_settings
from stagehand.src.k8s.client import get_core_api, get_custom_api, init_k8s_client
from stagehand.src.k8s.store import ResourceStore, StoreError, backfill_activity_labels
from stagehand.src.k8s.watcher import ResourceEvent, ResourceKind, create_watchers
from stagehand.src.services.build_reconciler import BuildStatusReconciler
from stagehand.src.services.dedup import PipelineCache
from stagehand.src.services.git_provider import create_git_provider
from stagehand.src.services.poller import PromotionPoller
from stagehand.src.services.promoter import Promoter
from stagehand.src.services.status_reporter import GitStatusReporter
from stagehand.src.services.workflow_engine import WorkflowEngine
from stagehand.src.worker import Worker, deleted, run_worker

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

def build_handlers(reconciler=None, engine=None):
    """Visitor table from resource kind to handler."""
    handlers = {}
    if reconciler is not None:
        def on_pod(event: ResourceEvent):
            if not deleted(event):
                reconciler.on_pod(event.obj)

        def on_pipeline_run(event: ResourceEvent):
            if not deleted(event):
                reconciler.on_pipeline_run(event.obj)

        handlers[ResourceKind.POD] = on_pod
        handlers[ResourceKind.PIPELINE_RUN] = on_pipeline_run

    if engine is not None:
        def on_workflow(event: ResourceEvent):
            if deleted(event):
                engine.on_workflow_delete(event.name)
            else:
                engine.on_workflow(event.obj)

        def on_activity(event: ResourceEvent):
            if deleted(event):
                engine.on_activity_delete(event.name)
            else:
                engine.on_activity_event(event.obj)

        handlers[ResourceKind.WORKFLOW] = on_workflow
        handlers[ResourceKind.PIPELINE_ACTIVITY] = on_activity
    return handlers

def main():
    """Main entry point."""
    logger.info("Starting Stagehand controllers")
    logger.info(f"Kubernetes namespace: {settings.k8s_namespace}")
    logger.info(f"Controllers: {', '.join(settings.controllers)}")

    # Initialize Kubernetes client
    if not init_k8s_client():
        logger.error("Failed to initialize Kubernetes client")
        sys.exit(1)

    store = ResourceStore(get_core_api(), get_custom_api())
    git = create_git_provider(settings)

    reconciler = None
    engine = None
    poller = None
    kinds = []

    if "build" in settings.controllers:
        try:
            updated = backfill_activity_labels(store)
            logger.info(f"Backfilled labels on {updated} PipelineActivities")
        except StoreError as e:
            logger.warning(f"Failed to backfill PipelineActivity labels: {e}")
        reporter = GitStatusReporter(git, store)
        reconciler = BuildStatusReconciler(store, git, reporter)
        kinds += [ResourceKind.POD, ResourceKind.PIPELINE_RUN]

    if "workflow" in settings.controllers:
        promoter = Promoter(store, git)
        engine = WorkflowEngine(store, promoter, PipelineCache())
        poller = PromotionPoller(store, git, promoter, engine)
        kinds += [ResourceKind.WORKFLOW, ResourceKind.PIPELINE_ACTIVITY]

        if settings.no_watch:
            logger.info("Running workflow controller once without watching")
            engine.resync()
            poller.poll()
            return

    if not kinds:
        logger.error(f"No known controllers in {settings.controllers}")
        sys.exit(1)

    worker = Worker(build_handlers(reconciler, engine), poll=poller.poll if poller else None)
    watchers = create_watchers(kinds, worker.emit, worker.stop_event, get_core_api(), get_custom_api())

    logger.info("Starting worker...")
    run_worker(worker, watchers)

if __name__ == "__main__":
    main()
