"""
Supersede older builds of the same pipeline.

Only the numerically newest build of a pipeline key is allowed to drive
promotions; older activities still cached are patched to Aborted.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from stagehand.src.k8s.store import ResourceStore
from stagehand.src.models.activity import ActivityStatus, PipelineActivity, activity_snapshot, now
from stagehand.src.models.workflow import Workflow

logger = logging.getLogger(__name__)

SUPERSEDED_MESSAGE = "superseded"

def is_newer_version(a: str, b: str) -> bool:
    """
    True if build ordinal `a` is newer than `b`.

    An unparsable `a` is treated as the oldest value; a parsable `a` beats an
    unparsable `b`.
    """
    try:
        left = int(a)
    except (TypeError, ValueError):
        return False
    try:
        right = int(b)
    except (TypeError, ValueError):
        return True
    return left > right

class PipelineCache:
    """Workflows and live pipeline activities seen by the workflow controller."""

    def __init__(self):
        self._lock = threading.Lock()
        self._workflows: Dict[str, Workflow] = {}
        self._pipelines: Dict[str, PipelineActivity] = {}

    def put_workflow(self, workflow: Workflow):
        with self._lock:
            self._workflows[workflow.name] = workflow

    def remove_workflow(self, name: str):
        with self._lock:
            self._workflows.pop(name, None)

    def get_workflow(self, name: str) -> Optional[Workflow]:
        with self._lock:
            return self._workflows.get(name)

    def put_activity(self, activity: PipelineActivity):
        with self._lock:
            self._pipelines[activity.name] = activity

    def remove_activity(self, name: str):
        with self._lock:
            self._pipelines.pop(name, None)

    def get_activity(self, name: str) -> Optional[PipelineActivity]:
        with self._lock:
            return self._pipelines.get(name)

    def activities_for_key(self, pipeline_key: str) -> List[PipelineActivity]:
        with self._lock:
            return [a for a in self._pipelines.values() if a.pipeline_key() == pipeline_key]

def set_activity_aborted(activity: PipelineActivity):
    spec = activity.spec
    spec.status = ActivityStatus.ABORTED
    spec.workflow_status = ActivityStatus.ABORTED
    spec.workflow_message = SUPERSEDED_MESSAGE
    if spec.completed_timestamp is None:
        spec.completed_timestamp = now()

class DedupGate:
    def __init__(self, cache: PipelineCache, store: ResourceStore):
        self.cache = cache
        self.store = store

    def check(self, activity: PipelineActivity) -> bool:
        """
        Returns True if the activity is the newest build of its pipeline key.

        Older cached builds are aborted and evicted; an older incoming build is
        aborted and evicted itself.
        """
        newest = True
        superseded = []
        build = activity.spec.build
        for other in self.cache.activities_for_key(activity.pipeline_key()):
            other_build = other.spec.build
            if other.name == activity.name or other_build == build:
                continue
            if is_newer_version(other_build, build):
                newest = False
            elif is_newer_version(build, other_build):
                superseded.append(other)

        for old in superseded:
            logger.debug(f"Removing old pipeline version {old.name}")
            self.modify_and_remove(old, set_activity_aborted)
        if not newest:
            logger.debug(f"Removing old pipeline version {activity.name}")
            self.modify_and_remove(activity, set_activity_aborted)
        return newest

    def modify_and_remove(self, activity: PipelineActivity, modify: Callable[[PipelineActivity], None]):
        """Apply `modify` to the stored copy of an activity, persist it if that changed it, and evict it."""
        current = self.store.get_activity(activity.name)
        if current is not None:
            before = activity_snapshot(current)
            modify(current)
            if activity_snapshot(current) != before:
                self.store.update_activity(current)
                logger.info(f"Aborted superseded PipelineActivity {activity.name} build={current.spec.build}")
        self.cache.remove_activity(activity.name)
