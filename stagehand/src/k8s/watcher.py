"""
List+watch streams for the resource kinds the controllers react to.

Each kind is watched from its own thread. Raw objects are normalised into
`ResourceEvent`s and handed to a callback, which is expected to be
thread-safe (the worker pushes them onto its asyncio queue).
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.build_info import LABEL_BUILD_NAME, LABEL_PIPELINE_RUN
from stagehand.src.models.activity import PipelineActivity
from stagehand.src.models.pod import PodSnapshot
from stagehand.src.models.workflow import Workflow

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 300
ERROR_BACKOFF_SECONDS = 5.0

# build pods carry one of these labels
BUILD_POD_SELECTORS = (LABEL_PIPELINE_RUN, LABEL_BUILD_NAME)

class ResourceKind(str, Enum):
    POD = "Pod"
    PIPELINE_RUN = "PipelineRun"
    PIPELINE_ACTIVITY = "PipelineActivity"
    WORKFLOW = "Workflow"

class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"

@dataclass
class ResourceEvent:
    kind: ResourceKind
    type: EventType
    obj: Any

    @property
    def name(self) -> str:
        if isinstance(self.obj, dict):
            return (self.obj.get("metadata") or {}).get("name", "")
        return getattr(self.obj, "name", "")

def normalise(kind: ResourceKind, obj: Any) -> Any:
    """Turn a raw watch object into the model used by the handlers."""
    if kind == ResourceKind.POD:
        return PodSnapshot.from_k8s(obj)
    if not isinstance(obj, dict):
        raise TypeError(f"expected a dict for {kind.value}, got {type(obj).__name__}")
    if kind == ResourceKind.PIPELINE_ACTIVITY:
        return PipelineActivity.model_validate(obj)
    if kind == ResourceKind.WORKFLOW:
        return Workflow.model_validate(obj)
    return obj

def to_event(kind: ResourceKind, raw: dict) -> Optional[ResourceEvent]:
    """Build an event from a watch stream item; None for unknown or malformed payloads."""
    try:
        event_type = EventType(raw.get("type"))
        return ResourceEvent(kind=kind, type=event_type, obj=normalise(kind, raw.get("object")))
    except (ValueError, TypeError, AttributeError, ValidationError) as e:
        logger.warning(f"Skipping unexpected {kind.value} watch event {raw.get('type')}: {e}")
        return None

class ResourceWatcher(threading.Thread):
    def __init__(self, kind: ResourceKind, list_func: Callable, emit: Callable[[ResourceEvent], None],
                 stop_event: threading.Event, **list_kwargs):
        selector = list_kwargs.get("label_selector")
        super().__init__(name=f"watch-{kind.value}-{selector}" if selector else f"watch-{kind.value}", daemon=True)
        self.kind = kind
        self.list_func = list_func
        self.list_kwargs = list_kwargs
        self.emit = emit
        self.stop_event = stop_event
        self._watch: Optional[watch.Watch] = None

    def run(self):
        logger.info(f"Watching {self.kind.value} resources")
        while not self.stop_event.is_set():
            self._watch = watch.Watch()
            try:
                for raw in self._watch.stream(self.list_func, timeout_seconds=WATCH_TIMEOUT_SECONDS, **self.list_kwargs):
                    if self.stop_event.is_set():
                        break
                    event = to_event(self.kind, raw)
                    if event is not None:
                        self.emit(event)
            except ApiException as e:
                logger.warning(f"Watch of {self.kind.value} failed: {e.reason}")
                self.stop_event.wait(ERROR_BACKOFF_SECONDS)
            except Exception as e:
                logger.exception(f"Watch of {self.kind.value} crashed: {e}")
                self.stop_event.wait(ERROR_BACKOFF_SECONDS)
            finally:
                self._watch.stop()
        logger.info(f"Stopped watching {self.kind.value} resources")

    def stop(self):
        self.stop_event.set()
        if self._watch is not None:
            self._watch.stop()

def create_watchers(kinds, emit: Callable[[ResourceEvent], None], stop_event: threading.Event,
                    core_api, custom_api, settings: Optional[Settings] = None):
    """Watcher threads for each requested kind in the configured namespace."""
    settings = settings or get_settings()
    namespace = settings.k8s_namespace
    custom = {
        ResourceKind.PIPELINE_RUN: ("tekton.dev", "v1beta1", "pipelineruns"),
        ResourceKind.PIPELINE_ACTIVITY: (settings.crd_group, settings.crd_version, "pipelineactivities"),
        ResourceKind.WORKFLOW: (settings.crd_group, settings.crd_version, "workflows"),
    }

    watchers = []
    for kind in kinds:
        if kind == ResourceKind.POD:
            # a selector cannot OR two labels: one stream per build label
            for selector in BUILD_POD_SELECTORS:
                watchers.append(ResourceWatcher(
                    kind, core_api.list_namespaced_pod, emit, stop_event,
                    namespace=namespace, label_selector=selector,
                ))
        else:
            group, version, plural = custom[kind]
            watchers.append(ResourceWatcher(
                kind,
                custom_api.list_namespaced_custom_object,
                emit,
                stop_event,
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
            ))
    return watchers
