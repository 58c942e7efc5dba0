from stagehand.src.k8s.client import (
    init_k8s_client,
    get_core_api,
    get_custom_api,
    get_pod_logs,
)
from stagehand.src.k8s.build_info import (
    ActivityKey,
    create_activity_key,
    create_activity_key_for_run,
    create_pipeline_run_info,
)
from stagehand.src.k8s.store import (
    ResourceStore,
    StoreError,
    backfill_activity_labels,
)
from stagehand.src.k8s.watcher import (
    ResourceEvent,
    ResourceKind,
    ResourceWatcher,
    create_watchers,
)

__all__ = [
    "init_k8s_client",
    "get_core_api",
    "get_custom_api",
    "get_pod_logs",
    "ActivityKey",
    "create_activity_key",
    "create_activity_key_for_run",
    "create_pipeline_run_info",
    "ResourceStore",
    "StoreError",
    "backfill_activity_labels",
    "ResourceEvent",
    "ResourceKind",
    "ResourceWatcher",
    "create_watchers",
]
