"""
Resource store access for PipelineActivity, Workflow, Environment and
related custom resources.
"""

import logging
from typing import Dict, List, Optional, Tuple

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from stagehand.src.config import Settings, get_settings
from stagehand.src.k8s.build_info import ActivityKey
from stagehand.src.models.activity import (
    LABEL_BRANCH,
    LABEL_BUILD,
    LABEL_OWNER,
    LABEL_PROVIDER,
    LABEL_REPOSITORY,
    LABEL_SOURCE_REPOSITORY,
    ObjectMeta,
    PipelineActivity,
    to_valid_name,
)
from stagehand.src.models.pod import PodSnapshot
from stagehand.src.models.workflow import CommitStatus, Environment, Release, Workflow

logger = logging.getLogger(__name__)

PIPELINE_ACTIVITIES = "pipelineactivities"
WORKFLOWS = "workflows"
ENVIRONMENTS = "environments"
RELEASES = "releases"
PIPELINE_STRUCTURES = "pipelinestructures"
COMMIT_STATUSES = "commitstatuses"

LABEL_LOG_MASK = "stagehand.dev/mask-in-logs"

class StoreError(Exception):
    """Raised when the resource store rejects or fails a request."""
    pass

class ResourceStore:
    """
    Typed access to the custom resources the controllers read and write.

    The `_get`/`_list`/`_create`/`_replace` primitives are the only methods
    talking to the Kubernetes API.
    """

    def __init__(self, core_api=None, custom_api=None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.namespace = self.settings.k8s_namespace
        self._core = core_api
        self._custom = custom_api

    @property
    def core(self):
        if self._core is None:
            from stagehand.src.k8s.client import get_core_api
            self._core = get_core_api()
        return self._core

    @property
    def custom(self):
        if self._custom is None:
            from stagehand.src.k8s.client import get_custom_api
            self._custom = get_custom_api()
        return self._custom

    # Raw custom resource primitives

    def _get(self, plural: str, name: str, namespace: Optional[str] = None) -> Optional[dict]:
        try:
            return self.custom.get_namespaced_custom_object(
                group=self.settings.crd_group,
                version=self.settings.crd_version,
                namespace=namespace or self.namespace,
                plural=plural,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"failed to get {plural} {name}: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to get {plural} {name}: {e}") from e

    def _list(self, plural: str, label_selector: str = "") -> List[dict]:
        try:
            result = self.custom.list_namespaced_custom_object(
                group=self.settings.crd_group,
                version=self.settings.crd_version,
                namespace=self.namespace,
                plural=plural,
                label_selector=label_selector,
            )
        except ApiException as e:
            raise StoreError(f"failed to list {plural}: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to list {plural}: {e}") from e
        return result.get("items", [])

    def _create(self, plural: str, body: dict) -> dict:
        try:
            return self.custom.create_namespaced_custom_object(
                group=self.settings.crd_group,
                version=self.settings.crd_version,
                namespace=self.namespace,
                plural=plural,
                body=body,
            )
        except ApiException as e:
            raise StoreError(f"failed to create {plural} {body['metadata']['name']}: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to create {plural} {body['metadata']['name']}: {e}") from e

    def _replace(self, plural: str, body: dict) -> dict:
        name = body["metadata"]["name"]
        try:
            return self.custom.replace_namespaced_custom_object(
                group=self.settings.crd_group,
                version=self.settings.crd_version,
                namespace=self.namespace,
                plural=plural,
                name=name,
                body=body,
            )
        except ApiException as e:
            raise StoreError(f"failed to update {plural} {name}: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to update {plural} {name}: {e}") from e

    def _body(self, kind: str, resource) -> dict:
        body = resource.to_body() if hasattr(resource, "to_body") else resource.model_dump(
            mode="json", by_alias=True, exclude_none=True
        )
        body["apiVersion"] = f"{self.settings.crd_group}/{self.settings.crd_version}"
        body["kind"] = kind
        body["metadata"].setdefault("namespace", self.namespace)
        return body

    # PipelineActivity

    def get_activity(self, name: str) -> Optional[PipelineActivity]:
        data = self._get(PIPELINE_ACTIVITIES, name)
        return PipelineActivity.model_validate(data) if data else None

    def list_activities(self) -> List[PipelineActivity]:
        return [PipelineActivity.model_validate(d) for d in self._list(PIPELINE_ACTIVITIES)]

    def create_activity(self, activity: PipelineActivity) -> PipelineActivity:
        data = self._create(PIPELINE_ACTIVITIES, self._body("PipelineActivity", activity))
        return PipelineActivity.model_validate(data)

    def update_activity(self, activity: PipelineActivity) -> PipelineActivity:
        data = self._replace(PIPELINE_ACTIVITIES, self._body("PipelineActivity", activity))
        updated = PipelineActivity.model_validate(data)
        activity.metadata.resource_version = updated.metadata.resource_version
        return updated

    def get_or_create_activity(self, key: ActivityKey) -> Tuple[PipelineActivity, bool]:
        """
        Fetch the activity for a key, creating it when missing.

        Empty spec fields are filled in from the key and the identity labels
        are refreshed; an existing record is only written back when that
        changed something.
        """
        name = key.resource_name
        activity = self.get_activity(name)
        if activity is None:
            activity = PipelineActivity(metadata=ObjectMeta(name=name, namespace=self.namespace))
            apply_key(key, activity)
            return self.create_activity(activity), True

        before = activity.model_dump()
        apply_key(key, activity)
        if activity.model_dump() != before:
            activity = self.update_activity(activity)
        return activity, False

    # Workflow, Environment, Release, PipelineStructure

    def get_workflow(self, name: str) -> Optional[Workflow]:
        data = self._get(WORKFLOWS, name)
        return Workflow.model_validate(data) if data else None

    def list_workflows(self) -> List[Workflow]:
        return [Workflow.model_validate(d) for d in self._list(WORKFLOWS)]

    def get_environment(self, name: str) -> Optional[Environment]:
        data = self._get(ENVIRONMENTS, name)
        return Environment.model_validate(data) if data else None

    def get_release(self, name: str, namespace: Optional[str] = None) -> Optional[Release]:
        data = self._get(RELEASES, name, namespace=namespace)
        return Release.model_validate(data) if data else None

    def get_pipeline_structure(self, name: str) -> Optional[dict]:
        return self._get(PIPELINE_STRUCTURES, name)

    def get_commit_status(self, name: str) -> Optional[CommitStatus]:
        data = self._get(COMMIT_STATUSES, name)
        return CommitStatus.model_validate(data) if data else None

    def save_commit_status(self, status: CommitStatus) -> CommitStatus:
        body = self._body("CommitStatus", status)
        if status.metadata.resource_version:
            data = self._replace(COMMIT_STATUSES, body)
        else:
            data = self._create(COMMIT_STATUSES, body)
        return CommitStatus.model_validate(data)

    # Pods, logs and secrets

    def list_pods(self, label_selector: str) -> List[PodSnapshot]:
        try:
            pods = self.core.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=label_selector,
            )
        except ApiException as e:
            raise StoreError(f"failed to list pods for {label_selector}: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to list pods for {label_selector}: {e}") from e
        return [PodSnapshot.from_k8s(p) for p in pods.items]

    def read_pod_log(self, pod_name: str, container: str) -> str:
        from stagehand.src.k8s.client import get_pod_logs
        try:
            return get_pod_logs(pod_name, namespace=self.namespace, container=container)
        except ApiException as e:
            raise StoreError(f"failed to read logs of {pod_name}/{container}: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to read logs of {pod_name}/{container}: {e}") from e

    def list_masked_secret_values(self) -> List[str]:
        """Decoded values of the secrets labelled for masking in build logs."""
        import base64
        try:
            secrets = self.core.list_namespaced_secret(
                namespace=self.namespace,
                label_selector=f"{LABEL_LOG_MASK}=true",
            )
        except ApiException as e:
            raise StoreError(f"failed to list secrets: {e.reason}") from e
        except HTTPError as e:
            raise StoreError(f"failed to list secrets: {e}") from e

        values = []
        for secret in secrets.items:
            for encoded in (secret.data or {}).values():
                try:
                    value = base64.b64decode(encoded).decode("utf-8")
                except (ValueError, UnicodeDecodeError):
                    continue
                if value:
                    values.append(value)
        return values

def apply_key(key: ActivityKey, activity: PipelineActivity):
    """Fill empty spec fields and identity labels of an activity from its key."""
    spec = activity.spec
    spec.pipeline = spec.pipeline or key.pipeline
    spec.build = spec.build or key.build
    spec.context = spec.context or key.context
    spec.git_branch = spec.git_branch or key.branch
    spec.last_commit_sha = spec.last_commit_sha or key.last_commit_sha
    spec.last_commit_message = spec.last_commit_message or key.last_commit_message
    spec.last_commit_url = spec.last_commit_url or key.last_commit_url
    if key.git is not None:
        spec.git_url = spec.git_url or key.git.url
        spec.git_owner = spec.git_owner or key.git.organisation
        spec.git_repository = spec.git_repository or key.git.name

    labels = activity.metadata.labels
    owner = activity.repository_owner()
    repository = activity.repository_name()
    identity = {
        LABEL_OWNER: owner,
        LABEL_REPOSITORY: repository,
        LABEL_BRANCH: activity.branch_name(),
        LABEL_BUILD: spec.build,
        LABEL_SOURCE_REPOSITORY: to_valid_name(f"{owner}-{repository}"),
        LABEL_PROVIDER: provider_name(spec.git_url),
    }
    for label, value in identity.items():
        if value:
            labels[label] = value

def provider_name(git_url: str) -> str:
    """Short provider name for a git URL, e.g. `github`."""
    if not git_url:
        return ""
    from stagehand.src.models.git import GitURLError, parse_git_url
    try:
        host = parse_git_url(git_url).host
    except GitURLError:
        return ""
    parts = host.split(".")
    return parts[-2] if len(parts) > 1 else host

def backfill_activity_labels(store: ResourceStore) -> int:
    """
    Add missing identity labels to existing PipelineActivities.

    Older activities were written without labels; returns how many were updated.
    """
    updated = 0
    for activity in store.list_activities():
        before: Dict[str, str] = dict(activity.metadata.labels)
        apply_key(ActivityKey(name=activity.name, pipeline="", build=""), activity)
        if activity.metadata.labels != before:
            store.update_activity(activity)
            logger.info(f"Updated labels on PipelineActivity {activity.name}")
            updated += 1
    return updated
