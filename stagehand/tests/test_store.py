"""Tests for resource store access."""

import pytest
from conftest import make_activity
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from stagehand.src.k8s.build_info import ActivityKey
from stagehand.src.k8s.store import ResourceStore, StoreError, backfill_activity_labels, provider_name
from stagehand.src.models.activity import ObjectMeta, PipelineActivity
from stagehand.src.models.git import parse_git_url
from stagehand.src.models.workflow import CommitStatus

class _CustomApi:
    def __init__(self, status):
        self.status = status

    def get_namespaced_custom_object(self, **kwargs):
        raise ApiException(status=self.status, reason="nope")

def _key():
    return ActivityKey(
        name="acme-app-master-2",
        pipeline="acme/app/master",
        build="2",
        branch="master",
        git=parse_git_url("https://github.com/acme/app.git"),
    )

def test_missing_resource_is_none(settings):
    store = ResourceStore(core_api=object(), custom_api=_CustomApi(404), settings=settings)
    assert store.get_activity("x") is None

def test_api_errors_become_store_errors(settings):
    store = ResourceStore(core_api=object(), custom_api=_CustomApi(500), settings=settings)
    with pytest.raises(StoreError, match="nope"):
        store.get_activity("x")

class _UnreachableApi:
    def replace_namespaced_custom_object(self, **kwargs):
        raise MaxRetryError(pool=None, url="/apis/stagehand.dev/v1", reason=ConnectionRefusedError("refused"))

def test_connection_errors_become_store_errors(settings):
    store = ResourceStore(core_api=object(), custom_api=_UnreachableApi(), settings=settings)
    with pytest.raises(StoreError, match="failed to update pipelineactivities"):
        store.update_activity(make_activity())

def test_get_or_create_activity(store):
    activity, created = store.get_or_create_activity(_key())
    assert created
    assert activity.spec.pipeline == "acme/app/master"
    assert activity.spec.git_owner == "acme"
    assert activity.metadata.labels == {
        "owner": "acme",
        "repository": "app",
        "branch": "master",
        "build": "2",
        "sourcerepository": "acme-app",
        "provider": "github",
    }

    again, created = store.get_or_create_activity(_key())
    assert not created
    assert again.metadata.resource_version == activity.metadata.resource_version
    assert len(store.writes) == 1

def test_update_activity_tracks_resource_version(store):
    activity = store.create_activity(make_activity())
    version = activity.metadata.resource_version
    store.update_activity(activity)
    assert activity.metadata.resource_version != version

def test_backfill_labels(store):
    store.put("pipelineactivities", make_activity())
    store.put("pipelineactivities", PipelineActivity(metadata=ObjectMeta(name="empty")))

    assert backfill_activity_labels(store) == 2
    assert store.activity("acme-app-master-1").metadata.labels["repository"] == "app"
    assert store.activity("empty").metadata.labels == {"branch": "master"}
    assert backfill_activity_labels(store) == 0

def test_provider_name():
    assert provider_name("https://github.com/acme/app.git") == "github"
    assert provider_name("git@gitlab.example.com:acme/app.git") == "example"
    assert provider_name("") == ""

def test_save_commit_status(store):
    record = CommitStatus(metadata=ObjectMeta(name="acme-app-abc"))
    record.item_for("stagehand", "acme-app-master-1").pass_ = True
    saved = store.save_commit_status(record)
    assert saved.metadata.resource_version

    saved.item_for("stagehand", "acme-app-master-1").checked = True
    store.save_commit_status(saved)
    assert store.writes[-1][0] == "update"
    stored = store.get_commit_status("acme-app-abc")
    assert len(stored.spec.items) == 1
    assert stored.spec.items[0].pass_ and stored.spec.items[0].checked
