"""Tests for the promotion workflow engine."""

import pytest
from conftest import make_activity

from stagehand.src.models.activity import (
    ActivityStatus,
    ObjectMeta,
    find_promote,
    get_or_create_promote,
    start_promotion_pull_request,
)
from stagehand.src.models.workflow import (
    Preconditions,
    PromoteWorkflowStep,
    Workflow,
    WorkflowSpec,
    WorkflowStep,
)
from stagehand.src.services.workflow_engine import WorkflowEngine, is_release_branch

class FakePromoter:
    def __init__(self):
        self.promoted = []

    def promote(self, activity, environment, rebase=False):
        self.promoted.append((activity.name, environment, rebase))
        promote, _ = get_or_create_promote(activity, environment)
        start_promotion_pull_request(promote, f"https://github.com/acme/env-{environment}/pull/1")

def _release_workflow():
    return Workflow(
        metadata=ObjectMeta(name="release"),
        spec=WorkflowSpec(steps=[
            WorkflowStep(promote=PromoteWorkflowStep(environment="staging")),
            WorkflowStep(
                promote=PromoteWorkflowStep(environment="production"),
                preconditions=Preconditions(environments=["staging"]),
            ),
        ]),
    )

@pytest.fixture
def promoter():
    return FakePromoter()

@pytest.fixture
def engine(store, promoter, settings):
    engine = WorkflowEngine(store, promoter, settings=settings)
    engine.on_workflow(_release_workflow())
    return engine

def test_is_release_branch():
    assert is_release_branch("master", ["master", "release-*"])
    assert is_release_branch("release-1.2", ["master", "release-*"])
    assert not is_release_branch("feature", ["master", "release-*"])

def test_promotes_in_precondition_order(store, engine, promoter):
    activity = make_activity(version="1.0.0", workflow="release")
    store.put("pipelineactivities", activity)

    engine.on_activity(activity)
    assert promoter.promoted == [("acme-app-master-1", "staging", False)]

    engine.on_activity(activity)
    assert len(promoter.promoted) == 1

    find_promote(activity, "staging").status = ActivityStatus.SUCCEEDED
    engine.on_activity(activity)
    assert promoter.promoted[-1] == ("acme-app-master-1", "production", False)

    find_promote(activity, "production").status = ActivityStatus.SUCCEEDED
    engine.on_activity(activity)
    stored = store.activity(activity.name)
    assert stored.spec.workflow_status == ActivityStatus.SUCCEEDED
    assert stored.spec.status == ActivityStatus.SUCCEEDED

def test_default_workflow_promotes_to_default_environment(engine, promoter):
    engine.on_activity(make_activity(version="1.0.0", workflow="default"))
    assert promoter.promoted == [("acme-app-master-1", "staging", False)]
    assert engine.cache.get_workflow("default") is not None

def test_unknown_workflow_is_ignored(engine, promoter):
    engine.on_activity(make_activity(version="1.0.0", workflow="nightly"))
    assert promoter.promoted == []

def test_non_release_branch_is_ignored(engine, promoter):
    activity = make_activity(
        name="acme-app-feature-1",
        version="1.0.0",
        workflow="release",
        pipeline="acme/app/feature",
        git_branch="feature",
    )
    engine.on_activity(activity)
    assert promoter.promoted == []
    assert engine.cache.get_activity(activity.name) is None

def test_missing_version_is_evicted(engine, promoter):
    activity = make_activity(workflow="release")
    engine.cache.put_activity(activity)
    engine.on_activity(activity)
    assert promoter.promoted == []
    assert engine.cache.get_activity(activity.name) is None

def test_finished_workflow_is_left_alone(engine, promoter):
    engine.on_activity(make_activity(version="1.0.0", workflow="release", workflow_status=ActivityStatus.SUCCEEDED))
    assert promoter.promoted == []

def test_superseded_build_does_not_promote(store, engine, promoter):
    newer = make_activity(name="acme-app-master-3", build="3", version="1.0.3", workflow="release")
    engine.cache.put_activity(newer)
    older = make_activity(name="acme-app-master-1", build="1", version="1.0.1", workflow="release")
    store.put("pipelineactivities", older)

    engine.on_activity(older)
    assert promoter.promoted == []
    assert store.activity(older.name).spec.status == ActivityStatus.ABORTED

def test_event_uses_newer_stored_copy(store, engine, promoter):
    stale = make_activity(version="1.0.0")
    store.put("pipelineactivities", make_activity(version="1.0.0", workflow="release"))

    engine.on_activity_event(stale)
    assert promoter.promoted == [("acme-app-master-1", "staging", False)]

def test_resync_processes_stored_activities(store, engine, promoter):
    store.put("pipelineactivities", make_activity(version="1.0.0", workflow="release"))
    engine.resync()
    assert promoter.promoted == [("acme-app-master-1", "staging", False)]
