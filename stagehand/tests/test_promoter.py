"""Tests for promotion pull requests."""

import pytest
import yaml
from conftest import make_activity

from stagehand.src.models.activity import ActivityStatus, ObjectMeta, find_promote
from stagehand.src.models.workflow import (
    Environment,
    EnvironmentSource,
    EnvironmentSpec,
    IssueSummary,
    Release,
    ReleaseSpec,
)
from stagehand.src.services.promoter import REQUIREMENTS_PATH, Promoter, PromotionError, update_requirements
from stagehand.src.services.workflow_engine import WorkflowEngine

@pytest.fixture
def promoter(store, git, settings):
    store.put("environments", Environment(
        metadata=ObjectMeta(name="staging"),
        spec=EnvironmentSpec(source=EnvironmentSource(url="https://github.com/acme/env-staging.git")),
    ))
    return Promoter(store, git, settings)

def test_update_requirements_bumps_existing():
    text = "dependencies:\n- name: app\n  version: 0.9.0\n- name: db\n  version: 1.0.0\n"
    data = yaml.safe_load(update_requirements(text, "app", "1.0.0"))
    assert data["dependencies"] == [
        {"name": "app", "version": "1.0.0"},
        {"name": "db", "version": "1.0.0"},
    ]

def test_update_requirements_adds_missing():
    data = yaml.safe_load(update_requirements(None, "app", "1.0.0"))
    assert data == {"dependencies": [{"name": "app", "version": "1.0.0"}]}

def test_promote_opens_pull_request(store, git, promoter):
    activity = make_activity(version="1.0.0")
    store.put("pipelineactivities", activity)

    pr = promoter.promote(activity, "staging")

    assert git.called("create_branch") == [("create_branch", "acme", "env-staging", "promote-app-1.0.0", "master")]
    assert git.called("create_pull_request")[0][3] == "chore: app to 1.0.0"
    content, _ = git.files[REQUIREMENTS_PATH]
    assert yaml.safe_load(content)["dependencies"] == [{"name": "app", "version": "1.0.0"}]

    promote = find_promote(store.activity(activity.name), "staging")
    assert promote.status == ActivityStatus.RUNNING
    assert promote.pull_request.pull_request_url == pr.url
    # an activity without build stages gets a completed release stage
    assert activity.stages()[0].name == "Release"

def test_rebase_uses_fresh_branch(git, promoter):
    promoter.promote(make_activity(version="1.0.0"), "staging", rebase=True)
    branch = git.called("create_branch")[0][3]
    assert branch.startswith("promote-app-1.0.0-")
    assert len(branch) == len("promote-app-1.0.0-") + 14

def test_environment_ref_is_base_branch(store, git, settings):
    store.put("environments", Environment(
        metadata=ObjectMeta(name="production"),
        spec=EnvironmentSpec(source=EnvironmentSource(url="https://github.com/acme/env-prod.git", ref="main")),
    ))
    Promoter(store, git, settings).promote(make_activity(version="1.0.0"), "production")
    assert git.called("get_default_branch") == []
    assert git.called("create_pull_request")[0][5] == "main"

def test_unknown_environment(promoter):
    with pytest.raises(PromotionError, match="not found"):
        promoter.promote(make_activity(version="1.0.0"), "qa")

def test_git_failure_is_wrapped(git, promoter):
    git.fail = True
    with pytest.raises(PromotionError, match="failed to promote"):
        promoter.promote(make_activity(version="1.0.0"), "staging")

def test_dry_run_opens_nothing(git, promoter, settings):
    settings.dry_run = True
    assert promoter.promote(make_activity(version="1.0.0"), "staging") is None
    assert git.calls == []

def test_comment_on_closed_issues(store, git, promoter):
    store.put("releases", Release(
        metadata=ObjectMeta(name="app-1.0.0"),
        spec=ReleaseSpec(version="1.0.0", issues=[
            IssueSummary(id="1", url="https://github.com/acme/app/issues/1", state="closed"),
            IssueSummary(id="2", url="https://github.com/acme/app/issues/2", state="open"),
        ]),
    ))

    assert promoter.comment_on_issues(make_activity(version="1.0.0"), "staging") == 1
    comment = git.called("create_issue_comment")[0]
    assert comment[1:4] == ("acme", "app", 1)
    assert "**staging**" in comment[4]

def test_pull_request_recorded_after_failed_write(store, git, promoter):
    activity = make_activity(version="1.0.0", workflow="default")
    store.put("pipelineactivities", activity)
    store.fail_writes = 1

    pr = promoter.promote(activity, "staging")

    promote = find_promote(store.activity(activity.name), "staging")
    assert promote.pull_request.pull_request_url == pr.url
    assert find_promote(activity, "staging").pull_request.pull_request_url == pr.url
    assert len(git.called("create_pull_request")) == 1

def test_lost_record_reuses_open_pull_request(store, git, promoter, settings):
    engine = WorkflowEngine(store, promoter, settings=settings)
    activity = make_activity(version="1.0.0", workflow="default")
    store.put("pipelineactivities", activity)
    store.fail_writes = settings.get_or_create_attempts

    engine.on_activity_event(store.activity(activity.name))
    assert find_promote(store.activity(activity.name), "staging") is None

    engine.on_activity_event(store.activity(activity.name))
    promote = find_promote(store.activity(activity.name), "staging")
    assert promote.pull_request.pull_request_url == "https://github.com/acme/env-staging/pull/101"
    assert len(git.called("create_branch")) == 1
    assert len(git.called("create_pull_request")) == 1

def test_existing_branch_is_updated(store, git, promoter):
    git.branches.append("promote-app-1.0.0")
    git.files[REQUIREMENTS_PATH] = ("dependencies:\n- name: app\n  version: 0.9.0\n", "blob-1")

    pr = promoter.promote(make_activity(version="1.0.0"), "staging")

    assert git.called("get_file")[0][4] == "promote-app-1.0.0"
    assert git.called("put_file")[0][4] == "promote-app-1.0.0"
    assert pr.url == "https://github.com/acme/env-staging/pull/101"
