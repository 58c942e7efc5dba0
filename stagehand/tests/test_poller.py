"""Tests for promotion pull request polling."""

import pytest
from conftest import make_activity

from stagehand.src.models.activity import (
    ActivityStatus,
    find_promote,
    get_or_create_promote,
    start_promotion_pull_request,
)
from stagehand.src.services.git_provider import CommitStatusInfo, PullRequestInfo
from stagehand.src.services.poller import MERGE_MESSAGE, PromotionPoller
from stagehand.src.services.workflow_engine import WorkflowEngine

PR_URL = "https://github.com/acme/env-staging/pull/7"

class FakePromoter:
    def __init__(self):
        self.promoted = []
        self.commented = []

    def promote(self, activity, environment, rebase=False):
        self.promoted.append((environment, rebase))

    def comment_on_issues(self, activity, environment):
        self.commented.append(environment)
        return 0

@pytest.fixture
def promoter():
    return FakePromoter()

@pytest.fixture
def poller(store, git, promoter, settings):
    engine = WorkflowEngine(store, promoter, settings=settings)
    return PromotionPoller(store, git, promoter, engine, settings)

def _promoting_activity(store):
    activity = make_activity(version="1.0.0", workflow="default")
    promote, _ = get_or_create_promote(activity, "staging")
    start_promotion_pull_request(promote, PR_URL)
    store.put("pipelineactivities", activity)
    return activity

def _merged_pr():
    return PullRequestInfo(number=7, url=PR_URL, state="closed", merged=True, merge_commit_sha="m1")

def test_merged_without_waiting_completes_promotion(store, git, poller, promoter, settings):
    settings.no_wait_for_update_pipeline = True
    _promoting_activity(store)
    git.pull_requests[7] = _merged_pr()

    poller.poll()

    promote = find_promote(store.activity("acme-app-master-1"), "staging")
    assert promote.status == ActivityStatus.SUCCEEDED
    assert promote.pull_request.status == ActivityStatus.SUCCEEDED
    assert promote.pull_request.merge_commit_sha == "m1"
    assert promote.update.status == ActivityStatus.SUCCEEDED
    assert promoter.commented == ["staging"]
    assert git.called("list_commit_status") == []

def test_merged_waits_for_every_check(store, git, poller, promoter):
    activity = _promoting_activity(store)
    git.pull_requests[7] = _merged_pr()
    git.commit_statuses = [
        CommitStatusInfo(state="pending", context="deploy", target_url="https://ci/deploy"),
        CommitStatusInfo(state="success", context="lint", target_url="https://ci/lint"),
    ]

    poller.poll_activity(activity)
    promote = find_promote(store.activity(activity.name), "staging")
    assert promote.pull_request.status == ActivityStatus.SUCCEEDED
    assert promote.update.status == ActivityStatus.RUNNING
    assert {s.url: s.status for s in promote.update.statuses} == {
        "https://ci/deploy": "pending",
        "https://ci/lint": "success",
    }
    assert promoter.commented == []

    # newest first: the deploy check has since succeeded
    git.commit_statuses.insert(0, CommitStatusInfo(state="success", context="deploy", target_url="https://ci/deploy"))
    poller.poll_activity(activity)
    promote = find_promote(store.activity(activity.name), "staging")
    assert promote.update.status == ActivityStatus.SUCCEEDED
    assert promote.status == ActivityStatus.SUCCEEDED
    assert promoter.commented == ["staging"]

def test_failed_merge_status_stops(store, git, poller, promoter):
    activity = _promoting_activity(store)
    git.pull_requests[7] = _merged_pr()
    git.commit_statuses = [CommitStatusInfo(state="failure", context="deploy", target_url="https://ci/deploy")]

    poller.poll_activity(activity)
    promote = find_promote(store.activity(activity.name), "staging")
    assert promote.status == ActivityStatus.RUNNING
    assert promote.update.status == ActivityStatus.RUNNING
    assert promoter.commented == []

def test_green_pull_request_is_merged(store, git, poller):
    activity = _promoting_activity(store)
    git.pull_requests[7] = PullRequestInfo(number=7, url=PR_URL, head_sha="h1")
    git.last_commit_status = "success"

    poller.poll_activity(activity)
    assert git.called("merge_pull_request") == [("merge_pull_request", "acme", "env-staging", 7, MERGE_MESSAGE)]

def test_merge_can_be_disabled(store, git, poller, settings):
    settings.no_merge_pull_request = True
    activity = _promoting_activity(store)
    git.pull_requests[7] = PullRequestInfo(number=7, url=PR_URL, head_sha="h1")
    git.last_commit_status = "success"

    poller.poll_activity(activity)
    assert git.called("merge_pull_request") == []

def test_failing_pull_request_is_not_rebased(store, git, poller, promoter):
    activity = _promoting_activity(store)
    git.pull_requests[7] = PullRequestInfo(number=7, url=PR_URL, head_sha="h1", mergeable=False)
    git.last_commit_status = "failure"

    poller.poll_activity(activity)
    assert git.called("merge_pull_request") == []
    assert promoter.promoted == []

def test_conflicting_pull_request_is_rebased(store, git, poller, promoter):
    activity = _promoting_activity(store)
    git.pull_requests[7] = PullRequestInfo(number=7, url=PR_URL, head_sha="h1", mergeable=False)
    git.last_commit_status = "pending"

    poller.poll_activity(activity)
    assert promoter.promoted == [("staging", True)]

def test_closed_pull_request_is_left_pending(store, git, poller, promoter):
    activity = _promoting_activity(store)
    git.pull_requests[7] = PullRequestInfo(number=7, url=PR_URL, state="closed")

    poller.poll_activity(activity)
    assert find_promote(store.activity(activity.name), "staging").status == ActivityStatus.RUNNING
    assert git.called("pull_request_last_commit_status") == []
    assert store.writes == []

def test_finished_promotions_are_skipped(store, git, poller):
    activity = _promoting_activity(store)
    find_promote(activity, "staging").status = ActivityStatus.SUCCEEDED

    poller.poll_activity(activity)
    assert git.calls == []

def test_older_builds_without_promotions_are_left_alone(store, git, poller):
    old = make_activity(name="acme-app-master-1", build="1", version="0.9.0", workflow="default",
                        status=ActivityStatus.SUCCEEDED)
    store.put("pipelineactivities", old)
    newer = make_activity(name="acme-app-master-3", build="3", version="1.0.0", workflow="default")
    promote, _ = get_or_create_promote(newer, "staging")
    start_promotion_pull_request(promote, PR_URL)
    store.put("pipelineactivities", newer)
    poller.engine.cache.put_activity(newer)
    git.pull_requests[7] = PullRequestInfo(number=7, url=PR_URL, head_sha="h1")

    for _ in range(3):
        poller.poll()

    assert store.activity("acme-app-master-1").spec.status == ActivityStatus.SUCCEEDED
    assert store.updates_of("acme-app-master-1") == 0
    assert len(git.called("get_pull_request")) == 3
