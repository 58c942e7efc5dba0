"""
Deduce pipeline metadata (git repository, branch, build number) from build pods.
"""

import logging
import re
from typing import Optional

from pydantic import BaseModel

from stagehand.src.models.activity import (
    LABEL_BRANCH,
    LABEL_BUILD,
    LABEL_CONTEXT,
    LABEL_OWNER,
    LABEL_REPOSITORY,
    to_valid_name,
)
from stagehand.src.models.git import GitRepository, GitURLError, parse_git_url
from stagehand.src.models.pod import PipelineRunInfo, PodSnapshot, StageInfo

logger = logging.getLogger(__name__)

LABEL_PIPELINE_RUN = "tekton.dev/pipelineRun"
LABEL_STAGE_NAME = "stagehand.dev/task-stage-name"
LABEL_BUILD_NAME = "build.knative.dev/buildName"

GIT_SOURCE_PREFIXES = ("build-step-git-source", "step-git-source")

_SHA = re.compile(r"^[a-f0-9]{40}$")

class ActivityKey(BaseModel):
    """Identity of the PipelineActivity a pod or run reports into."""
    name: str
    pipeline: str
    build: str
    context: str = ""
    branch: str = ""
    last_commit_sha: str = ""
    last_commit_message: str = ""
    last_commit_url: str = ""
    git: Optional[GitRepository] = None

    @property
    def resource_name(self) -> str:
        return to_valid_name(self.name)

def digit_suffix(text: str) -> str:
    """Trailing digits of a string, e.g. `build123` -> `123`."""
    match = re.search(r"(\d+)$", text)
    return match.group(1) if match else ""

def build_number_from_labels(labels: dict) -> str:
    for key in (LABEL_BUILD, "build-number", "jenkins.io/build"):
        if labels.get(key):
            return labels[key]
    return ""

def build_name(pod: PodSnapshot) -> str:
    """Name of the build a pod belongs to, or empty if it is not a build pod."""
    labels = pod.labels
    return labels.get(LABEL_BUILD_NAME) or labels.get(LABEL_PIPELINE_RUN) or ""

def create_activity_key(pod: PodSnapshot) -> Optional[ActivityKey]:
    """
    Work out the activity key of a build pod.

    Git details come from the git-source step's `-url`/`-revision` arguments
    and the well known environment variables injected into the steps. Returns
    None when the pod carries no git URL.
    """
    git_url = ""
    branch = ""
    owner = pod.labels.get(LABEL_OWNER, "")
    repo = pod.labels.get(LABEL_REPOSITORY, "")
    build = ""
    last_commit_sha = ""
    pull_sha = ""
    base_sha = ""

    for container in pod.containers:
        if container.name.startswith(GIT_SOURCE_PREFIXES):
            args = container.args
            for i in range(0, len(args) - 1, 2):
                key, value = args[i], args[i + 1]
                if key == "-url":
                    git_url = value
                elif key == "-revision":
                    if _SHA.match(value):
                        last_commit_sha = value
                    else:
                        branch = value

        env = container.env
        pull_sha = env.get("PULL_PULL_SHA", pull_sha)
        base_sha = env.get("PULL_BASE_SHA", base_sha)
        branch = env.get("BRANCH_NAME", branch)
        owner = env.get("REPO_OWNER", owner)
        repo = env.get("REPO_NAME", repo)
        build = env.get("JX_BUILD_NUMBER", build)
        if not git_url:
            git_url = env.get("SOURCE_URL", "")
        if not build:
            build = env.get("BUILD_NUMBER") or env.get("BUILD_ID") or ""

    if not last_commit_sha:
        last_commit_sha = pull_sha or base_sha
    branch = branch or pod.labels.get(LABEL_BRANCH, "") or "master"
    build = build or build_number_from_labels(pod.labels) or digit_suffix(build_name(pod)) or "1"

    if not git_url:
        return None
    try:
        git = parse_git_url(git_url)
    except GitURLError as e:
        logger.warning(f"Failed to parse Git URL {git_url} on pod {pod.name}: {e}")
        return None

    owner = owner or git.organisation
    repo = repo or git.name
    return ActivityKey(
        name=f"{owner}-{repo}-{branch}-{build}",
        pipeline=f"{owner}/{repo}/{branch}",
        build=build,
        context=pod.labels.get(LABEL_CONTEXT, ""),
        branch=branch,
        last_commit_sha=last_commit_sha,
        git=git,
    )

def create_activity_key_for_run(run: PipelineRunInfo) -> Optional[ActivityKey]:
    """Activity key of a pipeline run, taken from its first stage pod."""
    for stage in _walk(run.stages):
        if stage.pod is not None:
            key = create_activity_key(stage.pod)
            if key is not None:
                if run.context and not key.context:
                    key.context = run.context
                return key
    return None

def _walk(stages):
    for stage in stages:
        yield stage
        yield from _walk(stage.children())

def _stage_pods(pods):
    """Newest pod per stage label."""
    by_stage = {}
    for pod in sorted(pods, key=lambda p: p.creation_timestamp.timestamp() if p.creation_timestamp else 0.0):
        stage = pod.labels.get(LABEL_STAGE_NAME)
        if stage:
            by_stage[stage] = pod
    return by_stage

def create_pipeline_run_info(run_name: str, pods, structure: Optional[dict] = None,
                             context: str = "") -> Optional[PipelineRunInfo]:
    """
    Compose the stage tree of a pipeline run from its pods.

    `structure` is the PipelineStructure resource of the run; its `stages`
    entries name their `parent` and their sequential `stages` and `parallel`
    children. Without one every stage pod becomes a top-level stage.
    """
    by_stage = _stage_pods(pods)
    if not by_stage:
        return None

    def pod_for(name):
        return by_stage.get(name) or by_stage.get(to_valid_name(name))

    entries = {s["name"]: s for s in (structure or {}).get("stages", []) if s.get("name")}
    if not entries:
        stages = [StageInfo(name=name, pod=pod) for name, pod in by_stage.items()]
        return PipelineRunInfo(name=run_name, pipeline_run=run_name, context=context, stages=stages)

    def build(entry, parents):
        name = entry["name"]
        child_parents = parents + [name]
        return StageInfo(
            name=name,
            parents=parents,
            pod=pod_for(name),
            stages=[build(entries[c], child_parents) for c in entry.get("stages") or [] if c in entries],
            parallel=[build(entries[c], child_parents) for c in entry.get("parallel") or [] if c in entries],
        )

    roots = [e for e in entries.values() if not e.get("parent")]
    return PipelineRunInfo(
        name=run_name,
        pipeline_run=run_name,
        context=context,
        stages=[build(e, []) for e in roots],
    )
