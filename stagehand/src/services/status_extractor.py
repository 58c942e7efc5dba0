"""
Step status extraction from a build pod's containers.

All containers of a step pod start at the same moment, but each step's
command blocks until its predecessor finishes. Start times and Running
status are therefore derived from the previous step rather than trusted
from the container itself.
"""

from datetime import datetime
from typing import List, Optional

from stagehand.src.models.activity import ActivityStatus, CoreStep
from stagehand.src.models.pod import ContainerSnapshot, PodSnapshot

STEP_PREFIXES = ("build-step-", "step-")

def step_title(container_name: str) -> str:
    """`build-step-run-tests` -> `Run Tests`."""
    name = container_name
    for prefix in STEP_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return name.replace("-", " ").title()

def step_description(container: ContainerSnapshot) -> str:
    args = container.args
    if len(args) > 1 and args[0] == "-url":
        return args[1]
    return ""

def previous_step_failed(previous: Optional[CoreStep]) -> bool:
    return (
        previous is not None
        and previous.completed_timestamp is not None
        and previous.status != ActivityStatus.SUCCEEDED
    )

def is_step_running(previous: Optional[CoreStep]) -> bool:
    return previous is None or previous.completed_timestamp is not None

def step_start_time(container: ContainerSnapshot, previous: Optional[CoreStep]) -> Optional[datetime]:
    if previous is not None:
        return previous.completed_timestamp
    state = container.state
    if state.running is not None:
        return state.running.started_at
    if state.terminated is not None:
        return state.terminated.started_at
    return None

def extract_step(container: ContainerSnapshot, previous: Optional[CoreStep]) -> CoreStep:
    """Status of one step given the step computed just before it."""
    state = container.state
    step = CoreStep(
        name=step_title(container.name),
        description=step_description(container),
        started_timestamp=step_start_time(container, previous),
    )

    terminated = state.terminated
    if terminated is not None:
        step.completed_timestamp = terminated.finished_at
        if terminated.exit_code != 0:
            step.status = ActivityStatus.FAILED
        elif previous_step_failed(previous):
            step.status = ActivityStatus.NOT_EXECUTED
        else:
            step.status = ActivityStatus.SUCCEEDED
    elif state.running is not None and is_step_running(previous):
        step.status = ActivityStatus.RUNNING
    else:
        step.status = ActivityStatus.PENDING
    return step

def extract_steps(pod: PodSnapshot) -> List[CoreStep]:
    steps: List[CoreStep] = []
    for container in pod.containers:
        previous = steps[-1] if steps else None
        steps.append(extract_step(container, previous))
    return steps

def containers_terminated(pod: PodSnapshot) -> bool:
    """True once every container of the pod has terminated."""
    return bool(pod.containers) and all(
        c.state.terminated is not None for c in pod.containers
    )
