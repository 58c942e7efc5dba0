"""
Stage status aggregation.

A pipeline run is flattened into an arena of stage nodes indexed by
position, parents always before their children. Aggregation is a pure
bottom-up fold over that arena: leaf stages roll up their step statuses,
parent stages (sequential or parallel) roll up their children.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from stagehand.src.models.activity import ActivityStatus, CoreStep
from stagehand.src.models.pod import PipelineRunInfo, PodSnapshot, StageInfo
from stagehand.src.services.status_extractor import containers_terminated, extract_steps

DEFAULT_STAGE_NAME = "build"

NOT_FAILED = (ActivityStatus.SUCCEEDED, ActivityStatus.NOT_EXECUTED)

@dataclass
class StageNode:
    name: str
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    steps: List[CoreStep] = field(default_factory=list)
    containers_terminated: bool = False

@dataclass
class StageResult:
    name: str
    status: ActivityStatus
    started: Optional[datetime] = None
    completed: Optional[datetime] = None
    steps: List[CoreStep] = field(default_factory=list)
    is_leaf: bool = True

@dataclass
class Rollup:
    status: ActivityStatus
    started: Optional[datetime]
    completed: Optional[datetime]
    failed: bool
    running: bool

class StageArena:
    def __init__(self):
        self.nodes: List[StageNode] = []

    def add(self, name: str, parent: Optional[int] = None, pod: Optional[PodSnapshot] = None) -> int:
        node = StageNode(name=name, parent=parent)
        if pod is not None:
            node.steps = extract_steps(pod)
            node.containers_terminated = containers_terminated(pod)
        self.nodes.append(node)
        index = len(self.nodes) - 1
        if parent is not None:
            self.nodes[parent].children.append(index)
        return index

    def roots(self) -> List[int]:
        return [i for i, n in enumerate(self.nodes) if n.parent is None]

    @classmethod
    def from_pod(cls, pod: PodSnapshot, stage_name: str = "") -> "StageArena":
        """Arena for a standalone pod: one stage whose steps are its containers."""
        arena = cls()
        arena.add(stage_name or DEFAULT_STAGE_NAME, pod=pod)
        return arena

    @classmethod
    def from_run(cls, run: PipelineRunInfo) -> "StageArena":
        arena = cls()
        for stage in run.stages:
            arena._add_stage(stage, None)
        return arena

    def _add_stage(self, stage: StageInfo, parent: Optional[int]):
        index = self.add(stage.full_name(), parent=parent, pod=stage.pod)
        for child in stage.children():
            self._add_stage(child, index)

def is_finished(status: ActivityStatus, completed: Optional[datetime]) -> bool:
    return status.is_terminated() or status == ActivityStatus.NOT_EXECUTED or completed is not None

def rollup(children: Iterable[Tuple[ActivityStatus, Optional[datetime], Optional[datetime]]],
           force_complete: bool = False) -> Rollup:
    """
    Roll up (status, started, completed) triples into a single status.

    Succeeded if every child finished and none failed, Failed if every child
    finished and any failed, otherwise Running if any child runs, else
    Pending. `force_complete` treats the group as finished regardless.
    """
    children = list(children)
    all_completed = bool(children)
    failed = False
    running = False
    started: Optional[datetime] = None
    completed: Optional[datetime] = None

    for status, child_started, child_completed in children:
        if child_started is not None and (started is None or child_started < started):
            started = child_started
        if child_completed is not None and (completed is None or child_completed > completed):
            completed = child_completed
        if is_finished(status, child_completed):
            if status not in NOT_FAILED:
                failed = True
        else:
            all_completed = False
        if status == ActivityStatus.RUNNING:
            running = True
        if status in (ActivityStatus.RUNNING, ActivityStatus.PENDING):
            all_completed = False

    if not all_completed and force_complete:
        all_completed = True

    if all_completed:
        status = ActivityStatus.FAILED if failed else ActivityStatus.SUCCEEDED
    else:
        status = ActivityStatus.RUNNING if running else ActivityStatus.PENDING
        completed = None
    return Rollup(status=status, started=started, completed=completed, failed=failed, running=running)

def aggregate_node(node: StageNode, child_results: List[StageResult]) -> StageResult:
    if node.children:
        summary = rollup((r.status, r.started, r.completed) for r in child_results)
        return StageResult(
            name=node.name,
            status=summary.status,
            started=summary.started,
            completed=summary.completed,
            is_leaf=False,
        )

    steps = [s.model_copy() for s in node.steps]
    summary = rollup(
        ((s.status, s.started_timestamp, s.completed_timestamp) for s in steps),
        force_complete=node.containers_terminated,
    )
    if summary.status == ActivityStatus.FAILED:
        for step in steps:
            if step.status == ActivityStatus.PENDING:
                step.status = ActivityStatus.NOT_EXECUTED
    return StageResult(
        name=node.name,
        status=summary.status,
        started=summary.started,
        completed=summary.completed,
        steps=steps,
    )

def aggregate(arena: StageArena) -> List[StageResult]:
    """Aggregate every node of the arena; results share the arena's indexing."""
    results: List[Optional[StageResult]] = [None] * len(arena.nodes)
    for index in reversed(range(len(arena.nodes))):
        node = arena.nodes[index]
        results[index] = aggregate_node(node, [results[c] for c in node.children])
    return results
