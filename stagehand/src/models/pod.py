"""
Normalised pod snapshots and pipeline run trees.

The watchers hand us `kubernetes` client objects (or plain dicts from a
watch stream); everything downstream works on these models so status
extraction never depends on the client library's types.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

STAGE_SEPARATOR = " / "

class RunningState(BaseModel):
    started_at: Optional[datetime] = None

class TerminatedState(BaseModel):
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: int = 0

class ContainerState(BaseModel):
    running: Optional[RunningState] = None
    terminated: Optional[TerminatedState] = None
    waiting: bool = False

class ContainerSnapshot(BaseModel):
    name: str
    image: str = ""
    args: List[str] = []
    env: Dict[str, str] = {}
    state: ContainerState = ContainerState()

class PodSnapshot(BaseModel):
    name: str
    namespace: str = ""
    labels: Dict[str, str] = {}
    creation_timestamp: Optional[datetime] = None
    containers: List[ContainerSnapshot] = []

    @classmethod
    def from_k8s(cls, pod: Any) -> "PodSnapshot":
        """Build a snapshot from a kubernetes.client.V1Pod."""
        metadata = pod.metadata
        statuses = {}
        if pod.status is not None:
            for status in pod.status.container_statuses or []:
                statuses[status.name] = status.state

        containers = []
        for container in pod.spec.containers or []:
            env = {e.name: e.value for e in container.env or [] if e.value}
            containers.append(ContainerSnapshot(
                name=container.name,
                image=container.image or "",
                args=list(container.args or []),
                env=env,
                state=_state_from_k8s(statuses.get(container.name)),
            ))

        return cls(
            name=metadata.name,
            namespace=metadata.namespace or "",
            labels=dict(metadata.labels or {}),
            creation_timestamp=metadata.creation_timestamp,
            containers=containers,
        )

def _state_from_k8s(state: Any) -> ContainerState:
    if state is None:
        return ContainerState(waiting=True)
    if state.terminated is not None:
        t = state.terminated
        return ContainerState(terminated=TerminatedState(
            started_at=t.started_at,
            finished_at=t.finished_at,
            exit_code=t.exit_code or 0,
        ))
    if state.running is not None:
        return ContainerState(running=RunningState(started_at=state.running.started_at))
    return ContainerState(waiting=True)

class StageInfo(BaseModel):
    """A stage of a pipeline run, holding either a pod or child stages."""
    name: str
    parents: List[str] = []
    pod: Optional[PodSnapshot] = None
    stages: List["StageInfo"] = []
    parallel: List["StageInfo"] = []

    def full_name(self) -> str:
        if self.name:
            return STAGE_SEPARATOR.join(self.parents + [self.name])
        return self.pod.name if self.pod else ""

    def children(self) -> List["StageInfo"]:
        return list(self.parallel) + list(self.stages)

class PipelineRunInfo(BaseModel):
    name: str
    pipeline_run: str = ""
    context: str = ""
    stages: List[StageInfo] = []
