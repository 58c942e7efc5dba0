from stagehand.src.models.activity import (
    ActivityStatus,
    PipelineActivity,
    PromoteStep,
    StageStep,
    CoreStep,
)
from stagehand.src.models.pod import PodSnapshot, PipelineRunInfo, StageInfo
from stagehand.src.models.workflow import (
    Workflow,
    Environment,
    Release,
    CommitStatus,
)

__all__ = [
    "ActivityStatus",
    "PipelineActivity",
    "PromoteStep",
    "StageStep",
    "CoreStep",
    "PodSnapshot",
    "PipelineRunInfo",
    "StageInfo",
    "Workflow",
    "Environment",
    "Release",
    "CommitStatus",
]
