"""
Workflow, Environment, Release and CommitStatus resource models.
"""

from typing import List, Optional

from pydantic import Field

from stagehand.src.models.activity import ObjectMeta, ResourceModel

DEFAULT_WORKFLOW_NAME = "default"

class Preconditions(ResourceModel):
    environments: List[str] = []

class PromoteWorkflowStep(ResourceModel):
    environment: str = ""

class WorkflowStep(ResourceModel):
    promote: Optional[PromoteWorkflowStep] = None
    preconditions: Preconditions = Field(default_factory=Preconditions)

class WorkflowSpec(ResourceModel):
    steps: List[WorkflowStep] = []

class Workflow(ResourceModel):
    metadata: ObjectMeta
    spec: WorkflowSpec = Field(default_factory=WorkflowSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

def default_workflow(environment: str) -> Workflow:
    """Built-in workflow promoting to a single environment."""
    return Workflow(
        metadata=ObjectMeta(name=DEFAULT_WORKFLOW_NAME),
        spec=WorkflowSpec(steps=[
            WorkflowStep(promote=PromoteWorkflowStep(environment=environment)),
        ]),
    )

class StorageLocation(ResourceModel):
    classifier: str = ""
    git_url: str = Field("", alias="gitUrl")
    git_branch: str = ""
    bucket_url: str = Field("", alias="bucketUrl")

    def is_empty(self) -> bool:
        return not self.git_url and not self.bucket_url

    def description(self) -> str:
        if self.bucket_url:
            return self.bucket_url
        if self.git_url:
            return f"{self.git_url} branch {self.git_branch or 'gh-pages'}"
        return "<empty>"

class TeamSettings(ResourceModel):
    storage_locations: List[StorageLocation] = []

    def storage_location(self, classifier: str) -> StorageLocation:
        """Location for a classifier, falling back to the 'default' one."""
        fallback = StorageLocation()
        for location in self.storage_locations:
            if location.classifier == classifier:
                return location
            if location.classifier == "default":
                fallback = location
        return fallback

class EnvironmentSource(ResourceModel):
    url: str = ""
    ref: str = ""

class EnvironmentSpec(ResourceModel):
    label: str = ""
    namespace: str = ""
    source: EnvironmentSource = Field(default_factory=EnvironmentSource)
    promotion_strategy: str = ""
    order: int = 0
    team_settings: TeamSettings = Field(default_factory=TeamSettings)

class Environment(ResourceModel):
    metadata: ObjectMeta
    spec: EnvironmentSpec = Field(default_factory=EnvironmentSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

class IssueSummary(ResourceModel):
    id: str = ""
    url: str = ""
    state: str = ""

    def is_closed(self) -> bool:
        return self.state.lower() == "closed"

class ReleaseSpec(ResourceModel):
    version: str = ""
    release_notes_url: str = Field("", alias="releaseNotesURL")
    issues: List[IssueSummary] = []

class Release(ResourceModel):
    metadata: ObjectMeta
    spec: ReleaseSpec = Field(default_factory=ReleaseSpec)

class CommitRef(ResourceModel):
    git_url: str = Field("", alias="gitUrl")
    sha: str = ""
    pull_request: str = ""

class CommitStatusCheck(ResourceModel):
    name: str = ""
    pass_: bool = Field(False, alias="pass")

class CommitStatusItem(ResourceModel):
    commit: CommitRef = Field(default_factory=CommitRef)
    context: str = ""
    pipeline_activity_ref: str = ""
    checked: bool = False
    pass_: bool = Field(False, alias="pass")
    items: List[CommitStatusCheck] = []

class CommitStatusSpec(ResourceModel):
    items: List[CommitStatusItem] = []

class CommitStatus(ResourceModel):
    """Record of the commit statuses reported for one commit."""
    metadata: ObjectMeta
    spec: CommitStatusSpec = Field(default_factory=CommitStatusSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    def item_for(self, context: str, activity_name: str) -> CommitStatusItem:
        for item in self.spec.items:
            if item.context == context and item.pipeline_activity_ref == activity_name:
                return item
        item = CommitStatusItem(context=context, pipeline_activity_ref=activity_name)
        self.spec.items.append(item)
        return item
