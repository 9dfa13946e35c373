from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    # Webhook and REST payloads carry far more than we read.
    model_config = ConfigDict(extra="ignore")


class Owner(_Payload):
    login: Optional[str] = None
    # workflow_run payloads identify the repository owner by name
    name: Optional[str] = None


class Repository(_Payload):
    name: Optional[str] = None
    owner: Owner = Field(default_factory=Owner)


class Label(_Payload):
    id: Optional[int] = None
    name: Optional[str] = None


class BranchRef(_Payload):
    ref: str = ""
    sha: Optional[str] = None
    label: Optional[str] = None
    # None on the head side means the fork has been deleted
    repo: Optional[Repository] = None


class AutoMerge(_Payload):
    # GitHub only sends the object while auto-merge is on
    enabled: bool = True


class PullRequest(_Payload):
    number: int = 0
    merged: bool = False
    state: str = "open"
    draft: bool = False
    labels: List[Label] = Field(default_factory=list)
    base: BranchRef = Field(default_factory=BranchRef)
    head: BranchRef = Field(default_factory=BranchRef)
    auto_merge: Optional[AutoMerge] = None

    def label_names(self) -> List[str]:
        return [lbl.name for lbl in self.labels if lbl.name]


class MergeOptions(BaseModel):
    """Arguments for the branch merge call.

    base/head name the fork's branches: the PR's base ref is merged into the
    PR's head ref, inside the head repository.
    """

    owner: str
    repo: str
    base: str
    head: str
    commit_message: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"owner", "repo"})


class WorkflowRun(_Payload):
    event: str = ""
    head_branch: Optional[str] = None


class PushEvent(_Payload):
    kind: Literal["push"] = "push"
    ref: str = ""
    repository: Repository = Field(default_factory=Repository)


class WorkflowDispatchEvent(_Payload):
    kind: Literal["workflow_dispatch"] = "workflow_dispatch"
    ref: str = ""
    repository: Repository = Field(default_factory=Repository)


class WorkflowRunEvent(_Payload):
    kind: Literal["workflow_run"] = "workflow_run"
    workflow_run: WorkflowRun = Field(default_factory=WorkflowRun)
    repository: Repository = Field(default_factory=Repository)


class PullRequestEvent(_Payload):
    kind: Literal["pull_request"] = "pull_request"
    action: Optional[str] = None
    pull_request: PullRequest = Field(default_factory=PullRequest)
    repository: Repository = Field(default_factory=Repository)


class ScheduleEvent(_Payload):
    kind: Literal["schedule"] = "schedule"
    schedule: Optional[str] = None


WebhookEvent = Annotated[
    Union[PushEvent, WorkflowDispatchEvent, WorkflowRunEvent, PullRequestEvent, ScheduleEvent],
    Field(discriminator="kind"),
]

EVENT_NAMES = ("push", "pull_request", "workflow_dispatch", "workflow_run", "schedule")

_event_adapter: TypeAdapter = TypeAdapter(WebhookEvent)


def parse_event(name: str, payload: Optional[Dict[str, Any]]) -> Optional[WebhookEvent]:
    """Build the tagged event for a GitHub event name, or None if unsupported."""
    if name not in EVENT_NAMES:
        return None
    data = dict(payload or {})
    data["kind"] = name
    return _event_adapter.validate_python(data)


def split_repository(identifier: Optional[str]) -> Optional[tuple]:
    """Split an owner/repo identifier; None when it does not have that shape."""
    if not identifier:
        return None
    parts = identifier.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


def branch_from_ref(ref: Optional[str]) -> Optional[str]:
    if not ref or not ref.startswith("refs/heads/"):
        return None
    return ref[len("refs/heads/"):] or None

