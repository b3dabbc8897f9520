"""
GitHub webhook data models

The event kind comes from the X-GitHub-Event header, never from the body.
Each kind we act on has its own immutable model; together they form the
WebhookEvent tagged union.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, ValidationError

from mailbot.utils.exceptions import ParseError

# 40 hex digits for SHA-1 repositories, 64 for SHA-256 ones
SHA_PATTERN = r"^[0-9a-f]{40}([0-9a-f]{24})?$"


class EventKind(str, Enum):
    """Webhook event kinds the router knows about"""

    PING = "ping"
    PUSH = "push"
    INSTALLATION = "installation"
    INSTALLATION_REPOSITORIES = "installation_repositories"

    @classmethod
    def from_header(cls, value: str) -> Optional["EventKind"]:
        try:
            return cls(value)
        except ValueError:
            return None


class GitHubAccount(BaseModel):
    """GitHub user or organization"""

    login: str = ""

    class Config:
        frozen = True


class GitHubRepository(BaseModel):
    """GitHub repository model"""

    full_name: str
    clone_url: str
    private: bool = False
    default_branch: Optional[str] = None

    class Config:
        frozen = True


class GitHubRepositoryRef(BaseModel):
    """Short repository form used in installation payloads"""

    full_name: str
    private: bool = False

    class Config:
        frozen = True


class GitHubPusher(BaseModel):
    """Identity that performed a push"""

    name: str
    email: Optional[str] = None

    class Config:
        frozen = True


class GitHubInstallation(BaseModel):
    """GitHub App installation reference"""

    id: int
    account: Optional[GitHubAccount] = None
    repository_selection: Optional[str] = None

    class Config:
        frozen = True


class _Event(BaseModel):
    sender: GitHubAccount = Field(default_factory=GitHubAccount)

    class Config:
        frozen = True
        extra = "ignore"


class PingEvent(_Event):
    """Sent when a webhook is first configured"""

    kind: Literal[EventKind.PING] = EventKind.PING
    zen: Optional[str] = None
    hook_id: Optional[int] = None
    # Organization and app level pings carry no repository.
    repository: Optional[GitHubRepository] = None


class PushEvent(_Event):
    """One or more refs were updated"""

    kind: Literal[EventKind.PUSH] = EventKind.PUSH
    ref: str = Field(pattern=r"^refs/[^\s]+$")
    before: str = Field(pattern=SHA_PATTERN)
    after: str = Field(pattern=SHA_PATTERN)
    repository: GitHubRepository
    pusher: GitHubPusher
    installation: Optional[GitHubInstallation] = None

    @property
    def installation_id(self) -> Optional[int]:
        return self.installation.id if self.installation else None

    @property
    def deleted(self) -> bool:
        """A branch or tag deletion pushes no new commit"""
        return set(self.after) == {"0"}


class InstallationEvent(_Event):
    """App installed, removed, suspended or changed"""

    kind: Literal[EventKind.INSTALLATION] = EventKind.INSTALLATION
    action: str
    installation: GitHubInstallation
    repositories: List[GitHubRepositoryRef] = Field(default_factory=list)


class InstallationRepositoriesEvent(_Event):
    """Repositories added to or removed from an installation"""

    kind: Literal[EventKind.INSTALLATION_REPOSITORIES] = EventKind.INSTALLATION_REPOSITORIES
    action: str
    installation: GitHubInstallation
    repositories_added: List[GitHubRepositoryRef] = Field(default_factory=list)
    repositories_removed: List[GitHubRepositoryRef] = Field(default_factory=list)


WebhookEvent = Union[PingEvent, PushEvent, InstallationEvent, InstallationRepositoriesEvent]

EVENT_MODELS: Dict[EventKind, Type[_Event]] = {
    EventKind.PING: PingEvent,
    EventKind.PUSH: PushEvent,
    EventKind.INSTALLATION: InstallationEvent,
    EventKind.INSTALLATION_REPOSITORIES: InstallationRepositoriesEvent,
}


def parse_event(kind: EventKind, payload: bytes) -> WebhookEvent:
    """Parse a raw webhook body into the model for its kind"""
    model = EVENT_MODELS[kind]
    try:
        return model.model_validate_json(payload)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise ParseError(f"failed to parse payload: {errors}") from None
