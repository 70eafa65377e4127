from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

OFFICIAL_NAMESPACE = "library"
HUB_WEB_URL = "https://hub.docker.com"


class RegistryError(Exception):
    """Raised when the registry API cannot be reached or returns an error."""


class RepositoryNotFoundError(RegistryError):
    """Raised when the registry answers 404 for a repository."""


class TagNotFoundError(RegistryError):
    """Raised when a tracked tag is absent from the repository's tag list."""


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class TrackedImage:
    """An image reference parsed from a configured image string."""
    namespace: str
    name: str
    tag: Optional[str] = None

    @property
    def identity(self) -> str:
        key = f"{self.namespace}/{self.name}"
        if self.tag:
            key += f":{self.tag}"
        return key

    @property
    def display_name(self) -> str:
        name = self.name if self.namespace == OFFICIAL_NAMESPACE else f"{self.namespace}/{self.name}"
        if self.tag:
            name += f":{self.tag}"
        return name

    @property
    def hub_url(self) -> str:
        base = f"_/{self.name}" if self.namespace == OFFICIAL_NAMESPACE else f"{self.namespace}/{self.name}"
        return f"{HUB_WEB_URL}/r/{base}/tags"


@dataclass(frozen=True)
class Action:
    type: str  # mail_hook, web_hook
    instance: str
    recipient: Optional[str] = None  # mail_hook only


@dataclass(frozen=True)
class NotificationJob:
    """A tracked image and the actions to run when it changes."""
    image: TrackedImage
    actions: List[Action] = field(default_factory=list)
    original_image: str = ""


@dataclass
class StateEntry:
    namespace: str
    name: str
    last_updated: str
    tag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'namespace': self.namespace, 'name': self.name, 'last_updated': self.last_updated}
        if self.tag:
            data['tag'] = self.tag
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StateEntry':
        return cls(
            namespace=data['namespace'],
            name=data['name'],
            last_updated=data['last_updated'],
            tag=data.get('tag'),
        )


@dataclass
class UpdateEvent:
    """Result of checking one tracked image during a cycle."""
    identity: str
    last_updated: str
    was_updated: bool
    job: NotificationJob

    @property
    def image_name(self) -> str:
        return self.job.image.display_name

    @property
    def image_url(self) -> str:
        return self.job.image.hub_url

    @property
    def message(self) -> str:
        return f"Docker image '{self.image_name}' was updated:\n{self.image_url}"

    def to_state_entry(self) -> StateEntry:
        image = self.job.image
        return StateEntry(
            namespace=image.namespace,
            name=image.name,
            last_updated=self.last_updated,
            tag=image.tag,
        )


@dataclass
class SmtpServerConfig:
    sender_name: str
    sender_address: str
    host: str = "127.0.0.1"
    port: int = 25
    secure: bool = True  # implicit TLS (SMTP_SSL)
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class WebhookConfig:
    url: str
    method: str = "POST"
    headers: Any = None
    body: Any = None


@dataclass
class Config:
    """Process-wide configuration, read-only once loaded."""
    notify_services: List[NotificationJob] = field(default_factory=list)
    check_interval: int = 60  # minutes
    dockerhub_username: Optional[str] = None
    dockerhub_password: Optional[str] = None
    smtp_servers: Dict[str, SmtpServerConfig] = field(default_factory=dict)
    webhooks: Dict[str, WebhookConfig] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool(self.dockerhub_username and self.dockerhub_password)


@dataclass
class ActionContext:
    config: Config
    logger: Any


class ActionHandler:
    """Base for notification backends registered with the dispatcher.

    Subclasses set `type` to the action kind they serve. `execute` must log
    and swallow its own delivery failures, returning False when the
    notification was not delivered.
    """
    type: str = ""

    def execute(self, action: Action, event: UpdateEvent, context: ActionContext) -> bool:
        raise NotImplementedError

    def validate_instance(self, action: Action, config: Config) -> bool:
        raise NotImplementedError

    def reset(self) -> None:
        """Drop any cached backend connections."""
