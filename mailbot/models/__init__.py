"""
Data models and schemas for the application
"""

from .github import (
    EventKind,
    GitHubRepository,
    InstallationEvent,
    InstallationRepositoriesEvent,
    PingEvent,
    PushEvent,
    WebhookEvent,
    parse_event,
)
from .repo_config import EmailFormat, MissingConfig, RepoConfig

__all__ = [
    "EventKind",
    "GitHubRepository",
    "InstallationEvent",
    "InstallationRepositoriesEvent",
    "PingEvent",
    "PushEvent",
    "WebhookEvent",
    "parse_event",
    "EmailFormat",
    "MissingConfig",
    "RepoConfig",
]
