"""
Per-repository notification configuration models
"""

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field


class EmailFormat(str, Enum):
    """Commit email format requested by the repository"""

    DEFAULT = "default"
    HTML = "html"
    TEXT = "text"


class RepoConfig(BaseModel):
    """Resolved notification settings for one push"""

    # Passed to the notifier as a git-config value, so no line breaks.
    mailing_list: str = Field(min_length=1, pattern=r"^[^\r\n\x00]+$")
    email_format: EmailFormat = EmailFormat.DEFAULT

    class Config:
        frozen = True


@dataclass(frozen=True)
class MissingConfig:
    """The repository has no configuration file, so it has not opted in"""

    path: str

    def __str__(self) -> str:
        return f"no {self.path} found"
