"""
Application settings and configuration
"""

import base64
import binascii
from pathlib import Path
from typing import Optional, List

from pydantic import Field, SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings

# Values managed by an at-rest encryption tool are not usable until decrypted.
ENCRYPTED_PREFIX = "encrypted:"

# Environment variables holding operator secrets. These are stripped from any
# environment handed to a child process.
SECRET_ENV_VARS = ("WEBHOOK_SECRET", "MAIL_SMTP_PASSWORD", "GITHUB_APP_PRIVATE_KEY")


class Settings(BaseSettings):
    """Application settings loaded from environment variables

    Built once at startup and passed explicitly to every component. The
    model is frozen, so nothing can mutate it after construction.
    """

    # Server Configuration
    TLS_HOSTNAME: Optional[str] = Field(
        default=None, description="TLS hostname (use localhost to disable https)"
    )
    PORT: int = Field(default=443, description="Port to listen on")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    SHUTDOWN_GRACE_PERIOD: int = Field(
        default=10, description="Seconds in-flight requests get on shutdown"
    )
    MAX_BODY_BYTES: int = Field(
        default=1024 * 1024, description="Largest accepted webhook body"
    )

    # Persistence
    PERSIST_PATH: Path = Field(
        default=Path("persist"), description="Directory for persistent data"
    )

    # GitHub Configuration
    WEBHOOK_SECRET: Optional[SecretStr] = Field(
        default=None, description="GitHub webhook secret"
    )
    GITHUB_APP_ID: Optional[str] = Field(default=None, description="GitHub App id")
    GITHUB_APP_PRIVATE_KEY: Optional[SecretStr] = Field(
        default=None, description="GitHub App private key (base64-encoded PEM)"
    )
    GITHUB_API_URL: str = Field(
        default="https://api.github.com", description="GitHub API URL"
    )

    # Mail / notifier Configuration
    MAIL_SMTP_PASSWORD: Optional[SecretStr] = Field(
        default=None, description="SMTP password passed to the notifier"
    )
    MAIL_STDOUT: bool = Field(
        default=False, description="Print announcements instead of sending them"
    )
    NOTIFIER_COMMAND: str = Field(
        default="./git_multimail_wrapper.py", description="Notifier executable"
    )
    NOTIFIER_GIT_CONFIG: str = Field(
        default="git-multimail.config",
        description="Global git config with the notifier constants",
    )
    PIPELINE_TIMEOUT: float = Field(
        default=30.0, description="Push pipeline deadline in seconds"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"
        frozen = True

    @field_validator(
        "TLS_HOSTNAME",
        "WEBHOOK_SECRET",
        "GITHUB_APP_ID",
        "MAIL_SMTP_PASSWORD",
        mode="before",
    )
    @classmethod
    def _drop_encrypted(cls, value):
        if isinstance(value, str) and (value == "" or value.startswith(ENCRYPTED_PREFIX)):
            return None
        return value

    @field_validator("PERSIST_PATH", "MAIL_STDOUT", mode="before")
    @classmethod
    def _default_if_encrypted(cls, value, info: ValidationInfo):
        if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("GITHUB_APP_PRIVATE_KEY", mode="before")
    @classmethod
    def _decode_private_key(cls, value):
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        if value is None or value == "" or value.startswith(ENCRYPTED_PREFIX):
            return None
        try:
            return base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"GITHUB_APP_PRIVATE_KEY is not valid base64: {e}") from None

    @model_validator(mode="after")
    def _check_startup_requirements(self) -> "Settings":
        if not self.TLS_HOSTNAME:
            raise ValueError("please set -hostname or $TLS_HOSTNAME")
        if self.WEBHOOK_SECRET is None:
            raise ValueError("$WEBHOOK_SECRET is not set")
        if self.is_localhost and self.PORT == 443:
            raise ValueError("https on localhost will not work (choose another port)")
        return self

    @property
    def is_localhost(self) -> bool:
        """TLS is disabled when serving on localhost"""
        return self.TLS_HOSTNAME == "localhost"

    @property
    def smtp_password(self) -> Optional[str]:
        if self.MAIL_SMTP_PASSWORD is None:
            return None
        return self.MAIL_SMTP_PASSWORD.get_secret_value()

    @property
    def stdout_mode(self) -> bool:
        """Whether announcements go to the console instead of SMTP"""
        return self.MAIL_STDOUT or self.smtp_password is None

    @property
    def app_auth_configured(self) -> bool:
        return bool(self.GITHUB_APP_ID) and self.GITHUB_APP_PRIVATE_KEY is not None

    @property
    def repos_path(self) -> Path:
        return self.PERSIST_PATH / "repos"

    @property
    def tls_keys_path(self) -> Path:
        return self.PERSIST_PATH / "tls_keys"

    @property
    def error_log_path(self) -> Path:
        return self.PERSIST_PATH / "errors.log"

    @property
    def stats_path(self) -> Path:
        return self.PERSIST_PATH / "stats.jsonl"

    def secret_values(self) -> List[str]:
        """Every configured secret value, for log redaction"""
        secrets = [self.WEBHOOK_SECRET, self.MAIL_SMTP_PASSWORD, self.GITHUB_APP_PRIVATE_KEY]
        return [s.get_secret_value() for s in secrets if s is not None and s.get_secret_value()]


def load_settings(
    hostname: Optional[str] = None,
    persist: Optional[str] = None,
    port: Optional[int] = None,
) -> Settings:
    """Build the process settings, letting command-line flags win over the environment"""
    overrides = {}
    if hostname:
        overrides["TLS_HOSTNAME"] = hostname
    if persist:
        overrides["PERSIST_PATH"] = Path(persist)
    if port is not None:
        overrides["PORT"] = port
    return Settings(**overrides)
