"""
Reads the repository's commit email configuration from its mirror
"""

import json
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog
from git import Repo
from pydantic import ValidationError

from mailbot.models.repo_config import EmailFormat, MissingConfig, RepoConfig
from mailbot.services.repo_mirror import RepoMirror
from mailbot.utils.exceptions import ConfigError

logger = structlog.get_logger()

CONFIG_PATH = ".github/commit-emails.toml"
LEGACY_CONFIG_PATH = ".github/commit-emails.json"

# Keys understood in each file format; anything else is reported and ignored.
KNOWN_TOML_KEYS = {"to": None, "email": {"format": None}}
KNOWN_JSON_KEYS = {"mailingList": None, "emailFormat": None}


class ConfigResolver:
    """Resolves RepoConfig from the default branch tip of a mirror

    A missing file is not an error: the repository simply has not opted in
    and resolve() returns MissingConfig.
    """

    def __init__(self, mirror: RepoMirror):
        self.mirror = mirror

    def resolve(self, git_dir: Path) -> Union[RepoConfig, MissingConfig]:
        repo = self.mirror.open(git_dir)
        try:
            text = _read_head_file(repo, CONFIG_PATH)
            if text is not None:
                return parse_toml_config(text)
            text = _read_head_file(repo, LEGACY_CONFIG_PATH)
            if text is not None:
                return parse_json_config(text)
        finally:
            repo.close()
        return MissingConfig(path=CONFIG_PATH)


def _read_head_file(repo: Repo, path: str) -> Optional[str]:
    """Equivalent of `git show HEAD:<path>`; None when the file is absent"""
    try:
        blob = repo.head.commit.tree / path
    except (KeyError, ValueError):
        # KeyError: no such path. ValueError: HEAD does not resolve (empty repository).
        return None
    if blob.type != "blob":
        return None
    try:
        return blob.data_stream.read().decode("utf-8")
    except UnicodeDecodeError:
        raise ConfigError(f"{path} is not valid UTF-8") from None


def _unknown_keys(data: Dict[str, Any], known: Dict[str, Any], prefix: str = "") -> List[str]:
    unknown = []
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if key not in known:
            unknown.append(dotted)
        elif isinstance(known[key], dict) and isinstance(value, dict):
            unknown.extend(_unknown_keys(value, known[key], prefix=f"{dotted}."))
    return unknown


def _build_config(source: str, mailing_list: Any, email_format: Any) -> RepoConfig:
    if email_format in (None, ""):
        email_format = EmailFormat.DEFAULT.value
    if email_format not in (EmailFormat.HTML.value, EmailFormat.TEXT.value,
                            EmailFormat.DEFAULT.value):
        raise ConfigError(f"invalid email format in {source} (should be html or text): {email_format!r}")
    if not isinstance(mailing_list, str) or not mailing_list.strip():
        raise ConfigError(f"{source}: mailing list address is required")
    try:
        return RepoConfig(mailing_list=mailing_list.strip(), email_format=email_format)
    except ValidationError as e:
        raise ConfigError(f"{source}: {e.errors()[0]['msg']}") from None


def parse_toml_config(text: str) -> RepoConfig:
    """Parse commit-emails.toml: `to = "..."` and `[email] format = "..."`"""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"decoding {CONFIG_PATH}: {e}") from None

    unknown = _unknown_keys(data, KNOWN_TOML_KEYS)
    if unknown:
        logger.warning("unknown config fields", fields=", ".join(unknown))

    email = data.get("email", {})
    if not isinstance(email, dict):
        raise ConfigError(f"decoding {CONFIG_PATH}: [email] must be a table")
    return _build_config(CONFIG_PATH, data.get("to"), email.get("format"))


def parse_json_config(text: str) -> RepoConfig:
    """Parse the older commit-emails.json form"""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"decoding {LEGACY_CONFIG_PATH}: {e}") from None
    if not isinstance(data, dict):
        raise ConfigError(f"decoding {LEGACY_CONFIG_PATH}: expected an object")

    unknown = _unknown_keys(data, KNOWN_JSON_KEYS)
    if unknown:
        logger.warning("unknown config fields", fields=", ".join(unknown))

    return _build_config(LEGACY_CONFIG_PATH, data.get("mailingList"), data.get("emailFormat"))
