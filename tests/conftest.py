"""
Shared fixtures: throwaway upstream repositories and a recording notifier
"""

import hashlib
import hmac
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from git import Actor, Repo

from config.settings import Settings
from mailbot.services.notifier import Notifier, NotifierInvocation, NotifierResult

AUTHOR = Actor("Ada Lovelace", "ada@example.com")


class UpstreamRepo:
    """A local non-bare repository standing in for the GitHub remote"""

    def __init__(self, path: Path):
        self.path = path
        self.repo = Repo.init(str(path), initial_branch="main")

    @property
    def clone_url(self) -> str:
        return str(self.path)

    def commit(self, files: Dict[str, str], message: str = "update") -> str:
        for name, content in files.items():
            target = self.path / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
            self.repo.index.add([name])
        commit = self.repo.index.commit(message, author=AUTHOR, committer=AUTHOR)
        return commit.hexsha

    def head(self) -> str:
        return self.repo.head.commit.hexsha


class FakeNotifier(Notifier):
    """Records invocations instead of sending mail"""

    def __init__(self, return_code: int = 0, stdout: str = "", stderr: str = ""):
        self.invocations: List[NotifierInvocation] = []
        self.return_code = return_code
        self.stdout = stdout
        self.stderr = stderr

    def run(self, invocation: NotifierInvocation) -> NotifierResult:
        self.invocations.append(invocation)
        return NotifierResult(return_code=self.return_code, stdout=self.stdout, stderr=self.stderr)


@pytest.fixture
def make_upstream(tmp_path):
    """Factory for upstream repositories under tmp_path/upstream"""
    def _make(name: str = "widgets") -> UpstreamRepo:
        return UpstreamRepo(tmp_path / "upstream" / name)
    return _make


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def settings(tmp_path):
    """Localhost settings rooted in a temporary persistence directory"""
    return Settings(
        _env_file=None,
        TLS_HOSTNAME="localhost",
        PORT=8080,
        WEBHOOK_SECRET="it's a secret to everybody",
        MAIL_SMTP_PASSWORD="hunter2-smtp",
        PERSIST_PATH=tmp_path / "persist",
    )


def sign(body: bytes, secret: str) -> str:
    """X-Hub-Signature-256 header value for body"""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def signer():
    return sign


def push_payload(full_name: str, clone_url: str, before: str, after: str,
                 ref: str = "refs/heads/main", installation_id: Optional[int] = None) -> dict:
    payload = {
        "ref": ref,
        "before": before,
        "after": after,
        "repository": {"full_name": full_name, "clone_url": clone_url, "private": False},
        "pusher": {"name": "ada", "email": "ada@example.com"},
        "sender": {"login": "ada"},
    }
    if installation_id is not None:
        payload["installation"] = {"id": installation_id}
    return payload


@pytest.fixture
def make_push_payload():
    return push_payload
