"""
Notification dispatch through the external commit email tool

The notifier is a port: NotificationDispatcher derives the argument list,
environment and stdin for one push, and a Notifier implementation runs it.
SubprocessNotifier runs the real tool; tests substitute a fake.
"""

import asyncio
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from config.settings import SECRET_ENV_VARS
from mailbot.models.repo_config import EmailFormat, RepoConfig
from mailbot.utils.exceptions import NotifierError
from mailbot.utils.log_config import REDACTION_PLACEHOLDER

logger = structlog.get_logger()

SMTP_PASS_KEY = "multimailhook.smtpPass"


@dataclass
class NotifierInvocation:
    """Everything needed to run the notifier once"""
    command: List[str]
    stdin: str
    env: Dict[str, str] = field(repr=False)


@dataclass
class NotifierResult:
    """Exit status and captured streams of one notifier run"""
    return_code: int
    stdout: str = ""
    stderr: str = ""


class Notifier(ABC):
    """Runs a prepared invocation and reports how it went"""

    @abstractmethod
    def run(self, invocation: NotifierInvocation) -> NotifierResult:
        pass


class SubprocessNotifier(Notifier):
    """Runs the notifier as a child process

    The call blocks until the child exits. It has no timeout of its own, so
    a slow notifier holds its worker thread even after the request deadline.
    """

    def run(self, invocation: NotifierInvocation) -> NotifierResult:
        try:
            completed = subprocess.run(
                invocation.command,
                input=invocation.stdin,
                capture_output=True,
                text=True,
                env=invocation.env,
                check=False,
            )
        except OSError as e:
            raise NotifierError(f"{invocation.command[0]} could not be started: {e.strerror}")
        return NotifierResult(
            return_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


def git_sq_quote(value: str) -> str:
    """Quote a value the way git expects inside GIT_CONFIG_PARAMETERS"""
    return "'" + value.replace("'", "'\\''").replace("!", "'\\!'") + "'"


class NotificationDispatcher:
    """Builds and runs the notifier invocation for a push

    The SMTP password enters the child only through GIT_CONFIG_PARAMETERS,
    never through argv or a config file.
    """

    def __init__(self, notifier: Notifier, command: str, global_git_config: str,
                 smtp_password: Optional[str] = None, stdout_mode: bool = False):
        self.notifier = notifier
        self.command = command
        self.global_git_config = global_git_config
        self._smtp_password = smtp_password or None
        self.stdout_mode = stdout_mode or self._smtp_password is None

    def build_arguments(self, config: RepoConfig) -> List[str]:
        args = [self.command]
        if self.stdout_mode:
            args.append("--stdout")
        args.extend(["-c", f"multimailhook.mailingList={config.mailing_list}"])
        if config.email_format != EmailFormat.DEFAULT:
            args.extend(["-c", f"multimailhook.commitEmailFormat={config.email_format.value}"])
        return args

    def build_environment(self, git_dir: Path, committer_name: str) -> Dict[str, str]:
        env = {
            key: value for key, value in os.environ.items()
            if key not in SECRET_ENV_VARS and not key.startswith("GIT_")
        }
        env["GIT_DIR"] = str(git_dir)
        # constants that configure the notifier
        env["GIT_CONFIG_GLOBAL"] = self.global_git_config
        # The notifier names the pusher from $USER.
        env["USER"] = committer_name or "unknown user"
        if self._smtp_password is not None and not self.stdout_mode:
            env["GIT_CONFIG_PARAMETERS"] = git_sq_quote(f"{SMTP_PASS_KEY}={self._smtp_password}")
        return env

    def build_invocation(self, git_dir: Path, config: RepoConfig, before: str, after: str,
                         ref: str, committer_name: str) -> NotifierInvocation:
        return NotifierInvocation(
            command=self.build_arguments(config),
            stdin=f"{before} {after} {ref}",
            env=self.build_environment(git_dir, committer_name),
        )

    def _scrub(self, text: str) -> str:
        if self._smtp_password:
            return text.replace(self._smtp_password, REDACTION_PLACEHOLDER)
        return text

    async def invoke(self, git_dir: Path, config: RepoConfig, before: str, after: str,
                     ref: str, committer_name: str) -> NotifierResult:
        """Run the notifier once; a non-zero exit raises NotifierError"""
        invocation = self.build_invocation(git_dir, config, before, after, ref, committer_name)
        logger.info("Invoking notifier", command=invocation.command, stdin=invocation.stdin)

        raw = await asyncio.to_thread(self.notifier.run, invocation)
        result = NotifierResult(
            return_code=raw.return_code,
            stdout=self._scrub(raw.stdout),
            stderr=self._scrub(raw.stderr),
        )

        if result.return_code != 0:
            logger.error("Notifier failed", return_code=result.return_code, stderr=result.stderr)
            raise NotifierError(
                f"{os.path.basename(self.command)} failed: exit status {result.return_code}:\n"
                f"{result.stderr}",
                return_code=result.return_code,
                stderr=result.stderr,
            )

        logger.debug("Notifier output", stdout=result.stdout)
        return result
