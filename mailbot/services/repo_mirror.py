"""
Bare git mirrors of remote repositories
"""

import asyncio
import os
import re
import shutil
import threading
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from mailbot.services.installation_auth import InstallationToken
from mailbot.utils.exceptions import GitSyncError

logger = structlog.get_logger()

FULL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


@dataclass
class MirrorEntry:
    """A bare mirror that has been synchronized at least once"""
    full_name: str
    path: Path
    cloned: bool
    synced_at: datetime


class RepoMirror:
    """Maintains one bare mirror per remote repository

    The mirror directory is owned by this class: nothing else writes to it.
    Concurrent syncs of the same repository are serialized by a per-name
    lock, held until the git process exits even if the caller is cancelled.
    Different repositories sync in parallel.
    """

    def __init__(self, repos_root: Path, host: str = "github.com"):
        self.repos_root = Path(repos_root)
        self.host = host
        self._locks: Dict[str, asyncio.Lock] = {}
        self._thread_locks: Dict[str, threading.Lock] = {}
        self._thread_locks_guard = threading.Lock()
        self.repos_root.mkdir(parents=True, exist_ok=True)

    def mirror_path(self, full_name: str) -> Path:
        """Deterministic mirror location for a repository"""
        if not FULL_NAME_PATTERN.match(full_name):
            raise GitSyncError(f"invalid repository name: {full_name!r}")
        owner, name = full_name.split("/")
        if owner in (".", "..") or name in (".", ".."):
            raise GitSyncError(f"invalid repository name: {full_name!r}")
        return self.repos_root / self.host / owner / name

    def _lock_for(self, full_name: str) -> asyncio.Lock:
        lock = self._locks.get(full_name)
        if lock is None:
            lock = self._locks[full_name] = asyncio.Lock()
        return lock

    def _thread_lock_for(self, full_name: str) -> threading.Lock:
        with self._thread_locks_guard:
            lock = self._thread_locks.get(full_name)
            if lock is None:
                lock = self._thread_locks[full_name] = threading.Lock()
            return lock

    async def sync(self, full_name: str, clone_url: str,
                   token: Optional[InstallationToken] = None) -> MirrorEntry:
        """Clone the repository if missing, then force-fetch every ref"""
        git_dir = self.mirror_path(full_name)
        async with self._lock_for(full_name):
            return await asyncio.to_thread(self._locked_sync, full_name, git_dir, clone_url, token)

    def _locked_sync(self, full_name: str, git_dir: Path, clone_url: str,
                     token: Optional[InstallationToken]) -> MirrorEntry:
        # A cancelled sync() releases the asyncio lock while its git thread
        # still runs; the thread lock stays held until git exits.
        with self._thread_lock_for(full_name):
            return self._sync_blocking(full_name, git_dir, clone_url, token)

    def _sync_blocking(self, full_name: str, git_dir: Path, clone_url: str,
                       token: Optional[InstallationToken]) -> MirrorEntry:
        env = self._git_env(token)

        cloned = False
        if not os.path.lexists(git_dir):
            self._clone(clone_url, git_dir, env)
            logger.info("Cloned repository", repository=full_name, path=str(git_dir))
            cloned = True
        elif not git_dir.is_dir():
            raise GitSyncError(f"{git_dir} exists and is not a directory")

        # Fetch after a clone too: every sync ends in the same on-disk state.
        self._fetch(git_dir, env)
        logger.debug("Fetched repository", repository=full_name, path=str(git_dir))
        return MirrorEntry(full_name=full_name, path=git_dir, cloned=cloned,
                           synced_at=datetime.now(timezone.utc))

    def _git_env(self, token: Optional[InstallationToken]) -> Dict[str, str]:
        # Never prompt for credentials.
        env = {"GIT_TERMINAL_PROMPT": "0"}
        if token is not None:
            # Token goes through the environment only, never argv or the remote URL.
            env.update({
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "http.extraHeader",
                "GIT_CONFIG_VALUE_0": token.git_auth_header(),
            })
        return env

    def _clone(self, clone_url: str, git_dir: Path, env: Dict[str, str]) -> None:
        git_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            repo = Repo.clone_from(clone_url, str(git_dir), env=env, bare=True, quiet=True)
            repo.close()
        except GitCommandError as e:
            # No half-written mirror may remain.
            if git_dir.exists():
                shutil.rmtree(git_dir, ignore_errors=True)
            stderr = _stderr_text(e)
            logger.error("Git clone failed", url=clone_url, error=stderr)
            raise GitSyncError(f"git clone {clone_url} failed: exit status {e.status}: {stderr}",
                               command="clone", stderr=stderr)

    def _fetch(self, git_dir: Path, env: Dict[str, str]) -> None:
        repo = self.open(git_dir)
        try:
            with repo.git.custom_environment(**env):
                repo.git.fetch("--quiet", "--force", "origin", "*:*")
        except GitCommandError as e:
            stderr = _stderr_text(e)
            logger.error("Git fetch failed", path=str(git_dir), error=stderr)
            raise GitSyncError(f"git fetch in {git_dir} failed: exit status {e.status}: {stderr}",
                               command="fetch", stderr=stderr)
        finally:
            repo.close()

    def open(self, git_dir: Path) -> Repo:
        """Open an existing mirror"""
        try:
            repo = Repo(str(git_dir))
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise GitSyncError(f"{git_dir} is not a git repository")
        if not repo.bare:
            repo.close()
            raise GitSyncError(f"{git_dir} is not a bare repository")
        return repo

    def has_commit(self, git_dir: Path, sha: str) -> bool:
        """Whether the mirror holds the given commit"""
        repo = self.open(git_dir)
        try:
            repo.git.cat_file("-e", f"{sha}^{{commit}}")
            return True
        except GitCommandError:
            return False
        finally:
            repo.close()


def _stderr_text(error: GitCommandError) -> str:
    stderr = error.stderr or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    stderr = stderr.strip()
    # GitPython wraps captured stderr as "stderr: '...'".
    if stderr.startswith("stderr:"):
        stderr = stderr[len("stderr:"):].strip().strip("'")
    return stderr.strip()
