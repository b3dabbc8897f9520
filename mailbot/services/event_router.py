"""
GitHub event routing and the push pipeline
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from mailbot.models.github import (
    EventKind,
    InstallationEvent,
    InstallationRepositoriesEvent,
    PingEvent,
    PushEvent,
    WebhookEvent,
    parse_event,
)
from mailbot.models.repo_config import MissingConfig
from mailbot.services.config_resolver import ConfigResolver
from mailbot.services.installation_auth import InstallationAuth
from mailbot.services.notifier import NotificationDispatcher
from mailbot.services.repo_mirror import RepoMirror
from mailbot.services.stats_store import StatsStore
from mailbot.utils.exceptions import GitSyncError, ParseError, PipelineError, PipelineTimeoutError

logger = structlog.get_logger()


@dataclass
class EventResult:
    """Outcome of one webhook delivery, as reported to the sender"""
    status: str
    body: str = ""
    status_code: int = 200


class PushPipeline:
    """Token, sync, config, notify: everything a push event triggers"""

    def __init__(self, mirror: RepoMirror, resolver: ConfigResolver,
                 dispatcher: NotificationDispatcher,
                 installation_auth: Optional[InstallationAuth] = None,
                 timeout: float = 30.0):
        self.mirror = mirror
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.installation_auth = installation_auth
        self.timeout = timeout

    async def run(self, event: PushEvent) -> EventResult:
        """Run the pipeline under the request deadline"""
        try:
            return await asyncio.wait_for(self._run(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise PipelineTimeoutError(
                f"push pipeline for {event.repository.full_name} timed out after {self.timeout:g}s"
            ) from None

    async def _run(self, event: PushEvent) -> EventResult:
        repo = event.repository
        log = logger.bind(repository=repo.full_name, ref=event.ref)

        token = None
        if event.installation_id is not None and self.installation_auth is not None:
            token = await self.installation_auth.get_token(event.installation_id)
        elif event.installation_id is not None:
            log.debug("GitHub App not configured, fetching anonymously")

        entry = await self.mirror.sync(repo.full_name, repo.clone_url, token)

        if not event.deleted:
            present = await asyncio.to_thread(self.mirror.has_commit, entry.path, event.after)
            if not present:
                raise GitSyncError(f"commit {event.after} not found in mirror of {repo.full_name}")

        config = await asyncio.to_thread(self.resolver.resolve, entry.path)
        if isinstance(config, MissingConfig):
            log.info("Repository not opted in", reason=str(config))
            return EventResult(status="opted_out", body="OK")

        await self.dispatcher.invoke(
            entry.path,
            config,
            before=event.before,
            after=event.after,
            ref=event.ref,
            committer_name=event.pusher.name,
        )
        log.info("push success", before=event.before[:8], after=event.after[:8],
                 mailing_list=config.mailing_list, email_format=config.email_format.value)
        return EventResult(status="ok", body="OK")


EventHandler = Callable[[Any], Awaitable[EventResult]]


class EventRouter:
    """Routes GitHub events to the handler for their kind"""

    def __init__(self, pipeline: PushPipeline, stats: StatsStore):
        self.pipeline = pipeline
        self.mirror = pipeline.mirror
        self.stats = stats

        self.handlers: Dict[EventKind, EventHandler] = {
            EventKind.PING: self._handle_ping,
            EventKind.PUSH: self._handle_push,
            EventKind.INSTALLATION: self._handle_installation,
            EventKind.INSTALLATION_REPOSITORIES: self._handle_installation_repositories,
        }
        missing = set(EventKind) - set(self.handlers)
        if missing:
            raise TypeError(f"no handler for event kinds: {sorted(k.value for k in missing)}")

    async def route_event(self, event_type: str, payload: bytes,
                          delivery_id: str = "") -> EventResult:
        """Parse and dispatch one authenticated delivery"""
        if not event_type:
            raise ParseError("no event type specified")

        kind = EventKind.from_header(event_type)
        if kind is None:
            # Accepted and dropped; a 4xx here would only trigger redelivery.
            logger.info("Ignoring unhandled event", event_type=event_type, delivery_id=delivery_id)
            return EventResult(status="ignored")

        event = parse_event(kind, payload)
        logger.info(
            "Received GitHub event",
            event_type=event_type,
            delivery_id=delivery_id,
            repository=_repository_name(event),
            sender=event.sender.login,
        )
        return await self.handlers[kind](event)

    async def _handle_ping(self, event: PingEvent) -> EventResult:
        if event.repository is not None:
            repo = event.repository
            try:
                await self.mirror.sync(repo.full_name, repo.clone_url)
            except GitSyncError as e:
                logger.error("Ping sync failed", repository=repo.full_name, error=e.message)
                raise GitSyncError(f"syncing repo {repo.clone_url!r} failed: {e.message}",
                                   command=e.command, stderr=e.stderr) from None
        return EventResult(status="pong", body="Pong")

    async def _handle_push(self, event: PushEvent) -> EventResult:
        try:
            result = await self.pipeline.run(event)
        except PipelineError as e:
            logger.error("push handler failed", repository=event.repository.full_name,
                         error_type=e.__class__.__name__, error=e.message)
            await self._record("push", repository=event.repository.full_name, outcome="failed",
                               error_type=e.__class__.__name__)
            raise
        await self._record("push", repository=event.repository.full_name, outcome=result.status)
        return result

    async def _handle_installation(self, event: InstallationEvent) -> EventResult:
        await self._record(
            "installation",
            action=event.action,
            installation_id=event.installation.id,
            account=event.installation.account.login if event.installation.account else None,
            repository_count=len(event.repositories),
        )
        return EventResult(status="recorded", body="OK")

    async def _handle_installation_repositories(
        self, event: InstallationRepositoriesEvent
    ) -> EventResult:
        await self._record(
            "installation_repositories",
            action=event.action,
            installation_id=event.installation.id,
            added=[r.full_name for r in event.repositories_added],
            removed=[r.full_name for r in event.repositories_removed],
        )
        return EventResult(status="recorded", body="OK")

    async def _record(self, event: str, **fields: Any) -> None:
        try:
            await self.stats.record(event, **fields)
        except OSError as e:
            # Stats are best effort.
            logger.warning("Failed to record stats", stats_event=event, error=str(e))


def _repository_name(event: WebhookEvent) -> Optional[str]:
    repository = getattr(event, "repository", None)
    return repository.full_name if repository is not None else None
