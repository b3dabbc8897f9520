"""
Tests for EventRouter and PushPipeline
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from mailbot.models.github import EventKind
from mailbot.models.repo_config import EmailFormat, MissingConfig, RepoConfig
from mailbot.services.config_resolver import CONFIG_PATH, ConfigResolver
from mailbot.services.event_router import EventRouter, PushPipeline
from mailbot.services.installation_auth import InstallationAuth, InstallationToken
from mailbot.services.notifier import NotificationDispatcher
from mailbot.services.repo_mirror import MirrorEntry, RepoMirror
from mailbot.services.stats_store import StatsStore
from mailbot.utils.exceptions import (
    ConfigError,
    GitSyncError,
    NotifierError,
    ParseError,
    PipelineTimeoutError,
)

BEFORE = "1" * 40
AFTER = "2" * 40
GIT_DIR = Path("/srv/persist/repos/github.com/octo/widgets")


@pytest.fixture
def mirror():
    mirror = Mock(spec=RepoMirror)
    entry = MirrorEntry(full_name="octo/widgets", path=GIT_DIR, cloned=False,
                        synced_at=datetime.now(timezone.utc))
    mirror.sync = AsyncMock(return_value=entry)
    mirror.has_commit.return_value = True
    return mirror


@pytest.fixture
def resolver():
    resolver = Mock(spec=ConfigResolver)
    resolver.resolve.return_value = RepoConfig(mailing_list="commits@example.org")
    return resolver


@pytest.fixture
def stats():
    stats = Mock(spec=StatsStore)
    stats.record = AsyncMock()
    return stats


@pytest.fixture
def dispatcher(fake_notifier):
    return NotificationDispatcher(
        notifier=fake_notifier,
        command="./git_multimail_wrapper.py",
        global_git_config="git-multimail.config",
        smtp_password="hunter2-smtp",
    )


@pytest.fixture
def router(mirror, resolver, dispatcher, stats):
    return EventRouter(PushPipeline(mirror, resolver, dispatcher), stats)


def push_body(make_push_payload, **kwargs) -> bytes:
    return json.dumps(make_push_payload("octo/widgets", "https://github.com/octo/widgets.git",
                                        BEFORE, AFTER, **kwargs)).encode()


class TestEventRouter:
    """Test cases for event dispatch"""

    def test_every_event_kind_has_a_handler(self, router):
        assert set(router.handlers) == set(EventKind)

    @pytest.mark.asyncio
    async def test_missing_event_type_is_parse_error(self, router):
        with pytest.raises(ParseError, match="no event type specified"):
            await router.route_event("", b"{}")

    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self, router, mirror, fake_notifier, stats):
        result = await router.route_event("issues", b'{"action": "opened"}')

        assert result.status == "ignored"
        assert result.status_code == 200
        assert result.body == ""
        mirror.sync.assert_not_called()
        stats.record.assert_not_called()
        assert fake_notifier.invocations == []

    @pytest.mark.asyncio
    async def test_unknown_event_body_is_not_parsed(self, router):
        result = await router.route_event("star", b"not json at all")
        assert result.status == "ignored"

    @pytest.mark.asyncio
    async def test_malformed_body_is_parse_error(self, router):
        with pytest.raises(ParseError, match="failed to parse payload"):
            await router.route_event("push", b"{not json")

    @pytest.mark.asyncio
    async def test_invalid_push_fields_are_parse_error(self, router, make_push_payload):
        payload = make_push_payload("octo/widgets", "https://github.com/octo/widgets.git",
                                    BEFORE, "not-a-sha")
        with pytest.raises(ParseError, match="after"):
            await router.route_event("push", json.dumps(payload).encode())

    @pytest.mark.asyncio
    async def test_ping_with_repository_syncs(self, router, mirror):
        body = json.dumps({
            "zen": "Keep it logically awesome.",
            "repository": {"full_name": "octo/widgets", "clone_url": "https://github.com/octo/widgets.git"},
        }).encode()

        result = await router.route_event("ping", body)

        assert result.body == "Pong"
        mirror.sync.assert_awaited_once_with("octo/widgets", "https://github.com/octo/widgets.git")

    @pytest.mark.asyncio
    async def test_ping_without_repository(self, router, mirror):
        result = await router.route_event("ping", b'{"zen": "Design for failure."}')

        assert result.body == "Pong"
        mirror.sync.assert_not_called()

    @pytest.mark.asyncio
    async def test_ping_sync_failure(self, router, mirror):
        mirror.sync.side_effect = GitSyncError("clone failed", command="clone", stderr="fatal: nope")
        body = json.dumps({
            "repository": {"full_name": "octo/widgets", "clone_url": "https://github.com/octo/widgets.git"},
        }).encode()

        with pytest.raises(GitSyncError, match="syncing repo 'https://github.com/octo/widgets.git' failed"):
            await router.route_event("ping", body)

    @pytest.mark.asyncio
    async def test_installation_event_is_recorded(self, router, mirror, stats, fake_notifier):
        body = json.dumps({
            "action": "created",
            "installation": {"id": 77, "account": {"login": "octo"}},
            "repositories": [{"full_name": "octo/widgets"}],
        }).encode()

        result = await router.route_event("installation", body)

        assert result.status == "recorded"
        stats.record.assert_awaited_once_with(
            "installation", action="created", installation_id=77, account="octo", repository_count=1,
        )
        mirror.sync.assert_not_called()
        assert fake_notifier.invocations == []

    @pytest.mark.asyncio
    async def test_installation_repositories_event_is_recorded(self, router, stats):
        body = json.dumps({
            "action": "added",
            "installation": {"id": 77},
            "repositories_added": [{"full_name": "octo/gadgets"}],
        }).encode()

        await router.route_event("installation_repositories", body)

        stats.record.assert_awaited_once_with(
            "installation_repositories", action="added", installation_id=77,
            added=["octo/gadgets"], removed=[],
        )

    @pytest.mark.asyncio
    async def test_stats_failure_does_not_fail_delivery(self, router, stats):
        stats.record.side_effect = OSError("No space left on device")
        body = json.dumps({"action": "deleted", "installation": {"id": 77}}).encode()

        result = await router.route_event("installation", body)

        assert result.status == "recorded"


class TestPushHandling:
    """Push events through the pipeline"""

    @pytest.mark.asyncio
    async def test_push_notifies(self, router, fake_notifier, stats, make_push_payload):
        result = await router.route_event("push", push_body(make_push_payload), delivery_id="d-1")

        assert result.body == "OK"
        assert len(fake_notifier.invocations) == 1
        invocation = fake_notifier.invocations[0]
        assert invocation.stdin == f"{BEFORE} {AFTER} refs/heads/main"
        assert "multimailhook.mailingList=commits@example.org" in invocation.command
        assert invocation.env["GIT_DIR"] == str(GIT_DIR)
        stats.record.assert_awaited_once_with("push", repository="octo/widgets", outcome="ok")

    @pytest.mark.asyncio
    async def test_html_config_sets_format(self, router, resolver, fake_notifier, make_push_payload):
        resolver.resolve.return_value = RepoConfig(mailing_list="commits@example.org",
                                                   email_format=EmailFormat.HTML)

        await router.route_event("push", push_body(make_push_payload))

        assert "multimailhook.commitEmailFormat=html" in fake_notifier.invocations[0].command

    @pytest.mark.asyncio
    async def test_missing_config_is_success_without_mail(self, router, resolver, fake_notifier,
                                                          stats, make_push_payload):
        resolver.resolve.return_value = MissingConfig(CONFIG_PATH)

        result = await router.route_event("push", push_body(make_push_payload))

        assert result.status == "opted_out"
        assert result.body == "OK"
        assert fake_notifier.invocations == []
        stats.record.assert_awaited_once_with("push", repository="octo/widgets", outcome="opted_out")

    @pytest.mark.asyncio
    async def test_invalid_config_fails_before_notifier(self, router, resolver, fake_notifier,
                                                        stats, make_push_payload):
        resolver.resolve.side_effect = ConfigError(
            "invalid email format in .github/commit-emails.toml (should be html or text)"
        )

        with pytest.raises(ConfigError, match="invalid email format"):
            await router.route_event("push", push_body(make_push_payload))

        assert fake_notifier.invocations == []
        stats.record.assert_awaited_once_with("push", repository="octo/widgets", outcome="failed",
                                              error_type="ConfigError")

    @pytest.mark.asyncio
    async def test_sync_failure_skips_config_and_notifier(self, router, mirror, resolver,
                                                          fake_notifier, make_push_payload):
        mirror.sync.side_effect = GitSyncError("fetch failed", command="fetch")

        with pytest.raises(GitSyncError):
            await router.route_event("push", push_body(make_push_payload))

        resolver.resolve.assert_not_called()
        assert fake_notifier.invocations == []

    @pytest.mark.asyncio
    async def test_unknown_after_commit_fails(self, router, mirror, fake_notifier, make_push_payload):
        mirror.has_commit.return_value = False

        with pytest.raises(GitSyncError, match="not found in mirror"):
            await router.route_event("push", push_body(make_push_payload))

        assert fake_notifier.invocations == []

    @pytest.mark.asyncio
    async def test_branch_deletion_skips_commit_check(self, router, mirror, fake_notifier,
                                                      make_push_payload):
        payload = make_push_payload("octo/widgets", "https://github.com/octo/widgets.git",
                                    BEFORE, "0" * 40)

        result = await router.route_event("push", json.dumps(payload).encode())

        assert result.body == "OK"
        mirror.has_commit.assert_not_called()
        assert fake_notifier.invocations[0].stdin.split()[1] == "0" * 40

    @pytest.mark.asyncio
    async def test_notifier_failure_propagates(self, router, fake_notifier, stats, make_push_payload):
        fake_notifier.return_code = 1
        fake_notifier.stderr = "SMTP connection refused"

        with pytest.raises(NotifierError) as exc_info:
            await router.route_event("push", push_body(make_push_payload))

        assert "SMTP connection refused" in exc_info.value.message
        assert stats.record.await_args.kwargs["outcome"] == "failed"


class TestPushPipeline:
    """Pipeline collaborators and deadline"""

    @pytest.mark.asyncio
    async def test_installation_token_is_used_for_sync(self, mirror, resolver, dispatcher,
                                                       make_push_payload):
        token = InstallationToken(installation_id=42, token="ghs_" + "t" * 36)
        auth = Mock(spec=InstallationAuth)
        auth.get_token = AsyncMock(return_value=token)
        router = EventRouter(PushPipeline(mirror, resolver, dispatcher, installation_auth=auth),
                             Mock(spec=StatsStore, record=AsyncMock()))

        await router.route_event("push", push_body(make_push_payload, installation_id=42))

        auth.get_token.assert_awaited_once_with(42)
        mirror.sync.assert_awaited_once_with("octo/widgets", "https://github.com/octo/widgets.git", token)

    @pytest.mark.asyncio
    async def test_without_app_credentials_fetches_anonymously(self, router, mirror, make_push_payload):
        await router.route_event("push", push_body(make_push_payload, installation_id=42))

        mirror.sync.assert_awaited_once_with("octo/widgets", "https://github.com/octo/widgets.git", None)

    @pytest.mark.asyncio
    async def test_deadline_expiry_is_timeout_error(self, mirror, resolver, dispatcher, fake_notifier,
                                                    make_push_payload):
        async def slow_sync(*args):
            await asyncio.sleep(5)

        mirror.sync.side_effect = slow_sync
        pipeline = PushPipeline(mirror, resolver, dispatcher, timeout=0.05)
        router = EventRouter(pipeline, Mock(spec=StatsStore, record=AsyncMock()))

        with pytest.raises(PipelineTimeoutError, match="timed out"):
            await router.route_event("push", push_body(make_push_payload))

        assert fake_notifier.invocations == []
