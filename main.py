#!/usr/bin/env python3
"""
Commit email bot
Main application entry point
"""

import argparse
import sys
from importlib import resources
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response
from pydantic import ValidationError

from config.settings import Settings, load_settings
from mailbot import __version__
from mailbot.api.health import router as health_router
from mailbot.api.webhooks import router as webhook_router
from mailbot.services.config_resolver import ConfigResolver
from mailbot.services.event_router import EventRouter, PushPipeline
from mailbot.services.installation_auth import InstallationAuth
from mailbot.services.notifier import NotificationDispatcher, Notifier, SubprocessNotifier
from mailbot.services.repo_mirror import RepoMirror
from mailbot.services.stats_store import JsonlStatsStore, StatsStore
from mailbot.utils.log_config import configure_logging

logger = structlog.get_logger()

INDEX_HTML = resources.files("mailbot").joinpath("static/index.html").read_bytes()


def create_app(
    settings: Settings,
    notifier: Optional[Notifier] = None,
    installation_auth: Optional[InstallationAuth] = None,
    stats: Optional[StatsStore] = None,
) -> FastAPI:
    """Wire every component from one immutable settings value"""
    settings.PERSIST_PATH.mkdir(parents=True, exist_ok=True)

    if installation_auth is None and settings.app_auth_configured:
        installation_auth = InstallationAuth(
            app_id=settings.GITHUB_APP_ID,
            private_key=settings.GITHUB_APP_PRIVATE_KEY.get_secret_value(),
            api_url=settings.GITHUB_API_URL,
        )

    mirror = RepoMirror(settings.repos_path)
    dispatcher = NotificationDispatcher(
        notifier=notifier or SubprocessNotifier(),
        command=settings.NOTIFIER_COMMAND,
        global_git_config=settings.NOTIFIER_GIT_CONFIG,
        smtp_password=settings.smtp_password,
        stdout_mode=settings.MAIL_STDOUT,
    )
    pipeline = PushPipeline(
        mirror=mirror,
        resolver=ConfigResolver(mirror),
        dispatcher=dispatcher,
        installation_auth=installation_auth,
        timeout=settings.PIPELINE_TIMEOUT,
    )
    stats = stats or JsonlStatsStore(settings.stats_path)

    app = FastAPI(
        title="Commit Email Bot",
        description="Relays GitHub pushes into mailing-list commit announcements",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.stats = stats
    app.state.event_router = EventRouter(pipeline, stats)

    app.include_router(health_router, prefix="/health", tags=["health"])
    app.include_router(webhook_router, prefix="/webhook", tags=["webhooks"])

    @app.get("/", include_in_schema=False)
    async def root() -> Response:
        """Static landing page"""
        return Response(content=INDEX_HTML, media_type="text/html; charset=utf-8")

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "Starting commit email bot",
            hostname=settings.TLS_HOSTNAME,
            port=settings.PORT,
            persist_path=str(settings.PERSIST_PATH),
            app_auth=installation_auth is not None,
            stdout_mode=settings.stdout_mode,
        )
        if settings.smtp_password is None:
            logger.warning("no MAIL_SMTP_PASSWORD set, will print to stdout")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down commit email bot")

    return app


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relay GitHub pushes to commit emails")
    parser.add_argument("--hostname", help="tls hostname (use localhost to disable https)")
    parser.add_argument("--persist", help="directory for persistent data")
    parser.add_argument("--port", type=int, help="port to listen on")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(hostname=args.hostname, persist=args.persist, port=args.port)
    except ValidationError as e:
        for error in e.errors():
            print(f"configuration error: {error['msg']}", file=sys.stderr)
        return 1

    settings.PERSIST_PATH.mkdir(parents=True, exist_ok=True)
    configure_logging(
        level=settings.LOG_LEVEL,
        secrets=settings.secret_values(),
        error_log_path=settings.error_log_path,
    )

    ssl_options = {}
    if not settings.is_localhost:
        # Certificates are issued and renewed by an external ACME client.
        cert_file = settings.tls_keys_path / f"{settings.TLS_HOSTNAME}.crt"
        key_file = settings.tls_keys_path / f"{settings.TLS_HOSTNAME}.key"
        if not cert_file.exists() or not key_file.exists():
            logger.error("TLS certificate missing", cert_file=str(cert_file), key_file=str(key_file))
            return 1
        ssl_options = {"ssl_certfile": str(cert_file), "ssl_keyfile": str(key_file)}

    app = create_app(settings)
    print(f"listening on :{settings.PORT}")
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        timeout_graceful_shutdown=settings.SHUTDOWN_GRACE_PERIOD,
        **ssl_options,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
