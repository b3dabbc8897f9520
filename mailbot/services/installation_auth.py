"""
GitHub App installation token exchange
"""

import base64
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx
import jwt
import structlog

from mailbot.utils.exceptions import InstallationAuthError

logger = structlog.get_logger()

USER_AGENT = "commit-email-bot/1.0"


@dataclass(frozen=True)
class InstallationToken:
    """Short-lived token scoped to one installation. Never persisted."""

    installation_id: int
    token: str = field(repr=False)
    expires_at: Optional[datetime] = None

    def git_auth_header(self) -> str:
        """http.extraHeader value that authenticates git over https"""
        credentials = base64.b64encode(f"x-access-token:{self.token}".encode()).decode()
        return f"AUTHORIZATION: basic {credentials}"


class InstallationAuth:
    """Exchanges the app id and private key for installation-scoped tokens

    Tokens are issued fresh for every push pipeline run; nothing is cached
    and a failed exchange is not retried.
    """

    def __init__(self, app_id: str, private_key: str, api_url: str = "https://api.github.com",
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not app_id or not private_key:
            raise ValueError("GitHub App id and private key are required")
        self.app_id = app_id
        self._private_key = private_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"InstallationAuth(app_id={self.app_id!r}, api_url={self.api_url!r})"

    def create_app_jwt(self, now: Optional[int] = None) -> str:
        """Sign the short-lived JWT that identifies the app itself"""
        now = int(time.time()) if now is None else now
        # Backdate iat to tolerate clock drift; GitHub caps exp at 10 minutes.
        payload = {"iat": now - 60, "exp": now + 9 * 60, "iss": self.app_id}
        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise InstallationAuthError(f"signing app JWT failed: {e}") from None

    async def get_token(self, installation_id: int) -> InstallationToken:
        """Exchange the app JWT for an installation access token"""
        app_jwt = self.create_app_jwt()
        url = f"{self.api_url}/app/installations/{installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {app_jwt}",
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout),
                                         transport=self._transport) as client:
                response = await client.post(url, headers=headers)
        except httpx.RequestError as e:
            logger.error("Installation token request failed", installation_id=installation_id,
                         error=str(e))
            raise InstallationAuthError(f"installation token request failed: {e}") from None

        if response.status_code >= 400:
            message = ""
            try:
                message = response.json().get("message", "")
            except ValueError:
                pass
            logger.error(
                "Installation token exchange rejected",
                installation_id=installation_id,
                status_code=response.status_code,
                message=message,
            )
            raise InstallationAuthError(
                f"installation token exchange failed: {response.status_code} {message}".rstrip(),
                status_code=response.status_code,
            )

        try:
            data = response.json()
            token = data["token"]
        except (ValueError, KeyError, TypeError):
            raise InstallationAuthError(
                "installation token response missing token", status_code=response.status_code
            ) from None

        expires_at = None
        if data.get("expires_at"):
            try:
                expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
            except ValueError:
                logger.warning("Unparseable token expiry", expires_at=data["expires_at"])

        logger.info("Installation token issued", installation_id=installation_id,
                    expires_at=expires_at.isoformat() if expires_at else None)
        return InstallationToken(installation_id=installation_id, token=token, expires_at=expires_at)
