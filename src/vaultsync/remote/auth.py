"""OAuth access-token refresh for the remote store."""

from __future__ import annotations

import logging
import time

import httpx

from vaultsync.models import SyncConfig

logger = logging.getLogger(__name__)

# Refresh this many seconds before the reported expiry.
EXPIRY_SKEW_SECONDS = 60


class TokenManager:
    """Exchanges a long-lived refresh token for short-lived access tokens.

    Args:
        refresh_token: OAuth refresh token.
        config: Supplies ``token_url``, ``client_id`` and ``client_secret``.
        http: Shared async HTTP client.
    """

    def __init__(self, refresh_token: str, config: SyncConfig, http: httpx.AsyncClient) -> None:
        self._refresh_token = refresh_token
        self._config = config
        self._http = http
        self.access_token: str | None = None
        self.expires_at: float = 0.0

    @property
    def expired(self) -> bool:
        return self.access_token is None or time.time() >= self.expires_at - EXPIRY_SKEW_SECONDS

    async def refresh(self) -> bool:
        """Fetch a new access token. Returns False on any failure."""
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self._refresh_token,
        }
        if self._config.client_id:
            data["client_id"] = self._config.client_id
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret

        try:
            resp = await self._http.post(self._config.token_url, data=data)
        except httpx.HTTPError as exc:
            logger.error("Token refresh failed: %s", exc)
            return False
        if resp.status_code != 200:
            logger.error("Token refresh rejected (%d): %s", resp.status_code, resp.text[:200])
            return False

        body = resp.json()
        token = body.get("access_token")
        if not token:
            logger.error("Token refresh response carried no access_token")
            return False
        self.access_token = token
        self.expires_at = time.time() + int(body.get("expires_in", 3600))
        logger.debug("Access token refreshed, expires in %ss", body.get("expires_in", 3600))
        return True

    async def ensure_valid(self) -> bool:
        """Refresh only when the current token is missing or about to expire."""
        if not self.expired:
            return True
        return await self.refresh()

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
