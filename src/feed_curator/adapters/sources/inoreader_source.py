"""Inoreader stream-contents source with OAuth refresh-token auth."""

import logging
import time
from datetime import datetime
from typing import Any, Optional

import httpx

from feed_curator.core.entities import SourcePage
from feed_curator.core.errors import SourceError, TransientSourceError
from feed_curator.core.interfaces import ContentSource

logger = logging.getLogger(__name__)

READING_LIST = "user/-/state/com.google/reading-list"


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class InoreaderSource(ContentSource):
    """Page through ``/stream/contents`` newest-first.

    One ``list_items`` call is one stream request; the budget is consulted by
    the caller. Access tokens are refreshed on demand and are not counted.
    """

    emoji = "📰"
    name = "Inoreader"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        stream_id: str = READING_LIST,
        base_url: str = "https://www.inoreader.com/reader/api/0",
        token_url: str = "https://www.inoreader.com/oauth2/token",
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.stream_id = stream_id
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.timeout = timeout
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def list_items(
        self,
        since: Optional[datetime],
        cursor: Optional[str],
        page_size: int,
    ) -> SourcePage:
        """Fetch one page of the configured stream."""
        params: dict[str, Any] = {"n": page_size}
        if cursor:
            params["c"] = cursor
        if since is not None:
            params["ot"] = int(since.timestamp())

        token = await self._get_access_token()
        url = f"{self.base_url}/stream/contents/{self.stream_id}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    params=params,
                )
        except httpx.RequestError as e:
            raise TransientSourceError(f"Network error: {e}") from e

        if response.status_code == 401:
            # Token revoked or expired early; the next attempt refreshes it.
            self._access_token = None
            raise TransientSourceError("Access token rejected (401)")
        if response.status_code == 429:
            raise TransientSourceError("Rate limited by Inoreader (429)", retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise TransientSourceError(f"Inoreader server error {response.status_code}")
        if response.status_code != 200:
            raise SourceError(f"Inoreader API error {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise SourceError(f"Malformed JSON from Inoreader: {e}") from e

        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise SourceError("Inoreader response has no 'items' list")

        continuation = data.get("continuation") or None
        logger.debug("Inoreader page: %d item(s), continuation=%s", len(items), continuation)
        return SourcePage(items=items, next_cursor=continuation)

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        if not (self.client_id and self.client_secret and self.refresh_token):
            raise SourceError("Inoreader credentials are not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.token_url,
                    data={
                        "grant_type": "refresh_token",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.refresh_token,
                    },
                )
        except httpx.RequestError as e:
            raise TransientSourceError(f"Network error refreshing token: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(
                f"Token refresh failed with {response.status_code}", retry_after=_retry_after(response)
            )
        if response.status_code != 200:
            raise SourceError(f"Token refresh rejected ({response.status_code}): {response.text[:200]}")

        try:
            data = response.json()
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise SourceError(f"Malformed token response: {e}") from e

        # Inoreader may rotate the refresh token.
        if data.get("refresh_token"):
            self.refresh_token = data["refresh_token"]

        expires_in = float(data.get("expires_in") or 3600)
        self._access_token = access_token
        self._token_expires_at = time.monotonic() + max(0.0, expires_in - 60)
        logger.info("Refreshed Inoreader access token (expires in %.0fs)", expires_in)
        return access_token
