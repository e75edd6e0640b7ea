"""
Slack Web API client.

Responsibilities:
- Attach the caller-selected bearer token to every call
- Follow cursor-based pagination (response_metadata.next_cursor)
- Surface {ok: false} responses and transport failures as distinct errors
- Insert a fixed delay between pages to stay under Slack's rate limits
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class SlackError(Exception):
    """Base class for Slack client errors."""


class SlackApiError(SlackError):
    """Slack answered with ``{"ok": false, "error": "<code>"}``."""

    def __init__(self, endpoint: str, error: str, response: Optional[dict[str, Any]] = None) -> None:
        super().__init__(f"Slack API error on {endpoint}: {error}")
        self.endpoint = endpoint
        self.error = error
        self.response = response or {}


class SlackTransportError(SlackError):
    """Network failure or non-2xx HTTP status reaching Slack."""

    def __init__(self, endpoint: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"Slack transport error on {endpoint}: {message}")
        self.endpoint = endpoint
        self.status_code = status_code


class SlackRateLimitedError(SlackTransportError):
    """HTTP 429 from Slack. ``retry_after`` is the server-suggested wait in seconds."""

    def __init__(self, endpoint: str, retry_after: float) -> None:
        super().__init__(endpoint, f"rate limited (retry after {retry_after}s)", status_code=429)
        self.retry_after = retry_after


class MissingTokenError(SlackError):
    """No usable token exists for the requested channel or operation."""


class SlackApiClient:
    """
    Thin async wrapper around the Slack Web API.

    Tokens are chosen by the caller (see ``services.access_policy.select_token``).
    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_delay: Optional[float] = None,
        max_rate_limit_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.base_url = (base_url or settings.SLACK_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.SLACK_REQUEST_TIMEOUT
        self.page_delay = page_delay if page_delay is not None else settings.SYNC_PAGE_DELAY_SECONDS
        self.max_rate_limit_retries = (
            max_rate_limit_retries
            if max_rate_limit_retries is not None
            else settings.SLACK_RATE_LIMIT_MAX_RETRIES
        )
        self._transport = transport
        self._sleep = sleep
        self.call_count = 0

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def _request(
        self,
        endpoint: str,
        token: str,
        params: Optional[dict[str, Any]],
        http_method: str,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        headers = {"Authorization": f"Bearer {token}"}
        self.call_count += 1

        try:
            async with self._client(timeout=self.timeout) as client:
                if http_method == "GET":
                    response = await client.get(url, headers=headers, params=params)
                else:
                    response = await client.post(url, headers=headers, data=params)
        except httpx.HTTPError as exc:
            raise SlackTransportError(endpoint, str(exc)) from exc

        if response.status_code == 429:
            retry_after = float(response.headers.get("Retry-After", "1") or 1)
            raise SlackRateLimitedError(endpoint, retry_after)
        if response.status_code < 200 or response.status_code >= 300:
            raise SlackTransportError(
                endpoint, f"HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise SlackTransportError(
                endpoint, "invalid JSON body", status_code=response.status_code
            ) from exc

        if not data.get("ok"):
            raise SlackApiError(endpoint, str(data.get("error", "unknown_error")), data)
        return data

    async def call(
        self,
        endpoint: str,
        token: str,
        params: Optional[dict[str, Any]] = None,
        *,
        http_method: str = "GET",
    ) -> dict[str, Any]:
        """
        Issue one authenticated call and return the decoded JSON body.

        Raises:
            SlackApiError: Slack returned ``ok: false``.
            SlackTransportError: network failure or non-2xx status.
            SlackRateLimitedError: still rate limited after the retry budget.
        """
        if not token:
            raise MissingTokenError(f"No token supplied for {endpoint}")

        attempt = 0
        while True:
            try:
                return await self._request(endpoint, token, params, http_method)
            except SlackRateLimitedError as exc:
                attempt += 1
                if attempt > self.max_rate_limit_retries:
                    raise
                logger.warning(
                    "[Slack API] %s rate limited, sleeping %ss (retry %d/%d)",
                    endpoint,
                    exc.retry_after,
                    attempt,
                    self.max_rate_limit_retries,
                )
                await self._sleep(exc.retry_after)

    async def iter_pages(
        self,
        endpoint: str,
        token: str,
        params: Optional[dict[str, Any]] = None,
        *,
        limit: Optional[int] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield every page of a cursor-paginated endpoint, in Slack's order.

        Stops when ``response_metadata.next_cursor`` is absent or empty. Sleeps
        ``page_delay`` seconds between pages (not after the last one).
        """
        base_params: dict[str, Any] = dict(params or {})
        if limit is not None:
            base_params["limit"] = limit
        cursor: Optional[str] = None

        while True:
            page_params = dict(base_params)
            if cursor:
                page_params["cursor"] = cursor
            data = await self.call(endpoint, token, page_params)
            yield data

            cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                break
            if self.page_delay > 0:
                await self._sleep(self.page_delay)

    async def collect(
        self,
        endpoint: str,
        token: str,
        item_key: str,
        params: Optional[dict[str, Any]] = None,
        *,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Drain all pages and return the concatenated ``item_key`` arrays."""
        items: list[dict[str, Any]] = []
        async for page in self.iter_pages(endpoint, token, params, limit=limit):
            items.extend(page.get(item_key) or [])
        return items

    # ------------------------------------------------------------------
    # Endpoint helpers
    # ------------------------------------------------------------------

    async def auth_test(self, token: str) -> dict[str, Any]:
        return await self.call("auth.test", token)

    async def users_info(self, token: str, slack_user_id: str) -> dict[str, Any]:
        data = await self.call("users.info", token, {"user": slack_user_id})
        return data.get("user") or {}

    async def users_identity(self, token: str) -> dict[str, Any]:
        return await self.call("users.identity", token)

    async def list_conversations(
        self,
        token: str,
        types: str = "public_channel,private_channel",
        *,
        exclude_archived: bool = False,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"types": types}
        if exclude_archived:
            params["exclude_archived"] = "true"
        return await self.collect(
            "conversations.list",
            token,
            "channels",
            params,
            limit=settings.SLACK_LIST_PAGE_SIZE,
        )

    async def conversation_members(self, token: str, channel_id: str) -> list[str]:
        members: list[str] = []
        async for page in self.iter_pages(
            "conversations.members",
            token,
            {"channel": channel_id},
            limit=settings.SLACK_LIST_PAGE_SIZE,
        ):
            members.extend(page.get("members") or [])
        return members

    def history_pages(
        self,
        token: str,
        channel_id: str,
        oldest: Optional[str] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        params: dict[str, Any] = {"channel": channel_id}
        if oldest:
            params["oldest"] = oldest
        return self.iter_pages(
            "conversations.history", token, params, limit=settings.SLACK_HISTORY_PAGE_SIZE
        )

    def replies_pages(self, token: str, channel_id: str, thread_ts: str) -> AsyncIterator[dict[str, Any]]:
        return self.iter_pages(
            "conversations.replies",
            token,
            {"channel": channel_id, "ts": thread_ts},
            limit=settings.SLACK_HISTORY_PAGE_SIZE,
        )

    def users_pages(self, token: str) -> AsyncIterator[dict[str, Any]]:
        return self.iter_pages("users.list", token, limit=settings.SLACK_USERS_PAGE_SIZE)

    async def files_list(
        self,
        token: str,
        *,
        user: Optional[str] = None,
        page: int = 1,
        count: Optional[int] = None,
        types: Optional[str] = None,
    ) -> dict[str, Any]:
        """``files.list`` is page-numbered rather than cursor-paginated."""
        params: dict[str, Any] = {
            "page": page,
            "count": count or settings.SLACK_FILES_PAGE_SIZE,
        }
        if user:
            params["user"] = user
        if types:
            params["types"] = types
        return await self.call("files.list", token, params)

    async def oauth_v2_access(
        self,
        code: str,
        client_id: str,
        client_secret: str,
        redirect_uri: Optional[str] = None,
    ) -> dict[str, Any]:
        """Exchange an OAuth code. Client credentials go in the form body, not a bearer token."""
        params: dict[str, Any] = {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if redirect_uri:
            params["redirect_uri"] = redirect_uri
        url = f"{self.base_url}/oauth.v2.access"
        self.call_count += 1
        try:
            async with self._client(timeout=self.timeout) as client:
                response = await client.post(url, data=params)
        except httpx.HTTPError as exc:
            raise SlackTransportError("oauth.v2.access", str(exc)) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise SlackTransportError(
                "oauth.v2.access", f"HTTP {response.status_code}", status_code=response.status_code
            )
        data: dict[str, Any] = response.json()
        if not data.get("ok"):
            raise SlackApiError("oauth.v2.access", str(data.get("error", "unknown_error")), data)
        return data

    async def download_file(self, url_private: str, token: str) -> bytes:
        """
        Download a Slack-hosted file.

        ``url_private`` / ``url_private_download`` require the bearer token.

        Raises:
            SlackTransportError: If the download request fails.
            ValueError: If the response body is empty.
        """
        try:
            async with self._client(
                timeout=settings.SLACK_DOWNLOAD_TIMEOUT, follow_redirects=True
            ) as client:
                response: httpx.Response = await client.get(
                    url_private, headers={"Authorization": f"Bearer {token}"}
                )
        except httpx.HTTPError as exc:
            raise SlackTransportError("files.download", str(exc)) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise SlackTransportError(
                "files.download", f"HTTP {response.status_code}", status_code=response.status_code
            )

        data: bytes = response.content
        if not data:
            raise ValueError(f"Empty response downloading Slack file: {url_private}")
        return data
