"""Shared fakes for the sync tests: in-memory Redis, a scripted Slack API and a throwaway database."""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from connectors.slack import SlackApiClient
from models.channel import Channel
from models.channel_membership import ChannelMembership
from models.database import close_db, get_session, init_db
from models.user import User
from models.workspace import Workspace


class FakeRedis:
    """The subset of redis.asyncio used by the progress store and job control."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.closed = False

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        names = [member for member, _ in members]
        return names[start:] if end == -1 else names[start : end + 1]

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def register_script(self, script: str) -> Any:
        """Only the lock compare-and-delete script is supported."""

        async def run(keys: list[str], args: list[Any]) -> int:
            if self.values.get(keys[0]) == str(args[0]):
                return await self.delete(keys[0])
            return 0

        return run

    async def aclose(self) -> None:
        self.closed = True

    def expire(self, key: str) -> None:
        """Simulate a TTL running out."""
        self.values.pop(key, None)
        self.ttls.pop(key, None)


Route = Any


class FakeSlack:
    """
    Scripted Slack Web API behind httpx.MockTransport.

    ``on(endpoint, *pages, **match)`` registers cursor-paginated pages for calls
    whose params include ``match``. A callable route receives the params and
    returns a body dict or an httpx.Response.
    """

    base_url = "https://slack.test/api"

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, str], Optional[str]]] = []
        self._routes: list[tuple[str, dict[str, str], Route]] = []

    def on(self, endpoint: str, *pages: Any, **match: str) -> None:
        route: Route = pages[0] if len(pages) == 1 and callable(pages[0]) else list(pages)
        self._routes.insert(0, (endpoint, match, route))

    def calls_to(self, endpoint: str) -> list[dict[str, str]]:
        return [params for name, params, _ in self.calls if name == endpoint]

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        params = dict(request.url.params)
        if request.method == "POST":
            params.update(dict(parse_qsl(request.content.decode())))
        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer ") :] if auth.startswith("Bearer ") else None
        self.calls.append((endpoint, params, token))

        for name, match, route in self._routes:
            if name != endpoint or any(params.get(k) != v for k, v in match.items()):
                continue
            if callable(route):
                body = route(params)
            else:
                index = int(params.get("cursor") or 0)
                body = dict(route[index]) if route else {}
                if index + 1 < len(route):
                    body["response_metadata"] = {"next_cursor": str(index + 1)}
            if isinstance(body, httpx.Response):
                return body
            body.setdefault("ok", True)
            return httpx.Response(200, json=body)

        return httpx.Response(200, json={"ok": False, "error": "unknown_method"})

    def client(self, **kwargs: Any) -> SlackApiClient:
        kwargs.setdefault("page_delay", 0)
        return SlackApiClient(
            base_url=self.base_url,
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


class Seeder:
    """Inserts archive rows for a scenario."""

    async def _add(self, row: Any) -> Any:
        async with get_session() as session:
            session.add(row)
            await session.commit()
        return row

    async def workspace(self, bot_token: Optional[str] = "xoxb-bot", slack_team_id: str = "T1") -> Workspace:
        return await self._add(
            Workspace(id=uuid.uuid4(), slack_team_id=slack_team_id, name="Acme", bot_token=bot_token)
        )

    async def user(
        self,
        workspace: Workspace,
        slack_user_id: Optional[str] = "U1",
        *,
        name: str = "Ada Lovelace",
        email: Optional[str] = None,
        access_token: Optional[str] = "xoxp-user",
        is_admin: bool = False,
        is_active: bool = True,
    ) -> User:
        return await self._add(
            User(
                id=uuid.uuid4(),
                slack_user_id=slack_user_id,
                workspace_id=workspace.id,
                name=name,
                email=email or f"{slack_user_id or uuid.uuid4().hex}@example.com",
                access_token=access_token,
                is_admin=is_admin,
                is_active=is_active,
            )
        )

    async def channel(
        self,
        workspace: Workspace,
        channel_id: str = "C1",
        *,
        name: Optional[str] = None,
        is_private: bool = False,
        is_dm: bool = False,
        is_mpim: bool = False,
        updated_at: Optional[datetime] = None,
    ) -> Channel:
        now = updated_at or datetime.utcnow()
        return await self._add(
            Channel(
                id=channel_id,
                workspace_id=workspace.id,
                name=name or channel_id.lower(),
                is_private=is_private or is_dm or is_mpim,
                is_dm=is_dm,
                is_mpim=is_mpim,
                created_at=now,
                updated_at=now,
            )
        )

    async def membership(
        self,
        channel_id: str,
        user_id: uuid.UUID,
        left_at: Optional[datetime] = None,
    ) -> ChannelMembership:
        return await self._add(
            ChannelMembership(
                id=uuid.uuid4(),
                channel_id=channel_id,
                user_id=user_id,
                joined_at=datetime.utcnow(),
                left_at=left_at,
            )
        )


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def slack() -> FakeSlack:
    return FakeSlack()


@pytest.fixture
def seed() -> Seeder:
    return Seeder()


@pytest.fixture
def run_db() -> Callable[[Callable[[], Awaitable[Any]]], Any]:
    """Run ``scenario()`` against a fresh in-memory database on its own event loop."""

    def _run(scenario: Callable[[], Awaitable[Any]]) -> Any:
        async def _go() -> Any:
            await init_db()
            try:
                return await scenario()
            finally:
                await close_db()

        return asyncio.run(_go())

    return _run
