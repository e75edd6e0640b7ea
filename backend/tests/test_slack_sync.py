import uuid
from typing import Any, Optional

import httpx
import pytest
from sqlalchemy import func, select

from connectors.slack import SlackTransportError
from models.channel import Channel
from models.database import get_session
from models.message import Message
from models.user import User
from services.slack_sync import SyncReconciler
from services.sync_control import CANCEL_KEY, CancellationToken, SyncCancelledError


async def _message_count() -> int:
    async with get_session() as session:
        return int(await session.scalar(select(func.count(Message.id))) or 0)


async def _store(workspace_id: uuid.UUID, channel_id: str, *timestamps: str) -> None:
    async with get_session() as session:
        for ts in timestamps:
            session.add(
                Message(
                    id=uuid.uuid4(),
                    slack_message_id=ts,
                    timestamp=ts,
                    workspace_id=workspace_id,
                    channel_id=channel_id,
                    text="stored",
                )
            )
        await session.commit()


class RecordingIngestion:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[dict[str, Any], str, dict[str, Any]]] = []

    async def ingest(self, descriptor: dict[str, Any], token: str, **kwargs: Any) -> dict[str, Any]:
        self.calls.append((descriptor, token, kwargs))
        if self.fail:
            raise RuntimeError("storage offline")
        return {"status": "created", "downloaded": True, "thumbnails": 0}


def test_first_sync_saves_every_page_and_stamps_channel(run_db, seed, slack) -> None:
    slack.on(
        "conversations.history",
        {"messages": [{"ts": "100.001", "user": "U1", "text": "a"}, {"ts": "200.002", "user": "U1", "text": "b"}]},
        {"messages": [{"ts": "300.003", "user": "U1", "text": "c"}]},
    )

    async def scenario() -> tuple[dict[str, Any], int, Optional[Channel]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        result = await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        async with get_session() as session:
            stored = await session.get(Channel, "C1")
        return result, await _message_count(), stored

    result, count, stored = run_db(scenario)

    assert result == {
        "success": True,
        "channel": "c1",
        "messages_fetched": 3,
        "messages_saved": 3,
        "sync_type": "incremental",
    }
    assert count == 3
    assert stored is not None and stored.last_synced_at is not None
    assert "oldest" not in slack.calls_to("conversations.history")[0]


def test_rerun_without_new_messages_uses_watermark_and_saves_nothing(run_db, seed, slack) -> None:
    slack.on(
        "conversations.history",
        {"messages": [{"ts": "100.001", "user": "U1"}, {"ts": "200.002", "user": "U1"}]},
        {"messages": [{"ts": "300.003", "user": "U1"}]},
    )
    slack.on("conversations.history", {"messages": []}, oldest="300.003")

    async def scenario() -> tuple[dict[str, Any], dict[str, Any], int]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        reconciler = SyncReconciler(slack.client(), user, workspace)
        first = await reconciler.sync_channel(channel)
        second = await reconciler.sync_channel(channel)
        return first, second, await _message_count()

    first, second, count = run_db(scenario)

    assert first["messages_saved"] == 3
    assert second["messages_fetched"] == 0
    assert second["messages_saved"] == 0
    assert count == 3
    assert slack.calls_to("conversations.history")[-1]["oldest"] == "300.003"


def test_full_sync_refetches_everything_without_duplicating(run_db, seed, slack) -> None:
    slack.on("conversations.history", {"messages": [{"ts": "100.001", "user": "U1", "text": "edited"}]})

    async def scenario() -> tuple[dict[str, Any], int, Optional[str]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        await _store(workspace.id, "C1", "100.001")
        result = await SyncReconciler(slack.client(), user, workspace).sync_channel(channel, full_sync=True)
        async with get_session() as session:
            text = await session.scalar(select(Message.text).where(Message.slack_message_id == "100.001"))
        return result, await _message_count(), text

    result, count, text = run_db(scenario)

    assert result["sync_type"] == "full"
    assert result["messages_fetched"] == 1
    assert result["messages_saved"] == 0
    assert count == 1
    assert text == "edited"
    assert "oldest" not in slack.calls_to("conversations.history")[0]


def test_duplicates_count_as_fetched_but_not_saved(run_db, seed, slack) -> None:
    slack.on(
        "conversations.history",
        {
            "messages": [
                {"ts": "100.001", "user": "U1"},
                {"ts": "150.001", "user": "U1"},
                {"ts": "150.001", "user": "U1"},
            ]
        },
    )

    async def scenario() -> tuple[dict[str, Any], int]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        await _store(workspace.id, "C1", "100.001")
        result = await SyncReconciler(slack.client(), user, workspace).sync_channel(channel, full_sync=True)
        return result, await _message_count()

    result, count = run_db(scenario)

    assert result["messages_fetched"] == 3
    assert result["messages_saved"] == 1
    assert count == 2


def test_watermark_orders_timestamps_numerically(run_db, seed, slack) -> None:
    slack.on("conversations.history", {"messages": []})

    async def scenario() -> None:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        await _store(workspace.id, "C1", "999.000100", "1000.000100", "1000.000050")
        await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)

    run_db(scenario)

    assert slack.calls_to("conversations.history")[0]["oldest"] == "1000.000100"


def test_thread_replies_are_drained_without_repeating_the_parent(run_db, seed, slack) -> None:
    parent = {"ts": "500.000", "thread_ts": "500.000", "reply_count": 2, "user": "U1", "text": "q"}
    slack.on("conversations.history", {"messages": [parent, {"ts": "600.000", "user": "U1"}]})
    slack.on(
        "conversations.replies",
        {"messages": [parent, {"ts": "501.000", "thread_ts": "500.000", "user": "U1"}]},
        {"messages": [{"ts": "502.000", "thread_ts": "500.000", "user": "U1"}]},
        ts="500.000",
    )

    async def scenario() -> tuple[dict[str, Any], list[Optional[str]]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        result = await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        async with get_session() as session:
            rows = await session.execute(
                select(Message.thread_ts).where(Message.thread_ts.is_not(None)).order_by(Message.timestamp)
            )
        return result, list(rows.scalars().all())

    result, thread_ts = run_db(scenario)

    assert result["messages_fetched"] == 4
    assert result["messages_saved"] == 4
    assert thread_ts == ["500.000", "500.000", "500.000"]
    assert len(slack.calls_to("conversations.replies")) == 2


def test_bad_messages_are_skipped_without_aborting_the_channel(run_db, seed, slack) -> None:
    slack.on(
        "conversations.history",
        {
            "messages": [
                {"ts": "not-a-ts", "user": "U1"},
                {"ts": "101.000", "user": "U404"},
                {"ts": "102.000", "user": "U1"},
                {"ts": "103.000", "subtype": "bot_message", "text": "deploy done"},
            ]
        },
    )
    slack.on("users.info", lambda params: {"ok": False, "error": "user_not_found"})

    async def scenario() -> tuple[dict[str, Any], int]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        result = await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        return result, await _message_count()

    result, count = run_db(scenario)

    assert result["success"] is True
    assert result["messages_fetched"] == 4
    assert result["messages_saved"] == 2
    assert count == 2


def test_unknown_sender_is_created_from_users_info(run_db, seed, slack) -> None:
    slack.on("conversations.history", {"messages": [{"ts": "1.0", "user": "U2"}, {"ts": "2.0", "user": "U2"}]})
    slack.on(
        "users.info",
        lambda params: {"user": {"id": params["user"], "real_name": "Grace Hopper", "profile": {"email": "grace@example.com"}}},
    )

    async def scenario() -> tuple[Optional[User], int]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        async with get_session() as session:
            created = await session.scalar(select(User).where(User.slack_user_id == "U2"))
        return created, await _message_count()

    created, count = run_db(scenario)

    assert created is not None
    assert created.name == "Grace Hopper"
    assert created.email == "grace@example.com"
    assert count == 2
    # cached after the first lookup
    assert len(slack.calls_to("users.info")) == 1
    assert slack.calls[-1][2] == "xoxb-bot"


def test_users_info_outage_fails_the_pass_instead_of_dropping_messages(run_db, seed, slack) -> None:
    outage = {"active": True}

    def users_info(params: dict[str, str]) -> Any:
        if outage["active"]:
            return httpx.Response(503, text="unavailable")
        return {"user": {"id": params["user"], "real_name": "Grace Hopper"}}

    slack.on("conversations.history", {"messages": [{"ts": "200.002", "user": "U1"}, {"ts": "100.001", "user": "U2"}]})
    slack.on("users.info", users_info)

    async def scenario() -> tuple[int, dict[str, Any], list[str]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        with pytest.raises(SlackTransportError):
            await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        during_outage = await _message_count()

        outage["active"] = False
        retried = await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        async with get_session() as session:
            stored = (await session.execute(select(Message.slack_message_id))).scalars().all()
        return during_outage, retried, sorted(stored)

    during_outage, retried, stored = run_db(scenario)

    assert during_outage == 0
    assert retried["success"] is True
    assert retried["messages_saved"] == 2
    assert stored == ["100.001", "200.002"]


def test_slack_api_error_fails_only_the_channel(run_db, seed, slack) -> None:
    slack.on("conversations.history", lambda params: {"ok": False, "error": "not_in_channel"})

    async def scenario() -> dict[str, Any]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        return await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)

    result = run_db(scenario)

    assert result["success"] is False
    assert result["error"] == "not_in_channel"
    assert result["messages_saved"] == 0


def test_transport_error_keeps_committed_pages_and_propagates(run_db, seed, slack) -> None:
    def history(params: dict[str, str]) -> Any:
        if params.get("cursor"):
            return httpx.Response(502, text="bad gateway")
        return {"messages": [{"ts": "1.0", "user": "U1"}], "response_metadata": {"next_cursor": "p2"}}

    slack.on("conversations.history", history)

    async def scenario() -> int:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        with pytest.raises(SlackTransportError):
            await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)
        return await _message_count()

    assert run_db(scenario) == 1


def test_private_channel_without_membership_is_denied(run_db, seed, slack) -> None:
    async def scenario() -> dict[str, Any]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "G1", is_private=True)
        return await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)

    result = run_db(scenario)

    assert result == {"success": False, "channel": "g1", "error": "access_denied"}
    assert slack.calls == []


def test_dm_without_user_token_fails_with_missing_token(run_db, seed, slack) -> None:
    async def scenario() -> dict[str, Any]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1", access_token=None)
        channel = await seed.channel(workspace, "D1", is_dm=True)
        await seed.membership("D1", user.id)
        return await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)

    result = run_db(scenario)

    assert result["success"] is False
    assert "membership-gated" in result["error"]
    assert slack.calls == []


def test_dm_is_read_with_the_members_own_token(run_db, seed, slack) -> None:
    slack.on("conversations.history", {"messages": [{"ts": "1.0", "user": "U1"}]})

    async def scenario() -> dict[str, Any]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1", access_token="xoxp-ada")
        channel = await seed.channel(workspace, "D1", is_dm=True)
        await seed.membership("D1", user.id)
        return await SyncReconciler(slack.client(), user, workspace).sync_channel(channel)

    assert run_db(scenario)["messages_saved"] == 1
    assert slack.calls[0][2] == "xoxp-ada"


def test_dry_run_counts_without_writing(run_db, seed, slack) -> None:
    slack.on("conversations.history", {"messages": [{"ts": "1.0", "user": "U1"}, {"ts": "2.0", "user": "U1"}]})

    async def scenario() -> tuple[dict[str, Any], int, Optional[Channel]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        await _store(workspace.id, "C1", "1.0")
        result = await SyncReconciler(slack.client(), user, workspace, dry_run=True).sync_channel(
            channel, full_sync=True
        )
        async with get_session() as session:
            stored = await session.get(Channel, "C1")
        return result, await _message_count(), stored

    result, count, stored = run_db(scenario)

    assert result["messages_saved"] == 1
    assert count == 1
    assert stored is not None and stored.last_synced_at is None


def test_file_failures_do_not_fail_the_message_sync(run_db, seed, slack) -> None:
    descriptor = {"id": "F1", "name": "cat.png", "mimetype": "image/png"}
    slack.on("conversations.history", {"messages": [{"ts": "1.0", "user": "U1", "files": [descriptor]}]})
    ingestion = RecordingIngestion(fail=True)

    async def scenario() -> tuple[dict[str, Any], uuid.UUID]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        reconciler = SyncReconciler(slack.client(), user, workspace, file_ingestion=ingestion)
        return await reconciler.sync_channel(channel), user.id

    result, author_id = run_db(scenario)

    assert result["success"] is True
    assert result["messages_saved"] == 1
    assert len(ingestion.calls) == 1
    descriptor_seen, token, kwargs = ingestion.calls[0]
    assert descriptor_seen["id"] == "F1"
    assert token == "xoxb-bot"
    assert kwargs["channel_id"] == "C1"
    assert kwargs["user_id"] == author_id
    assert kwargs["message_id"] is not None


def test_cancellation_stops_before_the_next_page(run_db, seed, slack, redis) -> None:
    slack.on("conversations.history", {"messages": [{"ts": "1.0", "user": "U1"}]})

    async def scenario() -> int:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        channel = await seed.channel(workspace, "C1")
        await redis.set(CANCEL_KEY.format(user_id=str(user.id), job_id="job-1"), "1")
        token = CancellationToken(redis, str(user.id), "job-1")
        with pytest.raises(SyncCancelledError):
            await SyncReconciler(slack.client(), user, workspace, cancel_token=token).sync_channel(channel)
        return await _message_count()

    assert run_db(scenario) == 0
