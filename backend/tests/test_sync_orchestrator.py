import asyncio
import json
from typing import Any

import httpx
import pytest
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import select

from connectors.slack import MissingTokenError, SlackTransportError
from models.channel import Channel
from models.channel_membership import ChannelMembership
from models.database import get_session
from models.user import User
from models.workspace import Workspace
from services import redis_client, sync_orchestrator
from services.slack_directory import SyncScope
from services.sync_control import CANCEL_KEY, DISPATCH_KEY, LOCK_KEY, OverlapGuard, release_lock
from services.sync_orchestrator import (
    SyncJobRequest,
    cancel_job,
    execute_sync_job,
    record_job_failure,
    scope_token,
    sync_task_id,
)
from services.sync_progress import SyncProgressStore
from workers.tasks import sync as sync_tasks


def _request(user: User, workspace: Workspace, **overrides: Any) -> SyncJobRequest:
    values: dict[str, Any] = {
        "user_id": str(user.id),
        "workspace_id": str(workspace.id),
        "job_id": "job-1",
        "refresh_directory": False,
    }
    values.update(overrides)
    return SyncJobRequest(**values)


def test_job_reports_partial_failure_per_channel(run_db, seed, slack, redis) -> None:
    slack.on("conversations.history", {"messages": [{"ts": "1.0", "user": "U1"}, {"ts": "2.0", "user": "U1"}]}, channel="C1")
    slack.on("conversations.history", lambda params: {"ok": False, "error": "not_in_channel"}, channel="C2")

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.channel(workspace, "C1")
        await seed.channel(workspace, "C2")
        request = _request(user, workspace, channel_ids=["C1", "C2"])
        await SyncProgressStore(redis).create_pending(request.user_id, request.job_id, request.workspace_id)
        outcome = await execute_sync_job(redis, request, client=slack.client(), file_ingestion=None)
        record = await SyncProgressStore(redis).get(request.user_id, request.job_id)
        return outcome, record

    outcome, record = run_db(scenario)

    assert outcome["status"] == "completed"
    summary = outcome["summary"]
    assert summary["total_channels"] == 2
    assert summary["successful_channels"] == 1
    assert summary["failed_channels"] == 1
    assert summary["total_messages"] == 2
    assert summary["failed_channel_names"] == ["c2"]
    assert record["status"] == "completed"
    assert record["progress"] == 2
    assert record["total_messages"] == 2
    assert [r["channel_id"] for r in record["results"]] == ["C1", "C2"]
    assert record["results"][1]["error"] == "not_in_channel"
    assert LOCK_KEY.format(user_id=record["user_id"]) not in redis.values


def test_filtered_dm_yields_an_empty_successful_job(run_db, seed, slack, redis) -> None:
    async def scenario() -> dict[str, Any]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.channel(workspace, "D1", is_dm=True)
        request = _request(user, workspace, channel_ids=["D1"])
        return await execute_sync_job(redis, request, client=slack.client())

    outcome = run_db(scenario)

    assert outcome["status"] == "completed"
    assert outcome["summary"]["total_channels"] == 0
    assert slack.calls == []


def test_refresh_directory_records_channels_and_memberships(run_db, seed, slack, redis) -> None:
    slack.on(
        "conversations.list",
        {
            "channels": [
                {"id": "C1", "name": "general", "is_member": True, "num_members": 5},
                {"id": "D1", "is_im": True, "user": "U2"},
                {"id": "G1", "name": "secret", "is_private": True, "is_member": False},
            ]
        },
    )
    slack.on("conversations.history", {"messages": []})

    async def scenario() -> tuple[dict[str, Any], dict[str, str], set[str]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.user(workspace, "U2", name="Grace")
        request = _request(user, workspace, refresh_directory=True)
        outcome = await execute_sync_job(redis, request, client=slack.client())
        async with get_session() as session:
            names = {c.id: c.name for c in (await session.execute(select(Channel))).scalars()}
            joined = set(
                (
                    await session.execute(
                        select(ChannelMembership.channel_id).where(ChannelMembership.user_id == user.id)
                    )
                ).scalars()
            )
        return outcome, names, joined

    outcome, names, joined = run_db(scenario)

    assert names == {"C1": "general", "D1": "DM-Grace", "G1": "secret"}
    assert joined == {"C1", "D1"}
    # G1 is private and the user is not a member
    assert outcome["summary"]["total_channels"] == 2
    assert slack.calls_to("conversations.list")[0]["types"] == "public_channel,private_channel,im,mpim"


def test_second_execution_for_user_is_skipped(run_db, seed, slack, redis) -> None:
    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.channel(workspace, "C1")
        await redis.set(LOCK_KEY.format(user_id=str(user.id)), "other-job")
        progress = SyncProgressStore(redis)
        await progress.create_pending(str(user.id), "job-2", str(workspace.id))
        outcome = await execute_sync_job(redis, _request(user, workspace, job_id="job-2"), client=slack.client())
        return outcome, await progress.get(str(user.id), "job-2")

    outcome, record = run_db(scenario)

    assert outcome["status"] == "skipped"
    assert record["status"] == "cancelled"
    assert slack.calls == []


def test_redelivered_running_job_leaves_its_record_alone(run_db, seed, slack, redis) -> None:
    async def scenario() -> dict[str, Any]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        user_id = str(user.id)
        await redis.set(LOCK_KEY.format(user_id=user_id), "held")
        progress = SyncProgressStore(redis)
        await progress.create_pending(user_id, "job-1", str(workspace.id))
        await progress.mark_running(user_id, "job-1", total=3, attempt=1)
        await execute_sync_job(redis, _request(user, workspace), client=slack.client())
        return await progress.get(user_id, "job-1")

    assert run_db(scenario)["status"] == "running"


def test_cancelled_job_records_cancellation_and_releases_keys(run_db, seed, slack, redis) -> None:
    async def scenario() -> tuple[dict[str, Any], dict[str, Any], str, str]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.channel(workspace, "C1")
        user_id, workspace_id = str(user.id), str(workspace.id)
        await redis.set(DISPATCH_KEY.format(user_id=user_id, workspace_id=workspace_id), "job-1")
        await redis.set(CANCEL_KEY.format(user_id=user_id, job_id="job-1"), "1")
        outcome = await execute_sync_job(redis, _request(user, workspace), client=slack.client())
        record = await SyncProgressStore(redis).get(user_id, "job-1")
        return outcome, record, user_id, workspace_id

    outcome, record, user_id, workspace_id = run_db(scenario)

    assert outcome["status"] == "cancelled"
    assert record["status"] == "cancelled"
    assert CANCEL_KEY.format(user_id=user_id, job_id="job-1") not in redis.values
    assert DISPATCH_KEY.format(user_id=user_id, workspace_id=workspace_id) not in redis.values
    assert LOCK_KEY.format(user_id=user_id) not in redis.values
    assert slack.calls == []


def test_transport_error_fails_the_attempt_and_releases_the_guard(run_db, seed, slack, redis) -> None:
    slack.on("conversations.history", lambda params: httpx.Response(500))

    async def scenario() -> str:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.channel(workspace, "C1")
        with pytest.raises(SlackTransportError):
            await execute_sync_job(redis, _request(user, workspace), client=slack.client())
        return str(user.id)

    user_id = run_db(scenario)

    assert LOCK_KEY.format(user_id=user_id) not in redis.values


def test_failure_is_retryable_until_the_last_attempt(redis, monkeypatch) -> None:
    notified: list[dict[str, Any]] = []

    async def fake_notify(job: dict[str, Any]) -> int:
        notified.append(job)
        return 1

    monkeypatch.setattr(sync_orchestrator, "notify_admins_of_failure", fake_notify)
    request = SyncJobRequest(user_id="u-1", workspace_id="w-1", job_id="job-1")
    dispatch_key = DISPATCH_KEY.format(user_id="u-1", workspace_id="w-1")

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        await redis.set(dispatch_key, "job-1")
        await redis.set(LOCK_KEY.format(user_id="u-1"), "job-1")
        first = await record_job_failure(redis, request, "boom", attempt=1, max_attempts=3)
        assert LOCK_KEY.format(user_id="u-1") not in redis.values
        assert dispatch_key in redis.values
        last = await record_job_failure(redis, request, "boom again", attempt=3, max_attempts=3)
        return first, last

    first, last = asyncio.run(scenario())

    assert first["status"] == "failed"
    assert first["attempt"] == 1
    assert last["status"] == "failed_permanently"
    assert last["final_error"] == "boom again"
    assert last["total_attempts"] == 3
    assert redis.ttls[SyncProgressStore.key("u-1", "job-1")] == 24 * 60 * 60
    assert dispatch_key not in redis.values
    assert [job["job_id"] for job in notified] == ["job-1"]


def test_failure_bookkeeping_leaves_another_jobs_lock_alone(redis, monkeypatch) -> None:
    async def fake_notify(job: dict[str, Any]) -> int:
        return 0

    monkeypatch.setattr(sync_orchestrator, "notify_admins_of_failure", fake_notify)

    async def scenario() -> tuple[bool, bool, str]:
        running = OverlapGuard(redis, "u-1", owner="job-B")
        assert await running.acquire()
        failed = SyncJobRequest(user_id="u-1", workspace_id="w-A", job_id="job-A")
        await record_job_failure(redis, failed, "boom", attempt=1, max_attempts=3)
        newcomer = await OverlapGuard(redis, "u-1", owner="job-C").acquire()
        await running.release()
        after_release = await OverlapGuard(redis, "u-1", owner="job-C").acquire()
        return newcomer, after_release, redis.values[LOCK_KEY.format(user_id="u-1")]

    newcomer, after_release, holder = asyncio.run(scenario())

    assert newcomer is False
    assert after_release is True
    assert holder == "job-C"


def test_lock_release_requires_the_owner(redis) -> None:
    async def scenario() -> tuple[bool, bool]:
        await OverlapGuard(redis, "u-1", owner="job-1").acquire()
        wrong = await release_lock(redis, "u-1", "job-2")
        right = await release_lock(redis, "u-1", "job-1")
        return wrong, right

    assert asyncio.run(scenario()) == (False, True)


def test_scope_token_preferences(monkeypatch) -> None:
    from config import settings

    monkeypatch.setattr(settings, "SLACK_BOT_TOKEN", None)
    monkeypatch.setattr(settings, "SLACK_USER_TOKEN", None)
    workspace = Workspace(slack_team_id="T1", name="Acme", bot_token="xoxb-bot")
    user = User(name="Ada", email="ada@example.com", access_token="xoxp-user")

    assert scope_token(SyncScope.USERS, user, workspace) == "xoxb-bot"
    assert scope_token(SyncScope.MEMBERS, user, workspace) == "xoxp-user"
    assert scope_token(SyncScope.FILES, None, workspace) == "xoxb-bot"
    with pytest.raises(MissingTokenError):
        scope_token(SyncScope.MEMBERS, None, None)

    monkeypatch.setattr(settings, "SLACK_USER_TOKEN", "xoxp-operator")
    assert scope_token(SyncScope.MEMBERS, None, workspace) == "xoxp-operator"


class _QueuedTask:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def apply_async(self, **options: Any) -> None:
        self.calls.append(options)


def test_dispatch_collapses_onto_the_queued_job(redis, monkeypatch) -> None:
    queued = _QueuedTask()
    monkeypatch.setattr(sync_tasks, "sync_slack_messages", queued)

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await sync_tasks.dispatch_user_sync(redis, "u-1", "w-1", channel_ids=["C1"], countdown=10)
        second = await sync_tasks.dispatch_user_sync(redis, "u-1", "w-1")
        return first, second

    first, second = asyncio.run(scenario())

    assert first["status"] == "queued"
    assert second == {"status": "already_queued", "job_id": first["job_id"], "user_id": "u-1"}
    assert len(queued.calls) == 1
    options = queued.calls[0]
    assert options["task_id"] == sync_task_id("u-1", "w-1", first["job_id"])
    assert options["countdown"] == 10
    assert options["kwargs"]["channel_ids"] == ["C1"]
    record = json.loads(redis.values[SyncProgressStore.key("u-1", first["job_id"])])
    assert record["status"] == "pending"
    assert record["workspace_id"] == "w-1"


def test_celery_task_retries_then_fails_permanently(monkeypatch) -> None:
    failures: list[tuple[str, int, int]] = []

    async def always_fail(job: dict[str, Any], attempt: int) -> dict[str, Any]:
        raise RuntimeError(f"attempt {attempt} failed")

    async def record_failure(job: dict[str, Any], error: str, attempt: int, max_attempts: int) -> dict[str, Any]:
        failures.append((error, attempt, max_attempts))
        return {}

    monkeypatch.setattr(sync_tasks, "_run_sync_job", always_fail)
    monkeypatch.setattr(sync_tasks, "_record_failure", record_failure)

    result = sync_tasks.sync_slack_messages.apply(
        kwargs={"user_id": "u-1", "workspace_id": "w-1", "job_id": "job-1"}
    )

    assert result.failed()
    assert [(attempt, max_attempts) for _, attempt, max_attempts in failures] == [(1, 3), (2, 3), (3, 3)]
    assert failures[-1][0] == "attempt 3 failed"


def test_soft_time_limit_is_described_as_a_timeout() -> None:
    assert "time limit" in sync_tasks._describe_failure(SoftTimeLimitExceeded())
    assert sync_tasks._describe_failure(RuntimeError("boom")) == "boom"


def test_cancelled_before_start_the_job_stops_at_its_first_checkpoint(run_db, seed, slack, redis) -> None:
    async def scenario() -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        workspace = await seed.workspace()
        user = await seed.user(workspace, "U1")
        await seed.channel(workspace, "C1")
        request = _request(user, workspace)
        progress = SyncProgressStore(redis)
        await progress.create_pending(request.user_id, request.job_id, request.workspace_id)
        requested = await cancel_job(redis, request.user_id, request.job_id)
        outcome = await execute_sync_job(redis, request, client=slack.client())
        return requested, outcome, await progress.get(request.user_id, request.job_id)

    requested, outcome, record = run_db(scenario)

    assert requested["status"] == "cancellation_requested"
    assert outcome["status"] == "cancelled"
    assert record["status"] == "cancelled"
    assert slack.calls == []


def test_finished_or_unknown_jobs_are_not_cancelled(redis) -> None:
    progress = SyncProgressStore(redis)

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        await progress.create_pending("u-1", "job-1", "w-1")
        await progress.complete("u-1", "job-1", results=[], summary={})
        return await cancel_job(redis, "u-1", "job-1"), await cancel_job(redis, "u-1", "job-404")

    finished, unknown = asyncio.run(scenario())

    assert finished["status"] == "not_cancellable"
    assert finished["job_status"] == "completed"
    assert unknown["status"] == "not_found"
    assert CANCEL_KEY.format(user_id="u-1", job_id="job-1") not in redis.values


def test_cancel_task_flags_a_running_job(redis, monkeypatch) -> None:
    async def fake_client() -> Any:
        return redis

    monkeypatch.setattr(redis_client, "get_redis_client", fake_client)
    progress = SyncProgressStore(redis)

    async def start() -> None:
        await progress.create_pending("u-1", "job-1", "w-1")
        await progress.mark_running("u-1", "job-1", total=4, attempt=1)

    asyncio.run(start())

    result = sync_tasks.cancel_sync_job.apply(kwargs={"user_id": "u-1", "job_id": "job-1"}).get()

    assert result["status"] == "cancellation_requested"
    assert redis.values[CANCEL_KEY.format(user_id="u-1", job_id="job-1")] == "1"
