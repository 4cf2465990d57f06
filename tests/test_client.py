"""
End-to-end tests for the SyncClient facade.

Every collaborator is faked (request function, event transport,
connectivity, refresh exchange) and storage is in-memory.
"""

import asyncio
from typing import Any

import pytest

from conftest import FakeEventTransport, FakeRefreshTransport, ScriptedRequest, settle
from offline_sync import SyncClient, SyncClientConfig, create_store
from offline_sync.channel import ChannelState
from offline_sync.exceptions import PermanentRequestError, RefreshFailedError
from offline_sync.network import ManualConnectivityObserver
from offline_sync.queue import ActionOutcome
from offline_sync.storage import FileStore, MemoryStore, SQLiteStore
from offline_sync.transport import Response


class EchoServer:
    """Answers a send by echoing the body with a new server id."""

    def __init__(self) -> None:
        self.n = 0

    def __call__(self, method: str, url: str, headers: dict, body: Any) -> Response:
        self.n += 1
        return Response(status=201, body={"_id": f"srv-{self.n}", **(body or {})})


def fast_config(**kwargs) -> SyncClientConfig:
    defaults = {
        "backoff_base": 0,
        "reconnect_delay": 0,
        "reconnect_delay_max": 0,
        "network_debounce": 0,
    }
    defaults.update(kwargs)
    return SyncClientConfig(**defaults)


class Harness:
    """A SyncClient plus handles on its fakes."""

    def __init__(self, clock, store=None, **config):
        self.clock = clock
        self.store = store or MemoryStore()
        self.request = ScriptedRequest()
        self.transport = FakeEventTransport()
        self.observer = ManualConnectivityObserver()
        self.refresh = FakeRefreshTransport(clock)
        self.client = SyncClient(
            fast_config(**config),
            store=self.store,
            request=self.request,
            transport=self.transport,
            observer=self.observer,
            refresh_transport=self.refresh,
            clock=clock,
        )
        self.outcomes: list[ActionOutcome] = []

    async def start(self, credential=None) -> SyncClient:
        await self.client.initialize()
        self.client.on_outcome(self.outcomes.append)
        if credential is not None:
            await self.client.login(credential, user={"name": "Sam"})
            await self.client.wait_for_pending_updates()
        return self.client

    async def drain(self) -> None:
        await self.client.process_queue()
        await self.client.wait_for_pending_updates()


@pytest.fixture
async def harness(clock, credential):
    harness = Harness(clock)
    await harness.start(credential)
    yield harness
    await harness.client.dispose()


def summary(records) -> list[tuple[str, bool]]:
    return [(r.record_id, r.pending) for r in records]


class TestLifecycle:
    """Tests for construction, initialize and dispose."""

    def test_create_store_selection(self, tmp_path):
        assert isinstance(create_store(None), MemoryStore)
        assert isinstance(create_store(str(tmp_path / "state.db")), SQLiteStore)
        assert isinstance(create_store(str(tmp_path / "state")), FileStore)

    @pytest.mark.asyncio
    async def test_requires_initialize(self, clock, credential):
        harness = Harness(clock)
        with pytest.raises(RuntimeError):
            await harness.client.login(credential)
        await harness.client.dispose()

    @pytest.mark.asyncio
    async def test_login_connects_channel_with_bearer(self, harness):
        assert harness.client.channel_state() == ChannelState.CONNECTED
        options = harness.transport.connect_calls[0]["options"]
        assert options["headers"] == {"Authorization": "Bearer token-0"}

    @pytest.mark.asyncio
    async def test_dispose_rejects_further_use(self, clock, credential):
        harness = Harness(clock)
        await harness.start(credential)

        await harness.client.dispose()
        await harness.client.dispose()

        assert harness.client.channel_state() == ChannelState.CLOSED
        with pytest.raises(RuntimeError):
            await harness.client.send_message("conv-1", {"text": "late"})

    @pytest.mark.asyncio
    async def test_state_restored_after_restart(self, clock, credential):
        store = MemoryStore()
        first = Harness(clock, store=store)
        await first.start(credential)
        first.observer.report(False)
        await first.client.send_message("conv-1", {"text": "queued before restart"})
        correlation_id = first.client.get_cache_snapshot("conv-1")[0].correlation_id
        await first.client.dispose()

        # Restored queue drains as soon as the restarted client is online
        second = Harness(clock, store=store)
        second.request.add(EchoServer())
        client = await second.start()
        await second.drain()

        assert client.refresher.is_authenticated()
        assert client.refresher.profile.user == {"name": "Sam"}
        assert second.request.calls[0]["body"]["correlationId"] == correlation_id
        assert client.get_queue_status().queue_size == 0
        records = client.get_cache_snapshot("conv-1")
        assert summary(records) == [("srv-1", False)]
        assert records[0].correlation_id == correlation_id
        await client.dispose()


class TestSendMessage:
    """Tests for optimistic sends through the queue."""

    @pytest.mark.asyncio
    async def test_online_send_is_confirmed(self, harness):
        harness.request.add(EchoServer())

        result = await harness.client.send_message("conv-1", {"text": "hi"})
        await harness.client.wait_for_pending_updates()

        assert result.queued is False
        records = harness.client.get_cache_snapshot("conv-1")
        assert summary(records) == [("srv-1", False)]
        body = harness.request.calls[0]["body"]
        assert body["conversationId"] == "conv-1"
        assert body["correlationId"] == records[0].correlation_id

    @pytest.mark.asyncio
    async def test_delivered_send_is_broadcast_to_peers(self, harness):
        harness.request.add(EchoServer())

        await harness.client.send_message("conv-1", {"text": "hi"})
        await harness.client.wait_for_pending_updates()

        broadcast = harness.transport.sent_events("message:send")
        assert len(broadcast) == 1
        assert broadcast[0]["_id"] == "srv-1"
        assert broadcast[0]["text"] == "hi"
        assert broadcast[0]["correlationId"] == harness.client.get_cache_snapshot("conv-1")[0].correlation_id

    @pytest.mark.asyncio
    async def test_send_not_broadcast_while_channel_down(self, harness):
        await harness.client.channel.disconnect()
        harness.request.add(EchoServer())

        await harness.client.send_message("conv-1", {"text": "hi"})
        await harness.client.wait_for_pending_updates()

        assert harness.transport.sent_events("message:send") == []
        assert summary(harness.client.get_cache_snapshot("conv-1")) == [("srv-1", False)]

    @pytest.mark.asyncio
    async def test_scenario_offline_sends_drain_in_order(self, harness):
        """Three sends while offline, a 503 on the second, all confirmed in order."""
        echo = EchoServer()
        harness.observer.report(False)
        for text in ("one", "two", "three"):
            result = await harness.client.send_message("conv-1", {"text": text})
            assert result.queued is True

        pending = harness.client.get_cache_snapshot("conv-1")
        assert [r.pending for r in pending] == [True, True, True]
        assert harness.client.get_queue_status().queue_size == 3

        harness.request.add(echo, Response(status=503), echo, echo)
        harness.observer.report(True)
        await harness.drain()

        records = harness.client.get_cache_snapshot("conv-1")
        assert summary(records) == [("srv-1", False), ("srv-2", False), ("srv-3", False)]
        assert [r.fields["text"] for r in records] == ["one", "two", "three"]
        assert [o.succeeded for o in harness.outcomes] == [True, True, True]
        assert harness.client.get_queue_status().queue_size == 0

    @pytest.mark.asyncio
    async def test_immediate_rejection_raises_and_drops_record(self, harness):
        harness.request.add(Response(status=422, body={"error": "text required"}))

        with pytest.raises(PermanentRequestError) as exc_info:
            await harness.client.send_message("conv-1", {"text": ""})

        assert exc_info.value.status == 422
        assert harness.client.get_cache_snapshot("conv-1") == []
        assert harness.client.get_queue_status().queue_size == 0

    @pytest.mark.asyncio
    async def test_rejected_queued_send_stays_pending_with_error(self, harness):
        harness.observer.report(False)
        await harness.client.send_message("conv-1", {"text": "spam"})
        harness.request.add(Response(status=403))

        harness.observer.report(True)
        await harness.drain()

        records = harness.client.get_cache_snapshot("conv-1")
        assert records[0].pending is True
        assert records[0].fields["sendError"] == "Request rejected with 403"
        assert harness.outcomes[0].succeeded is False

    @pytest.mark.asyncio
    async def test_push_echo_before_http_response(self, harness):
        """The channel echo confirms first; the HTTP result merges into the same record."""
        harness.observer.report(False)
        await harness.client.send_message("conv-1", {"text": "hi"})
        correlation_id = harness.client.get_cache_snapshot("conv-1")[0].correlation_id

        harness.transport.deliver(
            "message:new",
            {"_id": "srv-1", "conversationId": "conv-1", "correlationId": correlation_id, "text": "hi"},
        )
        await harness.client.wait_for_pending_updates()
        assert summary(harness.client.get_cache_snapshot("conv-1")) == [("srv-1", False)]

        harness.request.add(EchoServer())
        harness.observer.report(True)
        await harness.drain()

        assert summary(harness.client.get_cache_snapshot("conv-1")) == [("srv-1", False)]

    @pytest.mark.asyncio
    async def test_unconfirmed_records(self, harness, clock):
        harness.observer.report(False)
        await harness.client.send_message("conv-1", {"text": "stuck"})
        clock.advance(601)

        stale = harness.client.unconfirmed_records()

        assert len(stale) == 1
        assert stale[0].entity_id == "conv-1"
        assert harness.client.unconfirmed_records(stale_after=3600) == []

        assert await harness.client.discard_record("conv-1", stale[0].record.record_id) is True
        assert harness.client.get_cache_snapshot("conv-1") == []

    @pytest.mark.asyncio
    async def test_mark_read(self, harness):
        await harness.client.cache.apply_push("conv-1", {"_id": "m1", "text": "hi"})

        result = await harness.client.mark_read("conv-1", "m1")

        assert result.queued is False
        assert harness.client.get_cache_snapshot("conv-1")[0].fields["read"] is True
        assert harness.request.calls[-1]["url"] == "/api/messages/m1/read"
        assert harness.transport.sent_events("message:read") == [
            {"conversationId": "conv-1", "messageId": "m1"}
        ]


class TestPushEvents:
    """Tests for channel events feeding the cache."""

    @pytest.mark.asyncio
    async def test_message_events(self, harness):
        deliver = harness.transport.deliver
        deliver("message:new", {"_id": "m1", "conversationId": "conv-1", "text": "hello"})
        deliver("message:new", {"_id": "m2", "conversationId": "conv-1", "text": "there"})
        deliver("message:updated", {"_id": "m1", "conversationId": "conv-1", "text": "hello!"})
        deliver("message:read", {"conversationId": "conv-1", "messageId": "m2"})
        deliver("message:new", {"text": "no conversation"})
        await harness.client.wait_for_pending_updates()

        records = harness.client.get_cache_snapshot("conv-1")
        assert [r.record_id for r in records] == ["m1", "m2"]
        assert records[0].fields["text"] == "hello!"
        assert records[1].fields["read"] is True

    @pytest.mark.asyncio
    async def test_job_events(self, harness):
        deliver = harness.transport.deliver
        deliver("job:created", {"_id": "job-1", "status": "open"})
        deliver("newJob", {"_id": "job-2", "status": "open"})
        deliver("jobUpdate", {"_id": "job-1", "status": "assigned"})
        deliver("job:updated", {"status": "missing id"})
        await harness.client.wait_for_pending_updates()

        jobs = harness.client.get_cache_snapshot("jobs")
        assert [(r.record_id, r.fields["status"]) for r in jobs] == [
            ("job-1", "assigned"),
            ("job-2", "open"),
        ]
        assert harness.client.cache.get_entity("jobs").kind == "job"

    @pytest.mark.asyncio
    async def test_raw_subscriptions_and_topics(self, harness):
        typing: list[dict] = []
        handle = harness.client.subscribe("typing", typing.append)
        await harness.client.join("conversation:conv-1")

        harness.transport.deliver("typing", {"userId": "u1"})
        handle.dispose()
        harness.transport.deliver("typing", {"userId": "u2"})

        assert typing == [{"userId": "u1"}]
        assert harness.transport.sent_events("join") == ["conversation:conv-1"]


class TestAuthentication:
    """Tests for credential handling through the facade."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_near_expiry_refresh_once(self, harness, clock):
        clock.advance(3600 - 60)
        harness.refresh.gate = asyncio.Event()

        tasks = [
            asyncio.create_task(harness.client.authorized_request("GET", f"/api/jobs/{n}"))
            for n in range(3)
        ]
        await settle()
        harness.refresh.gate.set()
        await asyncio.gather(*tasks)

        assert harness.refresh.calls == 1
        assert {c["headers"]["Authorization"] for c in harness.request.calls} == {"Bearer token-1"}

    @pytest.mark.asyncio
    async def test_session_invalidation_keeps_queue(self, harness, clock):
        invalidations: list[RefreshFailedError] = []
        harness.client.on_session_invalidated(invalidations.append)
        harness.observer.report(False)
        await harness.client.send_message("conv-1", {"text": "hi"})
        clock.advance(3600 - 60)
        harness.refresh.fail_with = RefreshFailedError("Refresh endpoint returned 401", status=401)

        harness.observer.report(True)
        await harness.drain()

        assert len(invalidations) == 1
        assert harness.client.get_queue_status().queue_size == 1
        assert harness.outcomes == []
        assert harness.client.channel_state() == ChannelState.IDLE

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, harness):
        await harness.client.join("conversation:conv-1")
        harness.transport.deliver("message:new", {"_id": "m1", "conversationId": "conv-1"})
        await harness.client.wait_for_pending_updates()
        harness.observer.report(False)
        await harness.client.send_message("conv-1", {"text": "never sent"})

        await harness.client.logout()
        await harness.client.wait_for_pending_updates()

        assert harness.client.refresher.is_authenticated() is False
        assert harness.client.get_queue_status().queue_size == 0
        assert harness.client.get_cache_snapshot("conv-1") == []
        assert [o.error.code for o in harness.outcomes] == ["logged_out"]
        assert harness.client.channel_state() == ChannelState.IDLE
        assert harness.transport.sent_events("leave") == ["conversation:conv-1"]


class TestFetch:
    """Tests for fetch-and-replace."""

    @pytest.mark.asyncio
    async def test_fetch_replaces_records(self, harness):
        harness.observer.report(False)
        await harness.client.send_message("conv-1", {"text": "pending"})
        harness.request.add(
            Response(status=200, body={"messages": [{"_id": "1", "text": "a"}, {"_id": "2", "text": "b"}]})
        )

        records = await harness.client.fetch_entity("conv-1", "/api/messages/conv-1")

        assert [r.record_id for r in records][:2] == ["1", "2"]
        assert records[-1].pending is True

    @pytest.mark.asyncio
    async def test_fetch_falls_back_to_cache_when_unreachable(self, harness):
        await harness.client.cache.apply_push("conv-1", {"_id": "1", "text": "cached"})
        harness.request.add(Response(status=503))

        records = await harness.client.fetch_entity("conv-1", "/api/messages/conv-1")

        assert [r.record_id for r in records] == ["1"]

    @pytest.mark.asyncio
    async def test_fetch_rejection_raises(self, harness):
        harness.request.add(Response(status=404))

        with pytest.raises(PermanentRequestError):
            await harness.client.fetch_entity("conv-9", "/api/messages/conv-9")
