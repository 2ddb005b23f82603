"""Tests for the replica-side coordinator against an in-process sync server."""

import asyncio
import json

import pytest

from common.conflict_log import ConflictRepository
from common.exceptions import ConflictNotFound, SyncExchangeError, Throttled, TransportError
from common.protocol import SyncRequest, SyncResponse
from common.retry_queue import PendingOperationRepository, RetryQueue
from common.store import SQLiteDocumentStore
from replica.coordinator import ReplicaCoordinator
from replica.local_store import LocalStore
from syncserver.admission import AdmissionMonitor
from syncserver.config import AdmissionConfig, CoordinatorConfig
from syncserver.coordinator import ReconciliationCoordinator

BIG_BODY = "some long body text " * 30


class InProcessTransport:
    """
    Transport calling the server coordinator directly.

    Requests and responses go through their JSON wire form.
    """

    def __init__(self, server, actor_id):
        self.server = server
        self.actor_id = actor_id
        self.offline = False
        self.throttle = False
        self.during_exchange = None
        self.requests = []

    async def exchange(self, collection, request):
        if self.offline:
            raise TransportError("Cannot connect to sync server. Is it running?")
        if self.throttle:
            raise Throttled(30.0)

        body = json.loads(json.dumps(request.to_dict()))
        self.requests.append(body)
        response = await self.server.process_sync(
            collection, SyncRequest.from_dict(body), self.actor_id
        )

        if self.during_exchange is not None:
            hook, self.during_exchange = self.during_exchange, None
            await hook()

        return SyncResponse.from_dict(json.loads(json.dumps(response.to_dict())))

    async def close(self):
        pass


@pytest.fixture
def server(tmp_path, clock, seconds_clock):
    db_path = str(tmp_path / "server.db")
    config = CoordinatorConfig(
        conflict_policy="server-wins",
        tie_breaker="client",
        owner_scoping=False,
        admission=AdmissionConfig(rate_per_minute=10_000, strict_rate_per_minute=10_000),
    )
    return ReconciliationCoordinator(
        store=SQLiteDocumentStore(db_path, clock=clock),
        admission=AdmissionMonitor(config.admission, clock=seconds_clock),
        retry_queue=RetryQueue(PendingOperationRepository(db_path), clock=clock),
        conflicts=ConflictRepository(db_path),
        config=config,
        clock=clock,
    )


@pytest.fixture
def make_replica(tmp_path, server, clock):
    """
    Factory building replicas that share the in-process server.
    """
    def factory(name, policy="server-wins", **kwargs):
        db_path = str(tmp_path / f"{name}.db")
        return ReplicaCoordinator(
            store=LocalStore(db_path),
            transport=InProcessTransport(server, actor_id=name),
            retry_queue=RetryQueue(PendingOperationRepository(db_path), clock=clock),
            conflicts=ConflictRepository(db_path),
            actor_id=name,
            collections=["notes"],
            conflict_policy=policy,
            clock=clock,
            **kwargs
        )
    return factory


async def diverge(make_replica, clock, policy):
    """
    Both replicas hold note `a`; `second` edits it offline before `first`
    edits and syncs, so `second` holds an older unsynced edit.
    """
    first = make_replica("first")
    second = make_replica("second", policy=policy)

    await first.put("notes", {"title": "v1"}, document_id="a")
    await first.sync_collection("notes")
    clock.advance(10)
    await second.sync_collection("notes")
    clock.advance(10)

    await second.put("notes", {"title": "second"}, document_id="a")
    clock.advance(10)
    await first.put("notes", {"title": "first"}, document_id="a")
    await first.sync_collection("notes")
    clock.advance(10)
    return first, second


class TestLocalWrites:
    """Test put/delete and local state."""

    @pytest.mark.asyncio
    async def test_put_marks_dirty(self, make_replica, clock):
        replica = make_replica("alice")

        doc = await replica.put("notes", {"title": "hi"})

        assert doc.updated_at == clock.now
        assert replica.store.is_dirty("notes", doc.id)
        assert replica.state.state.pending_changes == 1
        assert replica.get("notes", doc.id).payload == {"title": "hi"}

    @pytest.mark.asyncio
    async def test_put_advances_updated_at(self, make_replica):
        replica = make_replica("alice")
        first = await replica.put("notes", {"title": "1"}, document_id="a")
        second = await replica.put("notes", {"title": "2"}, document_id="a")

        assert second.updated_at > first.updated_at
        assert second.created_at == first.created_at

    @pytest.mark.asyncio
    async def test_delete_is_tombstone(self, make_replica):
        replica = make_replica("alice")
        await replica.put("notes", {"title": "1"}, document_id="a")

        tombstone = await replica.delete("notes", "a")

        assert tombstone.deleted
        assert replica.get("notes", "a") is None
        assert replica.list("notes") == []
        assert await replica.delete("notes", "missing") is None


class TestSync:
    """Test exchanges and convergence."""

    @pytest.mark.asyncio
    async def test_push_clears_dirty_and_commits_watermark(self, make_replica, server, clock):
        replica = make_replica("alice")
        doc = await replica.put("notes", {"title": "hi"}, document_id="a")

        results = await replica.sync_collection("notes")

        assert results.added == 1
        assert not replica.store.is_dirty("notes", "a")
        assert replica.store.get("notes", "a").revision == 1
        assert server.store.get("notes", "a").same_content(doc)
        assert replica.store.get_watermark("notes", "alice").timestamp == clock.now - 1
        assert replica.state.state.last_sync_time == clock.now
        assert replica.state.state.pending_changes == 0

    @pytest.mark.asyncio
    async def test_two_replicas_converge(self, make_replica, clock):
        alice = make_replica("alice")
        bob = make_replica("bob")

        await alice.put("notes", {"title": "from alice"}, document_id="a")
        await alice.sync_collection("notes")
        clock.advance(10)
        await bob.sync_collection("notes")
        assert bob.get("notes", "a").payload == {"title": "from alice"}

        clock.advance(10)
        await bob.put("notes", {"title": "from bob"}, document_id="a")
        await bob.put("notes", {"title": "second note"}, document_id="b")
        await bob.sync_collection("notes")
        clock.advance(10)
        await alice.sync_collection("notes")

        for replica in (alice, bob):
            assert [doc.payload["title"] for doc in replica.list("notes")] == ["from bob", "second note"]
            assert replica.store.dirty_count() == 0

    @pytest.mark.asyncio
    async def test_deletion_propagates(self, make_replica, server, clock):
        alice = make_replica("alice")
        bob = make_replica("bob")
        await alice.put("notes", {"title": "doomed"}, document_id="a")
        await alice.sync_collection("notes")
        clock.advance(10)
        await bob.sync_collection("notes")
        clock.advance(10)

        await alice.delete("notes", "a")
        results = await alice.sync_collection("notes")
        clock.advance(10)
        await bob.sync_collection("notes")

        assert results.deleted == 1
        assert server.store.get("notes", "a").deleted
        assert bob.get("notes", "a") is None

    @pytest.mark.asyncio
    async def test_edits_are_sent_as_deltas(self, make_replica, clock):
        replica = make_replica("alice")
        await replica.put("notes", {"title": "t", "body": BIG_BODY}, document_id="a")
        await replica.sync_collection("notes")
        clock.advance(10)

        await replica.put("notes", {"title": "t2", "body": BIG_BODY}, document_id="a")
        results = await replica.sync_collection("notes")

        [entry] = replica.transport.requests[-1]["changedDocs"]
        assert "$delta" in entry
        assert results.updated == 1

    @pytest.mark.asyncio
    async def test_stale_shadow_is_resent_in_full(self, make_replica, server, clock):
        replica = make_replica("alice")
        await replica.put("notes", {"title": "t", "body": BIG_BODY}, document_id="a")
        await replica.sync_collection("notes")
        clock.advance(10)
        shadow = replica.store.get_shadow("notes", "a")
        replica.store.save_shadow("notes", shadow.with_store_metadata(99, shadow.server_updated_at))

        await replica.put("notes", {"title": "t2", "body": BIG_BODY}, document_id="a")
        results = await replica.sync_collection("notes")

        first_round, second_round = replica.transport.requests[-2:]
        assert "$delta" in first_round["changedDocs"][0]
        assert "$delta" not in second_round["changedDocs"][0]
        assert results.updated == 1
        assert server.store.get("notes", "a").payload["title"] == "t2"
        assert not replica.store.is_dirty("notes", "a")

    @pytest.mark.asyncio
    async def test_edit_during_exchange_survives(self, make_replica, server, clock):
        replica = make_replica("alice")
        await replica.put("notes", {"title": "sent"}, document_id="a")

        async def edit_again():
            clock.advance(5)
            await replica.put("notes", {"title": "newer"}, document_id="a")

        replica.transport.during_exchange = edit_again
        await replica.sync_collection("notes")

        local = replica.store.get("notes", "a")
        assert local.payload == {"title": "newer"}
        assert local.revision == server.store.get("notes", "a").revision
        assert replica.store.is_dirty("notes", "a")

        clock.advance(10)
        await replica.sync_collection("notes")
        assert server.store.get("notes", "a").payload == {"title": "newer"}

    @pytest.mark.asyncio
    async def test_sync_all(self, make_replica):
        replica = make_replica("alice")
        await replica.put("tasks", {"title": "task"})
        await replica.put("notes", {"title": "note"})

        results = await replica.sync_all()

        assert set(results) == {"notes", "tasks"}
        assert replica.store.dirty_count() == 0


class TestReplicaConflictPolicies:
    """Test how server changes meet unsynced local edits."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", ["server-wins", "timestamp-wins"])
    async def test_server_version_taken(self, make_replica, server, clock, policy):
        _, second = await diverge(make_replica, clock, policy)

        await second.sync_collection("notes")

        assert second.get("notes", "a").payload == {"title": "first"}
        assert not second.store.is_dirty("notes", "a")
        assert server.store.get("notes", "a").payload == {"title": "first"}

    @pytest.mark.asyncio
    async def test_client_wins_repushes_local_edit(self, make_replica, server, clock):
        first, second = await diverge(make_replica, clock, "client-wins")

        await second.sync_collection("notes")

        assert server.store.get("notes", "a").payload == {"title": "second"}
        assert second.get("notes", "a").payload == {"title": "second"}
        assert not second.store.is_dirty("notes", "a")

        clock.advance(10)
        await first.sync_collection("notes")
        assert first.get("notes", "a").payload == {"title": "second"}

    @pytest.mark.asyncio
    async def test_manual_records_conflict_and_resolves(self, make_replica, server, clock):
        _, second = await diverge(make_replica, clock, "manual")

        await second.sync_collection("notes")

        [record] = second.list_conflicts("notes")
        assert record.client_version.payload == {"title": "second"}
        assert record.server_version.payload == {"title": "first"}
        assert second.state.state.conflicts == 1
        assert not second.store.is_dirty("notes", "a")

        resolved = await second.resolve_conflict("notes", "a", "custom", {"title": "both"})
        assert resolved.payload == {"title": "both"}
        assert second.store.is_dirty("notes", "a")
        assert second.list_conflicts("notes") == []

        clock.advance(10)
        await second.sync_collection("notes")
        assert server.store.get("notes", "a").payload == {"title": "both"}

    @pytest.mark.asyncio
    async def test_manual_resolve_with_server_version(self, make_replica, clock):
        _, second = await diverge(make_replica, clock, "manual")
        await second.sync_collection("notes")

        resolved = await second.resolve_conflict("notes", "a", "server")

        assert resolved.payload == {"title": "first"}
        assert not second.store.is_dirty("notes", "a")
        with pytest.raises(ConflictNotFound):
            await second.resolve_conflict("notes", "a", "server")


class TestFailures:
    """Test offline behaviour and retries."""

    @pytest.mark.asyncio
    async def test_offline_sync_queues_retry(self, make_replica, clock):
        replica = make_replica("alice")
        await replica.put("notes", {"title": "hi"}, document_id="a")
        replica.transport.offline = True

        with pytest.raises(SyncExchangeError):
            await replica.sync_collection("notes")
        with pytest.raises(SyncExchangeError):
            await replica.sync_collection("notes")

        assert replica.retry_queue.pending_count() == 1
        assert replica.store.is_dirty("notes", "a")
        assert replica.store.get_watermark("notes", "alice").timestamp == 0
        assert replica.state.state.online is False
        assert replica.state.state.error

        replica.transport.offline = False
        assert await replica.retry_queue.process_pending() == 1
        assert replica.retry_queue.pending_count() == 0
        assert not replica.store.is_dirty("notes", "a")
        assert replica.state.state.online is True

    @pytest.mark.asyncio
    async def test_failed_redelivery_counts_retry(self, make_replica):
        replica = make_replica("alice")
        await replica.put("notes", {"title": "hi"})
        replica.transport.throttle = True

        with pytest.raises(SyncExchangeError):
            await replica.sync_collection("notes")
        await replica.retry_queue.process_pending()

        [operation] = replica.retry_queue.repository.list_all()
        assert operation.retries == 1
        assert replica.state.state.online is True

    @pytest.mark.asyncio
    async def test_sync_all_continues_after_failure(self, make_replica):
        replica = make_replica("alice")
        replica.collections.append("tasks")
        replica.transport.offline = True

        assert await replica.sync_all() == {}


class TestBackgroundTasks:
    """Test debounced and periodic sync."""

    @pytest.mark.asyncio
    async def test_debounced_sync_after_write(self, make_replica):
        replica = make_replica("alice", debounce_seconds=0.01)
        await replica.start()
        try:
            await replica.put("notes", {"title": "hi"}, document_id="a")
            for _ in range(200):
                if not replica.store.is_dirty("notes", "a"):
                    break
                await asyncio.sleep(0.01)
            assert not replica.store.is_dirty("notes", "a")
        finally:
            await replica.stop()

    @pytest.mark.asyncio
    async def test_writes_within_window_sync_once(self, make_replica):
        replica = make_replica("alice", debounce_seconds=0.05)
        await replica.start()
        try:
            for index in range(5):
                await replica.put("notes", {"title": str(index)}, document_id="a")
            for _ in range(200):
                if replica.transport.requests:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)
            assert len(replica.transport.requests) == 1
        finally:
            await replica.stop()

    @pytest.mark.asyncio
    async def test_auto_sync_pulls_changes(self, make_replica, clock):
        writer = make_replica("writer")
        reader = make_replica("reader", auto_sync_interval=0.01)
        await writer.put("notes", {"title": "remote"}, document_id="a")
        await writer.sync_collection("notes")
        clock.advance(10)

        await reader.start()
        try:
            for _ in range(200):
                if reader.get("notes", "a") is not None:
                    break
                await asyncio.sleep(0.01)
            assert reader.get("notes", "a").payload == {"title": "remote"}
        finally:
            await reader.stop()

    @pytest.mark.asyncio
    async def test_state_updates_published(self, make_replica):
        replica = make_replica("alice")
        states = []
        replica.state.subscribe(states.append, replay=False)

        await replica.put("notes", {"title": "hi"})
        await replica.sync_collection("notes")

        assert any(state.is_syncing for state in states)
        assert states[-1].is_syncing is False
        assert states[-1].pending_changes == 0
