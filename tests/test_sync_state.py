"""Tests for the observable replica sync state."""

import pytest

from replica.sync_state import SyncState, SyncStateChannel


class TestSyncStateChannel:
    """Test subscription and publication."""

    def test_subscribe_replays_current_state(self):
        channel = SyncStateChannel(SyncState(pending_changes=3))
        received = []

        channel.subscribe(received.append)

        assert received == [SyncState(pending_changes=3)]

    @pytest.mark.asyncio
    async def test_update_publishes_new_state(self):
        channel = SyncStateChannel()
        received = []
        channel.subscribe(received.append, replay=False)

        state = await channel.update(is_syncing=True)

        assert state.is_syncing
        assert received == [state]
        assert channel.state is state

    @pytest.mark.asyncio
    async def test_unchanged_state_not_republished(self):
        channel = SyncStateChannel()
        received = []
        channel.subscribe(received.append, replay=False)

        await channel.update(online=True)

        assert received == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        channel = SyncStateChannel()
        received = []
        unsubscribe = channel.subscribe(received.append, replay=False)

        unsubscribe()
        unsubscribe()
        await channel.update(conflicts=1)

        assert received == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        channel = SyncStateChannel()
        received = []

        def broken(state):
            raise RuntimeError("boom")

        channel.subscribe(broken, replay=False)
        channel.subscribe(received.append, replay=False)

        await channel.update(error="offline", online=False)

        assert received[-1].error == "offline"
        assert received[-1].online is False
