"""
Unit tests for the synchronization broadcaster.

Tests cover:
- REFRESHED pushes to stale clients only
- Author exclusion
- Failure isolation and skipped disconnected clients
- Convergence after a series of mutations
- Superseded batches and stalled recipients
"""

import asyncio

import pytest

from canvas.sketchlab_server.store.documents import MutationResult, Note
from canvas.sketchlab_server.sync.broadcaster import SyncBroadcaster
from canvas.sketchlab_server.sync.registry import ConnectionRegistry
from canvas.sketchlab_server.sync.tracker import VersionTracker


def make_result(author, scope="demo", notes=("n1",)):
    document = [Note(note_id=n, note_text=f"text {n}") for n in notes]
    return MutationResult(
        scope=scope,
        author=author,
        created=True,
        note=document[-1],
        document=document,
    )


class TestSyncBroadcaster:
    """Tests for SyncBroadcaster."""

    @pytest.fixture
    def tracker(self):
        return VersionTracker()

    @pytest.fixture
    def registry(self, tracker):
        return ConnectionRegistry(tracker)

    @pytest.fixture
    def broadcaster(self, registry, tracker):
        return SyncBroadcaster(registry, tracker)

    async def join(self, registry, tracker, channel, scope="demo"):
        identity = await registry.register(channel)
        await tracker.add_client(identity, scope)
        return identity

    @pytest.mark.asyncio
    async def test_author_is_not_pushed(self, broadcaster, registry, tracker, make_channel):
        """X writes, M1 and M2 receive REFRESHED, X does not."""
        x, m1, m2 = make_channel(), make_channel(), make_channel()
        x_id = await self.join(registry, tracker, x)
        m1_id = await self.join(registry, tracker, m1)
        m2_id = await self.join(registry, tracker, m2)

        delivered = await broadcaster.on_mutation(make_result(x_id))

        assert delivered == {m1_id, m2_id}
        assert x.frames("REFRESHED") == []
        for channel, identity in ((m1, m1_id), (m2, m2_id)):
            frames = channel.frames("REFRESHED")
            assert len(frames) == 1
            assert frames[0]["clientId"] == identity
            assert frames[0]["data"] == [
                {"noteId": "n1", "noteText": "text n1", "notePos": {"x": 0.0, "y": 0.0, "z": 0.0}}
            ]

    @pytest.mark.asyncio
    async def test_everyone_converges(self, broadcaster, registry, tracker, make_channel):
        """After delivery nobody is stale."""
        ids = [await self.join(registry, tracker, make_channel()) for _ in range(3)]

        await broadcaster.on_mutation(make_result(ids[0]))

        assert await tracker.stale_clients(tracker.current_version) == set()

    @pytest.mark.asyncio
    async def test_failing_client_stays_stale(self, broadcaster, registry, tracker, make_channel):
        """A failed push leaves only that client stale."""
        good, bad = make_channel(), make_channel()
        author_id = await self.join(registry, tracker, make_channel())
        good_id = await self.join(registry, tracker, good)
        bad_id = await self.join(registry, tracker, bad)
        bad.fail = True

        delivered = await broadcaster.on_mutation(make_result(author_id))

        assert delivered == {good_id}
        assert await tracker.stale_clients(tracker.current_version) == {bad_id}

    @pytest.mark.asyncio
    async def test_closed_client_is_skipped(self, broadcaster, registry, tracker, make_channel):
        """A closed channel is skipped without error."""
        closed = make_channel()
        author_id = await self.join(registry, tracker, make_channel())
        await self.join(registry, tracker, closed)
        await closed.close()

        assert await broadcaster.on_mutation(make_result(author_id)) == set()

    @pytest.mark.asyncio
    async def test_disconnected_client_is_not_pushed(
        self, broadcaster, registry, tracker, make_channel
    ):
        """A client that left is no longer tracked or pushed."""
        gone = make_channel()
        author_id = await self.join(registry, tracker, make_channel())
        gone_id = await self.join(registry, tracker, gone)
        await registry.unregister(gone_id)

        assert await broadcaster.on_mutation(make_result(author_id)) == set()
        assert gone.frames("REFRESHED") == []

    @pytest.mark.asyncio
    async def test_other_project_not_pushed(self, broadcaster, registry, tracker, make_channel):
        """Clients viewing another project are left alone."""
        other = make_channel()
        author_id = await self.join(registry, tracker, make_channel(), scope="alpha")
        await self.join(registry, tracker, other, scope="beta")

        delivered = await broadcaster.on_mutation(make_result(author_id, scope="alpha"))

        assert delivered == set()
        assert other.frames("REFRESHED") == []

    @pytest.mark.asyncio
    async def test_connected_but_not_joined(self, broadcaster, registry, make_channel):
        """Registered channels that never joined only get relays."""
        author_id = await registry.register(make_channel())
        lurker = make_channel()
        await registry.register(lurker)

        assert await broadcaster.on_mutation(make_result(author_id)) == set()
        assert lurker.frames("REFRESHED") == []

    @pytest.mark.asyncio
    async def test_series_of_mutations(self, broadcaster, registry, tracker, make_channel):
        """Each mutation delivers the latest document to every peer."""
        a, b = make_channel(), make_channel()
        a_id = await self.join(registry, tracker, a)
        await self.join(registry, tracker, b)

        await broadcaster.on_mutation(make_result(a_id, notes=("n1",)))
        await broadcaster.on_mutation(make_result(a_id, notes=("n1", "n2")))

        frames = b.frames("REFRESHED")
        assert len(frames) == 2
        assert [n["noteId"] for n in frames[-1]["data"]] == ["n1", "n2"]

    @pytest.mark.asyncio
    async def test_superseded_batch_is_dropped(self, broadcaster, registry, tracker, make_channel):
        """A batch overtaken by a newer one for the same client is not sent."""
        a_id = await self.join(registry, tracker, make_channel())
        b = make_channel()
        b_id = await self.join(registry, tracker, b)

        old = await broadcaster.prepare(make_result(a_id, notes=("n1",)))
        new = await broadcaster.prepare(make_result(a_id, notes=("n1", "n2")))

        assert old.recipients == [b_id]
        assert await broadcaster.deliver(new) == {b_id}
        assert await broadcaster.deliver(old) == set()
        frames = b.frames("REFRESHED")
        assert len(frames) == 1
        assert [n["noteId"] for n in frames[0]["data"]] == ["n1", "n2"]
        assert await tracker.version_of(b_id) == new.version

    @pytest.mark.asyncio
    async def test_stalled_client_does_not_delay_others(self, registry, tracker, make_channel):
        """A client that stops reading times out; its peers are pushed at once."""
        broadcaster = SyncBroadcaster(registry, tracker, send_timeout=0.1)
        author_id = await self.join(registry, tracker, make_channel())
        stalled, healthy = make_channel(), make_channel()
        stalled_id = await self.join(registry, tracker, stalled)
        healthy_id = await self.join(registry, tracker, healthy)
        stalled.stall = True

        delivered = await asyncio.wait_for(broadcaster.on_mutation(make_result(author_id)), 1.0)
        await broadcaster.drain()

        assert delivered == {healthy_id}
        assert len(healthy.frames("REFRESHED")) == 1
        assert broadcaster.stats["push_timeouts"] == 1
        assert await tracker.stale_clients(tracker.current_version) == {stalled_id}
        stalled.release()

    @pytest.mark.asyncio
    async def test_push_state_unknown_client(self, broadcaster):
        """Pushing to an absent client reports failure."""
        assert await broadcaster.push_state("ghost", []) is False

    @pytest.mark.asyncio
    async def test_relay_and_stats(self, broadcaster, registry, tracker, make_channel):
        """Relay counts are reported in stats."""
        sender_id = await self.join(registry, tracker, make_channel())
        await registry.register(make_channel())

        assert await broadcaster.relay(sender_id, "ping") == 1

        stats = broadcaster.stats
        assert stats["connections"] == 2
        assert stats["tracked_clients"] == 1
        assert stats["relayed_count"] == 1
        assert stats["pushed_count"] == 0
