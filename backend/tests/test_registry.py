"""Tests for the room registry (lazy creation, linger, reservations)."""
import asyncio

import pytest
import pytest_asyncio

from chat_engine.chat.errors import CommunityNotFound
from chat_engine.chat.registry import RoomRegistry
from chat_engine.config import ChatSettings

CID = "community-1"
LINGER = 0.05


@pytest_asyncio.fixture
async def registry(pipeline, settings_provider, clock):
    registry = RoomRegistry(
        settings_provider,
        pipeline,
        ChatSettings(room_linger_seconds=LINGER),
        clock=clock,
    )
    yield registry
    await registry.close_all()


class TestGetOrCreate:
    @pytest.mark.asyncio
    async def test_concurrent_callers_get_same_room(self, registry):
        rooms = await asyncio.gather(*(registry.get_or_create_room(CID) for _ in range(5)))
        assert all(room is rooms[0] for room in rooms)
        assert registry.room_count() == 1
        assert rooms[0].reservations == 5

    @pytest.mark.asyncio
    async def test_unknown_community_creates_nothing(self, registry):
        with pytest.raises(CommunityNotFound):
            await registry.get_or_create_room("missing")
        assert registry.get_room("missing") is None
        assert registry.room_count() == 0


class TestLinger:
    @pytest.mark.asyncio
    async def test_empty_room_destroyed_after_linger(self, registry, make_session, make_member):
        room = await registry.get_or_create_room(CID)
        session = make_session("alice")
        await room.attach(session, make_member("alice"))
        await room.detach(session)

        assert registry.get_room(CID) is room
        await asyncio.sleep(LINGER * 4)
        assert registry.get_room(CID) is None
        assert room.closed

    @pytest.mark.asyncio
    async def test_reattach_within_linger_reuses_room(self, registry, make_session, make_member):
        room = await registry.get_or_create_room(CID)
        first = make_session("alice")
        await room.attach(first, make_member("alice"))
        await room.detach(first)

        again = await registry.get_or_create_room(CID)
        assert again is room
        await room.attach(make_session("alice"), make_member("alice"))
        await asyncio.sleep(LINGER * 4)
        assert registry.get_room(CID) is room
        assert not room.closed

    @pytest.mark.asyncio
    async def test_reservation_blocks_destruction(self, registry):
        room = await registry.get_or_create_room(CID)
        registry.release_if_empty(CID)
        await asyncio.sleep(LINGER * 4)
        assert registry.get_room(CID) is room

        registry.release(room)
        await asyncio.sleep(LINGER * 4)
        assert registry.get_room(CID) is None

    @pytest.mark.asyncio
    async def test_cancelled_attach_does_not_pin_room(self, registry, make_session, make_member):
        room = await registry.get_or_create_room(CID)
        attaching = asyncio.create_task(room.attach(make_session("alice"), make_member("alice")))
        await asyncio.sleep(0)
        attaching.cancel()
        with pytest.raises(asyncio.CancelledError):
            await attaching

        await asyncio.sleep(LINGER * 4)
        assert room.reservations == 0
        assert registry.get_room(CID) is None
        assert room.closed

    @pytest.mark.asyncio
    async def test_destroyed_room_drops_pipeline_state(self, registry, pipeline, make_member):
        room = await registry.get_or_create_room(CID)
        await room.submit_message(make_member("alice"), "hello")
        assert CID in pipeline._clocks

        registry.release(room)
        await asyncio.sleep(LINGER * 4)
        assert registry.get_room(CID) is None
        assert CID not in pipeline._clocks
        assert CID not in pipeline._locks

    @pytest.mark.asyncio
    async def test_new_room_after_destruction(self, registry):
        room = await registry.get_or_create_room(CID)
        registry.release(room)
        await asyncio.sleep(LINGER * 4)
        fresh = await registry.get_or_create_room(CID)
        assert fresh is not room
        assert not fresh.closed
        registry.release(fresh)


class TestShutdown:
    @pytest.mark.asyncio
    async def test_close_all(self, registry, make_session, make_member):
        room = await registry.get_or_create_room(CID)
        session = make_session("alice")
        await room.attach(session, make_member("alice"))
        await registry.close_all()
        assert registry.room_count() == 0
        assert room.closed
        assert session.closed
