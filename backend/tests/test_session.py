"""Tests for ConnectionSession buffering and typing throttling."""
import pytest

from chat_engine.chat.errors import ConnectionOverflow, NotAMember
from chat_engine.chat.session import ConnectionSession, resolve_member


class RecordingRoom:
    def __init__(self):
        self.typing_calls = []

    async def set_typing(self, user_id, is_typing):
        self.typing_calls.append((user_id, is_typing))


@pytest.fixture
def session(make_member, clock):
    return ConnectionSession(
        websocket=None,
        community_id="community-1",
        member=make_member("alice"),
        queue_size=2,
        typing_refresh_seconds=0.5,
        clock=clock,
    )


class TestDeliver:
    @pytest.mark.asyncio
    async def test_full_buffer_reports_overflow(self, session):
        assert session.deliver({"type": "pong"})
        assert session.deliver({"type": "pong"})
        assert session.deliver({"type": "pong"}) is False

    @pytest.mark.asyncio
    async def test_close_with_keeps_first_reason(self, session):
        session.close_with(ConnectionOverflow())
        session.close_with(None)
        assert isinstance(session.close_reason, ConnectionOverflow)

    @pytest.mark.asyncio
    async def test_closing_session_accepts_and_drops(self, session):
        session.close_with(None)
        for _ in range(5):
            assert session.deliver({"type": "pong"})


class TestTypingThrottle:
    @pytest.mark.asyncio
    async def test_pings_inside_refresh_window_are_dropped(self, session, clock):
        room = RecordingRoom()
        await session._forward_typing(room, True)
        clock.advance(0.2)
        await session._forward_typing(room, True)
        clock.advance(0.4)
        await session._forward_typing(room, True)
        assert room.typing_calls == [("alice", True), ("alice", True)]

    @pytest.mark.asyncio
    async def test_stop_is_never_throttled(self, session, clock):
        room = RecordingRoom()
        await session._forward_typing(room, True)
        await session._forward_typing(room, False)
        await session._forward_typing(room, True)
        assert room.typing_calls == [("alice", True), ("alice", False), ("alice", True)]


class TestResolveMember:
    def test_resolves_role_and_settings(self, community):
        member, settings = resolve_member(community.directory, community.id, community.tokens["mod"])
        assert member.userId == "mod"
        assert member.role.value == "moderator"
        assert settings.chatMode == "all_members"

    def test_legacy_admin_role_is_moderator(self, community):
        community.directory.set_membership(community.id, "bob", role="admin")
        member, _ = resolve_member(community.directory, community.id, community.tokens["bob"])
        assert member.role.value == "moderator"

    def test_unknown_role_is_not_a_member(self, community):
        community.directory.set_membership(community.id, "bob", role="superuser")
        with pytest.raises(NotAMember):
            resolve_member(community.directory, community.id, community.tokens["bob"])
