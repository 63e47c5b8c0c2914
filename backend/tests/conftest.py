"""Shared test fixtures and configuration for backend tests."""
import itertools
from types import SimpleNamespace
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from chat_engine.chat.errors import CommunityNotFound
from chat_engine.chat.pipeline import MessagePipeline
from chat_engine.chat.schemas import CommunityChatSettings, Member, MemberRole
from chat_engine.chat.store import MessageStore
from chat_engine.community.directory import CommunityDirectory
from chat_engine.config import AppConfig, ChatSettings, StorageSettings, reset_config, set_config

COMMUNITY_ID = "community-1"

_session_ids = itertools.count(1)


class FakeClock:
    """Manually advanced server clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    """Records events a room delivers; optionally refuses past ``capacity``."""

    def __init__(self, user_id: str, capacity: Optional[int] = None) -> None:
        self.session_id = f"session-{next(_session_ids)}"
        self.user_id = user_id
        self.capacity = capacity
        self.events: List[dict] = []
        self.closed = False
        self.close_error = None

    def deliver(self, event: dict) -> bool:
        if self.capacity is not None and len(self.events) >= self.capacity:
            return False
        self.events.append(event)
        return True

    def close_with(self, error) -> None:
        self.closed = True
        self.close_error = error

    def of_type(self, event_type: str) -> List[dict]:
        return [e for e in self.events if e["type"] == event_type]

    def last(self, event_type: str) -> dict:
        return self.of_type(event_type)[-1]


class StaticSettings:
    """Settings provider with mutable per-community chat settings."""

    def __init__(self, chat_mode: str = "all_members", slowmode_seconds: int = 0) -> None:
        self.settings = {COMMUNITY_ID: CommunityChatSettings(chatMode=chat_mode, slowmodeSeconds=slowmode_seconds)}

    def community_exists(self, community_id: str) -> bool:
        return community_id in self.settings

    def get_chat_settings(self, community_id: str) -> CommunityChatSettings:
        if community_id not in self.settings:
            raise CommunityNotFound(community_id)
        return self.settings[community_id]

    def update(self, community_id: str = COMMUNITY_ID, **fields) -> None:
        self.settings[community_id] = self.settings[community_id].model_copy(update=fields)


def member(user_id: str, role: MemberRole = MemberRole.MEMBER, name: Optional[str] = None) -> Member:
    return Member(userId=user_id, role=role, displayName=name or user_id.capitalize())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """In-memory message store for each test."""
    MessageStore.reset_instance()
    instance = MessageStore.get_instance(db_path=":memory:")
    yield instance
    MessageStore.reset_instance()


@pytest.fixture
def directory():
    """In-memory community directory for each test."""
    CommunityDirectory.reset_instance()
    instance = CommunityDirectory.get_instance(db_path=":memory:")
    yield instance
    CommunityDirectory.reset_instance()


@pytest.fixture
def pipeline(store, clock):
    return MessagePipeline(store, clock=clock)


@pytest.fixture
def settings_provider():
    return StaticSettings()


@pytest.fixture
def community(directory):
    """Seed a community with an owner, a moderator and two members.

    Returns a namespace with the community id and a login token per user.
    """
    directory.upsert_community(COMMUNITY_ID, name="Night Market", chat_mode="all_members")
    tokens = {}
    for user_id, display_name, role in (
        ("owner", "Olivia", "owner"),
        ("mod", "Marcus", "moderator"),
        ("alice", "Alice", "member"),
        ("bob", "Bob", "member"),
    ):
        directory.upsert_user(user_id, display_name)
        directory.set_membership(COMMUNITY_ID, user_id, role=role)
        tokens[user_id] = directory.issue_token(user_id)
    return SimpleNamespace(id=COMMUNITY_ID, tokens=tokens, directory=directory)


@pytest.fixture
def app_config():
    return AppConfig(
        chat=ChatSettings(room_linger_seconds=0.05, typing_sweep_interval_seconds=0.05),
        storage=StorageSettings(db_path=":memory:"),
    )


@pytest.fixture
def api_client(store, directory, app_config):
    """Provide a TestClient for the main FastAPI app with in-memory storage.

    Used as a context manager so the lifespan runs and every request and
    WebSocket in the test shares one event loop.
    """
    set_config(app_config)
    from chat_engine.main import app

    with TestClient(app) as client:
        yield client
    reset_config()


@pytest.fixture
def make_member():
    return member


@pytest.fixture
def make_session():
    return FakeSession
