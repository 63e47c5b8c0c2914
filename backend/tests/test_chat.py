"""Tests for the community chat WebSocket and REST endpoints.

SECURITY NOTE: identity comes from the login token and the role from the
community membership; clients never send a userId or role.
1. On connect, backend sends {type: "connected", userId, role, chatMode, ...}
2. Then {type: "snapshot", ...} followed by a presence broadcast
3. Rejected connections get {type: "error", code} and close code 1008
   (1013 when storage is unavailable, so clients retry)
"""
import duckdb
import pytest
from starlette.websockets import WebSocketDisconnect

COMMUNITY = "community-1"


def ws_url(token, community_id=COMMUNITY, since=None, since_id=None):
    url = f"/ws/communities/{community_id}/chat?token={token}"
    if since is not None:
        url += f"&since={since!r}"
    if since_id is not None:
        url += f"&sinceId={since_id}"
    return url


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def join(ws):
    """Helper to receive the connected/snapshot/presence frames of a new session."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    snapshot = ws.receive_json()
    assert snapshot["type"] == "snapshot"
    presence = ws.receive_json()
    assert presence["type"] == "presence"
    return connected, snapshot, presence


def receive_type(ws, event_type, max_frames=10):
    """Read frames until one of ``event_type`` arrives."""
    for _ in range(max_frames):
        event = ws.receive_json()
        if event["type"] == event_type:
            return event
    pytest.fail(f"no {event_type} frame received")


def assert_rejected(api_client, url, code):
    with api_client.websocket_connect(url) as ws:
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["code"] == code
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
        assert exc_info.value.code == 1008


class TestConnect:
    def test_bad_token_rejected(self, api_client, community):
        assert_rejected(api_client, ws_url("not-a-token"), "authentication_failed")

    def test_unknown_community_rejected(self, api_client, community):
        assert_rejected(api_client, ws_url(community.tokens["alice"], "nowhere"), "community_not_found")

    def test_non_member_rejected(self, api_client, community):
        community.directory.upsert_user("stranger", "Stranger")
        token = community.directory.issue_token("stranger")
        assert_rejected(api_client, ws_url(token), "not_a_member")

    def test_pending_membership_rejected(self, api_client, community):
        community.directory.set_membership(COMMUNITY, "bob", role="member", status="pending")
        assert_rejected(api_client, ws_url(community.tokens["bob"]), "not_a_member")

    def test_storage_outage_closes_with_try_again_later(self, api_client, community, monkeypatch):
        def unavailable(token):
            raise duckdb.IOException("database file is unavailable")

        monkeypatch.setattr(community.directory, "authenticate", unavailable)
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws:
            error = ws.receive_json()
            assert error["code"] == "persistence_failure"
            assert error["retryable"] is True
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1013

    def test_expired_token_rejected(self, api_client, community):
        token = community.directory.issue_token("alice", ttl_seconds=-1)
        assert_rejected(api_client, ws_url(token), "authentication_failed")

    def test_connected_frame(self, api_client, community):
        community.directory.upsert_community(COMMUNITY, chat_mode="moderators_only", slowmode_seconds=5)
        with api_client.websocket_connect(ws_url(community.tokens["mod"])) as ws:
            connected, snapshot, presence = join(ws)
        assert connected["userId"] == "mod"
        assert connected["displayName"] == "Marcus"
        assert connected["role"] == "moderator"
        assert connected["chatMode"] == "moderators_only"
        assert connected["slowmodeSeconds"] == 5
        assert "sessionId" in connected
        assert snapshot["messages"] == []
        assert [u["userId"] for u in presence["users"]] == ["mod"]


class TestLiveChat:
    def test_two_members_exchange_messages(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws1:
            join(ws1)
            with api_client.websocket_connect(ws_url(community.tokens["bob"])) as ws2:
                _, _, presence = join(ws2)
                assert [u["userId"] for u in presence["users"]] == ["alice", "bob"]
                assert [u["userId"] for u in receive_type(ws1, "presence")["users"]] == ["alice", "bob"]

                ws1.send_json({"type": "send_message", "content": "Hello from Alice"})
                data1 = receive_type(ws1, "message")
                data2 = receive_type(ws2, "message")
                assert data1 == data2
                assert data1["message"]["authorId"] == "alice"
                assert data1["message"]["authorName"] == "Alice"
                assert data1["message"]["content"] == "Hello from Alice"

            left = receive_type(ws1, "presence")
            assert [u["userId"] for u in left["users"]] == ["alice"]

    def test_typing_is_broadcast(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws1:
            join(ws1)
            with api_client.websocket_connect(ws_url(community.tokens["bob"])) as ws2:
                join(ws2)
                receive_type(ws1, "presence")
                ws1.send_json({"type": "typing"})
                typing = receive_type(ws2, "typing")
                assert typing["users"] == [{"userId": "alice", "displayName": "Alice"}]
                ws1.send_json({"type": "typing_stop"})
                assert receive_type(ws2, "typing")["users"] == []

    def test_slowmode_denial_goes_to_sender(self, api_client, community):
        community.directory.upsert_community(COMMUNITY, chat_mode="all_members", slowmode_seconds=60)
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws:
            join(ws)
            ws.send_json({"type": "send_message", "content": "first"})
            receive_type(ws, "message")
            ws.send_json({"type": "send_message", "content": "second", "ref": "c-2"})
            denied = receive_type(ws, "denied")
        assert denied["code"] == "slowmode_active"
        assert denied["command"] == "send_message"
        assert denied["ref"] == "c-2"
        assert denied["remainingSeconds"] >= 59

    def test_member_cannot_pin(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws:
            join(ws)
            ws.send_json({"type": "send_message", "content": "pin me?"})
            message = receive_type(ws, "message")["message"]
            ws.send_json({"type": "pin", "messageId": message["id"]})
            denied = receive_type(ws, "denied")
        assert denied["code"] == "insufficient_role"

    def test_owner_pin_reaches_members(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as member_ws:
            join(member_ws)
            with api_client.websocket_connect(ws_url(community.tokens["owner"])) as owner_ws:
                join(owner_ws)
                owner_ws.send_json({"type": "send_message", "content": "Sale starts now", "isAnnouncement": True})
                message = receive_type(owner_ws, "message")["message"]
                assert message["isAnnouncement"] is True
                owner_ws.send_json({"type": "pin", "messageId": message["id"]})
                update = receive_type(member_ws, "message_updated")
        assert update["message"]["isPinned"] is True
        assert update["pinned"] == [message["id"]]

    def test_ping_pong(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws:
            join(ws)
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_unknown_type_keeps_session_open(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws:
            join(ws)
            ws.send_json({"type": "dance"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "protocol_violation"
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_malformed_json_closes_session(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["alice"])) as ws:
            join(ws)
            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["code"] == "protocol_violation"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1003

    def test_reconnect_recovers_missed_messages(self, api_client, community):
        first = api_client.post(
            f"/communities/{COMMUNITY}/chat/messages",
            json={"content": "seen"},
            headers=auth(community.tokens["alice"]),
        ).json()
        missed = api_client.post(
            f"/communities/{COMMUNITY}/chat/messages",
            json={"content": "missed"},
            headers=auth(community.tokens["bob"]),
        ).json()
        with api_client.websocket_connect(ws_url(community.tokens["alice"], since=first["createdAt"], since_id=first["id"])) as ws:
            _, snapshot, _ = join(ws)
        assert snapshot["isRecovery"] is True
        assert [m["id"] for m in snapshot["messages"]] == [missed["id"]]


class TestRest:
    def test_post_reaches_live_members(self, api_client, community):
        with api_client.websocket_connect(ws_url(community.tokens["bob"])) as ws:
            join(ws)
            response = api_client.post(
                f"/communities/{COMMUNITY}/chat/messages",
                json={"content": "posted over REST"},
                headers=auth(community.tokens["alice"]),
            )
            assert response.status_code == 201
            live = receive_type(ws, "message")
        assert live["message"] == response.json()

    def test_history_pagination(self, api_client, community):
        posted = []
        for i in range(5):
            posted.append(api_client.post(
                f"/communities/{COMMUNITY}/chat/messages",
                json={"content": f"m{i}"},
                headers=auth(community.tokens["owner"]),
            ).json())

        latest = api_client.get(
            f"/communities/{COMMUNITY}/chat/messages?limit=2",
            headers=auth(community.tokens["alice"]),
        ).json()
        assert [m["id"] for m in latest["messages"]] == [m["id"] for m in posted[3:]]
        assert latest["hasMore"] is True

        oldest = latest["messages"][0]
        older = api_client.get(
            f"/communities/{COMMUNITY}/chat/messages",
            params={"before": oldest["createdAt"], "beforeId": oldest["id"], "limit": 10},
            headers=auth(community.tokens["alice"]),
        ).json()
        assert [m["id"] for m in older["messages"]] == [m["id"] for m in posted[:3]]
        assert older["hasMore"] is False

    def test_missing_token_is_401(self, api_client, community):
        response = api_client.get(f"/communities/{COMMUNITY}/chat/messages")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_failed"

    def test_non_member_is_403(self, api_client, community):
        community.directory.upsert_user("stranger", "Stranger")
        token = community.directory.issue_token("stranger")
        response = api_client.get(f"/communities/{COMMUNITY}/chat/messages", headers=auth(token))
        assert response.status_code == 403

    def test_unknown_community_is_404(self, api_client, community):
        response = api_client.get("/communities/nowhere/chat/pinned", headers=auth(community.tokens["alice"]))
        assert response.status_code == 404

    def test_chat_mode_denial_is_403(self, api_client, community):
        community.directory.upsert_community(COMMUNITY, chat_mode="owner_only")
        response = api_client.post(
            f"/communities/{COMMUNITY}/chat/messages",
            json={"content": "hi"},
            headers=auth(community.tokens["mod"]),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "insufficient_role"

    def test_slowmode_is_429_with_retry_after(self, api_client, community):
        community.directory.upsert_community(COMMUNITY, chat_mode="all_members", slowmode_seconds=30)
        url = f"/communities/{COMMUNITY}/chat/messages"
        assert api_client.post(url, json={"content": "one"}, headers=auth(community.tokens["alice"])).status_code == 201
        response = api_client.post(url, json={"content": "two"}, headers=auth(community.tokens["alice"]))
        assert response.status_code == 429
        assert 29 <= int(response.headers["Retry-After"]) <= 30

    def test_empty_content_is_422(self, api_client, community):
        response = api_client.post(
            f"/communities/{COMMUNITY}/chat/messages",
            json={"content": "   "},
            headers=auth(community.tokens["alice"]),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_pin_unpin_and_pinned_list(self, api_client, community):
        owner = auth(community.tokens["owner"])
        message = api_client.post(
            f"/communities/{COMMUNITY}/chat/messages", json={"content": "rules"}, headers=owner,
        ).json()
        pin_url = f"/communities/{COMMUNITY}/chat/messages/{message['id']}/pin"

        assert api_client.post(pin_url, headers=auth(community.tokens["mod"])).status_code == 403
        pinned = api_client.post(pin_url, headers=owner)
        assert pinned.status_code == 200
        assert pinned.json()["isPinned"] is True

        listing = api_client.get(f"/communities/{COMMUNITY}/chat/pinned", headers=owner).json()
        assert [m["id"] for m in listing["messages"]] == [message["id"]]

        unpinned = api_client.post(pin_url, json={"isPinned": False}, headers=owner)
        assert unpinned.json()["isPinned"] is False

    def test_delete(self, api_client, community):
        message = api_client.post(
            f"/communities/{COMMUNITY}/chat/messages",
            json={"content": "delete me"},
            headers=auth(community.tokens["alice"]),
        ).json()
        url = f"/communities/{COMMUNITY}/chat/messages/{message['id']}"

        assert api_client.delete(url, headers=auth(community.tokens["bob"])).status_code == 403
        response = api_client.delete(url, headers=auth(community.tokens["alice"]))
        assert response.status_code == 200
        assert response.json()["isDeleted"] is True
        assert response.json()["content"] == ""

        history = api_client.get(
            f"/communities/{COMMUNITY}/chat/messages", headers=auth(community.tokens["bob"]),
        ).json()
        assert history["messages"][0]["isDeleted"] is True

    def test_delete_unknown_message_is_404(self, api_client, community):
        response = api_client.delete(
            f"/communities/{COMMUNITY}/chat/messages/does-not-exist",
            headers=auth(community.tokens["owner"]),
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "message_not_found"

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}
