import asyncio
from unittest.mock import AsyncMock, Mock

from social_inbox.main import app
from social_inbox.routers.realtime import rooms_for
from social_inbox.services import lock_service
from social_inbox.services.realtime import Broadcaster, ConnectionManager

from conftest import RecordingPublisher


def fake_socket(fail=False):
    ws = Mock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock(side_effect=RuntimeError("closed") if fail else None)
    return ws


class TestBroadcasterRouting:
    def test_unowned_goes_to_admin_and_pool(self, db_session):
        publisher = RecordingPublisher()
        asyncio.run(Broadcaster(publisher).new_message(db_session, {"conversationId": "100_abc"}))
        assert publisher.rooms() == ["admin", "sellers"]

    def test_owned_goes_to_owner_room(self, db_session):
        lock_service.claim(db_session, "100_abc", "A")
        publisher = RecordingPublisher()
        asyncio.run(Broadcaster(publisher).new_message(db_session, {"conversationId": "100_abc"}))
        assert publisher.rooms() == ["admin", "seller:A"]

    def test_owner_lookup_failure_falls_back_to_pool(self):
        db = Mock()
        db.execute.side_effect = RuntimeError("db gone")
        publisher = RecordingPublisher()
        asyncio.run(Broadcaster(publisher).new_message(db, {"conversationId": "100_abc"}))
        assert publisher.rooms() == ["admin", "sellers"]

    def test_meta_notifies_previous_and_new_owner(self):
        publisher = RecordingPublisher()
        payload = {"conversationId": "100_abc", "assignedSellerId": "B"}
        asyncio.run(Broadcaster(publisher).conversation_meta(payload, previous_owner="A"))
        assert publisher.rooms("conversation_meta") == ["admin", "seller:A", "seller:B"]

    def test_meta_unassigned_goes_to_pool(self):
        publisher = RecordingPublisher()
        payload = {"conversationId": "100_abc", "assignedSellerId": None}
        asyncio.run(Broadcaster(publisher).conversation_meta(payload, previous_owner="A"))
        assert publisher.rooms() == ["admin", "seller:A", "sellers"]

    def test_no_publisher_is_noop(self, db_session):
        asyncio.run(Broadcaster(None).new_message(db_session, {"conversationId": "100_abc"}))
        asyncio.run(Broadcaster(None).conversation_meta({"assignedSellerId": None}))

    def test_publisher_errors_are_swallowed(self, db_session):
        publisher = Mock()
        publisher.publish = AsyncMock(side_effect=RuntimeError("transport down"))
        asyncio.run(Broadcaster(publisher).new_message(db_session, {"conversationId": "100_abc"}))
        assert publisher.publish.await_count == 2


class TestConnectionManager:
    def test_publish_reaches_room_members_only(self):
        manager = ConnectionManager()
        admin, seller = fake_socket(), fake_socket()

        async def scenario():
            await manager.connect(admin, ["admin"])
            await manager.connect(seller, ["sellers", "seller:A"])
            await manager.publish("seller:A", "new_message", {"id": 1})

        asyncio.run(scenario())
        seller.send_json.assert_awaited_once_with({"event": "new_message", "data": {"id": 1}})
        admin.send_json.assert_not_awaited()

    def test_failed_socket_is_dropped(self):
        manager = ConnectionManager()
        broken = fake_socket(fail=True)

        async def scenario():
            await manager.connect(broken, ["admin"])
            await manager.publish("admin", "new_message", {})

        asyncio.run(scenario())
        assert manager.room_size("admin") == 0
        assert broken not in manager.memberships

    def test_disconnect_cleans_rooms(self):
        manager = ConnectionManager()
        ws = fake_socket()
        asyncio.run(manager.connect(ws, ["sellers", "seller:A"]))
        manager.disconnect(ws)
        assert manager.rooms == {}


class TestSocketEndpoint:
    def test_rooms_for_identity(self):
        assert rooms_for("test-admin-key", None) == ["admin"]
        assert rooms_for(None, "A") == ["sellers", "seller:A"]
        assert rooms_for("wrong", None) == []

    def test_admin_socket_joins_admin_room(self, client):
        with client.websocket_connect("/ws?admin_key=test-admin-key") as ws:
            ws.send_text("ping")
            assert ws.receive_json() == {"event": "pong", "data": None}
            assert app.state.connection_manager.room_size("admin") == 1
