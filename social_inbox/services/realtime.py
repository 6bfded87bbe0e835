from collections import defaultdict
from typing import Any, Protocol

from fastapi import WebSocket
from sqlalchemy.orm import Session

from social_inbox.logging_config import get_logger
from social_inbox.services import lock_service

logger = get_logger("realtime")

ADMIN_ROOM = "admin"
SELLERS_ROOM = "sellers"

NEW_MESSAGE = "new_message"
CONVERSATION_META = "conversation_meta"


def seller_room(seller_id: str) -> str:
    return f"seller:{seller_id}"


class EventPublisher(Protocol):
    async def publish(self, room: str, event: str, payload: Any) -> None: ...


class ConnectionManager:
    """In-process WebSocket rooms. Delivery is at-most-once with no backlog."""

    def __init__(self):
        self.rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self.memberships: dict[WebSocket, set[str]] = {}

    async def connect(self, websocket: WebSocket, rooms: list[str]) -> None:
        await websocket.accept()
        self.memberships[websocket] = set(rooms)
        for room in rooms:
            self.rooms[room].add(websocket)
        logger.info("WS connected", extra={"context": {"rooms": rooms}})

    def disconnect(self, websocket: WebSocket) -> None:
        rooms = self.memberships.pop(websocket, set())
        for room in rooms:
            members = self.rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self.rooms[room]

    def room_size(self, room: str) -> int:
        return len(self.rooms.get(room) or ())

    async def publish(self, room: str, event: str, payload: Any) -> None:
        frame = {"event": event, "data": payload}
        for websocket in list(self.rooms.get(room) or ()):
            try:
                await websocket.send_json(frame)
            except Exception as e:
                logger.info("WS send failed, dropping socket", extra={"context": {"room": room, "error": str(e)}})
                self.disconnect(websocket)


class Broadcaster:
    """
    Routes inbox events to observer rooms.

    Admin always hears about everything. An owned conversation goes to its
    seller's private room, an unowned one to the shared sellers pool. Never
    raises: a broken transport must not fail the request that produced the event.
    """

    def __init__(self, publisher: EventPublisher | None = None):
        self.publisher = publisher

    async def _emit(self, rooms: list[str], event: str, payload: Any) -> None:
        for room in dict.fromkeys(rooms):
            try:
                await self.publisher.publish(room, event, payload)
            except Exception as e:
                logger.warning("Broadcast failed", extra={"context": {"room": room, "event": event, "error": str(e)}})

    async def new_message(self, db: Session, payload: dict) -> None:
        if self.publisher is None:
            return
        conversation_id = str(payload.get("conversationId") or "")
        try:
            owner = lock_service.get_owner(db, conversation_id)
        except Exception as e:
            logger.warning(
                "Owner lookup failed, broadcasting to pool",
                extra={"context": {"conversation_id": conversation_id, "error": str(e)}},
            )
            owner = None

        rooms = [ADMIN_ROOM, seller_room(owner) if owner else SELLERS_ROOM]
        await self._emit(rooms, NEW_MESSAGE, payload)

    async def conversation_meta(self, payload: dict, previous_owner: str | None = None) -> None:
        if self.publisher is None:
            return
        new_owner = payload.get("assignedSellerId")
        rooms = [ADMIN_ROOM]
        # Old owner drops the conversation, new owner picks it up.
        if previous_owner:
            rooms.append(seller_room(previous_owner))
        if new_owner:
            rooms.append(seller_room(new_owner))
        else:
            rooms.append(SELLERS_ROOM)
        await self._emit(rooms, CONVERSATION_META, payload)
